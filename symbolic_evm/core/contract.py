# core/contract.py
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional, Union

import structlog

from ..exceptions import NotConcrete
from .bytevec import ByteSequence
from .opcodes import Opcode, immediate_size, opcode_name
from .word import Word

logger = structlog.get_logger()


@dataclass(frozen=True)
class Instruction:
    pc: int
    opcode: int
    operand: Optional[Word] = None
    length: int = 1

    @property
    def name(self) -> str:
        return opcode_name(self.opcode)

    @property
    def next_pc(self) -> int:
        return self.pc + self.length

    def key(self):
        """Identifies the instruction site for loop-visit counting."""
        return (self.pc, self.opcode)

    def __str__(self) -> str:
        if self.operand is None:
            return f"{self.pc}: {self.name}"
        return f"{self.pc}: {self.name} {self.operand}"


class Contract:
    """
    Deployed code with a lazily filled instruction cache and the set of valid
    jump destinations. Code bytes may be symbolic (e.g. constructor arguments
    appended to init code); only concrete bytes decode to instructions.
    """

    def __init__(self, code: Union[bytes, bytearray, str, ByteSequence]):
        if isinstance(code, str):
            code = bytes.fromhex(code[2:] if code.startswith("0x") else code)
        self.code = code if isinstance(code, ByteSequence) else ByteSequence(bytes(code))
        self._instructions: Dict[int, Instruction] = {}
        self._jumpdests: Optional[FrozenSet[int]] = None

    @classmethod
    def from_hex(cls, hexcode: str) -> "Contract":
        return cls(hexcode)

    def __len__(self) -> int:
        return len(self.code)

    def decode_instruction(self, pc: int) -> Instruction:
        """Instruction at pc; reading past the end of the code yields STOP."""
        cached = self._instructions.get(pc)
        if cached is not None:
            return cached

        if pc >= len(self.code):
            return Instruction(pc, Opcode.STOP)

        opcode = self.code.get_byte(pc)
        if isinstance(opcode, Word):
            raise NotConcrete(f"symbolic opcode at pc {pc}")

        size = immediate_size(opcode)
        operand = None
        if size:
            data = self.code.slice(pc + 1, pc + 1 + size).unwrap()
            operand = Word.from_bytes(data) if isinstance(data, bytes) else data
            operand = operand.zero_extend(256)
        elif opcode == Opcode.PUSH0:
            operand = Word(0)

        instruction = Instruction(pc, opcode, operand, 1 + size)
        self._instructions[pc] = instruction
        return instruction

    def valid_jump_destinations(self) -> FrozenSet[int]:
        if self._jumpdests is None:
            dests = set()
            pc = 0
            while pc < len(self.code):
                opcode = self.code.get_byte(pc)
                if isinstance(opcode, Word):
                    pc += 1
                    continue
                if opcode == Opcode.JUMPDEST:
                    dests.add(pc)
                pc += 1 + immediate_size(opcode)
            self._jumpdests = frozenset(dests)
            logger.debug("Computed jump destinations", count=len(dests), code_size=len(self.code))
        return self._jumpdests

    def is_jumpdest(self, pc: int) -> bool:
        return pc in self.valid_jump_destinations()

    def slice(self, start: int, stop: int) -> ByteSequence:
        return self.code.slice(start, stop)

    def concrete_code(self) -> bytes:
        return self.code.concrete_bytes()

    def __repr__(self) -> str:
        return f"Contract(size={len(self.code)})"
