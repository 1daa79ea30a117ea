# core/state.py
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

import structlog

from ..exceptions import OutOfGas, StackOverflow, StackUnderflow, SymbolicEVMError, WidthMismatch
from .bytevec import ByteSequence
from .contract import Contract
from .opcodes import Opcode
from .path import PathState
from .storage import StorageData
from .word import Word

logger = structlog.get_logger()

MAX_STACK_SIZE = 1024
# memory beyond this many bytes is treated as running out of gas
MAX_MEMORY_SIZE = 1 << 32


def ceil32(n: int) -> int:
    return (n + 31) // 32 * 32


@dataclass
class Message:
    target: int
    caller: int
    origin: int
    value: Word
    data: ByteSequence
    is_static: bool = False
    call_scheme: int = Opcode.CALL
    gas: int = 30_000_000
    salt: Optional[Word] = None

    def is_create(self) -> bool:
        return self.call_scheme in (Opcode.CREATE, Opcode.CREATE2)


def _word_field(value: int):
    return field(default_factory=lambda: Word(value))


@dataclass
class BlockContext:
    coinbase: Word = _word_field(0)
    timestamp: Word = _word_field(1)
    number: Word = _word_field(1)
    prevrandao: Word = _word_field(0)
    gaslimit: Word = _word_field(30_000_000)
    chainid: Word = _word_field(1)
    basefee: Word = _word_field(0)
    blobbasefee: Word = _word_field(1)
    gasprice: Word = _word_field(0)


@dataclass
class StorageRead:
    address: int
    slot: Word
    value: Word
    transient: bool = False


@dataclass
class StorageWrite:
    address: int
    slot: Word
    value: Word
    transient: bool = False


@dataclass
class EventLog:
    address: int
    topics: List[Word]
    data: ByteSequence


@dataclass
class CallOutput:
    data: Optional[ByteSequence] = None
    error: Optional[SymbolicEVMError] = None
    return_scheme: Optional[int] = None


TraceElement = Union["CallContext", EventLog, StorageRead, StorageWrite]


@dataclass
class CallContext:
    """One call frame of the trace tree handed to external renderers."""

    message: Message
    output: CallOutput = field(default_factory=CallOutput)
    depth: int = 1
    trace: List[TraceElement] = field(default_factory=list)

    def subcalls(self) -> List["CallContext"]:
        return [e for e in self.trace if isinstance(e, CallContext)]

    def logs(self) -> List[EventLog]:
        return [e for e in self.trace if isinstance(e, EventLog)]

    def storage_reads(self) -> List[StorageRead]:
        return [e for e in self.trace if isinstance(e, StorageRead)]

    def storage_writes(self) -> List[StorageWrite]:
        return [e for e in self.trace if isinstance(e, StorageWrite)]

    def is_stuck(self) -> bool:
        return self.output.data is None and self.output.error is None

    def copy(self) -> "CallContext":
        return CallContext(self.message, self.output, self.depth, list(self.trace))


class ExecutionState:
    """
    Machine state of one path inside one call frame, plus the world state
    (code, storage, balances) as seen by that path.
    """

    def __init__(
        self,
        contract: Contract,
        message: Message,
        path: PathState,
        block: Optional[BlockContext] = None,
        depth: int = 1,
    ):
        self.contract = contract
        self.message = message
        self.path = path
        self.block = block if block is not None else BlockContext()
        self.depth = depth
        self.pc = 0
        self.gas = message.gas
        self.stack: List[Word] = []
        self.memory = ByteSequence()
        self.returndata = ByteSequence()
        self.context = CallContext(message, depth=depth)
        # (pc, opcode) -> {True: taken visits, False: fallthrough visits}
        self.jumpis: Dict[Tuple[int, int], Dict[bool, int]] = {}

        self.code: Dict[int, Contract] = {}
        self.storage: Dict[int, StorageData] = {}
        self.transient: Dict[int, StorageData] = {}
        self.balances: Dict[int, Word] = {}

        self.halted = False

    @property
    def this(self) -> int:
        return self.message.target

    # --- Stack ---

    def push(self, value: Union[Word, int]) -> None:
        if isinstance(value, int):
            value = Word(value)
        if value.width != 256:
            raise WidthMismatch(256, value.width, "push")
        if len(self.stack) >= MAX_STACK_SIZE:
            raise StackOverflow(f"stack limit of {MAX_STACK_SIZE} reached at pc {self.pc}")
        self.stack.append(value)

    def pop(self) -> Word:
        if not self.stack:
            raise StackUnderflow(f"pop from empty stack at pc {self.pc}")
        return self.stack.pop()

    def peek(self, n: int = 1) -> Word:
        if len(self.stack) < n:
            raise StackUnderflow(f"stack has {len(self.stack)} items, need {n} at pc {self.pc}")
        return self.stack[-n]

    def dup(self, n: int) -> None:
        self.push(self.peek(n))

    def swap(self, n: int) -> None:
        if len(self.stack) < n + 1:
            raise StackUnderflow(f"SWAP{n} needs {n + 1} items at pc {self.pc}")
        self.stack[-1], self.stack[-(n + 1)] = self.stack[-(n + 1)], self.stack[-1]

    # --- Memory ---

    def _expand_memory(self, offset: int, size: int) -> None:
        if not size:
            return
        end = offset + size
        if end > MAX_MEMORY_SIZE:
            raise OutOfGas(f"memory access [{offset}, {end}) exceeds {MAX_MEMORY_SIZE} bytes")
        self.memory.extend_to(ceil32(end))

    def mload(self, offset: int, size: int) -> ByteSequence:
        if not size:
            return ByteSequence()
        self._expand_memory(offset, size)
        return self.memory.slice(offset, offset + size)

    def mstore(self, offset: int, data: Union[ByteSequence, bytes, Word]) -> None:
        size = len(data) if not isinstance(data, Word) else data.width // 8
        self._expand_memory(offset, size)
        self.memory.set_slice(offset, data)

    # --- World state ---

    def storage_of(self, address: int, transient: bool = False) -> StorageData:
        table = self.transient if transient else self.storage
        data = table.get(address)
        if data is None:
            data = StorageData(address, transient)
            table[address] = data
        return data

    def balance_of(self, address: int) -> Word:
        balance = self.balances.get(address)
        if balance is None:
            balance = Word.symbol(f"balance_{address:040x}")
            self.balances[address] = balance
        return balance

    # --- Termination ---

    def halt(
        self,
        data: Optional[ByteSequence] = None,
        error: Optional[SymbolicEVMError] = None,
        scheme: Optional[int] = None,
    ) -> None:
        self.halted = True
        self.context.output = CallOutput(data if data is not None else ByteSequence(), error, scheme)

    @property
    def output(self) -> CallOutput:
        return self.context.output

    @property
    def error(self) -> Optional[SymbolicEVMError]:
        return self.context.output.error

    def is_success(self) -> bool:
        out = self.context.output
        return self.halted and out.error is None and out.return_scheme != Opcode.REVERT

    def is_revert(self) -> bool:
        return self.halted and self.context.output.return_scheme == Opcode.REVERT

    # --- Forking ---

    def clone(self) -> "ExecutionState":
        """Independent copy sharing the path object; callers replace ``path`` when forking."""
        other = ExecutionState.__new__(ExecutionState)
        other.contract = self.contract
        other.message = self.message
        other.path = self.path
        other.block = self.block
        other.depth = self.depth
        other.pc = self.pc
        other.gas = self.gas
        other.stack = list(self.stack)
        other.memory = self.memory.copy()
        other.returndata = self.returndata
        other.context = self.context.copy()
        other.jumpis = {key: dict(counts) for key, counts in self.jumpis.items()}
        other.code = dict(self.code)
        other.storage = {addr: data.copy() for addr, data in self.storage.items()}
        other.transient = {addr: data.copy() for addr, data in self.transient.items()}
        other.balances = dict(self.balances)
        other.halted = self.halted
        return other

    def visits(self, key: Tuple[int, int], taken: bool) -> int:
        return self.jumpis.get(key, {}).get(taken, 0)

    def record_visit(self, key: Tuple[int, int], taken: bool) -> None:
        counts = self.jumpis.setdefault(key, {True: 0, False: 0})
        counts[taken] += 1

    def __repr__(self) -> str:
        return (
            f"ExecutionState(address=0x{self.this:040x}, pc={self.pc}, "
            f"stack={len(self.stack)}, depth={self.depth}, halted={self.halted})"
        )
