"""
EVM opcode table and bytecode helpers for the interpreter.

Each entry of ``_TABLE`` is ``(name, byte, pops, pushes)``; the ``Opcode``
enum and ``STACK_EFFECTS`` are both built from it. The PUSH, DUP, SWAP and
LOG families are generated.
"""

from enum import IntEnum
from typing import List, Optional, Tuple

_TABLE = [
    ("STOP", 0x00, 0, 0),
    ("ADD", 0x01, 2, 1),
    ("MUL", 0x02, 2, 1),
    ("SUB", 0x03, 2, 1),
    ("DIV", 0x04, 2, 1),
    ("SDIV", 0x05, 2, 1),
    ("MOD", 0x06, 2, 1),
    ("SMOD", 0x07, 2, 1),
    ("ADDMOD", 0x08, 3, 1),
    ("MULMOD", 0x09, 3, 1),
    ("EXP", 0x0A, 2, 1),
    ("SIGNEXTEND", 0x0B, 2, 1),
    ("LT", 0x10, 2, 1),
    ("GT", 0x11, 2, 1),
    ("SLT", 0x12, 2, 1),
    ("SGT", 0x13, 2, 1),
    ("EQ", 0x14, 2, 1),
    ("ISZERO", 0x15, 1, 1),
    ("AND", 0x16, 2, 1),
    ("OR", 0x17, 2, 1),
    ("XOR", 0x18, 2, 1),
    ("NOT", 0x19, 1, 1),
    ("BYTE", 0x1A, 2, 1),
    ("SHL", 0x1B, 2, 1),
    ("SHR", 0x1C, 2, 1),
    ("SAR", 0x1D, 2, 1),
    ("SHA3", 0x20, 2, 1),
    ("ADDRESS", 0x30, 0, 1),
    ("BALANCE", 0x31, 1, 1),
    ("ORIGIN", 0x32, 0, 1),
    ("CALLER", 0x33, 0, 1),
    ("CALLVALUE", 0x34, 0, 1),
    ("CALLDATALOAD", 0x35, 1, 1),
    ("CALLDATASIZE", 0x36, 0, 1),
    ("CALLDATACOPY", 0x37, 3, 0),
    ("CODESIZE", 0x38, 0, 1),
    ("CODECOPY", 0x39, 3, 0),
    ("GASPRICE", 0x3A, 0, 1),
    ("EXTCODESIZE", 0x3B, 1, 1),
    ("EXTCODECOPY", 0x3C, 4, 0),
    ("RETURNDATASIZE", 0x3D, 0, 1),
    ("RETURNDATACOPY", 0x3E, 3, 0),
    ("EXTCODEHASH", 0x3F, 1, 1),
    ("BLOCKHASH", 0x40, 1, 1),
    ("COINBASE", 0x41, 0, 1),
    ("TIMESTAMP", 0x42, 0, 1),
    ("NUMBER", 0x43, 0, 1),
    ("PREVRANDAO", 0x44, 0, 1),
    ("GASLIMIT", 0x45, 0, 1),
    ("CHAINID", 0x46, 0, 1),
    ("SELFBALANCE", 0x47, 0, 1),
    ("BASEFEE", 0x48, 0, 1),
    ("BLOBHASH", 0x49, 1, 1),
    ("BLOBBASEFEE", 0x4A, 0, 1),
    ("POP", 0x50, 1, 0),
    ("MLOAD", 0x51, 1, 1),
    ("MSTORE", 0x52, 2, 0),
    ("MSTORE8", 0x53, 2, 0),
    ("SLOAD", 0x54, 1, 1),
    ("SSTORE", 0x55, 2, 0),
    ("JUMP", 0x56, 1, 0),
    ("JUMPI", 0x57, 2, 0),
    ("PC", 0x58, 0, 1),
    ("MSIZE", 0x59, 0, 1),
    ("GAS", 0x5A, 0, 1),
    ("JUMPDEST", 0x5B, 0, 0),
    ("TLOAD", 0x5C, 1, 1),
    ("TSTORE", 0x5D, 2, 0),
    ("MCOPY", 0x5E, 3, 0),
    ("PUSH0", 0x5F, 0, 1),
    ("CREATE", 0xF0, 3, 1),
    ("CALL", 0xF1, 7, 1),
    ("CALLCODE", 0xF2, 7, 1),
    ("RETURN", 0xF3, 2, 0),
    ("DELEGATECALL", 0xF4, 6, 1),
    ("CREATE2", 0xF5, 4, 1),
    ("STATICCALL", 0xFA, 6, 1),
    ("REVERT", 0xFD, 2, 0),
    ("INVALID", 0xFE, 0, 0),
    ("SELFDESTRUCT", 0xFF, 1, 0),
]
_TABLE += [(f"PUSH{n}", 0x5F + n, 0, 1) for n in range(1, 33)]
_TABLE += [(f"DUP{n}", 0x7F + n, n, n + 1) for n in range(1, 17)]
_TABLE += [(f"SWAP{n}", 0x8F + n, n + 1, n + 1) for n in range(1, 17)]
_TABLE += [(f"LOG{n}", 0xA0 + n, n + 2, 0) for n in range(5)]

Opcode = IntEnum("Opcode", [(name, byte) for name, byte, _, _ in sorted(_TABLE, key=lambda row: row[1])])
Opcode.__doc__ = "EVM opcodes"

OPCODE_NAMES = {byte: name for name, byte, _, _ in _TABLE}

# opcode -> (stack items consumed, stack items produced)
STACK_EFFECTS = {Opcode(byte): (pops, pushes) for _, byte, pops, pushes in _TABLE}

# Opcodes that may not run inside a STATICCALL frame (CALL only with value)
STATE_MUTATING = frozenset(
    {
        Opcode.SSTORE,
        Opcode.TSTORE,
        Opcode.LOG0,
        Opcode.LOG1,
        Opcode.LOG2,
        Opcode.LOG3,
        Opcode.LOG4,
        Opcode.CREATE,
        Opcode.CREATE2,
        Opcode.SELFDESTRUCT,
    }
)


def immediate_size(opcode: int) -> int:
    """Number of immediate bytes following the opcode (PUSH1..PUSH32 only)."""
    if Opcode.PUSH1 <= opcode <= Opcode.PUSH32:
        return opcode - Opcode.PUSH1 + 1
    return 0


def instruction_length(opcode: int) -> int:
    return 1 + immediate_size(opcode)


def opcode_name(opcode: int) -> str:
    return OPCODE_NAMES.get(opcode, f"UNKNOWN_{opcode:02x}")


def disassemble(code: bytes) -> List[Tuple[int, int, Optional[bytes]]]:
    """
    Disassemble EVM bytecode.

    Args:
        code: Raw bytecode

    Returns:
        List of tuples (offset, opcode_value, push_data). Push data running
        past the end of the code is returned truncated.
    """
    operations = []
    i = 0

    while i < len(code):
        opcode_value = code[i]
        offset = i
        i += 1

        push_data = None
        size = immediate_size(opcode_value)
        if size:
            push_data = code[i : i + size]
            i += size

        operations.append((offset, opcode_value, push_data))

    return operations


def jump_destinations(code: bytes) -> List[int]:
    """Offsets of JUMPDEST bytes that are not inside push data."""
    return [offset for offset, op, _ in disassemble(code) if op == Opcode.JUMPDEST]
