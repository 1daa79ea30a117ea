"""
Values, machine state and the interpreter loop.
"""

from .word import Word, Predicate, AbstractionFunctions
from .bytevec import ByteSequence, Chunk
from .opcodes import Opcode, disassemble
from .contract import Contract, Instruction
from .hashes import KeccakRegistry
from .storage import StorageData, StorageModel
from .path import PathState, SolverHandle
from .state import ExecutionState, Message, BlockContext, CallContext
from .worklist import RunContext, Worklist
from .interpreter import Interpreter
