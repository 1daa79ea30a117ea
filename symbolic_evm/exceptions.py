# symbolic_evm/exceptions.py
"""
Exception hierarchy for the symbolic EVM engine.

EVMException subclasses are exceptional halts of a single call frame: the
owning path stops and the caller frame observes a failed call. EngineError
subclasses mean the engine itself could not continue (an unsupported opcode,
a value that had to be concrete, an internal invariant); those surface as a
distinct "error" outcome and are never reported as a pass or a fail.
"""


class SymbolicEVMError(Exception):
    """Base class for every error raised by the engine."""


# --- Exceptional halts (frame-local) ---


class EVMException(SymbolicEVMError):
    """The current frame halts exceptionally, consuming its gas."""


class StackOverflow(EVMException):
    pass


class StackUnderflow(EVMException):
    pass


class InvalidJump(EVMException):
    pass


class InvalidOpcode(EVMException):
    pass


class StaticCallViolation(EVMException):
    """A state-mutating opcode ran inside a STATICCALL frame."""


class OutOfBoundsRead(EVMException):
    pass


class OutOfGas(EVMException):
    """Raised for memory expansion past the supported size."""


# --- Engine errors (distinct "error" outcome) ---


class EngineError(SymbolicEVMError):
    pass


class UnimplementedOpcode(EngineError):
    def __init__(self, opcode: int, message: str = ""):
        self.opcode = opcode
        super().__init__(message or f"opcode 0x{opcode:02x} is not implemented")


class NotConcrete(EngineError):
    """A value had to be concrete but is symbolic."""


class WidthMismatch(EngineError):
    def __init__(self, left: int, right: int, op: str = ""):
        self.left = left
        self.right = right
        super().__init__(f"width mismatch in {op or 'operation'}: {left} vs {right}")


class InternalInvariantError(EngineError):
    pass


# --- Path control ---


class PathInfeasible(SymbolicEVMError):
    """The path can never be taken; it is pruned, not reported."""


class StepBudgetExceeded(SymbolicEVMError):
    """The global step or wall-clock budget ran out. Aborts the whole run."""


class SolverError(SymbolicEVMError):
    pass
