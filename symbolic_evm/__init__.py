"""
Symbolic execution engine for EVM bytecode.
"""

from .config import EngineConfig, load_config
from .exceptions import SymbolicEVMError

# Core components
from .core.word import Word, Predicate
from .core.bytevec import ByteSequence
from .core.contract import Contract
from .core.interpreter import Interpreter

# Analysis
from .analysis.verifier import Verifier, TestResult, symbolic_calldata

__version__ = "0.1.0"
