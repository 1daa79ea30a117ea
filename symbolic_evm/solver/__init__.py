from .bridge import SatResult, SMTQuery, SolverBridge, SolverResult
from .pool import SolverPool
