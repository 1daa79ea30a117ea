# analysis/verifier.py
"""
End-to-end driver: explore a contract call symbolically, then ask the
external solver whether any reverting path can end in a counted assertion
failure.
"""

import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Union

import structlog

from ..config import EngineConfig
from ..core.bytevec import ByteSequence
from ..core.contract import Contract
from ..core.interpreter import Interpreter
from ..core.state import CallContext, ExecutionState
from ..core.word import Word
from ..core.worklist import RunContext
from ..exceptions import EngineError, SolverError, StepBudgetExceeded
from ..solver.bridge import SatResult, SMTQuery, SolverBridge, SolverResult
from ..solver.pool import SolverPool
from .assertions import assertion_condition, format_counterexample

logger = structlog.get_logger()

# forge's default test contract and sender
DEFAULT_TARGET = 0x7FA9385BE102AC3EAC297483DD6233D62B3E1496
DEFAULT_CALLER = 0x1804C8AB1F12E6BBF3894D4083F33E07309D1F38

PASSED = "passed"
FAILED = "failed"
ERROR = "error"
TIMEOUT = "timeout"


@dataclass
class TestResult:
    __test__ = False

    status: str
    counterexamples: List[Dict[str, str]] = field(default_factory=list)
    invalid_counterexamples: List[Dict[str, str]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    paths: int = 0
    pruned_paths: int = 0
    steps: int = 0
    success: bool = False
    returndata: Optional[bytes] = None
    gas_used: int = 0
    duration: float = 0.0
    context: Optional[CallContext] = None

    @property
    def passed(self) -> bool:
        return self.status == PASSED

    def to_dict(self) -> Dict:
        return {
            "status": self.status,
            "counterexamples": self.counterexamples,
            "invalid_counterexamples": self.invalid_counterexamples,
            "errors": self.errors,
            "paths": self.paths,
            "pruned_paths": self.pruned_paths,
            "steps": self.steps,
            "success": self.success,
            "returndata": "0x" + self.returndata.hex() if self.returndata is not None else None,
            "gas_used": self.gas_used,
            "duration": round(self.duration, 3),
        }


def symbolic_calldata(selector: Optional[int] = None, num_args: int = 0, prefix: str = "p_arg") -> ByteSequence:
    """4-byte selector followed by ``num_args`` symbolic uint256 words named ``p_arg<i>_uint256``."""
    data = ByteSequence()
    if selector is not None:
        data.append(selector.to_bytes(4, "big"))
    for i in range(num_args):
        data.append(Word.symbol(f"{prefix}{i}_uint256"))
    return data


def _returndata(state: ExecutionState) -> Optional[bytes]:
    data = state.output.data
    if data is None:
        return None
    raw = data.unwrap()
    return raw if isinstance(raw, bytes) else None


class Verifier:
    def __init__(self, config: Optional[EngineConfig] = None, log_level: str = "WARNING", log_format: str = "json"):
        self.config = config if config is not None else EngineConfig()
        self.log_level = log_level
        self.log_format = log_format
        self.bridge = SolverBridge(self.config)

    def close(self) -> None:
        self.bridge.close()

    def explore(
        self,
        contract: Contract,
        calldata: ByteSequence,
        target: int = DEFAULT_TARGET,
        caller: int = DEFAULT_CALLER,
        value: Optional[Word] = None,
    ):
        """Run the worklist to completion; returns (run context, terminal states)."""
        context = RunContext(self.config)
        interpreter = Interpreter(context)
        state = interpreter.new_state(contract, calldata, target, caller, value=value)
        return context, interpreter.run(state)

    def run_test(
        self,
        contract: Union[Contract, bytes, str],
        calldata: Union[ByteSequence, bytes, None] = None,
        target: int = DEFAULT_TARGET,
        caller: int = DEFAULT_CALLER,
        value: Optional[Word] = None,
    ) -> TestResult:
        start = time.monotonic()
        if not isinstance(contract, Contract):
            contract = Contract(contract)
        if calldata is None:
            calldata = ByteSequence()
        elif not isinstance(calldata, ByteSequence):
            calldata = ByteSequence(bytes(calldata))

        try:
            context, terminals = self.explore(contract, calldata, target, caller, value)
        except StepBudgetExceeded as e:
            logger.warning("Exploration aborted", reason=str(e))
            return TestResult(TIMEOUT, errors=[str(e)], duration=time.monotonic() - start)

        stats = context.stats
        result = TestResult(
            PASSED,
            paths=stats.completed_paths,
            pruned_paths=stats.pruned_paths,
            steps=stats.steps,
        )

        if terminals:
            representative = next((s for s in terminals if s.is_success()), terminals[0])
            result.success = representative.is_success()
            result.returndata = _returndata(representative)
            result.gas_used = representative.message.gas - representative.gas
            result.context = representative.context

        queries: List[SMTQuery] = []
        panic_codes = self.config.panic_codes()
        for state in terminals:
            if isinstance(state.error, EngineError):
                result.errors.append(f"{type(state.error).__name__}: {state.error}")
                continue
            if not state.is_revert():
                continue
            cond = assertion_condition(state.output.data or ByteSequence(), panic_codes)
            if cond.is_false():
                continue
            queries.append(self.bridge.to_smt2(state.path, extra=[cond]))

        logger.info("Exploration finished", paths=result.paths, steps=result.steps, queries=len(queries))
        for outcome in self._solve(queries):
            self._record(result, outcome)

        if result.errors and result.status == PASSED:
            result.status = ERROR
        result.duration = time.monotonic() - start
        return result

    def _solve(self, queries: Sequence[SMTQuery]) -> List[SolverResult]:
        if len(queries) > 1 and self.config.solver_threads > 1:
            with SolverPool(self.config, self.log_level, self.log_format) as pool:
                futures = [pool.submit(query) for query in queries]
                return [self._outcome(future.result) for future in futures]
        return [self._outcome(self.bridge.solve, query) for query in queries]

    @staticmethod
    def _outcome(solve, *args) -> SolverResult:
        """Solver launch failures become ERROR results for that query."""
        try:
            return solve(*args)
        except SolverError as e:
            logger.error("Solver failed", error=str(e))
            return SolverResult(SatResult.ERROR, error=str(e))

    @staticmethod
    def _record(result: TestResult, outcome: SolverResult) -> None:
        if outcome.result == SatResult.SAT:
            model = format_counterexample(outcome.model or {})
            if outcome.is_valid:
                result.counterexamples.append(model)
            else:
                logger.warning("Counterexample may be spurious", model=model)
                result.invalid_counterexamples.append(model)
            result.status = FAILED
        elif outcome.result == SatResult.UNKNOWN:
            if result.status == PASSED:
                result.status = TIMEOUT
        elif outcome.result == SatResult.ERROR:
            result.errors.append(f"solver error: {outcome.error}")
