# solver/pool.py
"""
Bounded pool of solver worker processes.

Completed paths are independent, so their assertion queries are discharged
in parallel. Queries are plain SMT-LIB text, which keeps z3 objects out of
the pickled payload.
"""

import multiprocessing.util
import os
from concurrent.futures import Future, ProcessPoolExecutor
from typing import List, Optional, Sequence

import structlog

from ..config import EngineConfig
from ..logging_config import bind_context, configure_logging
from .bridge import SMTQuery, SolverBridge, SolverResult

logger = structlog.get_logger()

_worker_bridge: Optional[SolverBridge] = None


def _init_worker(config: EngineConfig, log_level: str, log_format: str) -> None:
    global _worker_bridge
    configure_logging(log_level, log_format)
    bind_context(worker_pid=os.getpid())
    _worker_bridge = SolverBridge(config)
    # runs when the worker process exits
    multiprocessing.util.Finalize(_worker_bridge, _worker_bridge.close, exitpriority=10)
    structlog.get_logger().debug("Solver worker started")


def _solve(query: SMTQuery) -> SolverResult:
    return _worker_bridge.solve(query)


class SolverPool:
    def __init__(self, config: Optional[EngineConfig] = None, log_level: str = "WARNING", log_format: str = "json"):
        self.config = config if config is not None else EngineConfig()
        self.executor = ProcessPoolExecutor(
            max_workers=self.config.solver_threads,
            initializer=_init_worker,
            initargs=(self.config, log_level, log_format),
        )
        logger.debug("Solver pool started", workers=self.config.solver_threads)

    def submit(self, query: SMTQuery) -> Future:
        return self.executor.submit(_solve, query)

    def solve_all(self, queries: Sequence[SMTQuery]) -> List[SolverResult]:
        """Solve every query; results are in submission order."""
        futures = [self.submit(query) for query in queries]
        return [future.result() for future in futures]

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait, cancel_futures=True)

    def __enter__(self) -> "SolverPool":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown(wait=exc_type is None)
