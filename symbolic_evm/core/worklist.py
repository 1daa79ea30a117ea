# core/worklist.py
"""
Multi-path scheduler.

States live either in the fast-path slot (the single successor of a
straight-line step, resumed immediately) or on a LIFO stack of deferred
states (the extra children of a fork). Before a state is stepped its path
is activated on the shared solver and, if it gained constraints since the
last check, re-checked for feasibility.
"""

import time
from collections import Counter
from dataclasses import dataclass, field
from typing import List, Optional

import structlog

from ..config import EngineConfig
from ..exceptions import PathInfeasible, StepBudgetExceeded, SymbolicEVMError
from .cheatcodes import Cheatcodes
from .hashes import KeccakRegistry
from .path import SolverHandle
from .state import ExecutionState
from .storage import StorageModel
from .word import AbstractionFunctions

logger = structlog.get_logger()

CREATE_ADDRESS_BASE = 0xAAAA0000


@dataclass
class ExplorationStats:
    steps: int = 0
    completed_paths: int = 0
    pruned_paths: int = 0
    error_paths: int = 0
    pc_visits: Counter = field(default_factory=Counter)


class RunContext:
    """Everything one verification run owns and threads through the engine."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config if config is not None else EngineConfig()
        self.hashes = KeccakRegistry()
        self.abstractions = AbstractionFunctions(nonlinear=self.config.abstract_nonlinear)
        self.storage = StorageModel(self.hashes, symbolic_default=self.config.symbolic_storage)
        self.cheatcodes = Cheatcodes()
        self.stats = ExplorationStats()
        self.started = time.monotonic()
        self._address_counter = 0

    def new_solver(self) -> SolverHandle:
        return SolverHandle(timeout=self.config.solver_timeout_branching)

    def new_address(self) -> int:
        self._address_counter += 1
        return CREATE_ADDRESS_BASE + self._address_counter

    def charge_step(self) -> None:
        self.stats.steps += 1
        if self.stats.steps > self.config.step_budget:
            raise StepBudgetExceeded(f"step budget of {self.config.step_budget} exhausted")
        budget = self.config.wall_clock_budget
        if budget and self.stats.steps % 256 == 0 and time.monotonic() - self.started > budget:
            raise StepBudgetExceeded(f"wall-clock budget of {budget}s exhausted")


class Worklist:
    def __init__(self, interpreter, context: RunContext):
        self.interpreter = interpreter
        self.context = context
        self.fast: Optional[ExecutionState] = None
        self.deferred: List[ExecutionState] = []
        self.terminals: List[ExecutionState] = []
        self.completed = 0

    def __len__(self) -> int:
        return len(self.deferred) + (self.fast is not None)

    def push(self, state: ExecutionState) -> None:
        if self.fast is None:
            self.fast = state
        else:
            self.deferred.append(state)

    def pop(self) -> ExecutionState:
        if self.fast is not None:
            state, self.fast = self.fast, None
            return state
        return self.deferred.pop()

    def _prepare(self, state: ExecutionState) -> bool:
        path = state.path
        path.activate()
        if not path.needs_check:
            return True
        path.needs_check = False
        if path.is_feasible():
            return True
        logger.debug("Discarding infeasible path", pc=state.pc, depth=state.depth)
        self._drop(state)
        return False

    def _drop(self, state: ExecutionState) -> None:
        self.completed += 1
        self.context.stats.pruned_paths += 1
        state.path.release()

    def _finish(self, state: ExecutionState) -> None:
        self.completed += 1
        self.context.stats.completed_paths += 1
        if state.error is not None:
            self.context.stats.error_paths += 1
            logger.info(
                "Path ended with error",
                error=type(state.error).__name__,
                detail=str(state.error),
                pc=state.pc,
                depth=state.depth,
            )
        self.terminals.append(state)

    def run(self, initial: ExecutionState) -> List[ExecutionState]:
        """Explore every feasible path from ``initial``; returns the terminal states."""
        self.push(initial)
        stats = self.context.stats
        while self.fast is not None or self.deferred:
            state = self.pop()
            if not self._prepare(state):
                continue
            if state.halted:
                self._finish(state)
                continue

            try:
                self.context.charge_step()
                stats.pc_visits[(state.this, state.pc)] += 1
                successors = self.interpreter.step(state)
            except StepBudgetExceeded:
                logger.warning("Exploration budget exhausted", steps=stats.steps, completed=self.completed)
                raise
            except PathInfeasible as e:
                logger.debug("Path pruned", reason=str(e), pc=state.pc)
                self._drop(state)
                continue
            except SymbolicEVMError as e:
                state.halt(error=e)
                self._finish(state)
                continue

            if not successors:
                self.completed += 1
                self.context.stats.pruned_paths += 1
                continue
            for successor in reversed(successors[1:]):
                self.deferred.append(successor)
            self.fast = successors[0]

        logger.debug("Worklist drained", terminals=len(self.terminals), completed=self.completed)
        return self.terminals
