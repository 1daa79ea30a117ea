# core/path.py
"""
Per-path constraint store bound to a shared z3 solver.

All paths forked from one root share a single ``SolverHandle``. Every scope
pushed on that solver is tagged with a fresh generation number, and a path
remembers the token (level, generation) of the scope its parent's
assertions live in (its anchor) and of its own scope. Activating a path pops
the solver back to whichever of those scopes is still alive and replays
what is missing, so a sibling can never observe assertions of a branch that
already popped past the fork point, whatever order the scheduler resumes
paths in.
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple, Union

import structlog
import z3

from ..exceptions import InternalInvariantError
from .word import Predicate, Word

logger = structlog.get_logger()


@dataclass(frozen=True)
class ScopeToken:
    level: int
    generation: int


BASE_SCOPE = ScopeToken(0, 0)


class SolverHandle:
    """A z3 solver plus a generation-tagged scope stack, shared by one path lineage."""

    def __init__(self, timeout: int = 0, logic: str = "QF_AUFBV"):
        self.solver = z3.SolverFor(logic)
        if timeout:
            self.solver.set(timeout=timeout)
        self.lock = threading.RLock()
        self.refs = 1
        self._generations: List[int] = [0]
        self._next_generation = 1

    @property
    def level(self) -> int:
        return len(self._generations) - 1

    def top(self) -> ScopeToken:
        return ScopeToken(self.level, self._generations[-1])

    def is_live(self, token: ScopeToken) -> bool:
        return token.level <= self.level and self._generations[token.level] == token.generation

    def push(self) -> ScopeToken:
        self.solver.push()
        self._generations.append(self._next_generation)
        self._next_generation += 1
        return self.top()

    def pop_to(self, level: int) -> None:
        if level < 0 or level > self.level:
            raise InternalInvariantError(f"cannot pop solver from level {self.level} to {level}")
        count = self.level - level
        if count:
            self.solver.pop(count)
            del self._generations[level + 1 :]
        if self.solver.num_scopes() != self.level:
            raise InternalInvariantError(
                f"solver scope stack out of sync: {self.solver.num_scopes()} vs {self.level}"
            )

    @contextmanager
    def scope(self):
        """Temporary scope; popped on every exit path."""
        with self.lock:
            token = self.push()
            try:
                yield self.solver
            finally:
                self.pop_to(token.level - 1)

    def acquire(self) -> "SolverHandle":
        self.refs += 1
        return self

    def release(self) -> None:
        self.refs -= 1
        if self.refs <= 0:
            with self.lock:
                self.solver.reset()
                self._generations = [0]


class PathState:
    """
    Ordered branch-condition history of one path.

    ``conditions`` holds (predicate, is_branching) pairs. A freshly branched
    path keeps its branching condition in ``pending`` and asserts nothing
    until ``activate()`` is called.
    """

    def __init__(self, handle: Optional[SolverHandle] = None):
        self.handle = handle if handle is not None else SolverHandle()
        self.conditions: List[Tuple[Predicate, bool]] = []
        self.pending: List[Predicate] = []
        self._index: Dict[tuple, int] = {}
        self.var_to_conds: Dict[str, Set[int]] = {}
        self._cond_vars: List[FrozenSet[str]] = []
        # conditions that live in this path's own scope (replayed on re-activation)
        self._local: List[Predicate] = []
        self._anchor: ScopeToken = BASE_SCOPE
        self._own: Optional[ScopeToken] = None
        # set when feasibility must be re-checked before the path is resumed
        self.needs_check = False

    # --- Scope management ---

    def _ensure_scope(self) -> None:
        handle = self.handle
        if self._own is not None and handle.is_live(self._own):
            handle.pop_to(self._own.level)
            return
        if handle.is_live(self._anchor):
            handle.pop_to(self._anchor.level)
            replay = self._local
        else:
            # anchor is gone: rebuild the whole path in a single fresh scope
            logger.debug("Rebuilding path scope", conditions=len(self.conditions))
            handle.pop_to(0)
            self._anchor = BASE_SCOPE
            self._local = [pred for pred, _ in self.conditions]
            replay = self._local
        self._own = handle.push()
        for pred in replay:
            handle.solver.add(pred.as_z3())

    def activate(self) -> None:
        """Make this path current on the solver and assert its pending conditions."""
        with self.handle.lock:
            self._ensure_scope()
            pending, self.pending = self.pending, []
            for pred in pending:
                self.append(pred, is_branching=True)

    def is_activated(self) -> bool:
        return not self.pending

    # --- Constraints ---

    def append(self, pred: Predicate, is_branching: bool = False) -> None:
        if pred.is_symbolic:
            pred = Predicate(z3.simplify(pred.value))
        if pred.is_true():
            return
        key = pred.key()
        if key in self._index:
            return
        if pred.is_false():
            logger.debug("Appending a concretely false condition")

        with self.handle.lock:
            if self._own is None or not self.handle.is_live(self._own):
                self._ensure_scope()
            else:
                self.handle.pop_to(self._own.level)
            self.handle.solver.add(pred.as_z3())

        idx = len(self.conditions)
        self.conditions.append((pred, is_branching))
        self._index[key] = idx
        self._local.append(pred)
        variables = frozenset(_collect_vars(pred.as_z3()))
        self._cond_vars.append(variables)
        for var in variables:
            self.var_to_conds.setdefault(var, set()).add(idx)

    def extend(self, preds: Iterable[Predicate], is_branching: bool = False) -> None:
        for pred in preds:
            self.append(pred, is_branching)

    def branch(self, pred: Predicate) -> "PathState":
        """
        Child path sharing this solver, with ``pred`` held back as pending.
        """
        if self.pending:
            raise InternalInvariantError("branching from a path with a pending condition")

        child = PathState(self.handle.acquire())
        child.conditions = list(self.conditions)
        child._index = dict(self._index)
        child.var_to_conds = {var: set(idxs) for var, idxs in self.var_to_conds.items()}
        child._cond_vars = list(self._cond_vars)
        if self._own is not None:
            child._anchor = self._own
            child._local = []
        else:
            child._anchor = self._anchor
            child._local = list(self._local)
        child.pending.append(pred)
        child.needs_check = True
        return child

    def release(self) -> None:
        self.handle.release()

    # --- Solver queries ---

    def check(self, pred: Optional[Predicate] = None) -> z3.CheckSatResult:
        with self.handle.lock:
            self._ensure_scope()
            with self.handle.scope() as solver:
                for pending in self.pending:
                    solver.add(pending.as_z3())
                if pred is not None:
                    solver.add(pred.as_z3())
                return solver.check()

    def is_feasible(self) -> bool:
        """Unknown counts as feasible."""
        if any(pred.is_false() for pred, _ in self.conditions) or any(p.is_false() for p in self.pending):
            return False
        return self.check() != z3.unsat

    def check_feasibility(self, pred: Predicate) -> bool:
        if pred.is_false():
            return False
        if pred.is_true():
            return self.is_feasible()
        return self.check(pred) != z3.unsat

    # --- Slicing ---

    def slice(self, variables: Iterable[Union[str, Word]]) -> List[Predicate]:
        """Conditions transitively connected to the given variables."""
        frontier = []
        for var in variables:
            if isinstance(var, Word):
                frontier.extend(_collect_vars(var.as_z3()))
            else:
                frontier.append(var)
        seen_vars = set(frontier)
        selected: Set[int] = set()
        while frontier:
            var = frontier.pop()
            for idx in self.var_to_conds.get(var, ()):
                if idx in selected:
                    continue
                selected.add(idx)
                for other in self._cond_vars[idx]:
                    if other not in seen_vars:
                        seen_vars.add(other)
                        frontier.append(other)
        return [self.conditions[idx][0] for idx in sorted(selected)]

    def predicates(self) -> List[Predicate]:
        return [pred for pred, _ in self.conditions]

    def __len__(self) -> int:
        return len(self.conditions)

    def __str__(self) -> str:
        lines = [f"- {pred.value}" for pred, branching in self.conditions if branching]
        return "\n".join(lines) or "- (empty path condition)"


def _collect_vars(expr: z3.ExprRef) -> Set[str]:
    """Names of the uninterpreted constants (variables) occurring in expr."""
    result: Set[str] = set()
    stack = [expr]
    visited = set()
    while stack:
        term = stack.pop()
        tid = term.get_id()
        if tid in visited:
            continue
        visited.add(tid)
        if z3.is_const(term):
            if term.decl().kind() == z3.Z3_OP_UNINTERPRETED:
                result.add(term.decl().name())
            continue
        if z3.is_app(term):
            stack.extend(term.children())
    return result
