# solver/bridge.py
"""
External SMT solver bridge.

A path's assertions are rendered to SMT-LIB with z3's own printer, written
to a ``.smt2`` file, and handed to the configured solver binary. The first
line of stdout decides the result; for ``sat`` the ``define-fun`` entries of
recognized variables are parsed into a model.
"""

import enum
import os
import re
import subprocess
import tempfile
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

import structlog
import z3

from ..config import EngineConfig
from ..exceptions import SolverError
from ..core.path import PathState
from ..core.word import AbstractionFunctions, Predicate

logger = structlog.get_logger()

EXIT_TIMEDOUT = 124


class SatResult(enum.Enum):
    SAT = "sat"
    UNSAT = "unsat"
    UNKNOWN = "unknown"
    ERROR = "err"


@dataclass
class ModelVariable:
    full_name: str
    smt_type: str
    size_bits: int
    value: int


@dataclass
class SMTQuery:
    smtlib: str
    # ids of the named assertions, in the order they appear
    assertions: List[str] = field(default_factory=list)


@dataclass
class SolverResult:
    result: SatResult
    returncode: int = 0
    query_file: Optional[str] = None
    model: Optional[Dict[str, ModelVariable]] = None
    is_valid: bool = True
    unsat_core: Optional[List[str]] = None
    error: Optional[str] = None

    @property
    def is_sat(self) -> bool:
        return self.result == SatResult.SAT

    @property
    def is_unsat(self) -> bool:
        return self.result == SatResult.UNSAT


def parse_const_value(value: str) -> int:
    """Decode an SMT-LIB bitvector literal: #b..., #x... or (_ bvN w)."""
    value = value.strip()
    if value.startswith("#b"):
        return int(value[2:], 2)
    if value.startswith("#x"):
        return int(value[2:], 16)
    if value.startswith("bv"):
        return int(value[2:])
    match = re.search(r"\bbv(\d+)", value)
    if match:
        return int(match.group(1))
    raise ValueError(f"unknown SMT value format: {value}")


def _model_pattern(prefixes: Sequence[str]) -> "re.Pattern[str]":
    names = "|".join(re.escape(p) for p in prefixes)
    return re.compile(
        r"""
        \(\s*define-fun\s+
        \|?((?:%s)[^\s|]+)\|?\s+          # variable name
        \(\)\s+\(_\s+([^\s]+)\s+          # sort
        (\d+)\)\s+                        # bit-width
        (\#b[01]+|\#x[0-9a-fA-F]+|\(_\s+bv\d+\s+\d+\))
        """
        % names,
        re.VERBOSE,
    )


def parse_model_str(smtlib: str, prefixes: Sequence[str] = ("p_", "sym_")) -> Dict[str, ModelVariable]:
    model = {}
    for match in _model_pattern(prefixes).finditer(smtlib):
        name, sort, bits, literal = match.groups()
        model[name] = ModelVariable(
            full_name=name,
            smt_type=f"{sort} {bits}",
            size_bits=int(bits),
            value=parse_const_value(literal),
        )
    return model


def parse_unsat_core(output: str) -> Optional[List[str]]:
    match = re.search(r"unsat\s*(?:\(\s*error\s+[^)]*\)\s*)?\(\s*((?:<[0-9]+>\s*)*)\)", output)
    if not match:
        return None
    return [token[1:-1] for token in match.group(1).split() if token.startswith("<") and token.endswith(">")]


def is_model_valid(solver_stdout: str) -> bool:
    """A model mentioning an abstraction symbol describes the abstraction, not an execution."""
    return AbstractionFunctions.PREFIX not in solver_stdout


def parse_solver_output(stdout: str, stderr: str, returncode: int, query_file: Optional[str] = None,
                        prefixes: Sequence[str] = ("p_", "sym_")) -> SolverResult:
    first = stdout.strip().splitlines()[0].strip() if stdout.strip() else ""
    if first == "sat":
        return SolverResult(
            SatResult.SAT,
            returncode,
            query_file,
            model=parse_model_str(stdout, prefixes),
            is_valid=is_model_valid(stdout),
        )
    if first == "unsat":
        return SolverResult(SatResult.UNSAT, returncode, query_file, unsat_core=parse_unsat_core(stdout))
    if first == "unknown":
        return SolverResult(SatResult.UNKNOWN, returncode, query_file)
    return SolverResult(SatResult.ERROR, returncode, query_file, error=stderr.strip() or stdout.strip())


_ABSTRACT_DECL = r"\(declare-fun \|?f_evm_(%s)_([0-9]+)\|? \(\(_ BitVec [0-9]+\) \(_ BitVec [0-9]+\)\) \(_ BitVec [0-9]+\)\)"


def refine_query(query: SMTQuery) -> SMTQuery:
    """Replace nonlinear abstraction declarations with their exact definitions."""
    smtlib = re.sub(
        _ABSTRACT_DECL % "bvmul",
        r"(define-fun f_evm_\1_\2 ((x (_ BitVec \2)) (y (_ BitVec \2))) (_ BitVec \2) (\1 x y))",
        query.smtlib,
    )
    # bvurem/bvsrem by zero already yield the dividend, which is what Word.urem/smod model
    smtlib = re.sub(
        _ABSTRACT_DECL % "bvurem|bvsrem",
        r"(define-fun f_evm_\1_\2 ((x (_ BitVec \2)) (y (_ BitVec \2))) (_ BitVec \2) (\1 x y))",
        smtlib,
    )
    smtlib = re.sub(
        _ABSTRACT_DECL % "bvudiv|bvsdiv",
        r"(define-fun f_evm_\1_\2 ((x (_ BitVec \2)) (y (_ BitVec \2))) (_ BitVec \2) "
        r"(ite (= y (_ bv0 \2)) (_ bv0 \2) (\1 x y)))",
        smtlib,
    )
    return SMTQuery(smtlib, list(query.assertions))


def dump_query(query: SMTQuery, path: str, cache_solver: bool = False) -> None:
    with open(path, "w") as f:
        if cache_solver:
            f.write("(set-option :produce-unsat-cores true)\n")
        f.write("(set-logic QF_AUFBV)\n")
        f.write(query.smtlib)
        f.write("\n(check-sat)\n(get-model)\n")
        if cache_solver:
            f.write("(get-unsat-core)\n")


def check_unsat_cores(query: SMTQuery, unsat_cores: Iterable[Sequence[str]]) -> bool:
    """True if some known core is contained in the query's named assertions."""
    ids = set(query.assertions)
    return any(core and all(a in ids for a in core) for core in unsat_cores)


class SolverBridge:
    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config if config is not None else EngineConfig()
        self.unsat_cores: List[List[str]] = []
        self._counter = 0
        self._tmpdir: Optional[tempfile.TemporaryDirectory] = None
        self._scratch: Optional[str] = None

    def to_smt2(self, path: PathState, extra: Sequence[Predicate] = (), variables: Optional[Iterable] = None) -> SMTQuery:
        """
        Render the path's conditions (sliced to ``variables`` when given) and
        ``extra`` as an SMT query. With ``cache_solver`` each condition is a
        named assertion ``<i>`` so unsat cores can be reported and reused.
        """
        if variables is not None:
            preds = path.slice(variables)
        else:
            preds = path.predicates()
        preds = list(preds) + list(path.pending) + list(extra)

        solver = z3.SolverFor("QF_AUFBV")
        for pred in preds:
            solver.add(pred.as_z3())
        if not self.config.cache_solver:
            return SMTQuery(solver.sexpr())

        # declarations come from z3, each condition is written as a named assertion
        blocks = [b for b in _split_top_level(solver.sexpr()) if not b.startswith("(assert")]
        names = []
        for pred in preds:
            name = str(pred.as_z3().get_id())
            if name in names:
                continue
            names.append(name)
            blocks.append(f"(assert (! {pred.as_z3().sexpr()} :named <{name}>))")
        return SMTQuery("\n".join(blocks) + "\n", names)

    @property
    def keeps_queries(self) -> bool:
        """Query files outlive the solve only when dumping or writing to a chosen directory."""
        return self.config.dump_smt_queries or bool(self.config.dump_directory)

    def close(self) -> None:
        if self._tmpdir is not None:
            self._tmpdir.cleanup()
            self._tmpdir = None
            self._scratch = None

    def __enter__(self) -> "SolverBridge":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _query_file(self) -> str:
        directory = self.config.dump_directory
        if directory:
            os.makedirs(directory, exist_ok=True)
        else:
            if self._scratch is None:
                if self.config.dump_smt_queries:
                    self._scratch = tempfile.mkdtemp(prefix="symevm-")
                    logger.info("Dumping SMT queries", directory=self._scratch)
                else:
                    self._tmpdir = tempfile.TemporaryDirectory(prefix="symevm-")
                    self._scratch = self._tmpdir.name
            directory = self._scratch
        self._counter += 1
        return os.path.join(directory, f"query-{os.getpid()}-{self._counter}.smt2")

    def solve(self, query: SMTQuery, timeout_ms: Optional[int] = None) -> SolverResult:
        if self.config.cache_solver and check_unsat_cores(query, self.unsat_cores):
            logger.debug("Query skipped, known unsat core")
            return SolverResult(SatResult.UNSAT)

        query_file = self._query_file()
        written = [query_file]
        try:
            dump_query(query, query_file, self.config.cache_solver)
            result = self.solve_file(query_file, timeout_ms)

            if result.is_sat and not result.is_valid:
                refined = refine_query(query)
                if refined.smtlib != query.smtlib:
                    logger.debug("Refining query with exact definitions", query_file=query_file)
                    refined_file = query_file[: -len(".smt2")] + ".refined.smt2"
                    written.append(refined_file)
                    dump_query(refined, refined_file, self.config.cache_solver)
                    again = self.solve_file(refined_file, timeout_ms)
                    if again.result != SatResult.UNKNOWN:
                        result = again
        finally:
            if not self.keeps_queries:
                for name in written:
                    if os.path.exists(name):
                        os.remove(name)

        if result.is_unsat and result.unsat_core:
            self.unsat_cores.append(result.unsat_core)
        return result

    def solve_file(self, query_file: str, timeout_ms: Optional[int] = None) -> SolverResult:
        timeout_ms = self.config.solver_timeout_assertion if timeout_ms is None else timeout_ms
        cmd = list(self.config.solver_command) + [query_file]
        try:
            proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
        except OSError as e:
            raise SolverError(f"failed to start solver {cmd[0]}: {e}") from e

        try:
            stdout, stderr = proc.communicate(timeout=timeout_ms / 1000 if timeout_ms else None)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.communicate()
            logger.info("Solver timed out", query_file=query_file, timeout_ms=timeout_ms)
            return SolverResult(SatResult.UNKNOWN, EXIT_TIMEDOUT, query_file, error="solver timeout")

        if self.config.dump_smt_queries:
            with open(query_file + ".out", "w") as f:
                f.write(stdout)
            if stderr:
                with open(query_file + ".err", "w") as f:
                    f.write(stderr)

        result = parse_solver_output(stdout, stderr, proc.returncode, query_file, self.config.variable_prefixes)
        logger.debug("Solver finished", query_file=query_file, result=result.result.value)
        return result

    def solve_path(self, path: PathState, extra: Sequence[Predicate] = ()) -> SolverResult:
        return self.solve(self.to_smt2(path, extra))


def _split_top_level(smtlib: str) -> List[str]:
    blocks, depth, start = [], 0, None
    in_bar = False
    for i, ch in enumerate(smtlib):
        if ch == "|":
            in_bar = not in_bar
        if in_bar:
            continue
        if ch == "(":
            if depth == 0:
                start = i
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0 and start is not None:
                blocks.append(smtlib[start : i + 1])
                start = None
    return blocks
