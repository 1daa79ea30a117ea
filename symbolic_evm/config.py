# symbolic_evm/config.py
"""
Engine configuration.

Values come from (lowest to highest precedence) the dataclass defaults, an
optional YAML file, ``SYMEVM_<FIELD>`` environment variables, and keyword
overrides passed to ``load_config``.
"""

import dataclasses
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog
import yaml

logger = structlog.get_logger()

ENV_PREFIX = "SYMEVM_"


@dataclass
class EngineConfig:
    # exploration
    loop_bound: int = 2
    step_budget: int = 100_000
    wall_clock_budget: Optional[float] = None
    max_call_depth: int = 1024
    gas_limit: int = 30_000_000

    # value encoding
    exp_unroll_bound: int = 2
    abstract_nonlinear: bool = False
    symbolic_storage: bool = True

    # solving
    solver_command: List[str] = field(default_factory=lambda: ["z3", "-model"])
    solver_timeout_branching: int = 1  # ms, in-process feasibility probes; 0 = no limit
    solver_timeout_assertion: int = 60_000  # ms, external solver
    solver_threads: int = field(default_factory=lambda: os.cpu_count() or 1)
    cache_solver: bool = False
    dump_smt_queries: bool = False
    dump_directory: Optional[str] = None

    # reporting
    panic_error_codes: List[str] = field(default_factory=lambda: ["0x01"])
    variable_prefixes: List[str] = field(default_factory=lambda: ["p_", "sym_"])

    def __post_init__(self):
        if self.loop_bound < 1:
            raise ValueError(f"loop_bound must be at least 1, got {self.loop_bound}")
        if self.step_budget < 1:
            raise ValueError(f"step_budget must be positive, got {self.step_budget}")
        if self.solver_threads < 1:
            raise ValueError(f"solver_threads must be positive, got {self.solver_threads}")

    def panic_codes(self) -> Optional[List[int]]:
        """Panic codes counted as assertion failures; None means every code."""
        if "*" in self.panic_error_codes:
            return None
        return [int(code, 0) if isinstance(code, str) else int(code) for code in self.panic_error_codes]

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


def _coerce(name: str, raw: str, current: Any) -> Any:
    """Convert an environment string to the type of the field's default."""
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(raw, 0)
    if isinstance(current, float) or name == "wall_clock_budget":
        return float(raw)
    if isinstance(current, list):
        return [item.strip() for item in raw.split(",") if item.strip()]
    return raw


def load_config(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None, **overrides) -> EngineConfig:
    """Build an EngineConfig from a YAML file, the environment and overrides."""
    known = {f.name for f in dataclasses.fields(EngineConfig)}
    values: Dict[str, Any] = {}

    if path:
        with open(path, "r") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"config file {path} must contain a mapping")
        unknown = set(loaded) - known
        if unknown:
            raise ValueError(f"unknown config keys in {path}: {sorted(unknown)}")
        values.update(loaded)
        logger.debug("Loaded config file", path=path, keys=sorted(loaded))

    defaults = EngineConfig()
    env = os.environ if environ is None else environ
    for name in known:
        raw = env.get(ENV_PREFIX + name.upper())
        if raw is not None:
            values[name] = _coerce(name, raw, values.get(name, getattr(defaults, name)))

    unknown = set(overrides) - known
    if unknown:
        raise ValueError(f"unknown config keys: {sorted(unknown)}")
    values.update({k: v for k, v in overrides.items() if v is not None})

    return EngineConfig(**values)
