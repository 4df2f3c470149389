"""Run configuration: loading and validation.

This module contains:
- RunConfig: the frozen configuration consumed by the runner
- load_run_config(): unified entry point (TOML file plus overrides)
- validate_config(): errors and warnings for a raw config dict

A config file has three optional sections:

    [cluster]
    hosts = ["10.0.0.1", "10.0.0.2"]
    keyspace = "accord"
    read_timeout_ms = 12000

    [workload]
    model = "rw-register"
    thread_count = 4
    operation_count = 10000
    register_set = [1, 2, 3, 4, 5]
    upper_bound = 5
    seed = 42
    max_ops_per_txn = 5

    [history]
    start_time_ns = 0
    format = "json"
    nohost_backoff_s = 1.0
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import tomllib

from accordload.history import ENCODERS
from accordload.outcome import DEFAULT_NOHOST_BACKOFF_S
from accordload.statements import KEYSPACE
from accordload.workload import MAX_OPS_PER_TXN

logger = logging.getLogger(__name__)

MODELS = ("cas-register", "rw-register", "list-append")

_DEFAULTS = {
    "cluster": {
        "hosts": ["localhost"],
        "keyspace": KEYSPACE,
        "read_timeout_ms": 12000,
    },
    "workload": {
        "thread_count": 1,
        "operation_count": 10000,
        "register_set": [1],
        "upper_bound": 5,
        "seed": None,
        "max_ops_per_txn": MAX_OPS_PER_TXN,
    },
    "history": {
        "start_time_ns": 0,
        "format": "json",
        "nohost_backoff_s": DEFAULT_NOHOST_BACKOFF_S,
    },
}


# ---------------------------------------------------------------------------
# Configuration error
# ---------------------------------------------------------------------------

class ConfigurationError(Exception):
    """Fatal configuration error(s)."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("\n".join(errors))


# ---------------------------------------------------------------------------
# RunConfig
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RunConfig:
    """Complete run configuration.

    Frozen so workers can share it without coordination. Construction
    applies the same rules as validate_config() and raises
    ConfigurationError on any violation.
    """
    model: str
    hosts: Tuple[str, ...] = ("localhost",)
    thread_count: int = 1
    operation_count: int = 10000
    register_set: Tuple[int, ...] = (1,)
    upper_bound: int = 5
    start_time_ns: int = 0
    read_timeout_ms: int = 12000

    keyspace: str = KEYSPACE
    seed: Optional[int] = None
    nohost_backoff_s: float = DEFAULT_NOHOST_BACKOFF_S
    max_ops_per_txn: int = MAX_OPS_PER_TXN
    output_format: str = "json"

    def __post_init__(self):
        errors, _ = validate_config(self.as_sections())
        if errors:
            raise ConfigurationError(errors)

    def as_sections(self) -> dict:
        """This configuration in config-file layout."""
        return {
            "cluster": {
                "hosts": self.hosts,
                "keyspace": self.keyspace,
                "read_timeout_ms": self.read_timeout_ms,
            },
            "workload": {
                "model": self.model,
                "thread_count": self.thread_count,
                "operation_count": self.operation_count,
                "register_set": self.register_set,
                "upper_bound": self.upper_bound,
                "seed": self.seed,
                "max_ops_per_txn": self.max_ops_per_txn,
            },
            "history": {
                "start_time_ns": self.start_time_ns,
                "format": self.output_format,
                "nohost_backoff_s": self.nohost_backoff_s,
            },
        }

    @property
    def per_worker_count(self) -> int:
        """Operations each worker performs (any remainder is dropped)."""
        return self.operation_count // self.thread_count

    def worker_seed(self, worker_index: int) -> Optional[int]:
        """Seed for one worker's RNG, or None for an unseeded run."""
        if self.seed is None:
            return None
        return self.seed + worker_index


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_run_config(
    config_path: str | None = None,
    overrides: dict | None = None,
) -> RunConfig:
    """Load, merge and validate a run configuration.

    Args:
        config_path: Optional TOML file.
        overrides: Section dicts (e.g. from the command line) applied on
            top of the file. ``None`` values are ignored.

    Returns:
        Validated RunConfig.

    Raises:
        ConfigurationError: if validation finds any errors.
    """
    raw: dict = {}
    if config_path is not None:
        with open(config_path, "rb") as f:
            raw = tomllib.load(f)

    for section, values in (overrides or {}).items():
        target = raw.setdefault(section, {})
        if not isinstance(target, dict):
            # Reported by validate_config()
            continue
        for key, value in values.items():
            if value is not None:
                target[key] = value

    errors, warnings = validate_config(raw)
    if errors:
        raise ConfigurationError(errors)
    for warning in warnings:
        logger.warning(warning)

    cluster = {**_DEFAULTS["cluster"], **raw.get("cluster", {})}
    workload = {**_DEFAULTS["workload"], **raw.get("workload", {})}
    history = {**_DEFAULTS["history"], **raw.get("history", {})}

    return RunConfig(
        model=workload["model"],
        hosts=tuple(cluster["hosts"]),
        thread_count=workload["thread_count"],
        operation_count=workload["operation_count"],
        register_set=tuple(workload["register_set"]),
        upper_bound=workload["upper_bound"],
        start_time_ns=history["start_time_ns"],
        read_timeout_ms=cluster["read_timeout_ms"],
        keyspace=cluster["keyspace"],
        seed=workload["seed"],
        nohost_backoff_s=history["nohost_backoff_s"],
        max_ops_per_txn=workload["max_ops_per_txn"],
        output_format=history["format"],
    )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _is_int(value) -> bool:
    # TOML booleans are Python bools, which are ints
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_config(config: dict) -> tuple[list[str], list[str]]:
    """Validate configuration and return errors/warnings.

    Returns:
        (errors, warnings) where:
        - errors: List of fatal configuration errors
        - warnings: List of non-fatal warnings
    """
    errors = []
    warnings = []

    sections = {}
    for section, values in config.items():
        if section not in _DEFAULTS:
            errors.append(f"Unknown section [{section}]. Valid sections: {sorted(_DEFAULTS)}")
        elif not isinstance(values, dict):
            errors.append(f"[{section}] must be a table, got {type(values).__name__}")
        else:
            sections[section] = values

    cluster = {**_DEFAULTS["cluster"], **sections.get("cluster", {})}
    workload = {**_DEFAULTS["workload"], **sections.get("workload", {})}
    history = {**_DEFAULTS["history"], **sections.get("history", {})}

    # Cluster
    hosts = cluster["hosts"]
    if not isinstance(hosts, (list, tuple)) or not all(isinstance(h, str) for h in hosts):
        errors.append(f"cluster.hosts must be a list of host names, got {hosts!r}")
    elif not hosts:
        errors.append("cluster.hosts must name at least one host")
    if not isinstance(cluster["keyspace"], str) or not cluster["keyspace"]:
        errors.append(f"cluster.keyspace must be a non-empty string, got {cluster['keyspace']!r}")
    timeout = cluster["read_timeout_ms"]
    if not _is_int(timeout):
        errors.append(f"cluster.read_timeout_ms must be an integer, got {type(timeout).__name__}")
    elif timeout <= 0:
        errors.append(f"cluster.read_timeout_ms must be > 0, got {timeout}")

    # Workload
    model = workload.get("model")
    if model is None:
        errors.append(f"workload.model is required; choose exactly one of {list(MODELS)}")
    elif not isinstance(model, str) or model not in MODELS:
        errors.append(f"workload.model must be one of {list(MODELS)}, got {model!r}")

    registers = workload["register_set"]
    if not isinstance(registers, (list, tuple)) or not all(_is_int(r) for r in registers):
        errors.append(f"workload.register_set must be a list of integer ids, got {registers!r}")
    elif not registers:
        errors.append("workload.register_set must contain at least one register")
    elif len(set(registers)) != len(registers):
        errors.append(f"workload.register_set contains duplicates: {list(registers)}")

    counts_valid = True
    for key in ("thread_count", "operation_count"):
        value = workload[key]
        if not _is_int(value):
            errors.append(f"workload.{key} must be an integer, got {type(value).__name__}")
            counts_valid = False
        elif value <= 0:
            errors.append(f"workload.{key} must be > 0, got {value}")
            counts_valid = False
    if counts_valid:
        threads = workload["thread_count"]
        ops = workload["operation_count"]
        if ops < threads:
            warnings.append(f"workload.operation_count ({ops}) < thread_count ({threads}); workers will perform no operations")
        elif ops % threads != 0:
            warnings.append(f"workload.operation_count ({ops}) is not divisible by thread_count ({threads}); "
                            f"{ops % threads} operations will be dropped")

    upper_bound = workload["upper_bound"]
    if not _is_int(upper_bound):
        errors.append(f"workload.upper_bound must be an integer, got {type(upper_bound).__name__}")
    elif upper_bound <= 0:
        errors.append(f"workload.upper_bound must be > 0, got {upper_bound}")
    max_ops = workload["max_ops_per_txn"]
    if not _is_int(max_ops):
        errors.append(f"workload.max_ops_per_txn must be an integer, got {type(max_ops).__name__}")
    elif max_ops < 3:
        errors.append(f"workload.max_ops_per_txn must be >= 3, got {max_ops}")
    seed = workload["seed"]
    if seed is not None and not _is_int(seed):
        errors.append(f"workload.seed must be an integer, got {type(seed).__name__}")

    # History
    start = history["start_time_ns"]
    if not _is_int(start):
        errors.append(f"history.start_time_ns must be an integer, got {type(start).__name__}")
    fmt = history["format"]
    if not isinstance(fmt, str) or fmt not in ENCODERS:
        errors.append(f"history.format must be one of {sorted(ENCODERS)}, got {fmt!r}")
    backoff = history["nohost_backoff_s"]
    if not _is_number(backoff):
        errors.append(f"history.nohost_backoff_s must be a number, got {type(backoff).__name__}")
    elif backoff < 0:
        errors.append(f"history.nohost_backoff_s must be >= 0, got {backoff}")

    return errors, warnings
