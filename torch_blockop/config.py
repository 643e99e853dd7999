"""
Configuration for clusters and the dynamic scheduler.

Every knob is a constructor or function argument; the ``TORCH_BLOCKOP_*``
environment variables only provide defaults.
"""

import os
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Optional

from .check import ConfigurationError


ENV_PREFIX = "TORCH_BLOCKOP_"


def _env(name: str, cast, default):
    raw = os.environ.get(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(f"{ENV_PREFIX + name}={raw!r} is not a valid {cast.__name__}") from None


def default_num_workers() -> int:
    """Worker count used when a cluster is created without one."""
    return _env("NUM_WORKERS", int, max(1, min(os.cpu_count() or 1, 4)))


@dataclass
class SchedulerConfig:
    """
    Settings of a dynamic scheduling call.

    Attributes
    ----------
    max_retries : int
        Attempts allowed per task, counting the first one. A task whose
        attempts all fail (task exception or lost worker) aborts the call
        with ``TaskError``.
    heartbeat_interval : float
        Seconds between liveness checks of busy workers while waiting for
        results.
    task_timeout : float, optional
        Seconds a single attempt may run before its worker is declared lost.
        None disables the check.
    cancel_inflight : bool
        Try to cancel in-flight calls when the call aborts.
    """

    max_retries: int = 3
    heartbeat_interval: float = 1.0
    task_timeout: Optional[float] = None
    cancel_inflight: bool = True

    def __post_init__(self):
        if self.max_retries < 1:
            raise ConfigurationError(f"max_retries must be >= 1, got {self.max_retries}")
        if self.heartbeat_interval <= 0:
            raise ConfigurationError(f"heartbeat_interval must be > 0, got {self.heartbeat_interval}")
        if self.task_timeout is not None and self.task_timeout <= 0:
            raise ConfigurationError(f"task_timeout must be > 0, got {self.task_timeout}")

    @classmethod
    def from_env(cls, **overrides) -> "SchedulerConfig":
        """Defaults taken from ``TORCH_BLOCKOP_*`` variables, then ``overrides``."""
        values = {
            "max_retries": _env("MAX_RETRIES", int, cls.max_retries),
            "heartbeat_interval": _env("HEARTBEAT_INTERVAL", float, cls.heartbeat_interval),
            "task_timeout": _env("TASK_TIMEOUT", float, None),
        }
        values.update(overrides)
        return cls(**values)

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "SchedulerConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(config_dict) - known
        if unknown:
            raise ConfigurationError(f"Unknown scheduler settings: {sorted(unknown)}")
        return cls(**config_dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
