# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

PROVISIONERS = ("local", "docker")


def _int(env: Mapping[str, str], key: str) -> Optional[int]:
    raw = env.get(key, "").strip()
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{key} must be positive, got {value}")
    return value


def _seconds(env: Mapping[str, str], key: str) -> Optional[float]:
    raw = env.get(key, "").strip()
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{key} must be a number of seconds, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{key} must be positive, got {value}")
    return value


def _bool(env: Mapping[str, str], key: str, default: bool = False) -> bool:
    raw = env.get(key, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class RunnerConfig:
    """
    Runner knobs. None means "no limit" for timeouts and "one thread per
    triggered job" for max_workers.
    """
    max_workers: Optional[int] = None
    step_timeout: Optional[float] = None
    job_timeout: Optional[float] = None
    provisioner: str = "local"
    workdir: Optional[str] = None
    keep_workdirs: bool = False
    output_tail: int = 4000

    def __post_init__(self) -> None:
        if self.provisioner not in PROVISIONERS:
            raise ValueError(f"provisioner must be one of {PROVISIONERS}, got {self.provisioner!r}")

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> RunnerConfig:
        env = os.environ if env is None else env
        return cls(
            max_workers=_int(env, "RUNWRIGHT_MAX_WORKERS"),
            step_timeout=_seconds(env, "RUNWRIGHT_STEP_TIMEOUT"),
            job_timeout=_seconds(env, "RUNWRIGHT_JOB_TIMEOUT"),
            provisioner=env.get("RUNWRIGHT_PROVISIONER", "local").strip().lower() or "local",
            workdir=env.get("RUNWRIGHT_WORKDIR") or None,
            keep_workdirs=_bool(env, "RUNWRIGHT_KEEP_WORKDIRS"),
            output_tail=_int(env, "RUNWRIGHT_OUTPUT_TAIL") or 4000,
        )

    def override(self, **changes) -> RunnerConfig:
        """Return a copy with every non-None keyword applied (CLI options win over env)."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})
