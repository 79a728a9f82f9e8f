# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

from .artifacts import RETENTION_DISCARD, RETENTION_PERSIST
from .model import PAIRING_ALL, PAIRING_PAIRED


def _default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


def _float_or_none(raw: Optional[str]) -> Optional[float]:
    if raw is None or raw.strip() == "" or raw.strip().lower() == "none":
        return None
    return float(raw)


@dataclass(frozen=True)
class Settings:
    """Process-wide engine configuration, read once at startup."""
    concurrency: int = 4
    job_timeout: Optional[float] = 3600.0      # seconds; None = no limit
    matrix_pairing: str = PAIRING_ALL
    fail_fast: bool = False
    work_dir: Path = Path(".ciflow/work")
    artifact_retention: str = RETENTION_DISCARD
    artifact_dir: Path = Path(".ciflow/artifacts")
    artifact_ttl: Optional[float] = None       # seconds; None = run lifetime
    run_retention: float = 24 * 3600.0         # finished runs kept in memory
    database_url: Optional[str] = None         # run archive, e.g. sqlite:///.ciflow/runs.db
    pipeline: Optional[str] = None             # default pipeline document

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError("CIFLOW_CONCURRENCY must be >= 1")
        if self.job_timeout is not None and self.job_timeout <= 0:
            raise ValueError("CIFLOW_JOB_TIMEOUT must be positive (or 'none' for no limit)")
        if self.matrix_pairing not in (PAIRING_ALL, PAIRING_PAIRED):
            raise ValueError(f"CIFLOW_MATRIX_PAIRING must be '{PAIRING_ALL}' or '{PAIRING_PAIRED}'")
        if self.artifact_retention not in (RETENTION_DISCARD, RETENTION_PERSIST):
            raise ValueError(
                f"CIFLOW_ARTIFACT_RETENTION must be '{RETENTION_DISCARD}' or '{RETENTION_PERSIST}'"
            )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        base = cls()
        return cls(
            concurrency=int(env.get("CIFLOW_CONCURRENCY", _default_workers())),
            job_timeout=_float_or_none(env.get("CIFLOW_JOB_TIMEOUT", str(base.job_timeout))),
            matrix_pairing=env.get("CIFLOW_MATRIX_PAIRING", base.matrix_pairing),
            fail_fast=env.get("CIFLOW_FAIL_FAST", "0").lower() in ("1", "true", "yes"),
            work_dir=Path(env.get("CIFLOW_WORK_DIR", str(base.work_dir))),
            artifact_retention=env.get("CIFLOW_ARTIFACT_RETENTION", base.artifact_retention),
            artifact_dir=Path(env.get("CIFLOW_ARTIFACT_DIR", str(base.artifact_dir))),
            artifact_ttl=_float_or_none(env.get("CIFLOW_ARTIFACT_TTL")),
            run_retention=float(env.get("CIFLOW_RUN_RETENTION", base.run_retention)),
            database_url=env.get("CIFLOW_DATABASE_URL") or None,
            pipeline=env.get("CIFLOW_PIPELINE") or None,
        )

    def with_overrides(self, **overrides) -> "Settings":
        """Return a copy with every non-None override applied (CLI flags)."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})
