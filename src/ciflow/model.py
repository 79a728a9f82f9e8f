# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


# ---------------------------------------------------------------------
# Events & triggers
# ---------------------------------------------------------------------

class EventKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    SCHEDULE = "schedule"
    TAG = "tag"


@dataclass(frozen=True)
class Event:
    """
    An incoming event that may start a run.

    For pull_request events `branch` is the target (base) branch.
    For tag events `tag` is the pushed tag.
    """
    kind: EventKind
    branch: str | None = None
    sha: str | None = None
    tag: str | None = None
    tags: Tuple[str, ...] = ()
    actor: str | None = None
    message: str | None = None
    timestamp: datetime = field(default_factory=now_utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "branch": self.branch,
            "sha": self.sha,
            "tag": self.tag,
            "tags": list(self.tags),
            "actor": self.actor,
            "message": self.message,
            "timestamp": _iso(self.timestamp),
        }


@dataclass(frozen=True)
class TriggerRule:
    """Declarative trigger rule. Immutable once loaded."""
    kind: EventKind
    branches: Tuple[str, ...] = ()
    branches_ignore: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()
    cron: str | None = None

    def describe(self) -> str:
        if self.kind is EventKind.SCHEDULE:
            return f"schedule({self.cron})"
        if self.kind is EventKind.TAG:
            return f"tag({', '.join(self.tags) or '*'})"
        return f"{self.kind.value}({', '.join(self.branches) or '*'})"


# ---------------------------------------------------------------------
# Job definitions
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    run: str
    cwd: str | None = None
    env: Dict[str, str] = field(default_factory=dict)


PAIRING_ALL = "all"
PAIRING_PAIRED = "paired"


@dataclass
class JobDefinition:
    """
    A CI job: steps + dependencies + matrix + condition + artifact wiring.

    `outputs` maps artifact name -> file path relative to the job's
    working directory. `inputs` lists artifact names downloaded into the
    working directory (as files named after the artifact) before the
    first step runs.
    """
    id: str
    steps: list[Step]
    needs: list[str] = field(default_factory=list)

    matrix: Dict[str, List[Any]] = field(default_factory=dict)
    include: List[Dict[str, Any]] = field(default_factory=list)
    exclude: List[Dict[str, Any]] = field(default_factory=list)
    pairing: str | None = None          # None -> pipeline default

    condition: str | None = None        # e.g. "branch == 'main'"

    inputs: list[str] = field(default_factory=list)
    outputs: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)

    timeout: float | None = None        # seconds, None -> settings default
    required: bool = True               # failure marks the run failed


@dataclass
class PipelineConfig:
    """A loaded pipeline document: trigger rules plus job definitions."""
    name: str
    triggers: Tuple[TriggerRule, ...]
    jobs: list[JobDefinition]
    pairing: str | None = None          # None -> settings default


# ---------------------------------------------------------------------
# Job instances & runs
# ---------------------------------------------------------------------

class JobStatus(str, Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    RUNNABLE = "runnable"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELED = "canceled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELED}
)

Coordinate = Tuple[Tuple[str, Any], ...]


def instance_id(job_id: str, coordinate: Coordinate) -> str:
    if not coordinate:
        return job_id
    inner = ", ".join(f"{k}={v}" for k, v in coordinate)
    return f"{job_id} ({inner})"


@dataclass
class JobInstance:
    """One concrete expansion of a JobDefinition for one matrix coordinate."""
    id: str
    definition: JobDefinition
    coordinate: Coordinate = ()
    status: JobStatus = JobStatus.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    detail: str | None = None
    exit_code: int | None = None
    timed_out: bool = False

    @property
    def job_id(self) -> str:
        return self.definition.id

    @property
    def matrix(self) -> Dict[str, Any]:
        return dict(self.coordinate)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job": self.job_id,
            "matrix": self.matrix,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "detail": self.detail,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
            "required": self.definition.required,
        }


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


@dataclass(frozen=True)
class Artifact:
    """Run-scoped, write-once output of one job instance."""
    run_id: str
    producer: str
    name: str
    payload: bytes
    sha256: str
    created_at: datetime
    expires_at: datetime | None = None

    @property
    def size(self) -> int:
        return len(self.payload)

    def expired(self, at: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (at or now_utc()) >= self.expires_at

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "producer": self.producer,
            "sha256": self.sha256,
            "size": self.size,
            "created_at": _iso(self.created_at),
            "expires_at": _iso(self.expires_at),
        }
