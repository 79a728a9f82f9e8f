from __future__ import annotations

from typing import Callable, Dict

from ciflow.executor import ExecutionResult, Outcome
from ciflow.model import Event, EventKind, JobDefinition, JobInstance, Step


def make_job(job_id: str, *cmds: str, **kwargs) -> JobDefinition:
    steps = [Step(name=f"{job_id}-{i}", run=cmd) for i, cmd in enumerate(cmds or ("true",))]
    return JobDefinition(id=job_id, steps=steps, **kwargs)


def push(branch: str = "main", **kwargs) -> Event:
    return Event(kind=EventKind.PUSH, branch=branch, sha="abc123", **kwargs)


def scripted(outcomes: Dict[str, Outcome], default: Outcome = Outcome.SUCCEEDED) -> Callable[[JobInstance], ExecutionResult]:
    """Execute function returning a fixed outcome per job id (or instance id)."""

    def execute(instance: JobInstance) -> ExecutionResult:
        outcome = outcomes.get(instance.id, outcomes.get(instance.job_id, default))
        return ExecutionResult(outcome=outcome, exit_code=0 if outcome is Outcome.SUCCEEDED else 1)

    return execute
