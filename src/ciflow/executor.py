# executor.py
from __future__ import annotations

import os
import re
import signal
import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from .artifacts import ArtifactStore
from .errors import ArtifactError, DuplicateArtifact, StepFailure
from .model import Artifact, JobInstance, Step
from .scheduler import CancelToken
from .ui.console import get_console

# How often a running step re-checks its deadline and the cancel token.
POLL_INTERVAL = 0.1
OUTPUT_TAIL = 4000


class Outcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELED = "canceled"


@dataclass
class ExecutionContext:
    """Everything an instance needs from its run."""
    run_id: str
    store: ArtifactStore
    cancel: CancelToken
    work_root: Path
    timeout: float | None = None
    env: Dict[str, str] = field(default_factory=dict)


@dataclass
class ExecutionResult:
    outcome: Outcome
    artifacts: List[Artifact] = field(default_factory=list)
    detail: str | None = None
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""


# ----------------------------------------------------------------------
# Step runners
# ----------------------------------------------------------------------

@dataclass
class StepOutcome:
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    canceled: bool = False


class StepRunner(Protocol):
    def run(
        self,
        step: Step,
        *,
        cwd: Path,
        env: Dict[str, str],
        deadline: float | None,
        cancel: CancelToken,
    ) -> StepOutcome: ...


def _kill(proc: subprocess.Popen) -> None:
    # steps run in their own session, so the whole process group goes
    if hasattr(os, "killpg"):
        try:
            os.killpg(proc.pid, signal.SIGKILL)
            return
        except ProcessLookupError:
            return
    proc.kill()


class ShellStepRunner:
    """Runs a step as a shell command, honoring a deadline and a cancel token."""

    def run(
        self,
        step: Step,
        *,
        cwd: Path,
        env: Dict[str, str],
        deadline: float | None,
        cancel: CancelToken,
    ) -> StepOutcome:
        proc = subprocess.Popen(
            step.run,
            shell=True,
            cwd=str(cwd),
            env=env,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )

        timed_out = canceled = False
        while True:
            wait_for = POLL_INTERVAL
            if deadline is not None:
                wait_for = min(wait_for, max(0.0, deadline - time.monotonic()))
            try:
                stdout, stderr = proc.communicate(timeout=wait_for)
                break
            except subprocess.TimeoutExpired:
                if cancel.is_set():
                    canceled = True
                elif deadline is not None and time.monotonic() >= deadline:
                    timed_out = True
                else:
                    continue
            _kill(proc)
            stdout, stderr = proc.communicate()
            break

        return StepOutcome(
            exit_code=proc.returncode,
            stdout=(stdout or "")[-OUTPUT_TAIL:],
            stderr=(stderr or "")[-OUTPUT_TAIL:],
            timed_out=timed_out,
            canceled=canceled,
        )


# ----------------------------------------------------------------------
# Executor
# ----------------------------------------------------------------------

def _safe_dirname(iid: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "_", iid).strip("_") or "job"


def _job_env(instance: JobInstance, ctx: ExecutionContext) -> Dict[str, str]:
    env = os.environ.copy()
    env.update(ctx.env)
    env.update(instance.definition.env)
    env["CIFLOW_RUN_ID"] = ctx.run_id
    env["CIFLOW_JOB"] = instance.job_id
    env["CIFLOW_INSTANCE"] = instance.id
    for axis, value in instance.coordinate:
        env[f"CIFLOW_MATRIX_{re.sub(r'[^A-Za-z0-9]', '_', axis).upper()}"] = str(value)
    return env


class Executor:
    """
    Runs one job instance: inputs -> steps (in order, fail-fast) -> outputs.

    Outputs are only written to the artifact store after every step has
    succeeded and every declared output file exists.
    """

    def __init__(self, runner: Optional[StepRunner] = None):
        self.runner: StepRunner = runner or ShellStepRunner()

    def workdir_for(self, instance: JobInstance, ctx: ExecutionContext) -> Path:
        return ctx.work_root / ctx.run_id / _safe_dirname(instance.id)

    def execute(self, instance: JobInstance, ctx: ExecutionContext) -> ExecutionResult:
        console = get_console()
        job = instance.definition
        workdir = self.workdir_for(instance, ctx)
        workdir.mkdir(parents=True, exist_ok=True)

        console.print_job_start(instance.id)

        # ---- inputs ----
        try:
            for name in job.inputs:
                target = (workdir / name).resolve()
                if not target.is_relative_to(workdir.resolve()):
                    return ExecutionResult(
                        outcome=Outcome.FAILED,
                        detail=f"input '{name}' resolves outside the instance workdir",
                    )
                artifact = ctx.store.get(ctx.run_id, name, instance.id)
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(artifact.payload)
        except ArtifactError as e:
            return ExecutionResult(outcome=Outcome.FAILED, detail=str(e))

        # ---- steps ----
        timeout = job.timeout if job.timeout is not None else ctx.timeout
        deadline = time.monotonic() + timeout if timeout is not None else None
        env = _job_env(instance, ctx)

        for step in job.steps:
            if ctx.cancel.is_set():
                return ExecutionResult(outcome=Outcome.CANCELED, detail="canceled before step " + repr(step.name))

            console.print_step(step.name)
            cwd = (workdir / (step.cwd or ".")).resolve()
            if not cwd.exists():
                return ExecutionResult(
                    outcome=Outcome.FAILED,
                    detail=f"[{instance.id}] step '{step.name}' cwd not found: {cwd}",
                )

            step_env = dict(env)
            step_env.update(step.env)
            res = self.runner.run(step, cwd=cwd, env=step_env, deadline=deadline, cancel=ctx.cancel)

            if res.canceled:
                return ExecutionResult(
                    outcome=Outcome.CANCELED,
                    detail=f"canceled during step '{step.name}'",
                    exit_code=res.exit_code,
                    stdout=res.stdout,
                    stderr=res.stderr,
                )
            if res.timed_out:
                return ExecutionResult(
                    outcome=Outcome.TIMED_OUT,
                    detail=f"timed out after {timeout}s in step '{step.name}'",
                    exit_code=res.exit_code,
                    stdout=res.stdout,
                    stderr=res.stderr,
                )
            if res.exit_code != 0:
                failure = StepFailure(
                    job=instance.id,
                    step=step.name,
                    cmd=step.run,
                    exit_code=res.exit_code if res.exit_code is not None else -1,
                    stdout=res.stdout,
                    stderr=res.stderr,
                )
                console.print_failure(step.name, failure.stderr or str(failure), exit_code=failure.exit_code)
                return ExecutionResult(
                    outcome=Outcome.FAILED,
                    detail=str(failure),
                    exit_code=failure.exit_code,
                    stdout=failure.stdout,
                    stderr=failure.stderr,
                )

        # ---- outputs ----
        payloads: Dict[str, bytes] = {}
        for name, rel in job.outputs.items():
            path = workdir / rel
            if not path.is_file():
                return ExecutionResult(
                    outcome=Outcome.FAILED,
                    detail=f"declared output '{name}' was not produced: {rel}",
                    exit_code=0,
                )
            payloads[name] = path.read_bytes()

        existing = {a.name for a in ctx.store.list(ctx.run_id)}
        clash = sorted(set(payloads) & existing)
        if clash:
            return ExecutionResult(
                outcome=Outcome.FAILED,
                detail=f"artifact(s) already exist in run: {clash}",
                exit_code=0,
            )

        artifacts: List[Artifact] = []
        try:
            for name, data in payloads.items():
                artifacts.append(ctx.store.put(ctx.run_id, name, instance.id, data))
        except DuplicateArtifact as e:
            return ExecutionResult(outcome=Outcome.FAILED, detail=str(e), exit_code=0)

        return ExecutionResult(outcome=Outcome.SUCCEEDED, artifacts=artifacts, exit_code=0)
