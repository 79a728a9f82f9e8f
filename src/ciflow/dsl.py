# src/ciflow/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from .model import (
    PAIRING_PAIRED,
    EventKind,
    JobDefinition,
    PipelineConfig,
    Step,
    TriggerRule,
)


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None, env: Optional[Dict[str, Any]] = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd, env={k: str(v) for k, v in (env or {}).items()})


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Matrix axes for a job; the engine expands them into instances.

    Example:
        matrix("py", ["3.11", "3.12"]).axis("os", ["linux", "mac"]).exclude(py="3.11", os="mac")
    """

    def __init__(self, axes: Optional[Dict[str, Iterable[Any]]] = None):
        self.axes: Dict[str, List[Any]] = {k: list(v) for k, v in (axes or {}).items()}
        self.includes: List[Dict[str, Any]] = []
        self.excludes: List[Dict[str, Any]] = []

    def axis(self, key: str, values: Iterable[Any]) -> "Matrix":
        self.axes[key] = list(values)
        return self

    def include(self, **coordinate: Any) -> "Matrix":
        self.includes.append(coordinate)
        return self

    def exclude(self, **coordinate: Any) -> "Matrix":
        self.excludes.append(coordinate)
        return self


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix({key: values})


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    matrix: Union[Matrix, Dict[str, Iterable[Any]], None] = None,
    paired: bool = False,
    when: str | None = None,  # condition expression, e.g. "branch == 'main'"
    inputs: Optional[List[str]] = None,
    outputs: Optional[Dict[str, str]] = None,
    env: Optional[Dict[str, Any]] = None,
    timeout: float | None = None,
    required: bool = True,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> JobDefinition:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    m = matrix if isinstance(matrix, Matrix) else Matrix(matrix)

    return JobDefinition(
        id=name,
        steps=steps_final,
        needs=list(needs or []),
        matrix=dict(m.axes),
        include=list(m.includes),
        exclude=list(m.excludes),
        pairing=PAIRING_PAIRED if paired else None,
        condition=when,
        inputs=list(inputs or []),
        outputs=dict(outputs or {}),
        env={k: str(v) for k, v in (env or {}).items()},
        timeout=timeout,
        required=required,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._inputs: list[str] = []
        self._outputs: dict[str, str] = {}
        self._env: dict[str, str] = {}
        self._matrix = Matrix()
        self._paired = False
        self._when: str | None = None
        self._timeout: float | None = None
        self._required = True

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(Step(name=name, run=run, cwd=cwd))
        return self

    def with_inputs(self, *artifacts: str):
        self._inputs.extend(artifacts)
        return self

    def with_outputs(self, **artifacts: str):
        self._outputs.update(artifacts)
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_matrix(self, key: str, values: Iterable[Any], *, paired: bool = False):
        self._matrix.axis(key, values)
        self._paired = self._paired or paired
        return self

    def when(self, condition: str):
        self._when = condition
        return self

    def with_timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def optional(self):
        """Failures of this job do not fail the run."""
        self._required = False
        return self

    def build(self) -> JobDefinition:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return job(
            self.name,
            steps_list=self._steps,
            needs=self._needs,
            matrix=self._matrix,
            paired=self._paired,
            when=self._when,
            inputs=self._inputs,
            outputs=self._outputs,
            env=self._env,
            timeout=self._timeout,
            required=self._required,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------

def on_push(*branches: str, ignore: Sequence[str] = ()) -> TriggerRule:
    return TriggerRule(kind=EventKind.PUSH, branches=tuple(branches), branches_ignore=tuple(ignore))


def on_pull_request(*branches: str, ignore: Sequence[str] = ()) -> TriggerRule:
    """`branches` filter the pull request's target branch."""
    return TriggerRule(kind=EventKind.PULL_REQUEST, branches=tuple(branches), branches_ignore=tuple(ignore))


def on_schedule(cron: str) -> TriggerRule:
    return TriggerRule(kind=EventKind.SCHEDULE, cron=cron)


def on_tag(*patterns: str) -> TriggerRule:
    return TriggerRule(kind=EventKind.TAG, tags=tuple(patterns))


# ---------------------------------------------------------------------
# Workflow helpers (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: JobDefinition) -> List[JobDefinition]:
    return list(jobs)


def pipeline(
    name: str,
    *,
    triggers: Sequence[TriggerRule],
    jobs: Sequence[JobDefinition],
    pairing: str | None = None,
) -> PipelineConfig:
    """
    Users can write:
        from ciflow.dsl import pipeline, on_push, wf, job, sh

        def workflow():
            return pipeline(
                "app",
                triggers=[on_push("main")],
                jobs=wf(job(...), job(...)),
            )

    Or define it directly:
        PIPELINE = pipeline(...)
    """
    return PipelineConfig(name=name, triggers=tuple(triggers), jobs=list(jobs), pairing=pairing)
