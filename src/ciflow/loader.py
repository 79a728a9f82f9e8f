# loader.py
from __future__ import annotations

import runpy
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from . import expr
from .dag import expand_instances, validate_jobs
from .errors import MALFORMED_DOCUMENT, CIError, config_error
from .model import (
    PAIRING_ALL,
    PAIRING_PAIRED,
    EventKind,
    JobDefinition,
    PipelineConfig,
    Step,
    TriggerRule,
)
from .triggers import validate_rules

# ---------------------------------------------------------------------
# Document shape
# ---------------------------------------------------------------------
# name: ciflow
# on:
#   push: {branches: [main], branches_ignore: ["wip/*"]}
#   pull_request: {branches: [main]}
#   schedule: [{cron: "0 3 * * *"}]
#   tag: {tags: ["v*"]}
# jobs:
#   test:
#     needs: [lint]
#     strategy:
#       matrix: {python: ["3.11", "3.12"]}
#       pairing: paired
#     if: "branch == 'main'"
#     steps:
#       - {name: pytest, run: pytest -q}
#     outputs: {report: report.xml}
# ---------------------------------------------------------------------

DEFAULT_DOCUMENTS = ("ciflow.yml", "ciflow.yaml")


def _as_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return value


def _check_pairing(value: Optional[str]) -> Optional[str]:
    if value is not None and value not in (PAIRING_ALL, PAIRING_PAIRED):
        raise ValueError(f"pairing must be '{PAIRING_ALL}' or '{PAIRING_PAIRED}'")
    return value


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class BranchFilterDoc(_Strict):
    branches: List[str] = Field(default_factory=list)
    branches_ignore: List[str] = Field(default_factory=list)

    @field_validator("branches", "branches_ignore", mode="before")
    @classmethod
    def listify(cls, value: Any) -> Any:
        return _as_list(value)


class TagFilterDoc(_Strict):
    tags: List[str] = Field(default_factory=list)

    @field_validator("tags", mode="before")
    @classmethod
    def listify(cls, value: Any) -> Any:
        return _as_list(value)


class ScheduleDoc(_Strict):
    cron: str


class TriggersDoc(_Strict):
    push: Optional[BranchFilterDoc] = None
    pull_request: Optional[BranchFilterDoc] = None
    schedule: List[ScheduleDoc] = Field(default_factory=list)
    tag: Optional[TagFilterDoc] = None

    @field_validator("push", "pull_request", "tag", mode="before")
    @classmethod
    def shorthand(cls, value: Any, info) -> Any:
        # `push:` with no body means "any branch"; a bare list is the branch filter
        if value is None:
            return {}
        if isinstance(value, (str, list)):
            key = "tags" if info.field_name == "tag" else "branches"
            return {key: _as_list(value)}
        return value

    @field_validator("schedule", mode="before")
    @classmethod
    def schedules(cls, value: Any) -> Any:
        if isinstance(value, (str, dict)):
            value = [value]
        return [{"cron": v} if isinstance(v, str) else v for v in _as_list(value)]


class StepDoc(_Strict):
    name: Optional[str] = None
    run: str
    cwd: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)

    @field_validator("env", mode="before")
    @classmethod
    def env_to_str(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        return value


class StrategyDoc(_Strict):
    matrix: Dict[str, List[Any]] = Field(default_factory=dict)
    include: List[Dict[str, Any]] = Field(default_factory=list)
    exclude: List[Dict[str, Any]] = Field(default_factory=list)
    pairing: Optional[str] = None

    @field_validator("pairing")
    @classmethod
    def known_pairing(cls, value: Optional[str]) -> Optional[str]:
        return _check_pairing(value)


class JobDoc(_Strict):
    steps: List[Union[StepDoc, str]]
    needs: List[str] = Field(default_factory=list)
    strategy: StrategyDoc = Field(default_factory=StrategyDoc)
    condition: Optional[str] = Field(default=None, alias="if")
    inputs: List[str] = Field(default_factory=list)
    outputs: Dict[str, str] = Field(default_factory=dict)
    env: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = None
    required: bool = True

    @field_validator("needs", "inputs", mode="before")
    @classmethod
    def listify(cls, value: Any) -> Any:
        return _as_list(value)

    @field_validator("steps")
    @classmethod
    def non_empty(cls, value: List[Any]) -> List[Any]:
        if not value:
            raise ValueError("a job needs at least one step")
        return value

    @field_validator("env", mode="before")
    @classmethod
    def env_to_str(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        return value


class PipelineDoc(_Strict):
    name: str = "pipeline"
    triggers: TriggersDoc = Field(default_factory=TriggersDoc, alias="on")
    pairing: Optional[str] = None
    jobs: Dict[str, JobDoc]

    @field_validator("pairing")
    @classmethod
    def known_pairing(cls, value: Optional[str]) -> Optional[str]:
        return _check_pairing(value)


# ---------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------

def _trigger_rules(doc: TriggersDoc) -> List[TriggerRule]:
    rules: List[TriggerRule] = []
    for kind, flt in ((EventKind.PUSH, doc.push), (EventKind.PULL_REQUEST, doc.pull_request)):
        if flt is not None:
            rules.append(
                TriggerRule(kind=kind, branches=tuple(flt.branches), branches_ignore=tuple(flt.branches_ignore))
            )
    if doc.tag is not None:
        rules.append(TriggerRule(kind=EventKind.TAG, tags=tuple(doc.tag.tags)))
    for sched in doc.schedule:
        rules.append(TriggerRule(kind=EventKind.SCHEDULE, cron=sched.cron))
    return rules


def _step(doc: Union[StepDoc, str]) -> Step:
    if isinstance(doc, str):
        return Step(name=doc, run=doc)
    return Step(name=doc.name or doc.run, run=doc.run, cwd=doc.cwd, env=dict(doc.env))


def _job(job_id: str, doc: JobDoc) -> JobDefinition:
    return JobDefinition(
        id=job_id,
        steps=[_step(s) for s in doc.steps],
        needs=list(doc.needs),
        matrix={k: list(v) for k, v in doc.strategy.matrix.items()},
        include=[dict(e) for e in doc.strategy.include],
        exclude=[dict(e) for e in doc.strategy.exclude],
        pairing=doc.strategy.pairing,
        condition=doc.condition,
        inputs=list(doc.inputs),
        outputs=dict(doc.outputs),
        env=dict(doc.env),
        timeout=doc.timeout,
        required=doc.required,
    )


def validate_pipeline(config: PipelineConfig) -> PipelineConfig:
    """
    Check everything that can be checked before a run exists:
    cron expressions, job graph shape, matrices and condition syntax.
    """
    validate_rules(config.triggers)
    validate_jobs(config.jobs)
    for job in config.jobs:
        expand_instances(job)
        if job.condition:
            expr.parse(job.condition)
        if job.timeout is not None and job.timeout <= 0:
            raise config_error(
                MALFORMED_DOCUMENT,
                f"Job '{job.id}' timeout must be positive, got {job.timeout}",
                job=job.id,
            )
        for name in [*job.inputs, *job.outputs]:
            _check_relative(job, "artifact name", name)
        for rel in job.outputs.values():
            _check_relative(job, "output path", rel)
    return config


def _check_relative(job: JobDefinition, what: str, value: str) -> None:
    # artifacts are placed under the instance workdir and the persist root
    path = PurePosixPath(value.replace("\\", "/"))
    if not value.strip() or path.is_absolute() or ".." in path.parts:
        raise config_error(
            MALFORMED_DOCUMENT,
            f"Job '{job.id}' {what} must be a relative path inside the workdir: {value!r}",
            job=job.id,
        )


def _format_validation_error(e: ValidationError) -> List[str]:
    lines = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        lines.append(f"{loc}: {err.get('msg')}")
    return lines


def pipeline_from_dict(data: Any, *, source: str = "<document>") -> PipelineConfig:
    if not isinstance(data, dict):
        raise config_error(
            MALFORMED_DOCUMENT,
            f"Pipeline document root must be a mapping, got {type(data).__name__}",
            source=source,
        )
    data = dict(data)
    # YAML 1.1 reads a bare `on:` key as boolean true
    if True in data:
        data["on"] = data.pop(True)
    if "triggers" in data and "on" not in data:
        data["on"] = data.pop("triggers")

    try:
        doc = PipelineDoc.model_validate(data)
    except ValidationError as e:
        raise config_error(
            MALFORMED_DOCUMENT,
            f"Invalid pipeline document: {source}",
            source=source,
            errors=_format_validation_error(e),
        ) from e

    config = PipelineConfig(
        name=doc.name,
        triggers=tuple(_trigger_rules(doc.triggers)),
        jobs=[_job(job_id, job) for job_id, job in doc.jobs.items()],
        pairing=doc.pairing,
    )
    return validate_pipeline(config)


def load_yaml(path: Union[str, Path]) -> PipelineConfig:
    p = Path(path)
    if not p.exists():
        raise config_error(MALFORMED_DOCUMENT, f"Pipeline file not found: {p}", source=str(p))
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise config_error(MALFORMED_DOCUMENT, f"Could not parse YAML: {e}", source=str(p)) from e
    if data is None:
        raise config_error(MALFORMED_DOCUMENT, "Pipeline file is empty", source=str(p))
    return pipeline_from_dict(data, source=str(p))


def load_workflow(path: Union[str, Path]) -> PipelineConfig:
    """
    Load a pipeline from a python file path.

    The file must define either:
      - workflow() -> PipelineConfig
      - PIPELINE = PipelineConfig(...)
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise config_error(MALFORMED_DOCUMENT, f"Workflow file not found: {wf_path}", source=str(wf_path))

    module_name = f"ciflow_workflow_{wf_path.stem}"
    try:
        globals_dict = runpy.run_path(str(wf_path), run_name=module_name)
    except CIError:
        raise
    except Exception as e:
        raise config_error(
            MALFORMED_DOCUMENT,
            f"Could not load workflow file: {type(e).__name__}: {e}",
            source=str(wf_path),
        ) from e

    config = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            config = globals_dict["workflow"]()
        except CIError:
            raise
        except TypeError as e:
            if "positional argument" in str(e):
                raise config_error(
                    MALFORMED_DOCUMENT,
                    "workflow() was called with arguments (name collision with the helper). "
                    "Use `pipeline(...)` from ciflow.dsl instead of importing `workflow`.",
                    source=str(wf_path),
                ) from e
            raise config_error(
                MALFORMED_DOCUMENT,
                f"workflow() raised TypeError: {e}",
                source=str(wf_path),
            ) from e
        except Exception as e:
            raise config_error(
                MALFORMED_DOCUMENT,
                f"workflow() raised {type(e).__name__}: {e}",
                source=str(wf_path),
            ) from e
    elif "PIPELINE" in globals_dict:
        config = globals_dict["PIPELINE"]

    if not isinstance(config, PipelineConfig):
        raise config_error(
            MALFORMED_DOCUMENT,
            "Workflow must return/define a PipelineConfig. "
            "Define workflow() -> PipelineConfig or PIPELINE = pipeline(...).",
            source=str(wf_path),
        )
    return validate_pipeline(config)


def load_pipeline(path: Union[str, Path]) -> PipelineConfig:
    """Load a pipeline document by extension (.yml/.yaml or .py)."""
    p = Path(path)
    suffix = p.suffix.lower()
    if suffix in {".yml", ".yaml"}:
        return load_yaml(p)
    if suffix == ".py":
        return load_workflow(p)
    raise config_error(MALFORMED_DOCUMENT, f"Unsupported pipeline format: {p.suffix or p.name}", source=str(p))


def find_pipeline_files(root: Union[str, Path] = ".") -> List[Path]:
    """Pipeline documents in `root`: ciflow.yml/ciflow.yaml and *_workflow.py files."""
    base = Path(root)
    found = [base / name for name in DEFAULT_DOCUMENTS if (base / name).exists()]
    found.extend(sorted(base.glob("*_workflow.py")))
    return found
