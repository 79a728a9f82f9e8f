# cli.py
from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import Callable, Optional, TypeVar

import click

from ciflow.coordinator import RunCoordinator
from ciflow.dag import build_graph, run_context, validate_jobs
from ciflow.errors import CIError
from ciflow.git_facts import git
from ciflow.loader import DEFAULT_DOCUMENTS, find_pipeline_files, load_pipeline
from ciflow.model import Event, EventKind, PipelineConfig, RunStatus
from ciflow.settings import Settings
from ciflow.triggers import Rejected, evaluate
from ciflow.ui.console import Console, get_console, set_console

T = TypeVar("T")


def discover_pipeline(pipeline_arg: str | None, settings: Settings) -> Path:
    """
    Discover the pipeline document from the argument, CIFLOW_PIPELINE or
    the working directory.

    Raises:
        SystemExit: If no document can be found or several candidates exist
    """
    console = get_console()

    explicit = pipeline_arg or settings.pipeline
    if explicit:
        path = Path(explicit)
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {explicit}",
                suggestion="Create a pipeline file or specify a different path:\n  ciflow run --pipeline ciflow.yml",
            )
            sys.exit(1)
        return path

    found = find_pipeline_files(".")

    if len(found) == 0:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline documents.",
            details=["Looked for:", *(f"  {name}" for name in DEFAULT_DOCUMENTS), "  *_workflow.py"],
            suggestion="Create ciflow.yml, or specify a pipeline explicitly:\n  ciflow run --pipeline my_workflow.py",
        )
        sys.exit(1)

    if len(found) > 1:
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline documents. Please specify which one to use:",
            details=[str(p) for p in found],
            suggestion="Specify a pipeline explicitly:\n  ciflow run --pipeline ciflow.yml",
        )
        sys.exit(1)

    return found[0]


def _load(pipeline_arg: str | None, settings: Settings) -> PipelineConfig:
    path = discover_pipeline(pipeline_arg, settings)
    get_console().print_debug(f"Loading pipeline from {path}")
    return load_pipeline(path)


def _git_or_none(fn: Callable[[], T]) -> Optional[T]:
    try:
        return fn()
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None


def build_event(
    kind: str,
    branch: str | None,
    sha: str | None,
    tag: str | None,
    actor: str | None,
    message: str | None,
) -> Event:
    """Event from CLI flags; anything not given is read from the local git checkout."""
    console = get_console()
    event_kind = EventKind(kind)

    tags = _git_or_none(git.tags_at_head) or []
    if event_kind is EventKind.TAG and tag is None:
        tag = tags[0] if tags else None
    if tag and tag not in tags:
        tags = [tag, *tags]

    if branch is None and event_kind in (EventKind.PUSH, EventKind.PULL_REQUEST):
        branch = _git_or_none(git.current_branch)
    if _git_or_none(git.is_dirty):
        console.print_debug("Working tree has uncommitted changes")

    return Event(
        kind=event_kind,
        branch=branch,
        sha=sha or _git_or_none(git.head_sha),
        tag=tag,
        tags=tuple(tags),
        actor=actor or _git_or_none(git.head_author),
        message=message if message is not None else _git_or_none(git.head_message),
    )


def event_options(fn):
    options = [
        click.option(
            "--event",
            "kind",
            type=click.Choice([k.value for k in EventKind]),
            default=EventKind.PUSH.value,
            show_default=True,
            help="Event kind to simulate",
        ),
        click.option("--branch", default=None, help="Branch (target branch for pull_request); defaults to git"),
        click.option("--sha", default=None, help="Commit SHA; defaults to git HEAD"),
        click.option("--tag", default=None, help="Tag for tag events; defaults to a tag at HEAD"),
        click.option("--actor", default=None, help="Event actor; defaults to the HEAD author"),
        click.option("--message", default=None, help="Commit message; defaults to the HEAD subject"),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print results and errors")
@click.pass_context
def cli(ctx, debug, quiet):
    """ciflow: dependency-aware CI pipeline orchestrator."""
    console = Console(debug=debug, quiet=quiet)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--pipeline", default=None, help="Pipeline file (ciflow.yml or *_workflow.py)")
@event_options
@click.option("--concurrency", default=None, type=int, help="Max job instances running at once")
@click.option("--timeout", default=None, type=float, help="Default job timeout in seconds")
@click.option("--pairing", type=click.Choice(["all", "paired"]), default=None, help="Default matrix edge policy")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Stop dispatching new jobs after the first failure")
@click.option("--work-dir", default=None, type=click.Path(path_type=Path), help="Per-run working directories root")
@click.option("--retention", type=click.Choice(["discard", "persist"]), default=None, help="Artifact retention policy")
@click.option("--artifact-dir", default=None, type=click.Path(path_type=Path), help="Where persisted artifacts go")
@click.option("--database-url", default=None, help="Archive finished runs to this database")
@click.pass_context
def run(
    ctx,
    pipeline,
    kind,
    branch,
    sha,
    tag,
    actor,
    message,
    concurrency,
    timeout,
    pairing,
    fail_fast,
    work_dir,
    retention,
    artifact_dir,
    database_url,
):
    """Run the pipeline for an event."""
    console = get_console()

    try:
        settings = Settings.from_env().with_overrides(
            concurrency=concurrency,
            job_timeout=timeout,
            matrix_pairing=pairing,
            fail_fast=fail_fast,
            work_dir=work_dir,
            artifact_retention=retention,
            artifact_dir=artifact_dir,
            database_url=database_url,
        )
    except ValueError as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(2)

    try:
        config = _load(pipeline, settings)
        event = build_event(kind, branch, sha, tag, actor, message)
        console.print_debug(f"Event: {event.to_dict()}")

        coordinator = RunCoordinator(config, settings)
        result = coordinator.start(event)
        if isinstance(result, Rejected):
            return

        try:
            run_state = coordinator.wait(result)
        except KeyboardInterrupt:
            console.print_info("\nInterrupted by user, canceling run")
            coordinator.cancel(result)
            coordinator.wait(result)
            sys.exit(130)

        if coordinator.archive is not None:
            coordinator.collect_garbage(max_age=0)

        if run_state.status in (RunStatus.FAILED, RunStatus.CANCELED):
            sys.exit(1)

    except CIError as e:
        console.print_error(e.kind, e.message, details=[f"{k}: {v}" for k, v in e.details.items()])
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--pipeline", default=None, help="Pipeline file (ciflow.yml or *_workflow.py)")
@event_options
@click.option("--pairing", type=click.Choice(["all", "paired"]), default=None, help="Default matrix edge policy")
@click.pass_context
def plan(ctx, pipeline, kind, branch, sha, tag, actor, message, pairing):
    """Show the expanded execution plan for an event without running it."""
    console = get_console()
    settings = Settings.from_env().with_overrides(matrix_pairing=pairing)

    try:
        config = _load(pipeline, settings)
        event = build_event(kind, branch, sha, tag, actor, message)

        decision = evaluate(event, config.triggers)
        if isinstance(decision, Rejected):
            console.print_rejected(decision.reason)
        else:
            console.print_info(f"Trigger: {decision.reason}")

        levels = validate_jobs(config.jobs)
        dag = build_graph(
            config.jobs,
            run_context(event),
            pairing=config.pairing or settings.matrix_pairing,
        )
        console.print_plan(levels, dag.snapshot())

    except CIError as e:
        console.print_error(e.kind, e.message, details=[f"{k}: {v}" for k, v in e.details.items()])
        sys.exit(1)


@cli.command()
@click.option("--pipeline", default=None, help="Pipeline file (ciflow.yml or *_workflow.py)")
@click.pass_context
def validate(ctx, pipeline):
    """Validate a pipeline document (triggers, job graph, matrices, conditions)."""
    console = get_console()
    settings = Settings.from_env()

    try:
        config = _load(pipeline, settings)
    except CIError as e:
        console.print_error(e.kind, e.message, details=[f"{k}: {v}" for k, v in e.details.items()])
        sys.exit(1)

    levels = validate_jobs(config.jobs)
    console.print_info(
        f"OK: pipeline '{config.name}' with {len(config.triggers)} trigger(s), "
        f"{len(config.jobs)} job(s) in {len(levels)} stage(s)"
    )


if __name__ == "__main__":
    cli()
