# coordinator.py
from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from . import triggers
from .archive import RunArchive
from .artifacts import RETENTION_PERSIST, ArtifactStore, FileSystemSink
from .dag import Dag, build_graph, run_context
from .errors import RunNotFound
from .executor import ExecutionContext, Executor
from .model import Event, JobStatus, PipelineConfig, RunStatus, now_utc
from .scheduler import CancelToken, Scheduler
from .settings import Settings
from .triggers import Rejected
from .ui.console import get_console


@dataclass
class Run:
    """One execution of the pipeline, triggered by a single accepted event."""
    id: str
    pipeline: str
    event: Event
    trigger: str
    dag: Dag
    cancel_token: CancelToken = field(default_factory=CancelToken)
    status: RunStatus = RunStatus.PENDING
    created_at: datetime = field(default_factory=now_utc)
    completed_at: Optional[datetime] = None
    canceled: bool = False
    error: Optional[str] = None
    artifacts: List[Dict[str, Any]] = field(default_factory=list)
    artifacts_fingerprint: Optional[str] = None
    _done: threading.Event = field(default_factory=threading.Event, repr=False)
    _settled: bool = field(default=False, repr=False)

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pipeline": self.pipeline,
            "status": self.status.value,
            "trigger": self.trigger,
            "event": self.event.to_dict(),
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "canceled": self.canceled,
            "error": self.error,
            "instances": self.dag.snapshot(),
            "artifacts": list(self.artifacts),
            "artifacts_fingerprint": self.artifacts_fingerprint,
        }


def aggregate_status(dag: Dag, canceled: bool) -> RunStatus:
    """
    Overall run status once every instance is terminal:
      failed    - any required instance failed
      canceled  - the run was explicitly canceled
      succeeded - otherwise (skipped instances do not fail a run)
    """
    if any(i.status is JobStatus.FAILED and i.definition.required for i in dag):
        return RunStatus.FAILED
    if canceled:
        return RunStatus.CANCELED
    return RunStatus.SUCCEEDED


class RunCoordinator:
    """
    Owns run lifecycles: trigger check -> DAG -> scheduler -> final status.

    Runs are driven on background threads; `start(..., wait=True)` blocks
    until the run finished.
    """

    def __init__(
        self,
        config: PipelineConfig,
        settings: Optional[Settings] = None,
        *,
        store: Optional[ArtifactStore] = None,
        executor: Optional[Executor] = None,
        archive: Optional[RunArchive] = None,
    ):
        self.config = config
        self.settings = settings or Settings()
        if store is None:
            sink = FileSystemSink(self.settings.artifact_dir) if self.settings.artifact_retention == RETENTION_PERSIST else None
            store = ArtifactStore(
                retention=self.settings.artifact_retention,
                sink=sink,
                ttl=self.settings.artifact_ttl,
            )
        self.store = store
        self.executor = executor or Executor()
        if archive is None and self.settings.database_url:
            archive = RunArchive(self.settings.database_url)
        self.archive = archive

        self._runs: Dict[str, Run] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    def start(self, event: Event, *, wait: bool = False) -> Union[str, Rejected]:
        """
        Start a run for `event`.

        Returns the run id, or `Rejected` when no trigger rule matches.
        Raises ConfigError if the job graph is invalid (no run is created).
        """
        console = get_console()

        decision = triggers.evaluate(event, self.config.triggers)
        if isinstance(decision, Rejected):
            console.print_rejected(decision.reason)
            return decision

        pairing = self.config.pairing or self.settings.matrix_pairing
        dag = build_graph(self.config.jobs, run_context(event), pairing=pairing)

        run = Run(
            id=uuid.uuid4().hex[:12],
            pipeline=self.config.name,
            event=event,
            trigger=decision.reason,
            dag=dag,
        )
        self.store.register_run(run.id, dag)

        thread = threading.Thread(target=self._drive, args=(run,), name=f"ciflow-run-{run.id}", daemon=True)
        with self._lock:
            self._runs[run.id] = run
            self._threads[run.id] = thread

        console.print_run_started(
            run_id=run.id,
            pipeline=run.pipeline,
            trigger=run.trigger,
            job_count=len(dag),
        )
        thread.start()

        if wait:
            run.wait()
        return run.id

    def status(self, run_id: str) -> Run:
        with self._lock:
            run = self._runs.get(run_id)
        if run is None:
            raise RunNotFound(kind="RunNotFound", message=f"Unknown run: {run_id}", details={"run_id": run_id})
        return run

    def describe(self, run_id: str) -> Dict[str, Any]:
        """Run as a dict, falling back to the archive for collected runs."""
        try:
            return self.status(run_id).to_dict()
        except RunNotFound:
            if self.archive is not None:
                archived = self.archive.get(run_id)
                if archived is not None:
                    return archived
            raise

    def list_runs(self) -> List[Run]:
        with self._lock:
            return list(self._runs.values())

    def wait(self, run_id: str, timeout: Optional[float] = None) -> Run:
        run = self.status(run_id)
        run.wait(timeout)
        return run

    def cancel(self, run_id: str) -> bool:
        """
        Cancel a run. Undispatched instances become canceled right away,
        running ones are interrupted by their executor.
        Returns False if every instance had already settled.
        """
        run = self.status(run_id)
        with self._lock:
            # once the scheduler has returned the outcome is fixed
            if run._settled:
                return False
            run.canceled = True
            run.cancel_token.cancel()
            run.dag.cancel_pending()
        return True

    def shutdown(self, *, cancel: bool = True, timeout: Optional[float] = None) -> None:
        for run in self.list_runs():
            if cancel and not run.done:
                self.cancel(run.id)
            run.wait(timeout)

    def collect_garbage(self, now: Optional[datetime] = None, *, max_age: Optional[float] = None) -> List[str]:
        """
        Drop finished runs older than the retention window, archiving them
        first when an archive is configured. Returns the collected run ids.
        """
        now = now or now_utc()
        age = self.settings.run_retention if max_age is None else max_age
        cutoff = now - timedelta(seconds=age)

        with self._lock:
            expired = [
                r for r in self._runs.values()
                if r.done and r.completed_at is not None and r.completed_at <= cutoff
            ]

        collected: List[str] = []
        for run in expired:
            if self.archive is not None:
                self.archive.save(run.to_dict())
            with self._lock:
                self._runs.pop(run.id, None)
                self._threads.pop(run.id, None)
            collected.append(run.id)
        return collected

    # ------------------------------------------------------------------
    # Driving a run
    # ------------------------------------------------------------------

    def _drive(self, run: Run) -> None:
        console = get_console()
        run.status = RunStatus.RUNNING

        ctx = ExecutionContext(
            run_id=run.id,
            store=self.store,
            cancel=run.cancel_token,
            work_root=self.settings.work_dir,
            timeout=self.settings.job_timeout,
        )
        scheduler = Scheduler(self.settings.concurrency, fail_fast=self.settings.fail_fast)

        result = None
        try:
            result = scheduler.run(run.dag, lambda inst: self.executor.execute(inst, ctx), run.cancel_token)
        except Exception as e:
            # the scheduler itself broke; nothing else will run
            run.error = f"{type(e).__name__}: {e}"
            console.print_exception(e)
            with run.dag.lock:
                run.dag.cancel_pending(detail="scheduler error")
                for inst in run.dag:
                    if inst.status is JobStatus.RUNNING:
                        run.dag.transition(inst.id, JobStatus.FAILED, detail="scheduler error")

        with self._lock:
            run._settled = True
            run.canceled = result.canceled if result is not None else run.cancel_token.is_set()

        try:
            run.artifacts_fingerprint = self.store.fingerprint(run.id)
            run.artifacts = [a.describe() for a in self.store.release(run.id)]
        except OSError as e:
            run.error = f"artifact retention failed: {e}"
            console.print_error("Artifact retention failed", str(e))

        run.status = RunStatus.FAILED if run.error else aggregate_status(run.dag, run.canceled)
        run.completed_at = now_utc()
        console.print_results(run.status.value, run.dag.snapshot())
        run._done.set()
