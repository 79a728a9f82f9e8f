# scheduler.py
from __future__ import annotations

import heapq
import queue
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Set

from .model import JobStatus
from .ui.console import get_console

if TYPE_CHECKING:  # pragma: no cover
    from .dag import Dag
    from .executor import ExecutionResult
    from .model import JobInstance


class CancelToken:
    """
    Cooperative cancellation signal shared by a run's scheduler and executors.

    Listeners are invoked once, on the first `cancel()`.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._listeners: List[Callable[[], None]] = []

    def cancel(self) -> bool:
        with self._lock:
            if self._event.is_set():
                return False
            self._event.set()
            listeners = list(self._listeners)
        for fn in listeners:
            fn()
        return True

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def subscribe(self, fn: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._listeners.append(fn)
                return
        fn()


@dataclass
class RunResult:
    """Final per-instance status table of one scheduler pass."""
    statuses: Dict[str, JobStatus] = field(default_factory=dict)
    executions: Dict[str, Any] = field(default_factory=dict)
    canceled: bool = False

    def count(self, status: JobStatus) -> int:
        return sum(1 for s in self.statuses.values() if s is status)


ExecuteFn = Callable[["JobInstance"], "ExecutionResult"]

_DONE = "done"
_WAKE = "wake"


class Scheduler:
    """
    Dependency-respecting scheduler.

    - ready instances are dispatched in declaration order, at most
      `concurrency_limit` at a time
    - an instance becomes runnable when all its upstream instances
      succeeded; any failed/skipped/canceled upstream skips it
      (transitively)
    - blocks on a completion queue; cancellation wakes it up
    - holds no state between runs: everything lives in the Dag
    """

    def __init__(self, concurrency_limit: int = 4, *, fail_fast: bool = False):
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be >= 1")
        self.concurrency_limit = concurrency_limit
        self.fail_fast = fail_fast

    def run(self, dag: "Dag", execute: ExecuteFn, cancel: Optional[CancelToken] = None) -> RunResult:
        console = get_console()
        cancel = cancel or CancelToken()
        events: "queue.Queue[tuple]" = queue.Queue()
        cancel.subscribe(lambda: events.put((_WAKE, None, None)))

        result = RunResult()
        remaining: Dict[str, int] = {}
        ready: List[tuple] = []  # heap of (declaration index, instance id)
        dispatched: Set[str] = set()
        in_flight: Dict[str, Future] = {}
        stop_dispatch = False

        def propagate(iid: str) -> None:
            # iid just reached a terminal status; settle its dependents
            stack = [iid]
            while stack:
                cur = stack.pop()
                status = dag.get(cur).status
                for child in dag.downstream[cur]:
                    child_inst = dag.get(child)
                    if child_inst.status.terminal:
                        continue
                    if status is JobStatus.SUCCEEDED:
                        remaining[child] -= 1
                        if remaining[child] == 0 and child_inst.status is JobStatus.BLOCKED:
                            dag.transition(child, JobStatus.RUNNABLE)
                            heapq.heappush(ready, (dag.order[child], child))
                    else:
                        dag.transition(
                            child,
                            JobStatus.SKIPPED,
                            detail=f"dependency '{cur}' {status.value}",
                        )
                        console.print_job_skipped(child, f"dependency '{cur}' {status.value}")
                        stack.append(child)

        # ---- initial classification ----
        with dag.lock:
            for inst in dag:
                remaining[inst.id] = len(dag.upstream[inst.id])
            for inst in dag:
                if inst.status.terminal:
                    continue
                if remaining[inst.id] == 0:
                    dag.transition(inst.id, JobStatus.RUNNABLE)
                    heapq.heappush(ready, (dag.order[inst.id], inst.id))
                else:
                    dag.transition(inst.id, JobStatus.BLOCKED)
            for inst in list(dag):
                if inst.status.terminal:
                    propagate(inst.id)

        def on_done(iid: str, fut: Future) -> None:
            events.put((_DONE, iid, fut))

        def handle_cancel() -> None:
            if cancel.is_set() and not result.canceled:
                result.canceled = True
                for iid in dag.cancel_pending():
                    console.print_job_skipped(iid, "canceled")
                ready.clear()

        with ThreadPoolExecutor(max_workers=self.concurrency_limit, thread_name_prefix="ciflow-job") as pool:
            while True:
                handle_cancel()

                # ---- dispatch ----
                while ready and len(in_flight) < self.concurrency_limit and not stop_dispatch:
                    _, iid = heapq.heappop(ready)
                    if iid in dispatched or not dag.start(iid):
                        continue
                    dispatched.add(iid)
                    fut = pool.submit(execute, dag.get(iid))
                    in_flight[iid] = fut
                    fut.add_done_callback(lambda f, iid=iid: on_done(iid, f))

                if not in_flight:
                    break

                # ---- wait for a completion (or a cancel wake-up) ----
                kind, iid, fut = events.get()
                # settle pending work as canceled before propagating this completion
                handle_cancel()
                if kind != _DONE:
                    continue
                in_flight.pop(iid, None)
                self._settle(dag, iid, fut, result, console)
                with dag.lock:
                    propagate(iid)

                if self.fail_fast and dag.get(iid).status is JobStatus.FAILED and not stop_dispatch:
                    stop_dispatch = True
                    ready.clear()
                    for other in dag.cancel_pending(detail="fail-fast: canceled after a failure"):
                        console.print_job_skipped(other, "fail-fast")

        # anything still unresolved could not have run
        with dag.lock:
            for inst in dag:
                if not inst.status.terminal:
                    dag.transition(inst.id, JobStatus.SKIPPED, detail="unreachable")
            result.statuses = dag.statuses()
        return result

    @staticmethod
    def _settle(dag: "Dag", iid: str, fut: Future, result: RunResult, console) -> None:
        from .executor import Outcome

        try:
            res = fut.result()
        except Exception as e:
            dag.transition(iid, JobStatus.FAILED, detail=f"{type(e).__name__}: {e}")
            console.print_failure(iid, str(e), is_job=True)
            return

        result.executions[iid] = res
        if res.outcome is Outcome.SUCCEEDED:
            dag.transition(iid, JobStatus.SUCCEEDED, exit_code=res.exit_code)
            console.print_success(iid)
        elif res.outcome is Outcome.CANCELED:
            dag.transition(iid, JobStatus.CANCELED, detail=res.detail, exit_code=res.exit_code)
            console.print_job_skipped(iid, "canceled")
        else:
            timed_out = res.outcome is Outcome.TIMED_OUT
            dag.transition(
                iid,
                JobStatus.FAILED,
                detail=res.detail,
                exit_code=res.exit_code,
                timed_out=timed_out,
            )
            console.print_failure(iid, res.detail or "", exit_code=res.exit_code, is_job=True)
