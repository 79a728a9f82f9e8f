# dag.py
from __future__ import annotations

import itertools
import threading
from collections import deque
from typing import Any, Dict, Iterator, List, Mapping, Sequence, Set, Tuple

from . import expr
from .errors import (
    CYCLIC_DEPENDENCY,
    DUPLICATE_JOB,
    EMPTY_MATRIX,
    MALFORMED_DOCUMENT,
    UNKNOWN_DEPENDENCY,
    config_error,
)
from .model import (
    PAIRING_ALL,
    PAIRING_PAIRED,
    Coordinate,
    Event,
    JobDefinition,
    JobInstance,
    JobStatus,
    instance_id,
    now_utc,
)


# ---------------------------------------------------------------------
# Definition-level graph (validation + ordering)
# ---------------------------------------------------------------------

def build_definition_graph(
    jobs: Sequence[JobDefinition],
) -> Tuple[Dict[str, List[str]], Dict[str, int]]:
    """
    Build the definition-level DAG.

    Returns (adj, indeg) where adj maps a job id to the ids that need it,
    in declaration order.
    """
    ids = [j.id for j in jobs]
    if len(set(ids)) != len(ids):
        dupes = sorted({n for n in ids if ids.count(n) > 1})
        raise config_error(DUPLICATE_JOB, f"Duplicate job ids found: {dupes}", jobs=dupes)

    id_set = set(ids)
    adj: Dict[str, List[str]] = {n: [] for n in ids}
    indeg: Dict[str, int] = {n: 0 for n in ids}

    for job in jobs:
        for need in job.needs:
            if need not in id_set:
                raise config_error(
                    UNKNOWN_DEPENDENCY,
                    f"Job '{job.id}' needs missing job '{need}'",
                    job=job.id,
                    dependency=need,
                    known=sorted(id_set),
                )
            # edge need -> job.id (need must run before job)
            if job.id not in adj[need]:
                adj[need].append(job.id)
                indeg[job.id] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, List[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert the definition DAG into topological "levels" (stages).
    Each stage only depends on earlier ones. Order within a stage follows
    declaration order.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque([n for n, d in indeg.items() if d == 0])

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in adj.get(node, []):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = [n for n, d in indeg.items() if d > 0]
        raise config_error(
            CYCLIC_DEPENDENCY,
            f"Job graph has a cycle. Stuck jobs: {remaining}",
            jobs=remaining,
        )

    return levels


def validate_jobs(jobs: Sequence[JobDefinition]) -> List[List[str]]:
    """Validate ids, dependencies and acyclicity. Returns the stages."""
    adj, indeg = build_definition_graph(jobs)
    return topo_levels(adj, indeg)


# ---------------------------------------------------------------------
# Matrix expansion
# ---------------------------------------------------------------------

def _entry_matches(coordinate: Coordinate, entry: Mapping[str, Any]) -> bool:
    values = dict(coordinate)
    return all(k in values and values[k] == v for k, v in entry.items())


def expand_matrix(job: JobDefinition) -> List[Coordinate]:
    """
    Cartesian product of the job's matrix axes, in declaration order.

    `exclude` entries drop every combination they fully match; `include`
    entries add extra combinations. No axes -> a single empty coordinate.
    """
    axes = list(job.matrix.items())
    for axis, values in axes:
        if not values:
            raise config_error(
                EMPTY_MATRIX,
                f"Job '{job.id}' matrix axis '{axis}' has no values",
                job=job.id,
                axis=axis,
            )

    names = [axis for axis, _ in axes]
    combos: List[Coordinate] = [
        tuple(zip(names, values)) for values in itertools.product(*(v for _, v in axes))
    ]

    if job.exclude:
        combos = [c for c in combos if not any(_entry_matches(c, e) for e in job.exclude)]

    for entry in job.include:
        ordered = [k for k in names if k in entry] + [k for k in entry if k not in names]
        coord = tuple((k, entry[k]) for k in ordered)
        if coord not in combos:
            combos.append(coord)

    if not combos:
        raise config_error(
            EMPTY_MATRIX,
            f"Job '{job.id}' matrix excludes every combination",
            job=job.id,
        )
    return combos


def expand_instances(job: JobDefinition) -> List[Tuple[str, Coordinate]]:
    """
    (instance id, coordinate) pairs for a job.

    Raises ConfigError if two coordinates render to the same id, or if a
    job that expands to several instances declares outputs (artifact names
    are unique within a run).
    """
    coords = expand_matrix(job)
    seen: Dict[str, Coordinate] = {}
    for coord in coords:
        iid = instance_id(job.id, coord)
        if iid in seen:
            raise config_error(
                MALFORMED_DOCUMENT,
                f"Job '{job.id}' matrix coordinates {dict(seen[iid])!r} and {dict(coord)!r} "
                f"both render to instance id '{iid}'",
                job=job.id,
                instance=iid,
            )
        seen[iid] = coord

    if job.outputs and len(seen) > 1:
        raise config_error(
            MALFORMED_DOCUMENT,
            f"Job '{job.id}' declares outputs but expands to {len(seen)} instances; "
            "each artifact name can only be produced once per run",
            job=job.id,
            outputs=sorted(job.outputs),
        )
    return list(seen.items())


# ---------------------------------------------------------------------
# Instance-level DAG
# ---------------------------------------------------------------------

class Dag:
    """
    The run's execution plan: job instances plus instance-level edges.

    All status transitions go through this object and happen under its
    lock, so readers never observe a half-applied transition.
    """

    def __init__(self, instances: Sequence[JobInstance], upstream: Mapping[str, Sequence[str]]):
        self.instances: Dict[str, JobInstance] = {i.id: i for i in instances}
        self.order: Dict[str, int] = {i.id: n for n, i in enumerate(instances)}
        self.upstream: Dict[str, Tuple[str, ...]] = {
            iid: tuple(upstream.get(iid, ())) for iid in self.instances
        }
        self.downstream: Dict[str, List[str]] = {iid: [] for iid in self.instances}
        for iid in self.instances:
            for dep in self.upstream[iid]:
                self.downstream[dep].append(iid)
        self.lock = threading.RLock()

    def __len__(self) -> int:
        return len(self.instances)

    def __iter__(self) -> Iterator[JobInstance]:
        return iter(self.instances.values())

    def __contains__(self, iid: object) -> bool:
        return iid in self.instances

    def get(self, iid: str) -> JobInstance:
        return self.instances[iid]

    def instances_of(self, job_id: str) -> List[JobInstance]:
        return [i for i in self.instances.values() if i.job_id == job_id]

    # ---- transitions ----

    def transition(
        self,
        iid: str,
        status: JobStatus,
        *,
        detail: str | None = None,
        exit_code: int | None = None,
        timed_out: bool = False,
    ) -> bool:
        """
        Move an instance to `status`. Terminal statuses are final: returns
        False (and changes nothing) if the instance already finished.
        """
        with self.lock:
            inst = self.instances[iid]
            if inst.status.terminal:
                return False
            inst.status = status
            if status is JobStatus.RUNNING:
                inst.started_at = now_utc()
            if status.terminal:
                inst.finished_at = now_utc()
                inst.detail = detail
                inst.exit_code = exit_code
                inst.timed_out = timed_out
            return True

    def start(self, iid: str) -> bool:
        """Atomically claim a runnable instance for execution."""
        with self.lock:
            if self.instances[iid].status is not JobStatus.RUNNABLE:
                return False
            return self.transition(iid, JobStatus.RUNNING)

    def cancel_pending(self, detail: str = "run canceled") -> List[str]:
        """Cancel every instance that has not been dispatched yet."""
        canceled: List[str] = []
        with self.lock:
            for inst in self.instances.values():
                if inst.status.terminal or inst.status is JobStatus.RUNNING:
                    continue
                self.transition(inst.id, JobStatus.CANCELED, detail=detail)
                canceled.append(inst.id)
        return canceled

    # ---- queries ----

    def statuses(self) -> Dict[str, JobStatus]:
        with self.lock:
            return {iid: i.status for iid, i in self.instances.items()}

    def descendants(self, iid: str) -> Set[str]:
        seen: Set[str] = set()
        q = deque(self.downstream.get(iid, []))
        while q:
            node = q.popleft()
            if node in seen:
                continue
            seen.add(node)
            q.extend(self.downstream[node])
        return seen

    def is_dependent(self, producer: str, consumer: str) -> bool:
        """True if `consumer` (transitively) depends on `producer`."""
        return consumer in self.descendants(producer)

    def snapshot(self) -> List[Dict[str, Any]]:
        with self.lock:
            out = []
            for inst in self.instances.values():
                d = inst.to_dict()
                d["needs"] = list(self.upstream[inst.id])
                out.append(d)
            return out


# ---------------------------------------------------------------------
# Run context & builder
# ---------------------------------------------------------------------

def run_context(event: Event) -> Dict[str, Any]:
    """The fixed context schema conditions are evaluated against."""
    return {
        "event": event.kind.value,
        "branch": event.branch,
        "tag": event.tag,
        "tags": list(event.tags),
        "sha": event.sha,
        "actor": event.actor,
        "message": event.message or "",
    }


def _paired(a: JobInstance, b: JobInstance) -> bool:
    shared = set(a.matrix) & set(b.matrix)
    return all(a.matrix[k] == b.matrix[k] for k in shared)


def build_graph(
    jobs: Sequence[JobDefinition],
    context: Mapping[str, Any],
    *,
    pairing: str = PAIRING_ALL,
) -> Dag:
    """
    Expand job definitions into the instance-level DAG.

    - validates ids, dependencies and acyclicity before creating anything
    - one instance per matrix coordinate
    - dependency edges are all-to-all, or paired by shared matrix axes
    - conditions are evaluated now; false -> instance pre-marked skipped
    """
    validate_jobs(jobs)

    conditions = {j.id: expr.parse(j.condition) if j.condition else None for j in jobs}

    instances: List[JobInstance] = []
    by_job: Dict[str, List[JobInstance]] = {}
    for job in jobs:
        by_job[job.id] = []
        for iid, coord in expand_instances(job):
            inst = JobInstance(id=iid, definition=job, coordinate=coord)
            cond = conditions[job.id]
            if cond is not None:
                ctx = dict(context)
                ctx["matrix"] = inst.matrix
                if not expr.evaluate(cond, ctx):
                    inst.status = JobStatus.SKIPPED
                    inst.detail = f"condition false: {job.condition}"
                    inst.finished_at = now_utc()
            instances.append(inst)
            by_job[job.id].append(inst)

    upstream: Dict[str, List[str]] = {}
    for job in jobs:
        policy = job.pairing or pairing
        for inst in by_job[job.id]:
            deps: List[str] = []
            for need in job.needs:
                candidates = by_job[need]
                if policy == PAIRING_PAIRED:
                    matched = [c for c in candidates if _paired(c, inst)]
                    # an unpaired coordinate still waits for the whole dependency
                    candidates = matched or candidates
                deps.extend(c.id for c in candidates if c.id not in deps)
            upstream[inst.id] = deps

    return Dag(instances, upstream)
