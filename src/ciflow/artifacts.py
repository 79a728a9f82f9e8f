# artifacts.py
from __future__ import annotations

import hashlib
import json
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from .errors import ArtifactNotFound, DuplicateArtifact, ScopeViolation
from .model import Artifact, now_utc

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Artifacts are keyed by (run_id, name) and written exactly once.
# A consumer may read an artifact only if it (transitively) depends on
# the producing instance in the run's DAG.
#
# On run completion `release(run_id)` applies the retention policy:
#   - "discard": payloads are dropped
#   - "persist": payloads are flushed to an ArtifactSink first
#
# Example usage:
#   store = ArtifactStore(retention="persist", sink=FileSystemSink(".ciflow/artifacts"))
#   store.register_run(run_id, dag)
#   store.put(run_id, "dist", "build", b"...")
#   store.get(run_id, "dist", "deploy").payload
#   store.release(run_id)
# ---------------------------------------------------------------------

RETENTION_DISCARD = "discard"
RETENTION_PERSIST = "persist"


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class ScopeGraph(Protocol):
    def __contains__(self, iid: object) -> bool: ...
    def is_dependent(self, producer: str, consumer: str) -> bool: ...


class ArtifactSink(Protocol):
    """External persistent storage for artifacts retained past the run."""

    def write(self, run_id: str, name: str, payload: bytes, sha256: str) -> None: ...

    def finalize(self, run_id: str, artifacts: List[Artifact]) -> None: ...


class FileSystemSink:
    """
    File-based artifact sink:
      root/
        <run_id>/
          <name>
          manifest.json
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()

    def _run_dir(self, run_id: str) -> Path:
        d = self.root / run_id
        d.mkdir(parents=True, exist_ok=True)
        return d

    def write(self, run_id: str, name: str, payload: bytes, sha256: str) -> None:
        target = self._run_dir(run_id) / name
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".tmp")
        try:
            # write to tmp, then atomic rename
            tmp.write_bytes(payload)
            tmp.replace(target)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

    def finalize(self, run_id: str, artifacts: List[Artifact]) -> None:
        manifest = {
            "run_id": run_id,
            "artifacts": [a.describe() for a in artifacts],
        }
        (self._run_dir(run_id) / "manifest.json").write_text(
            json.dumps(manifest, sort_keys=True, indent=2, ensure_ascii=False),
            encoding="utf-8",
        )


@dataclass
class _RunArtifacts:
    graph: Optional[ScopeGraph]
    items: Dict[str, Artifact]


class ArtifactStore:
    """
    Thread-safe, run-scoped, write-once artifact store.

    Payloads are immutable bytes, so concurrent readers share them freely.
    """

    def __init__(
        self,
        *,
        retention: str = RETENTION_DISCARD,
        sink: Optional[ArtifactSink] = None,
        ttl: Optional[float] = None,
    ):
        if retention not in (RETENTION_DISCARD, RETENTION_PERSIST):
            raise ValueError(f"Unknown artifact retention policy: {retention!r}")
        if retention == RETENTION_PERSIST and sink is None:
            raise ValueError("retention='persist' requires an artifact sink")
        self.retention = retention
        self.sink = sink
        self.ttl = ttl
        self._runs: Dict[str, _RunArtifacts] = {}
        self._lock = threading.Lock()

    def register_run(self, run_id: str, graph: Optional[ScopeGraph] = None) -> None:
        with self._lock:
            self._runs.setdefault(run_id, _RunArtifacts(graph=graph, items={}))

    def _run(self, run_id: str) -> _RunArtifacts:
        run = self._runs.get(run_id)
        if run is None:
            run = self._runs[run_id] = _RunArtifacts(graph=None, items={})
        return run

    def put(
        self,
        run_id: str,
        name: str,
        producer: str,
        payload: bytes,
        *,
        created_at: Optional[datetime] = None,
    ) -> Artifact:
        created = created_at or now_utc()
        artifact = Artifact(
            run_id=run_id,
            producer=producer,
            name=name,
            payload=bytes(payload),
            sha256=_sha256_bytes(payload),
            created_at=created,
            expires_at=created + timedelta(seconds=self.ttl) if self.ttl else None,
        )
        with self._lock:
            run = self._run(run_id)
            existing = run.items.get(name)
            if existing is not None:
                raise DuplicateArtifact(
                    kind="DuplicateArtifact",
                    message=f"Artifact '{name}' already exists in run {run_id}",
                    details={"producer": existing.producer, "attempted_by": producer},
                )
            run.items[name] = artifact
        return artifact

    def get(self, run_id: str, name: str, consumer: str, *, at: Optional[datetime] = None) -> Artifact:
        with self._lock:
            run = self._runs.get(run_id)
            artifact = run.items.get(name) if run else None
            graph = run.graph if run else None

        if artifact is None or artifact.expired(at):
            raise ArtifactNotFound(
                kind="NotFound",
                message=f"Artifact '{name}' not found in run {run_id}",
                details={"consumer": consumer, "expired": artifact is not None},
            )

        if graph is not None and consumer != artifact.producer:
            if consumer not in graph or not graph.is_dependent(artifact.producer, consumer):
                raise ScopeViolation(
                    kind="ScopeViolation",
                    message=f"'{consumer}' does not depend on producer '{artifact.producer}' of '{name}'",
                    details={"artifact": name, "producer": artifact.producer, "consumer": consumer},
                )
        return artifact

    def list(self, run_id: str) -> List[Artifact]:
        with self._lock:
            run = self._runs.get(run_id)
            return list(run.items.values()) if run else []

    def release(self, run_id: str) -> List[Artifact]:
        """
        Apply the retention policy for a finished run and drop its payloads.
        Returns the artifacts that were held.
        """
        with self._lock:
            run = self._runs.pop(run_id, None)
        artifacts = list(run.items.values()) if run else []

        if self.retention == RETENTION_PERSIST and self.sink is not None and artifacts:
            for a in artifacts:
                self.sink.write(run_id, a.name, a.payload, a.sha256)
            self.sink.finalize(run_id, artifacts)
        return artifacts

    def fingerprint(self, run_id: str) -> str:
        """Stable hash over the run's artifact names and content hashes."""
        items = sorted((a.name, a.sha256) for a in self.list(run_id))
        return _sha256_bytes(_json_dumps_stable(items).encode("utf-8"))
