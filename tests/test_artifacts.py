from __future__ import annotations

import json
from datetime import timedelta

import pytest

from ciflow.artifacts import RETENTION_PERSIST, ArtifactStore, FileSystemSink
from ciflow.dag import build_graph, run_context
from ciflow.errors import ArtifactNotFound, DuplicateArtifact, ScopeViolation
from ciflow.model import now_utc

from _helpers import make_job, push


@pytest.fixture
def dag():
    jobs = [
        make_job("build"),
        make_job("test", needs=["build"]),
        make_job("deploy", needs=["test"]),
        make_job("lint"),
    ]
    return build_graph(jobs, run_context(push()))


@pytest.fixture
def store(dag):
    s = ArtifactStore()
    s.register_run("r1", dag)
    return s


def test_put_then_get_is_byte_identical(store):
    payload = b"\x00\x01binary\xff"
    stored = store.put("r1", "dist", "build", payload)
    fetched = store.get("r1", "dist", "test")
    assert fetched.payload == payload
    assert fetched.sha256 == stored.sha256
    assert fetched.size == len(payload)


def test_artifacts_are_write_once(store):
    store.put("r1", "dist", "build", b"a")
    with pytest.raises(DuplicateArtifact):
        store.put("r1", "dist", "test", b"b")
    assert store.get("r1", "dist", "build").payload == b"a"


def test_transitive_dependents_may_read(store):
    store.put("r1", "dist", "build", b"a")
    assert store.get("r1", "dist", "deploy").producer == "build"


def test_unrelated_consumer_is_a_scope_violation(store):
    store.put("r1", "dist", "build", b"a")
    with pytest.raises(ScopeViolation) as exc:
        store.get("r1", "dist", "lint")
    assert exc.value.details["producer"] == "build"


def test_upstream_cannot_read_downstream_output(store):
    store.put("r1", "report", "deploy", b"a")
    with pytest.raises(ScopeViolation):
        store.get("r1", "report", "build")


def test_missing_artifact(store):
    with pytest.raises(ArtifactNotFound):
        store.get("r1", "nope", "test")
    with pytest.raises(ArtifactNotFound):
        store.get("other-run", "nope", "test")


def test_runs_are_isolated(store, dag):
    store.register_run("r2", dag)
    store.put("r1", "dist", "build", b"a")
    store.put("r2", "dist", "build", b"b")
    assert store.get("r2", "dist", "test").payload == b"b"


def test_expired_artifact_is_not_found(dag):
    store = ArtifactStore(ttl=60)
    store.register_run("r1", dag)
    created = now_utc()
    store.put("r1", "dist", "build", b"a", created_at=created)
    assert store.get("r1", "dist", "test", at=created + timedelta(seconds=30))
    with pytest.raises(ArtifactNotFound):
        store.get("r1", "dist", "test", at=created + timedelta(seconds=61))


def test_discard_release_drops_payloads(store):
    store.put("r1", "dist", "build", b"a")
    released = store.release("r1")
    assert [a.name for a in released] == ["dist"]
    assert store.list("r1") == []


def test_persist_release_writes_files_and_manifest(dag, tmp_path):
    store = ArtifactStore(retention=RETENTION_PERSIST, sink=FileSystemSink(tmp_path))
    store.register_run("r1", dag)
    a = store.put("r1", "dist", "build", b"wheel-bytes")
    store.put("r1", "report", "test", b"<xml/>")

    store.release("r1")

    assert (tmp_path / "r1" / "dist").read_bytes() == b"wheel-bytes"
    manifest = json.loads((tmp_path / "r1" / "manifest.json").read_text(encoding="utf-8"))
    assert manifest["run_id"] == "r1"
    by_name = {m["name"]: m for m in manifest["artifacts"]}
    assert by_name["dist"]["sha256"] == a.sha256
    assert set(by_name) == {"dist", "report"}


def test_persist_requires_a_sink():
    with pytest.raises(ValueError):
        ArtifactStore(retention=RETENTION_PERSIST)


def test_fingerprint_depends_on_content(dag):
    s1, s2 = ArtifactStore(), ArtifactStore()
    for s, data in ((s1, b"a"), (s2, b"b")):
        s.register_run("r1", dag)
        s.put("r1", "dist", "build", data)
    assert s1.fingerprint("r1") != s2.fingerprint("r1")
    assert s1.fingerprint("r1") == s1.fingerprint("r1")
