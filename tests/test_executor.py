from __future__ import annotations

import threading
import time

import pytest

from ciflow.artifacts import ArtifactStore
from ciflow.dag import build_graph, run_context
from ciflow.executor import ExecutionContext, Executor, Outcome
from ciflow.scheduler import CancelToken

from _helpers import make_job, push

RUN_ID = "run-1"


@pytest.fixture
def store():
    return ArtifactStore()


def context(store, tmp_path, **kwargs):
    return ExecutionContext(run_id=RUN_ID, store=store, cancel=kwargs.pop("cancel", CancelToken()), work_root=tmp_path, **kwargs)


def graph(store, *jobs):
    dag = build_graph(list(jobs), run_context(push()))
    store.register_run(RUN_ID, dag)
    return dag


def test_steps_run_in_order_and_outputs_are_stored(store, tmp_path):
    dag = graph(
        store,
        make_job("build", "echo one > out.txt", "echo two >> out.txt", outputs={"report": "out.txt"}),
    )
    result = Executor().execute(dag.get("build"), context(store, tmp_path))

    assert result.outcome is Outcome.SUCCEEDED
    assert result.exit_code == 0
    [artifact] = result.artifacts
    assert artifact.name == "report"
    assert artifact.producer == "build"
    assert store.get(RUN_ID, "report", "build").payload == b"one\ntwo\n"


def test_failing_step_stops_the_job_and_stores_nothing(store, tmp_path):
    dag = graph(
        store,
        make_job("build", "echo partial > out.txt", "echo broken >&2; exit 3", "touch never", outputs={"report": "out.txt"}),
    )
    executor = Executor()
    ctx = context(store, tmp_path)
    result = executor.execute(dag.get("build"), ctx)

    assert result.outcome is Outcome.FAILED
    assert result.exit_code == 3
    assert "broken" in result.stderr
    assert store.list(RUN_ID) == []
    assert not (executor.workdir_for(dag.get("build"), ctx) / "never").exists()


def test_timeout_preempts_running_step(store, tmp_path):
    dag = graph(store, make_job("slow", "sleep 10", timeout=0.3))
    started = time.monotonic()
    result = Executor().execute(dag.get("slow"), context(store, tmp_path))

    assert result.outcome is Outcome.TIMED_OUT
    assert time.monotonic() - started < 5


def test_settings_timeout_applies_when_job_has_none(store, tmp_path):
    dag = graph(store, make_job("slow", "sleep 10"))
    result = Executor().execute(dag.get("slow"), context(store, tmp_path, timeout=0.3))
    assert result.outcome is Outcome.TIMED_OUT


def test_cancel_kills_running_step(store, tmp_path):
    dag = graph(store, make_job("slow", "sleep 10", "touch after"))
    token = CancelToken()
    threading.Timer(0.3, token.cancel).start()
    started = time.monotonic()
    result = Executor().execute(dag.get("slow"), context(store, tmp_path, cancel=token))

    assert result.outcome is Outcome.CANCELED
    assert time.monotonic() - started < 5


def test_inputs_are_downloaded_byte_identical(store, tmp_path):
    payload = bytes(range(256))
    dag = graph(
        store,
        make_job("build"),
        make_job("test", "cp report copy.bin", needs=["build"], inputs=["report"], outputs={"copy": "copy.bin"}),
    )
    store.put(RUN_ID, "report", "build", payload)

    result = Executor().execute(dag.get("test"), context(store, tmp_path))

    assert result.outcome is Outcome.SUCCEEDED
    assert store.get(RUN_ID, "copy", "test").payload == payload


def test_input_from_unrelated_job_is_a_scope_violation(store, tmp_path):
    dag = graph(store, make_job("build"), make_job("lint", inputs=["report"]))
    store.put(RUN_ID, "report", "build", b"data")

    result = Executor().execute(dag.get("lint"), context(store, tmp_path))

    assert result.outcome is Outcome.FAILED
    assert "ScopeViolation" in result.detail


def test_input_outside_workdir_is_refused(store, tmp_path):
    dag = graph(store, make_job("build"), make_job("test", needs=["build"], inputs=["../escape"]))
    store.put(RUN_ID, "../escape", "build", b"data")

    result = Executor().execute(dag.get("test"), context(store, tmp_path))

    assert result.outcome is Outcome.FAILED
    assert "outside the instance workdir" in result.detail
    assert not (tmp_path / RUN_ID / "escape").exists()


def test_missing_declared_output_fails(store, tmp_path):
    dag = graph(store, make_job("build", "true", outputs={"wheel": "dist/app.whl"}))
    result = Executor().execute(dag.get("build"), context(store, tmp_path))

    assert result.outcome is Outcome.FAILED
    assert "wheel" in result.detail


def test_output_name_already_in_run_fails(store, tmp_path):
    dag = graph(store, make_job("a", "echo x > f", outputs={"shared": "f"}))
    store.put(RUN_ID, "shared", "a", b"earlier")
    result = Executor().execute(dag.get("a"), context(store, tmp_path))
    assert result.outcome is Outcome.FAILED


def test_matrix_coordinate_is_exported(store, tmp_path):
    dag = graph(
        store,
        make_job("test", 'echo "$CIFLOW_MATRIX_OS-$CIFLOW_JOB" > env.txt', matrix={"os": ["linux"]}, outputs={"env": "env.txt"}),
    )
    result = Executor().execute(dag.get("test (os=linux)"), context(store, tmp_path))

    assert result.outcome is Outcome.SUCCEEDED
    assert store.get(RUN_ID, "env", "test (os=linux)").payload == b"linux-test\n"


def test_each_instance_gets_its_own_workdir(store, tmp_path):
    dag = graph(store, make_job("t", matrix={"n": [1, 2]}))
    executor = Executor()
    ctx = context(store, tmp_path)
    dirs = {executor.workdir_for(inst, ctx) for inst in dag}
    assert len(dirs) == 2
    assert all(d.parent == tmp_path / RUN_ID for d in dirs)
