from __future__ import annotations

import pytest

from ciflow.dsl import Matrix, build, job, matrix, on_pull_request, on_push, on_schedule, on_tag, pipeline, sh, wf
from ciflow.model import PAIRING_PAIRED, EventKind


def test_job_helper():
    j = job(
        "test",
        sh("Install", "pip install -e ."),
        sh("Run", "pytest", cwd="pkg"),
        needs=["lint"],
        matrix=matrix("py", ["3.11", "3.12"]).axis("os", ["linux"]).exclude(py="3.11"),
        paired=True,
        when="branch == 'main'",
        outputs={"report": "report.xml"},
        env={"CI": 1},
        cwd="src",
    )
    assert [s.cwd for s in j.steps] == ["src", "pkg"]
    assert j.needs == ["lint"]
    assert j.matrix == {"py": ["3.11", "3.12"], "os": ["linux"]}
    assert j.exclude == [{"py": "3.11"}]
    assert j.pairing == PAIRING_PAIRED
    assert j.condition == "branch == 'main'"
    assert j.env == {"CI": "1"}


def test_job_matrix_from_dict():
    j = job("t", sh("a", "true"), matrix={"n": range(3)})
    assert j.matrix == {"n": [0, 1, 2]}
    assert j.pairing is None


def test_job_needs_a_step():
    with pytest.raises(ValueError):
        job("empty")


def test_builder():
    j = (
        build("deploy")
        .depends_on("build")
        .define_step("Upload", "./upload.sh")
        .with_inputs("wheel")
        .with_env(TARGET="prod")
        .with_matrix("region", ["eu", "us"])
        .when("event == 'tag'")
        .with_timeout(60)
        .optional()
        .build()
    )
    assert j.id == "deploy"
    assert j.needs == ["build"]
    assert j.inputs == ["wheel"]
    assert j.env == {"TARGET": "prod"}
    assert j.matrix == {"region": ["eu", "us"]}
    assert j.condition == "event == 'tag'"
    assert j.timeout == 60
    assert j.required is False


def test_builder_needs_a_step():
    with pytest.raises(ValueError):
        build("empty").build()


def test_pipeline_and_triggers():
    config = pipeline(
        "app",
        triggers=[on_push("main", ignore=["wip/*"]), on_pull_request("main"), on_tag("v*"), on_schedule("0 3 * * *")],
        jobs=wf(job("a", sh("a", "true"))),
    )
    assert [t.kind for t in config.triggers] == [
        EventKind.PUSH,
        EventKind.PULL_REQUEST,
        EventKind.TAG,
        EventKind.SCHEDULE,
    ]
    assert config.triggers[0].branches_ignore == ("wip/*",)
    assert isinstance(Matrix().axis("x", [1]), Matrix)
