from __future__ import annotations

import textwrap

import pytest

from ciflow.errors import (
    ConfigError,
    CYCLIC_DEPENDENCY,
    EMPTY_MATRIX,
    MALFORMED_CONDITION,
    MALFORMED_CRON,
    MALFORMED_DOCUMENT,
)
from ciflow.loader import find_pipeline_files, load_pipeline, pipeline_from_dict
from ciflow.model import PAIRING_PAIRED, EventKind


def write(tmp_path, name, text):
    path = tmp_path / name
    path.write_text(textwrap.dedent(text), encoding="utf-8")
    return path


PIPELINE = """
    name: app
    on:
      push:
        branches: [main]
        branches_ignore: ["wip/*"]
      pull_request: main
      schedule:
        - cron: "0 3 * * *"
      tag:
        tags: ["v*"]
    pairing: paired
    jobs:
      lint:
        steps:
          - ruff check .
      test:
        needs: lint
        strategy:
          matrix:
            python: ["3.11", "3.12"]
          exclude:
            - python: "3.11"
        if: "branch == 'main'"
        timeout: 120
        steps:
          - name: pytest
            run: pytest -q
            env: {PYTHONHASHSEED: 0}
        outputs:
          report: report.xml
      deploy:
        needs: [test]
        required: false
        inputs: [report]
        steps:
          - run: ./deploy.sh
"""


def test_load_yaml_document(tmp_path):
    config = load_pipeline(write(tmp_path, "ciflow.yml", PIPELINE))

    assert config.name == "app"
    assert config.pairing == PAIRING_PAIRED
    kinds = [r.kind for r in config.triggers]
    assert kinds == [EventKind.PUSH, EventKind.PULL_REQUEST, EventKind.TAG, EventKind.SCHEDULE]
    assert config.triggers[0].branches_ignore == ("wip/*",)
    assert config.triggers[1].branches == ("main",)
    assert config.triggers[3].cron == "0 3 * * *"

    lint, test, deploy = config.jobs
    assert lint.steps[0].run == "ruff check ."
    assert test.needs == ["lint"]
    assert test.matrix == {"python": ["3.11", "3.12"]}
    assert test.exclude == [{"python": "3.11"}]
    assert test.condition == "branch == 'main'"
    assert test.timeout == 120
    assert test.steps[0].env == {"PYTHONHASHSEED": "0"}
    assert test.outputs == {"report": "report.xml"}
    assert deploy.required is False
    assert deploy.inputs == ["report"]
    assert deploy.steps[0].name == "./deploy.sh"


def test_triggers_key_is_accepted():
    config = pipeline_from_dict(
        {"triggers": {"push": None}, "jobs": {"a": {"steps": ["true"]}}}
    )
    assert config.triggers[0].kind is EventKind.PUSH
    assert config.triggers[0].branches == ()


@pytest.mark.parametrize(
    "doc, kind",
    [
        ({"jobs": {"a": {"steps": ["true"], "needs": ["a"]}}}, CYCLIC_DEPENDENCY),
        ({"jobs": {"a": {"steps": ["true"], "strategy": {"matrix": {"x": []}}}}}, EMPTY_MATRIX),
        ({"jobs": {"a": {"steps": ["true"], "if": "branch =="}}}, MALFORMED_CONDITION),
        ({"on": {"schedule": "61 * * * *"}, "jobs": {"a": {"steps": ["true"]}}}, MALFORMED_CRON),
        ({"jobs": {"a": {"steps": []}}}, MALFORMED_DOCUMENT),
        ({"jobs": {"a": {"steps": ["true"], "colour": "red"}}}, MALFORMED_DOCUMENT),
        ({"jobs": {"a": {"steps": ["true"], "strategy": {"pairing": "diagonal"}}}}, MALFORMED_DOCUMENT),
        ({"name": "no jobs"}, MALFORMED_DOCUMENT),
        ({"jobs": {"a": {"steps": ["true"], "timeout": 0}}}, MALFORMED_DOCUMENT),
        ({"jobs": {"a": {"steps": ["true"], "inputs": ["../x"]}}}, MALFORMED_DOCUMENT),
        ({"jobs": {"a": {"steps": ["true"], "outputs": {"r": "/etc/passwd"}}}}, MALFORMED_DOCUMENT),
        (
            {"jobs": {"a": {"steps": ["true"], "strategy": {"matrix": {"py": ["3.11", "3.12"]}}, "outputs": {"r": "r.xml"}}}},
            MALFORMED_DOCUMENT,
        ),
        ({"jobs": {"a": {"steps": ["true"], "strategy": {"matrix": {"v": [1, "1"]}}}}}, MALFORMED_DOCUMENT),
        (["not", "a", "mapping"], MALFORMED_DOCUMENT),
    ],
)
def test_invalid_documents(doc, kind):
    with pytest.raises(ConfigError) as exc:
        pipeline_from_dict(doc)
    assert exc.value.kind == kind


def test_yaml_syntax_error(tmp_path):
    with pytest.raises(ConfigError) as exc:
        load_pipeline(write(tmp_path, "ciflow.yml", "jobs: [unclosed"))
    assert exc.value.kind == MALFORMED_DOCUMENT


def test_empty_yaml(tmp_path):
    with pytest.raises(ConfigError):
        load_pipeline(write(tmp_path, "ciflow.yml", ""))


def test_unsupported_extension(tmp_path):
    with pytest.raises(ConfigError):
        load_pipeline(write(tmp_path, "pipeline.toml", "x = 1"))


def test_load_python_workflow(tmp_path):
    path = write(
        tmp_path,
        "app_workflow.py",
        """
        from ciflow.dsl import job, matrix, on_push, pipeline, sh, wf

        def workflow():
            return pipeline(
                "py-app",
                triggers=[on_push("main")],
                jobs=wf(
                    job("lint", sh("Ruff", "ruff check .")),
                    job("test", sh("Pytest", "pytest"), needs=["lint"], matrix=matrix("py", ["3.11", "3.12"])),
                ),
            )
        """,
    )
    config = load_pipeline(path)
    assert config.name == "py-app"
    assert [j.id for j in config.jobs] == ["lint", "test"]
    assert config.jobs[1].matrix == {"py": ["3.11", "3.12"]}


def test_python_workflow_with_pipeline_constant(tmp_path):
    path = write(
        tmp_path,
        "const_workflow.py",
        """
        from ciflow.dsl import job, on_tag, pipeline, sh

        PIPELINE = pipeline("const", triggers=[on_tag("v*")], jobs=[job("a", sh("a", "true"))])
        """,
    )
    assert load_pipeline(path).triggers[0].kind is EventKind.TAG


def test_python_workflow_must_return_a_pipeline(tmp_path):
    path = write(tmp_path, "bad_workflow.py", "def workflow():\n    return []\n")
    with pytest.raises(ConfigError) as exc:
        load_pipeline(path)
    assert exc.value.kind == MALFORMED_DOCUMENT


def test_find_pipeline_files(tmp_path):
    write(tmp_path, "ciflow.yml", PIPELINE)
    write(tmp_path, "extra_workflow.py", "")
    write(tmp_path, "notes.py", "")
    assert [p.name for p in find_pipeline_files(tmp_path)] == ["ciflow.yml", "extra_workflow.py"]


@pytest.mark.parametrize(
    "source, fragment",
    [
        ("def workflow(:\n    pass\n", "SyntaxError"),
        ("import ciflow_no_such_module\n", "ModuleNotFoundError"),
        (
            "from ciflow.dsl import job\n\ndef workflow():\n    return job('empty')\n",
            "workflow() raised ValueError",
        ),
    ],
)
def test_broken_python_workflow_is_a_config_error(tmp_path, source, fragment):
    path = write(tmp_path, "broken_workflow.py", source)
    with pytest.raises(ConfigError) as exc:
        load_pipeline(path)
    assert exc.value.kind == MALFORMED_DOCUMENT
    assert fragment in exc.value.message
