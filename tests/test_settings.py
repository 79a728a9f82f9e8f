from __future__ import annotations

from pathlib import Path

import pytest

from ciflow.settings import Settings


def test_defaults():
    s = Settings.from_env({})
    assert s.concurrency >= 1
    assert s.job_timeout == 3600.0
    assert s.matrix_pairing == "all"
    assert s.artifact_retention == "discard"
    assert s.database_url is None
    assert s.fail_fast is False


def test_from_env():
    s = Settings.from_env(
        {
            "CIFLOW_CONCURRENCY": "3",
            "CIFLOW_JOB_TIMEOUT": "none",
            "CIFLOW_MATRIX_PAIRING": "paired",
            "CIFLOW_FAIL_FAST": "true",
            "CIFLOW_WORK_DIR": "/tmp/ciflow",
            "CIFLOW_ARTIFACT_RETENTION": "persist",
            "CIFLOW_ARTIFACT_TTL": "60",
            "CIFLOW_DATABASE_URL": "sqlite:///runs.db",
            "CIFLOW_PIPELINE": "ciflow.yml",
        }
    )
    assert s.concurrency == 3
    assert s.job_timeout is None
    assert s.matrix_pairing == "paired"
    assert s.fail_fast is True
    assert s.work_dir == Path("/tmp/ciflow")
    assert s.artifact_retention == "persist"
    assert s.artifact_ttl == 60.0
    assert s.database_url == "sqlite:///runs.db"
    assert s.pipeline == "ciflow.yml"


@pytest.mark.parametrize(
    "env",
    [
        {"CIFLOW_CONCURRENCY": "0"},
        {"CIFLOW_JOB_TIMEOUT": "0"},
        {"CIFLOW_MATRIX_PAIRING": "diagonal"},
        {"CIFLOW_ARTIFACT_RETENTION": "forever"},
    ],
)
def test_invalid_values(env):
    with pytest.raises(ValueError):
        Settings.from_env(env)


def test_with_overrides_ignores_none():
    s = Settings(concurrency=2).with_overrides(concurrency=None, fail_fast=True)
    assert s.concurrency == 2
    assert s.fail_fast is True
