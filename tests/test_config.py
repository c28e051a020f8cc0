"""Tests for environment-driven settings."""

from pathlib import Path

import pytest

from mediaflow.config import DEFAULT_STORE_DIR, DEFAULT_WORKER_TIMEOUT, Settings


def test_defaults() -> None:
    settings = Settings.from_env(environ={}, dotenv_path=None)
    assert settings.store_dir == Path(DEFAULT_STORE_DIR)
    assert settings.worker_endpoints == {}
    assert settings.worker_timeout == DEFAULT_WORKER_TIMEOUT
    assert settings.wait_overrides == {}
    assert settings.concurrency_overrides == {}
    assert settings.execution_timeout is None


def test_reads_prefixed_variables() -> None:
    settings = Settings.from_env(
        environ={
            "MEDIAFLOW_STORE_DIR": "/var/lib/mediaflow",
            "MEDIAFLOW_WORKER_ENDPOINTS": '{"thumbnail": "http://localhost:9001/invoke"}',
            "MEDIAFLOW_WORKER_TIMEOUT": "30",
            "MEDIAFLOW_WAIT_OVERRIDES": '{"TriageProcessingWait": 5}',
            "MEDIAFLOW_CONCURRENCY_OVERRIDES": '{"ThumbnailMap": 8}',
            "MEDIAFLOW_EXECUTION_TIMEOUT": "3600",
            "UNRELATED": "ignored",
        },
        dotenv_path=None,
    )
    assert settings.store_dir == Path("/var/lib/mediaflow")
    assert settings.worker_endpoints == {"thumbnail": "http://localhost:9001/invoke"}
    assert settings.worker_timeout == 30.0
    assert settings.wait_overrides == {"TriageProcessingWait": 5.0}
    assert settings.concurrency_overrides == {"ThumbnailMap": 8}
    assert settings.execution_timeout == 3600.0


@pytest.mark.parametrize(
    "key, value",
    [
        ("MEDIAFLOW_WORKER_TIMEOUT", "soon"),
        ("MEDIAFLOW_EXECUTION_TIMEOUT", "-1"),
        ("MEDIAFLOW_WORKER_ENDPOINTS", "not json"),
        ("MEDIAFLOW_WAIT_OVERRIDES", "[1, 2]"),
        ("MEDIAFLOW_WAIT_OVERRIDES", '{"Wait": "long"}'),
        ("MEDIAFLOW_CONCURRENCY_OVERRIDES", '{"ThumbnailMap": 2.5}'),
        ("MEDIAFLOW_CONCURRENCY_OVERRIDES", '{"ThumbnailMap": true}'),
        ("MEDIAFLOW_CONCURRENCY_OVERRIDES", '{"ThumbnailMap": 0}'),
    ],
)
def test_invalid_values_name_the_variable(key, value) -> None:
    with pytest.raises(ValueError, match=key):
        Settings.from_env(environ={key: value}, dotenv_path=None)


def test_dotenv_file_is_loaded(tmp_path, monkeypatch) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("MEDIAFLOW_WORKER_TIMEOUT=12\n")
    monkeypatch.delenv("MEDIAFLOW_WORKER_TIMEOUT", raising=False)

    settings = Settings.from_env(dotenv_path=env_file)

    assert settings.worker_timeout == 12.0
    monkeypatch.delenv("MEDIAFLOW_WORKER_TIMEOUT", raising=False)
