"""Tests for configuration loading."""

from pathlib import Path

import pytest
import yaml

from vault_worker.config import (
    DEFAULT_DOCUPIPE_BASE_URL,
    Config,
    DocupipeConfig,
    SecurityConfig,
    create_default_config,
    load_config,
    normalise_base_url,
)

ENV_VARS = (
    "VAULT_STATE_DB",
    "VAULT_STORAGE_ROOT",
    "VAULT_QUEUE_DRIVER",
    "DOCUMENT_JOB_MAX_ATTEMPTS",
    "DOCUPIPE_API_KEY",
    "DOCUPIPE_BASE_URL",
    "DOCUPIPE_WORKFLOW_ID",
    "DOCUPIPE_POLL_INTERVAL_MS",
    "DOCUPIPE_POLL_TIMEOUT_MS",
    "SEC_HASH_PEPPER",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's environment out of these tests."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def write_config(path: Path, data: dict) -> Path:
    path.write_text(yaml.safe_dump(data))
    return path


class TestNormaliseBaseUrl:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("https://docupipe.test/api/v1/", "https://docupipe.test"),
            ("http://localhost:8080", "http://localhost:8080"),
            ("  https://docupipe.test  ", "https://docupipe.test"),
            ("not a url", DEFAULT_DOCUPIPE_BASE_URL),
            ("", DEFAULT_DOCUPIPE_BASE_URL),
            (None, DEFAULT_DOCUPIPE_BASE_URL),
        ],
    )
    def test_reduces_to_origin(self, value, expected):
        assert normalise_base_url(value) == expected


class TestLoadConfig:
    """Tests for YAML loading and environment overrides."""

    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "missing.yaml")

        assert config.queue.driver == "sqlite"
        assert config.pipeline.max_attempts == 5
        assert config.docupipe.base_url == DEFAULT_DOCUPIPE_BASE_URL
        assert config.queue.max_attempts == 5
        assert config.queue.stale_claim_minutes == 15
        assert config.state_db_path == Path("data/state.db")

    def test_values_from_file(self, tmp_path):
        path = write_config(
            tmp_path / "config.yaml",
            {
                "queue": {"driver": "Memory", "max_attempts": 8, "stale_claim_minutes": 30},
                "pipeline": {"max_attempts": 2, "classification_threshold": 0.7},
                "docupipe": {"base_url": "https://docupipe.test/v2", "api_key": "k"},
                "state_db_path": "/tmp/vault.db",
            },
        )

        config = load_config(path)

        assert config.queue.driver == "memory"
        assert config.queue.max_attempts == 8
        assert config.queue.stale_claim_minutes == 30
        assert config.pipeline.max_attempts == 2
        assert config.pipeline.classification_threshold == 0.7
        assert config.docupipe.base_url == "https://docupipe.test"
        assert config.docupipe.api_key == "k"
        assert config.state_db_path == Path("/tmp/vault.db")

    def test_environment_overrides_file(self, tmp_path, monkeypatch):
        path = write_config(tmp_path / "config.yaml", {"docupipe": {"api_key": "from-file"}})
        monkeypatch.setenv("DOCUPIPE_API_KEY", "from-env")
        monkeypatch.setenv("DOCUMENT_JOB_MAX_ATTEMPTS", "7")
        monkeypatch.setenv("SEC_HASH_PEPPER", "pepper")
        monkeypatch.setenv("VAULT_STORAGE_ROOT", "/srv/objects")

        config = load_config(path)

        assert config.docupipe.api_key == "from-env"
        assert config.pipeline.max_attempts == 7
        assert config.security.hash_pepper == "pepper"
        assert config.storage_root == Path("/srv/objects")

    def test_poll_durations_from_milliseconds(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DOCUPIPE_POLL_INTERVAL_MS", "250")
        monkeypatch.setenv("DOCUPIPE_POLL_TIMEOUT_MS", "90000")

        config = load_config(tmp_path / "missing.yaml")

        assert config.docupipe.poll_interval_seconds == 0.25
        assert config.docupipe.poll_timeout_seconds == 90.0

    def test_malformed_numbers_fall_back_to_defaults(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DOCUMENT_JOB_MAX_ATTEMPTS", "many")
        monkeypatch.setenv("DOCUPIPE_POLL_INTERVAL_MS", "soon")

        config = load_config(tmp_path / "missing.yaml")

        assert config.pipeline.max_attempts == 5
        assert config.docupipe.poll_interval_seconds == 5.0


class TestValidate:
    """Tests for Config.validate."""

    def test_valid_config(self, config):
        assert config.validate() == []

    def test_defaults_miss_secrets(self):
        errors = Config().validate()

        assert "docupipe.api_key is required" in errors
        assert "docupipe.workflow_id is required" in errors
        assert any("hash_pepper" in e for e in errors)

    def test_bad_values(self, config):
        config.queue.driver = "redis"
        config.queue.max_attempts = 0
        config.pipeline.max_attempts = 0
        config.pipeline.classification_threshold = 1.5

        errors = config.validate()

        assert len(errors) == 4
        assert "queue.max_attempts must be at least 1" in errors

    def test_timeout_shorter_than_interval(self):
        config = Config(
            docupipe=DocupipeConfig(
                api_key="k", workflow_id="w", poll_interval_seconds=10, poll_timeout_seconds=5
            ),
            security=SecurityConfig(hash_pepper="p"),
        )
        assert config.validate() == [
            "docupipe.poll_timeout_seconds must be >= poll_interval_seconds"
        ]


class TestDefaultConfigFile:
    def test_default_file_loads_and_has_no_secrets(self, tmp_path):
        path = tmp_path / "nested" / "config.yaml"

        create_default_config(path)
        config = load_config(path)

        assert path.exists()
        assert config.security.hash_pepper == ""
        assert config.pipeline.stale_claim_minutes == 15
        assert config.docupipe.poll_timeout_seconds == 600.0
