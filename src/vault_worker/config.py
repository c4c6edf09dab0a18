"""
Configuration management (SSOT).

This module defines ALL configuration for the vault worker.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- The Docupipe base URL is always reduced to its origin (scheme + host)
- The PII hash pepper is never written to the default config file
- Durations read from the environment in milliseconds are converted to seconds
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlsplit

import yaml

DEFAULT_DOCUPIPE_BASE_URL = "https://app.docupipe.ai"


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


def normalise_base_url(value: str | None) -> str:
    """Reduce a configured URL to its origin, falling back to the default."""
    if not value:
        return DEFAULT_DOCUPIPE_BASE_URL
    parts = urlsplit(value.strip())
    if not parts.scheme or not parts.netloc:
        return DEFAULT_DOCUPIPE_BASE_URL
    return f"{parts.scheme}://{parts.netloc}"


@dataclass
class QueueConfig:
    """Outbox queue settings."""

    # "sqlite" (durable) or "memory" (inline, no durability)
    driver: str = "sqlite"
    # Fixed poll tick per queue
    poll_interval_seconds: float = 1.0
    # Upper bound on the per-job retry delay
    max_backoff_seconds: float = 60.0
    # Claims after which a failing job is parked as failed
    max_attempts: int = 5
    # Processing jobs untouched for this long are reclaimable
    stale_claim_minutes: int = 15


@dataclass
class PipelineConfig:
    """Document pipeline settings."""

    max_attempts: int = 5
    base_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0
    poll_interval_seconds: float = 2.0
    # Sleep after an unexpected error in the loop itself
    error_sleep_seconds: float = 5.0
    # In-progress jobs without step progress for this long are reclaimable
    stale_claim_minutes: int = 15
    classification_threshold: float = 0.6
    schema_version: str = "v1"
    parser_version: str = "docupipe-v1"
    prompt_version: str = "none"
    model: str = "docupipe"


@dataclass
class DocupipeConfig:
    """Docupipe standardization service configuration."""

    base_url: str = DEFAULT_DOCUPIPE_BASE_URL
    api_key: str = ""
    workflow_id: str = ""
    poll_interval_seconds: float = 5.0
    poll_timeout_seconds: float = 600.0
    # Per-request HTTP timeout
    timeout_seconds: int = 30


@dataclass
class SecurityConfig:
    """PII handling settings."""

    # Pepper mixed into every PII hash; required for normalization
    hash_pepper: str = ""


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    queue: QueueConfig = field(default_factory=QueueConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    docupipe: DocupipeConfig = field(default_factory=DocupipeConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/state.db"))
    storage_root: Path = field(default_factory=lambda: Path("data/objects"))

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if self.queue.driver not in ("sqlite", "memory"):
            errors.append(f"queue.driver must be 'sqlite' or 'memory', got '{self.queue.driver}'")
        if self.queue.poll_interval_seconds <= 0:
            errors.append("queue.poll_interval_seconds must be positive")
        if self.queue.max_attempts < 1:
            errors.append("queue.max_attempts must be at least 1")
        if self.queue.stale_claim_minutes < 1:
            errors.append("queue.stale_claim_minutes must be at least 1")

        if self.pipeline.max_attempts < 1:
            errors.append("pipeline.max_attempts must be at least 1")
        if self.pipeline.base_backoff_seconds > self.pipeline.max_backoff_seconds:
            errors.append("pipeline.base_backoff_seconds must be <= max_backoff_seconds")
        if not 0.0 <= self.pipeline.classification_threshold <= 1.0:
            errors.append("pipeline.classification_threshold must be between 0 and 1")
        if self.pipeline.stale_claim_minutes < 1:
            errors.append("pipeline.stale_claim_minutes must be at least 1")

        if not self.docupipe.api_key:
            errors.append("docupipe.api_key is required")
        if not self.docupipe.workflow_id:
            errors.append("docupipe.workflow_id is required")
        if self.docupipe.poll_timeout_seconds < self.docupipe.poll_interval_seconds:
            errors.append("docupipe.poll_timeout_seconds must be >= poll_interval_seconds")

        if not self.security.hash_pepper:
            errors.append("security.hash_pepper is required (or set SEC_HASH_PEPPER)")

        return errors


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name, "")
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_millis(name: str, default_seconds: float) -> float:
    value = os.environ.get(name, "")
    if not value:
        return default_seconds
    try:
        return int(value) / 1000.0
    except ValueError:
        return default_seconds


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - VAULT_STATE_DB
    - VAULT_STORAGE_ROOT
    - VAULT_QUEUE_DRIVER (sqlite/memory)
    - DOCUMENT_JOB_MAX_ATTEMPTS
    - DOCUPIPE_API_KEY
    - DOCUPIPE_BASE_URL
    - DOCUPIPE_WORKFLOW_ID
    - DOCUPIPE_POLL_INTERVAL_MS
    - DOCUPIPE_POLL_TIMEOUT_MS
    - SEC_HASH_PEPPER
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    # Queue config
    queue_data = data.get("queue", {})
    queue = QueueConfig(
        driver=os.environ.get("VAULT_QUEUE_DRIVER", queue_data.get("driver", "sqlite")).lower(),
        poll_interval_seconds=float(queue_data.get("poll_interval_seconds", 1.0)),
        max_backoff_seconds=float(queue_data.get("max_backoff_seconds", 60.0)),
        max_attempts=int(queue_data.get("max_attempts", 5)),
        stale_claim_minutes=int(queue_data.get("stale_claim_minutes", 15)),
    )

    # Pipeline config
    pipeline_data = data.get("pipeline", {})
    pipeline = PipelineConfig(
        max_attempts=_env_int(
            "DOCUMENT_JOB_MAX_ATTEMPTS", int(pipeline_data.get("max_attempts", 5))
        ),
        base_backoff_seconds=float(pipeline_data.get("base_backoff_seconds", 1.0)),
        max_backoff_seconds=float(pipeline_data.get("max_backoff_seconds", 30.0)),
        poll_interval_seconds=float(pipeline_data.get("poll_interval_seconds", 2.0)),
        error_sleep_seconds=float(pipeline_data.get("error_sleep_seconds", 5.0)),
        stale_claim_minutes=int(pipeline_data.get("stale_claim_minutes", 15)),
        classification_threshold=float(pipeline_data.get("classification_threshold", 0.6)),
        schema_version=str(pipeline_data.get("schema_version", "v1")),
        parser_version=str(pipeline_data.get("parser_version", "docupipe-v1")),
        prompt_version=str(pipeline_data.get("prompt_version", "none")),
        model=str(pipeline_data.get("model", "docupipe")),
    )

    # Docupipe config
    docupipe_data = data.get("docupipe", {})
    docupipe = DocupipeConfig(
        base_url=normalise_base_url(
            os.environ.get("DOCUPIPE_BASE_URL", docupipe_data.get("base_url"))
        ),
        api_key=os.environ.get("DOCUPIPE_API_KEY", docupipe_data.get("api_key", "")),
        workflow_id=os.environ.get("DOCUPIPE_WORKFLOW_ID", docupipe_data.get("workflow_id", "")),
        poll_interval_seconds=_env_millis(
            "DOCUPIPE_POLL_INTERVAL_MS", float(docupipe_data.get("poll_interval_seconds", 5.0))
        ),
        poll_timeout_seconds=_env_millis(
            "DOCUPIPE_POLL_TIMEOUT_MS", float(docupipe_data.get("poll_timeout_seconds", 600.0))
        ),
        timeout_seconds=int(docupipe_data.get("timeout_seconds", 30)),
    )

    # Security config
    security_data = data.get("security", {})
    security = SecurityConfig(
        hash_pepper=os.environ.get("SEC_HASH_PEPPER", security_data.get("hash_pepper", "")),
    )

    state_db = os.environ.get("VAULT_STATE_DB", data.get("state_db_path", "data/state.db"))
    storage_root = os.environ.get(
        "VAULT_STORAGE_ROOT", data.get("storage_root", "data/objects")
    )

    return Config(
        queue=queue,
        pipeline=pipeline,
        docupipe=docupipe,
        security=security,
        state_db_path=Path(state_db),
        storage_root=Path(storage_root),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Vault Worker Configuration
#
# Secrets (Docupipe API key, PII hash pepper) are best supplied through
# DOCUPIPE_API_KEY and SEC_HASH_PEPPER instead of this file.

queue:
  driver: "sqlite"                  # sqlite (durable) or memory (inline, tests only)
  poll_interval_seconds: 1.0        # Fixed poll tick per queue
  max_backoff_seconds: 60           # Cap on per-job retry delay
  max_attempts: 5                   # Claims before a failing job is parked as failed
  stale_claim_minutes: 15           # Reclaim processing jobs from crashed workers

pipeline:
  max_attempts: 5                   # Attempts before a document is dead-lettered
  base_backoff_seconds: 1           # First retry delay, doubled per attempt
  max_backoff_seconds: 30
  poll_interval_seconds: 2
  error_sleep_seconds: 5            # Pause after an unexpected loop error
  stale_claim_minutes: 15           # Reclaim in-progress jobs without progress
  classification_threshold: 0.6
  schema_version: "v1"

docupipe:
  base_url: "https://app.docupipe.ai"
  api_key: ""
  workflow_id: ""
  poll_interval_seconds: 5
  poll_timeout_seconds: 600
  timeout_seconds: 30

security:
  hash_pepper: ""                   # Set SEC_HASH_PEPPER instead

# State database path
state_db_path: "data/state.db"

# Object storage root (uploaded files)
storage_root: "data/objects"
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
