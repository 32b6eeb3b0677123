"""
attestlog Configuration Module

Provides configuration models and loading for attestlog.yaml config files.

Example attestlog.yaml:
    version: "1.0"
    backend:
      type: "sqlite"
      path: "~/.attestlog/attestlog.db"
    submission:
      chunking: true
      max_chunks: 20
      deadline: 30
    retry:
      max_retries: 3
      base_delay: 1.0
      max_delay: 30.0
    fetch:
      page_limit: 100
      chunk_wait: 5
    verification:
      stop_at_first_break: false
    builder:
      sensitive_keys: ["prompt", "email"]
      strict_payloads: true

Usage:
    from attestlog.config import load_config

    config = load_config()                         # Auto-load ./attestlog.yaml
    config = load_config("path/to/attestlog.yaml") # Explicit path
"""

from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator

from attestlog.models import SCHEMA_VERSION
from attestlog.wire import DEFAULT_MAX_CHUNKS, DEFAULT_MAX_MESSAGE_BYTES


class BackendConfig(BaseModel):
    """Log service backend configuration."""

    type: Literal["memory", "sqlite", "jsonl", "http"] = Field(
        default="memory",
        description=(
            "Backend: 'memory' (in-process), 'sqlite', 'jsonl' "
            "(append-only JSON Lines) or 'http' (mirror-node style REST API)"
        ),
    )
    path: Optional[str] = Field(
        default=None,
        description=(
            "Storage path. For sqlite: .db file path. "
            "For jsonl: directory containing .jsonl files. "
            "Default: ~/.attestlog"
        ),
    )
    base_url: Optional[str] = Field(default=None, description="Base URL for the http backend")
    api_key: Optional[str] = Field(default=None, description="API key for the http backend")
    timeout: float = Field(default=30.0, gt=0, description="HTTP request timeout in seconds")
    max_message_bytes: int = Field(
        default=DEFAULT_MAX_MESSAGE_BYTES,
        gt=0,
        description="Largest single message the service accepts",
    )
    max_submissions_per_second: Optional[int] = Field(
        default=None,
        gt=0,
        description="Throttle for local backends (unset = unlimited)",
    )


class SubmissionConfig(BaseModel):
    """Submitter settings."""

    max_message_bytes: Optional[int] = Field(
        default=None,
        gt=0,
        description="Per-message limit used for chunking. Default: the backend's",
    )
    chunking: bool = Field(
        default=True,
        description="Split oversized records into chunk groups instead of rejecting them",
    )
    max_chunks: int = Field(default=DEFAULT_MAX_CHUNKS, ge=1)
    deadline: Optional[float] = Field(
        default=None,
        gt=0,
        description="Overall deadline in seconds for one submission (unset = none)",
    )


class RetryConfig(BaseModel):
    """Backoff policy for transient log service errors."""

    max_retries: int = Field(default=3, ge=0)
    base_delay: float = Field(default=1.0, ge=0.0)
    max_delay: float = Field(default=30.0, ge=0.0)

    @model_validator(mode="after")
    def _base_within_max(self) -> "RetryConfig":
        if self.base_delay > self.max_delay:
            raise ValueError(
                f"base_delay ({self.base_delay}) must be <= max_delay ({self.max_delay})"
            )
        return self


class FetchConfig(BaseModel):
    """Fetcher settings."""

    page_limit: int = Field(default=100, ge=1, le=100)
    request_timeout: Optional[float] = Field(
        default=None, gt=0, description="Deadline in seconds per page request"
    )
    chunk_wait: Optional[float] = Field(
        default=None,
        ge=0,
        description="Seconds to keep polling for incomplete chunk groups",
    )
    poll_interval: float = Field(default=1.0, gt=0)


class VerificationConfig(BaseModel):
    """Chain verifier settings."""

    stop_at_first_break: bool = Field(default=False)
    require_contiguous: bool = Field(
        default=False,
        description="Report sequence gaps. Only for logs dedicated to one subject",
    )


class BuilderConfig(BaseModel):
    """Record builder settings."""

    schema_version: str = Field(default=SCHEMA_VERSION, pattern=r"^\d+\.\d+$")
    sensitive_keys: list[str] = Field(
        default_factory=list,
        description="Payload keys replaced by sha256:<hex> references before hashing",
    )
    strict_payloads: bool = Field(
        default=False, description="Enforce the minimum payload keys for each kind"
    )


class AttestLogConfig(BaseModel):
    """Root configuration model for attestlog."""

    version: str = Field(default="1.0", description="Config schema version")
    backend: BackendConfig = Field(default_factory=BackendConfig)
    submission: SubmissionConfig = Field(default_factory=SubmissionConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)
    builder: BuilderConfig = Field(default_factory=BuilderConfig)


def load_config(path: Optional[str] = None) -> AttestLogConfig:
    """
    Load configuration from a YAML file.

    Args:
        path: Explicit path to config file. If None, looks for ./attestlog.yaml

    Returns:
        AttestLogConfig instance (defaults if no config file found)
    """
    if path:
        config_path = Path(path)
    else:
        config_path = Path("attestlog.yaml")

    if config_path.exists():
        import yaml

        with open(config_path) as f:
            data = yaml.safe_load(f)

        if data:
            return AttestLogConfig(**data)

    return AttestLogConfig()
