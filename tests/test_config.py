"""
Tests for configuration loading (attestlog/config.py).
"""

from pathlib import Path

import pytest
from pydantic import ValidationError as PydanticValidationError

from attestlog.config import AttestLogConfig, FetchConfig, RetryConfig, load_config


def _write(tmp_path: Path, content: str) -> str:
    config_path = tmp_path / "attestlog.yaml"
    config_path.write_text(content)
    return str(config_path)


class TestConfigLoading:
    """Tests for attestlog.yaml configuration loading."""

    def test_load_config_default(self):
        """Loading config without file returns defaults."""
        config = load_config("/nonexistent/path/attestlog.yaml")

        assert config.version == "1.0"
        assert config.backend.type == "memory"
        assert config.backend.max_message_bytes == 1024
        assert config.submission.chunking is True
        assert config.submission.max_chunks == 20
        assert config.retry.max_retries == 3
        assert config.fetch.page_limit == 100
        assert config.fetch.chunk_wait is None
        assert config.verification.stop_at_first_break is False
        assert config.builder.schema_version == "1.0"
        assert config.builder.sensitive_keys == []

    def test_load_config_full(self, tmp_path: Path):
        path = _write(
            tmp_path,
            """
version: "1.0"
backend:
  type: "sqlite"
  path: "/tmp/audit.db"
  max_submissions_per_second: 50
submission:
  chunking: false
  deadline: 30
retry:
  max_retries: 5
  base_delay: 0.5
  max_delay: 10
fetch:
  page_limit: 25
  chunk_wait: 2.5
verification:
  stop_at_first_break: true
  require_contiguous: true
builder:
  sensitive_keys: ["prompt", "email"]
  strict_payloads: true
""",
        )

        config = load_config(path)

        assert config.backend.type == "sqlite"
        assert config.backend.path == "/tmp/audit.db"
        assert config.backend.max_submissions_per_second == 50
        assert config.submission.chunking is False
        assert config.submission.deadline == 30.0
        assert config.retry.max_retries == 5
        assert config.retry.base_delay == 0.5
        assert config.fetch.page_limit == 25
        assert config.fetch.chunk_wait == 2.5
        assert config.verification.require_contiguous is True
        assert config.builder.sensitive_keys == ["prompt", "email"]
        assert config.builder.strict_payloads is True

    def test_load_config_partial(self, tmp_path: Path):
        """Sections not in the file keep their defaults."""
        config = load_config(_write(tmp_path, "backend:\n  type: jsonl\n"))

        assert config.backend.type == "jsonl"
        assert config.retry.max_retries == 3
        assert config.fetch.page_limit == 100

    def test_load_empty_file(self, tmp_path: Path):
        config = load_config(_write(tmp_path, ""))
        assert config == AttestLogConfig()

    def test_load_from_cwd(self, tmp_path: Path, monkeypatch):
        _write(tmp_path, "fetch:\n  page_limit: 10\n")
        monkeypatch.chdir(tmp_path)

        assert load_config().fetch.page_limit == 10

    def test_invalid_backend_type(self, tmp_path: Path):
        with pytest.raises(PydanticValidationError):
            load_config(_write(tmp_path, "backend:\n  type: redis\n"))


class TestConfigValidation:
    """Field constraints."""

    @pytest.mark.parametrize("limit", [0, 101])
    def test_page_limit_bounds(self, limit):
        with pytest.raises(PydanticValidationError):
            FetchConfig(page_limit=limit)

    def test_base_delay_above_max(self):
        with pytest.raises(PydanticValidationError, match="base_delay"):
            RetryConfig(base_delay=10.0, max_delay=1.0)

    def test_negative_retries(self):
        with pytest.raises(PydanticValidationError):
            RetryConfig(max_retries=-1)

    def test_schema_version_format(self):
        with pytest.raises(PydanticValidationError):
            AttestLogConfig(builder={"schema_version": "v1"})

    def test_retry_section_feeds_retrier(self):
        """The retry section maps one-to-one onto Retrier arguments."""
        from attestlog.retry import Retrier

        retrier = Retrier(**RetryConfig(max_retries=1, base_delay=0.1, max_delay=0.2).model_dump())
        assert retrier.max_retries == 1
        assert retrier.max_delay == 0.2
