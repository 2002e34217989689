"""Tests for dataforge.config — settings validation."""

import pytest

from dataforge.config import DataforgeConfig, get_config
from dataforge.exceptions import ConfigurationError


def _cfg(**overrides):
    """Create a DataforgeConfig without reading dataforge.env."""
    return DataforgeConfig(**overrides, _env_file=None)


class TestDefaults:
    def test_subjects_and_group(self):
        cfg = _cfg()
        assert cfg.output_subject == "OUTPUT"
        assert cfg.dead_letter_subject == "OUTPUT.DLQ"
        assert cfg.consumer_group == "CONS"
        assert cfg.lookback_hours == 10000


class TestRedisUrlValidation:
    def test_rediss_accepted(self):
        assert _cfg(redis_url="rediss://cache:6380/0").redis_url == "rediss://cache:6380/0"

    def test_invalid_scheme_rejected(self):
        with pytest.raises(Exception, match="REDIS_URL"):
            _cfg(redis_url="http://cache:6379")


class TestLoggingValidation:
    def test_log_level_uppercased(self):
        assert _cfg(log_level="debug").log_level == "DEBUG"

    def test_invalid_log_level_rejected(self):
        with pytest.raises(Exception, match="LOG_LEVEL"):
            _cfg(log_level="TRACE")

    def test_invalid_log_format_rejected(self):
        with pytest.raises(Exception, match="LOG_FORMAT"):
            _cfg(log_format="xml")


class TestSubjectValidation:
    def test_dead_letter_subject_must_differ(self):
        with pytest.raises(Exception, match="DEAD_LETTER_SUBJECT"):
            _cfg(dead_letter_subject="OUTPUT")


class TestGetConfig:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("OUTPUT_SUBJECT", "BATCHES")
        monkeypatch.setenv("DISPATCH_MAX_ATTEMPTS", "5")
        cfg = get_config()
        assert cfg.output_subject == "BATCHES"
        assert cfg.dispatch_max_attempts == 5

    def test_wraps_validation_errors(self, monkeypatch):
        monkeypatch.setenv("DISPATCH_MAX_ATTEMPTS", "0")
        with pytest.raises(ConfigurationError, match="Failed to load configuration"):
            get_config()
