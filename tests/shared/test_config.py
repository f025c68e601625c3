"""Tests for environment loading and SchedulerConfig validation."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from ingestor.app_config import ChatSinkKind, SchedulerConfig
from ingestor.shared.config import EnvironConfig


class TestEnvironConfig:
    def test_singleton(self):
        assert EnvironConfig() is EnvironConfig()

    def test_empty_values_are_unset(self, monkeypatch):
        """Test blank placeholders fall back to defaults."""
        config = EnvironConfig()
        monkeypatch.setitem(config._config, "KINESIS_STREAM_NAME", "  ")

        assert config.get("KINESIS_STREAM_NAME", "fallback") == "fallback"

    def test_redis_url_prefers_default_label(self, monkeypatch):
        """Test REDIS_URL_DEFAULT wins over REDIS_URL."""
        config = EnvironConfig()
        monkeypatch.setitem(config._config, "REDIS_URL", "redis://plain:6379")
        monkeypatch.setitem(config._config, "REDIS_URL_DEFAULT", "redis://labelled:6379")

        assert config.get_redis_url() == "redis://labelled:6379"


class TestSchedulerConfig:
    def test_defaults(self):
        settings = SchedulerConfig()

        assert settings.LEASE_TTL_SECONDS == 30
        assert settings.SCHEDULER_TICK_SECONDS == 10
        assert settings.GLOBAL_LOAD_CAP == 100_000
        assert settings.MAX_CONCURRENT_DISPATCHES == 3
        assert settings.DELETE_DISPATCHED_SEGMENTS is False
        assert settings.WORKER_OWNER_ID

    def test_owner_ids_are_unique_per_instance(self):
        assert SchedulerConfig().WORKER_OWNER_ID != SchedulerConfig().WORKER_OWNER_ID

    def test_from_mapping(self):
        """Test string environment values are coerced to typed settings."""
        settings = SchedulerConfig.from_environ(
            {
                "LEASE_TTL_SECONDS": "45",
                "MAX_CHANNELS_PER_WORKER": "5",
                "DELETE_DISPATCHED_SEGMENTS": "true",
                "RECORDINGS_DIR": "/tmp/rec",
                "CHAT_SINK": "sqs",
                "SQS_QUEUE_URL": "https://sqs.example.com/1/chat.fifo",
                "REDIS_URL_DEFAULT": "redis://cache:6379/2",
                "UNRELATED": "ignored",
            }
        )

        assert settings.LEASE_TTL_SECONDS == 45
        assert settings.MAX_CHANNELS_PER_WORKER == 5
        assert settings.DELETE_DISPATCHED_SEGMENTS is True
        assert settings.RECORDINGS_DIR == Path("/tmp/rec")
        assert settings.CHAT_SINK is ChatSinkKind.SQS
        assert settings.REDIS_URL == "redis://cache:6379/2"

    @pytest.mark.parametrize(
        "values",
        [
            {"CHAT_SINK": "kinesis"},
            {"CHAT_SINK": "sqs"},
            {"SEGMENT_SINK": "s3"},
            {"SCHEDULER_TICK_SECONDS": "30", "LEASE_TTL_SECONDS": "30"},
            {"LEASE_TTL_SECONDS": "0"},
            {"GLOBAL_LOAD_CAP": "-1"},
            {"CHAT_SINK": "carrier-pigeon"},
        ],
    )
    def test_invalid_settings_rejected(self, values):
        """Test missing sink settings and unsafe timings fail at startup."""
        with pytest.raises(ValidationError):
            SchedulerConfig.from_environ(values)

    def test_settings_are_frozen(self):
        settings = SchedulerConfig()

        with pytest.raises(ValidationError):
            settings.LEASE_TTL_SECONDS = 5
