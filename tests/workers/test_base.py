"""Tests for the worker lifespan wiring."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from ingestor.app_config import SchedulerConfig
from ingestor.services.integrations import aws_session
from ingestor.workers import base
from ingestor.workers.base import base_lifespan


@pytest.fixture
def redis_calls(monkeypatch, fake_redis) -> list:
    calls = []

    def get_redis_client(label="default", url=None):
        calls.append((label, url))
        return fake_redis

    manager = MagicMock()
    manager.close_all = AsyncMock()
    monkeypatch.setattr(base, "get_redis_client", get_redis_client)
    monkeypatch.setattr(base, "get_redis_manager", lambda: manager)
    return calls


@pytest.fixture
def session_factory(monkeypatch) -> MagicMock:
    factory = MagicMock()
    monkeypatch.setattr(aws_session, "_session", None)
    monkeypatch.setattr(aws_session.aioboto3, "Session", factory)
    return factory


class TestBaseLifespan:
    async def test_clients_built_from_settings(self, settings, fake_redis, redis_calls, session_factory):
        """Test the Redis URL and AWS credentials come from the settings object."""
        # Arrange
        settings = SchedulerConfig.model_validate(
            {
                **settings.model_dump(),
                "REDIS_URL": "redis://cache.internal:6390/2",
                "AWS_REGION": "eu-west-1",
                "AWS_ACCESS_KEY_ID": "AKIATEST",
                "AWS_SECRET_ACCESS_KEY": "secret",
            }
        )

        # Act
        async with base_lifespan(settings) as ctx:
            # Assert
            assert ctx.redis is fake_redis
            assert ctx.health.owner_id == "worker-a"

        assert redis_calls == [("default", "redis://cache.internal:6390/2")]
        session_factory.assert_called_once_with(
            aws_access_key_id="AKIATEST",
            aws_secret_access_key="secret",
            region_name="eu-west-1",
        )
        assert aws_session.get_aws_session("us-east-1") is session_factory.return_value

    async def test_default_credential_chain_without_keys(self, settings, redis_calls, session_factory):
        """Test no explicit keys falls back to the default AWS credential chain."""
        async with base_lifespan(settings):
            pass

        session_factory.assert_called_once_with(region_name=settings.AWS_REGION)

    async def test_non_default_label_uses_environment(self, settings, redis_calls, session_factory):
        """Test labelled clients keep their REDIS_URL_<LABEL> connection string."""
        async with base_lifespan(settings, redis_label="cache"):
            pass

        assert redis_calls == [("cache", None)]
