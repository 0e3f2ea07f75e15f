"""Tests for config.redis_client."""

import logging
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from config import redis_client
from core.sync_channel import InMemorySyncBus, RedisSyncChannel, build_sync_channel


@pytest.fixture(autouse=True)
def _fresh_connection():
    redis_client.reset_redis_connection()
    yield
    redis_client.reset_redis_connection()


class TestRedisClient:
    def test_client_created_once_from_settings(self):
        with patch("redis.from_url") as from_url:
            first = redis_client.get_redis()
            second = redis_client.get_redis()

        assert first is second
        from_url.assert_called_once()
        assert from_url.call_args.kwargs == {"decode_responses": True}

    def test_available_when_ping_succeeds(self):
        client = MagicMock()
        with patch("redis.from_url", return_value=client):
            assert redis_client.redis_available() is True
            assert redis_client.redis_available() is True
        client.ping.assert_called_once()

    def test_unavailable_is_cached(self):
        client = MagicMock()
        client.ping.side_effect = ConnectionError("refused")
        with patch("redis.from_url", return_value=client):
            assert redis_client.redis_available() is False
            assert redis_client.redis_available() is False
        client.ping.assert_called_once()

    def test_sync_channel_defaults_to_shared_client(self):
        client = MagicMock()
        with patch("redis.from_url", return_value=client):
            channel = RedisSyncChannel()
        assert channel._client is client


class TestRedisSyncBackend:
    def _settings(self):
        return SimpleNamespace(sync_backend="redis", redis=SimpleNamespace(channel_prefix="app:"))

    def test_uses_shared_client_when_reachable(self):
        client = MagicMock()
        with patch("redis.from_url", return_value=client) as from_url:
            channel = build_sync_channel(self._settings())

        assert isinstance(channel, RedisSyncChannel)
        assert channel._client is client
        assert channel._client is redis_client.get_redis()
        from_url.assert_called_once()

    def test_unreachable_redis_falls_back_to_process_bus(self, caplog):
        client = MagicMock()
        client.ping.side_effect = ConnectionError("refused")
        with patch("redis.from_url", return_value=client):
            with caplog.at_level(logging.WARNING, logger="core.sync_channel"):
                channel = build_sync_channel(self._settings())

        assert isinstance(channel, InMemorySyncBus)
        assert "Redis unavailable" in caplog.text
