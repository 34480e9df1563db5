"""Tests for the Redis client factory retry logic."""

from unittest.mock import MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from fleet_memory.errors import RedisStartupError
from fleet_memory.redis_factory import create_redis_client


class TestCreateRedisClient:

    @patch("fleet_memory.redis_factory.time.sleep")
    @patch("fleet_memory.redis_factory.redis.from_url")
    def test_returns_client_after_retries(self, from_url, sleep):
        client = MagicMock()
        client.ping.side_effect = [RedisConnectionError("refused"), RedisConnectionError("refused"), True]
        from_url.return_value = client

        result = create_redis_client("redis://cache:6379", max_retries=5, base_delay=0.1)

        assert result is client
        assert sleep.call_count == 2
        from_url.assert_called_with("redis://cache:6379", decode_responses=True)

    @patch("fleet_memory.redis_factory.time.sleep")
    @patch("fleet_memory.redis_factory.redis.from_url")
    def test_backoff_is_capped(self, from_url, sleep):
        from_url.return_value.ping.side_effect = RedisConnectionError("refused")

        with pytest.raises(RedisStartupError):
            create_redis_client("redis://cache:6379", max_retries=6, base_delay=1.0, max_delay=4.0)

        delays = [c.args[0] for c in sleep.call_args_list]
        assert len(delays) == 5
        assert all(d <= 4.0 * 1.25 for d in delays)

    @patch("fleet_memory.redis_factory.time.sleep")
    @patch("fleet_memory.redis_factory.redis.from_url")
    def test_error_message_masks_password(self, from_url, sleep):
        from_url.return_value.ping.side_effect = RedisConnectionError("refused")

        with pytest.raises(RedisStartupError) as exc_info:
            create_redis_client("redis://:hunter2@cache:6379", max_retries=2)

        assert "hunter2" not in str(exc_info.value)
        assert "after 2 attempts" in str(exc_info.value)
