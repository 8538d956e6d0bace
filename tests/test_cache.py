import json
from unittest.mock import MagicMock

from redis.exceptions import ConnectionError as RedisConnectionError

from threadly.cache import ProfileCache


def test_miss_loads_and_stores(mock_redis):
    cache = ProfileCache(mock_redis, ttl_seconds=120)
    loader = MagicMock(return_value={"id": 7, "followers": 3})

    assert cache.get_or_load(7, loader) == {"id": 7, "followers": 3}

    loader.assert_called_once_with()
    mock_redis.get.assert_called_once_with("threadly:user:7:profile")
    key, ttl, body = mock_redis.setex.call_args[0]
    assert key == "threadly:user:7:profile"
    assert ttl == 120
    assert json.loads(body) == {"id": 7, "followers": 3}


def test_hit_skips_loader(mock_redis):
    mock_redis.get.return_value = json.dumps({"id": 7, "followers": 9})
    cache = ProfileCache(mock_redis)
    loader = MagicMock()

    assert cache.get_or_load(7, loader) == {"id": 7, "followers": 9}
    loader.assert_not_called()
    mock_redis.setex.assert_not_called()


def test_missing_entity_is_not_cached(mock_redis):
    cache = ProfileCache(mock_redis)
    assert cache.get_or_load(7, lambda: None) is None
    mock_redis.setex.assert_not_called()


def test_redis_outage_degrades_to_loader(mock_redis):
    mock_redis.get.side_effect = RedisConnectionError("connection refused")
    mock_redis.setex.side_effect = RedisConnectionError("connection refused")
    cache = ProfileCache(mock_redis)

    assert cache.get_or_load(7, lambda: {"id": 7}) == {"id": 7}


def test_invalidate_deletes_every_user_key(mock_redis):
    cache = ProfileCache(mock_redis)
    cache.invalidate_user(1, 2)
    mock_redis.delete.assert_called_once_with("threadly:user:1:profile", "threadly:user:2:profile")

    mock_redis.delete.side_effect = RedisConnectionError("down")
    cache.invalidate_user(3)
