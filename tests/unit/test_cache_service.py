"""
Unit tests for the shared settings cache (Redis client faked).
"""

from redis.exceptions import ConnectionError as RedisConnectionError

from storefront.services.cache_service import CacheService


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.ops = []

    def delete(self, key):
        self.ops.append(lambda: self.redis.delete(key))

    def hset(self, key, mapping):
        self.ops.append(lambda: self.redis.hashes.setdefault(key, {}).update(mapping))

    def expire(self, key, ttl):
        self.ops.append(lambda: self.redis.ttls.__setitem__(key, ttl))

    def execute(self):
        for op in self.ops:
            op()


class FakeRedis:
    def __init__(self, fail=False):
        self.hashes = {}
        self.ttls = {}
        self.fail = fail

    def hgetall(self, key):
        if self.fail:
            raise RedisConnectionError('down')
        return dict(self.hashes.get(key, {}))

    def delete(self, key):
        return 1 if self.hashes.pop(key, None) is not None else 0

    def pipeline(self):
        return FakePipeline(self)


class TestCacheService:
    def test_set_and_get(self):
        client = FakeRedis()
        cache = CacheService(client=client, prefix='test', default_ttl=30)

        assert cache.set('settings', 'all', {'tax_rate': '0.21', 'quote_valid_days': 15})

        assert client.hashes['test:settings:all'] == {'tax_rate': '0.21', 'quote_valid_days': '15'}
        assert client.ttls['test:settings:all'] == 30
        assert cache.get('settings', 'all') == {'tax_rate': '0.21', 'quote_valid_days': '15'}

    def test_set_replaces_previous_map(self):
        cache = CacheService(client=FakeRedis())
        cache.set('settings', 'all', {'tax_rate': '0.21', 'old': 'x'})
        cache.set('settings', 'all', {'tax_rate': '0.10'}, ttl=5)
        assert cache.get('settings', 'all') == {'tax_rate': '0.10'}

    def test_empty_map_is_not_stored(self):
        cache = CacheService(client=FakeRedis())
        assert cache.set('settings', 'all', {}) is False
        assert cache.get('settings', 'all') is None

    def test_delete(self):
        cache = CacheService(client=FakeRedis())
        cache.set('settings', 'all', {'a': '1'})
        assert cache.delete('settings', 'all')
        assert not cache.delete('settings', 'all')
        assert cache.get('settings', 'all') is None

    def test_redis_errors_read_as_miss(self):
        cache = CacheService(client=FakeRedis(fail=True))
        assert cache.get('settings', 'all') is None

    def test_disabled_without_client(self):
        cache = CacheService()
        assert not cache.enabled
        assert cache.get('settings', 'all') is None
        assert cache.set('settings', 'all', {'a': '1'}) is False

    def test_app_with_cache_disabled(self, app):
        cache = CacheService(app)
        assert not cache.enabled
