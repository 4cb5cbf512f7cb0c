import json
from unittest.mock import MagicMock

import pytest
import redis

from storycraft.aspect_ratio import get_aspect_ratio
from storycraft.cache import CacheManager, IntelligentCache, hash_object, hash_string
from storycraft.errors import CacheError


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_hashes_are_stable():
    assert hash_string('abc') == '900150983cd24fb0d6963f7d28e17f72'
    assert hash_object({'b': 1, 'a': 2}) == hash_object({'a': 2, 'b': 1})


def test_key_generation_with_aspect_ratio():
    cache = CacheManager()

    assert cache.generate_key('pitch', 'abc') == 'storycraft:pitch:abc'
    assert cache.generate_key('image', 'abc', '9:16') == 'storycraft:image:abc:ar:9:16'
    assert cache.generate_key('image', 'abc', get_aspect_ratio('16:9')) == 'storycraft:image:abc:ar:16:9'
    assert cache.generate_key('image', 'abc', {'id': '9:16'}).endswith(':ar:9:16')


def test_memory_get_set_and_expiry():
    clock = FakeClock()
    cache = CacheManager(clock=clock)

    cache.set('k', {'v': 1}, ttl=10)
    assert cache.get('k') == {'v': 1}

    clock.now = 11
    assert cache.get('k') is None
    stats = cache.get_stats()
    assert stats['hits'] == 1
    assert stats['misses'] == 1
    assert stats['backend'] == 'memory'


def test_memory_eviction_is_fifo():
    cache = CacheManager(memory_max_size=2)
    cache.set('a', 1)
    cache.set('b', 2)
    cache.set('c', 3)

    assert cache.get('a') is None
    assert cache.mget(['b', 'c']) == {'b': 2, 'c': 3}


def test_redis_write_through_and_read_back():
    client = MagicMock()
    client.get.return_value = json.dumps({'pitch': 'hello'})
    cache = CacheManager(redis_client=client)

    cache.set('k1', {'pitch': 'x'}, ttl=60)
    client.setex.assert_called_once_with('k1', 60, json.dumps({'pitch': 'x'}))

    assert cache.get('other') == {'pitch': 'hello'}
    assert cache.redis_enabled


def test_redis_failure_on_set_raises_cache_error():
    client = MagicMock()
    client.setex.side_effect = redis.RedisError('down')
    cache = CacheManager(redis_client=client)

    with pytest.raises(CacheError) as exc_info:
        cache.set('k', 1)

    assert exc_info.value.operation == 'set'
    assert cache.get_stats()['errors'] == 1
    assert cache.get_stats()['memorySize'] == 0
    client.get.return_value = None
    assert cache.get('k') is None


def test_redis_failure_on_get_is_a_miss():
    client = MagicMock()
    client.get.side_effect = redis.RedisError('down')
    cache = CacheManager(redis_client=client)

    assert cache.get('k') is None


def test_aspect_ratio_lookup_and_clear():
    cache = CacheManager()
    cache.set(cache.generate_key('image', 'one', '9:16'), 'portrait')
    cache.set(cache.generate_key('image', 'two', '16:9'), 'wide')

    found = cache.get_by_aspect_ratio('image', '9:16')

    assert list(found.values()) == ['portrait']
    assert cache.clear_by_aspect_ratio('image', '9:16') == 1
    assert cache.get_by_aspect_ratio('image', '9:16') == {}


def test_warm_cache_skips_existing_and_failed():
    cache = CacheManager()
    cache.set('existing', 'x')

    def broken():
        raise RuntimeError('no')

    warmed = cache.warm_cache([
        {'key': 'existing', 'generator': lambda: 'y'},
        {'key': 'new', 'generator': lambda: 'z'},
        {'key': 'bad', 'generator': broken},
    ])

    assert warmed == 1
    assert cache.get('existing') == 'x'
    assert cache.get('new') == 'z'


def test_intelligent_cache_ttl_by_content_type():
    clock = FakeClock()
    cache = IntelligentCache(clock=clock)
    cache.set('s', 'shorts-data', 'shorts')
    cache.set('v', 'video-data', 'video')

    clock.now = 16 * 60

    assert cache.get('s') is None
    assert cache.get('v') == 'video-data'
    assert cache.get_entries_by_type('video') == 1


def test_intelligent_cache_evicts_least_recently_accessed():
    clock = FakeClock()
    cache = IntelligentCache(max_size=2, clock=clock)
    cache.set('a', 1, 'video')
    clock.now = 1
    cache.set('b', 2, 'video')
    clock.now = 2
    cache.get('a')
    clock.now = 3

    cache.set('c', 3, 'video')

    assert cache.has('a')
    assert not cache.has('b')
    assert cache.get_stats()['evictions'] == 1


def test_youtube_keys():
    assert IntelligentCache.create_youtube_key('abc') == 'youtube:abc'
    assert IntelligentCache.create_shorts_key('abc', 'viral') == 'shorts:abc:viral'


def test_corrupt_redis_entry_is_dropped_and_treated_as_miss():
    client = MagicMock()
    client.get.return_value = b'not json'
    cache = CacheManager(redis_client=client)

    assert cache.get('storycraft:pitch:abc') is None

    client.delete.assert_called_once_with('storycraft:pitch:abc')
    stats = cache.get_stats()
    assert stats['errors'] == 1
    assert stats['misses'] == 1


def test_stats_report_average_response_time_and_memory_size():
    cache = CacheManager()
    cache.set('a', 1)
    cache.get('a')

    stats = cache.get_stats()

    assert stats['memorySize'] == 1
    assert stats['avgResponseTime'] >= 0
    assert stats['sets'] == 1
