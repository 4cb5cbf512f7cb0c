"""
Caching layer for StoryCraft

- CacheManager: two-level (memory + optional Redis) cache with keys derived from
  content hashes and aspect ratio
- IntelligentCache: in-process cache with TTLs chosen per content type
"""

import json
import time
import fnmatch
import hashlib
import logging
import threading
from collections import OrderedDict
from typing import Optional, Dict, Any, List, Callable, Iterable

import redis

from storycraft.errors import CacheError
from storycraft.monitoring import record_cache_access

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = 'storycraft:'
DEFAULT_TTL = 3600
MEMORY_MAX_SIZE = 1000
RESPONSE_TIME_WINDOW = 1000


def hash_string(value: str) -> str:
    return hashlib.md5(value.encode('utf-8')).hexdigest()


def hash_object(obj: Any) -> str:
    return hash_string(json.dumps(obj, sort_keys=True, default=str))


def _aspect_id(aspect_ratio: Any) -> Optional[str]:
    if aspect_ratio is None:
        return None
    if isinstance(aspect_ratio, dict):
        return aspect_ratio.get('id')
    return getattr(aspect_ratio, 'id', aspect_ratio)


# ==============================================================================
# CACHE MANAGER
# ==============================================================================

class CacheManager:
    """Memory-first cache, written through to Redis when REDIS_URL is reachable"""

    def __init__(self, redis_url: str = None, key_prefix: str = DEFAULT_KEY_PREFIX,
                 default_ttl: int = DEFAULT_TTL, memory_max_size: int = MEMORY_MAX_SIZE,
                 redis_client=None, clock: Callable[[], float] = time.time):
        self.key_prefix = key_prefix
        self.default_ttl = default_ttl
        self.memory_max_size = memory_max_size
        self._clock = clock
        self._lock = threading.RLock()
        self._memory: 'OrderedDict[str, Dict[str, Any]]' = OrderedDict()
        self._response_times: List[float] = []
        self._stats = {'hits': 0, 'misses': 0, 'sets': 0, 'deletes': 0, 'errors': 0}

        self._redis = redis_client
        if self._redis is None and redis_url and redis_url.startswith(('redis://', 'rediss://', 'unix://')):
            try:
                self._redis = redis.from_url(redis_url)
                self._redis.ping()
                logger.info("[OK] Cache connected to Redis")
            except redis.RedisError as e:
                logger.warning(f"[WARN] Cache Redis connection failed, using memory only: {e}")
                self._redis = None

    @property
    def redis_enabled(self) -> bool:
        return self._redis is not None

    # --------------------------------------------------------------------------
    # Key derivation
    # --------------------------------------------------------------------------

    def generate_key(self, namespace: str, identifier: str, aspect_ratio: Any = None) -> str:
        aspect_id = _aspect_id(aspect_ratio)
        suffix = f":ar:{aspect_id}" if aspect_id else ''
        return f"{self.key_prefix}{namespace}:{identifier}{suffix}"

    def generate_image_key(self, prompt: str, aspect_ratio: Any, characters: Any = None) -> str:
        character_hash = hash_object(characters) if characters else ''
        return self.generate_key('image', f"{hash_string(prompt)}:{character_hash}", aspect_ratio)

    def generate_video_key(self, prompt: str, image_data: str, aspect_ratio: Any) -> str:
        return self.generate_key('video', f"{hash_string(prompt)}:{hash_string(image_data)}", aspect_ratio)

    def generate_scenario_key(self, scenario: Dict[str, Any]) -> str:
        return self.generate_key('scenario', hash_object(scenario), scenario.get('aspectRatio'))

    # --------------------------------------------------------------------------
    # Core operations
    # --------------------------------------------------------------------------

    def get(self, key: str) -> Any:
        start = time.perf_counter()
        value = self._get_from_memory(key)
        if value is not None:
            self._record(start, hit=True)
            return value

        if self._redis is not None:
            try:
                raw = self._redis.get(key)
            except redis.RedisError as e:
                self._bump('errors')
                logger.error(f"[ERROR] Cache get failed for {key}: {e}")
                raw = None
            if raw:
                try:
                    value = json.loads(raw)
                except ValueError as e:
                    self._bump('errors')
                    logger.error(f"[ERROR] Dropping corrupt cache entry {key}: {e}")
                    self._drop_remote(key)
                else:
                    self._set_in_memory(key, value, self.default_ttl)
                    self._record(start, hit=True)
                    return value

        self._record(start, hit=False)
        return None

    def set(self, key: str, value: Any, ttl: int = None):
        """Write Redis first; memory is only updated once the remote write succeeded"""
        start = time.perf_counter()
        ttl = ttl or self.default_ttl
        if self._redis is not None:
            try:
                self._redis.setex(key, ttl, json.dumps(value, default=str))
            except (redis.RedisError, TypeError) as e:
                self._bump('errors')
                raise CacheError(f"Failed to set cache key: {key}", 'set', {'key': key, 'error': str(e)}) from e
        self._set_in_memory(key, value, ttl)
        self._bump('sets')
        self._record_response_time(start)

    def delete(self, key: str):
        with self._lock:
            self._memory.pop(key, None)
        if self._redis is not None:
            try:
                self._redis.delete(key)
            except redis.RedisError as e:
                self._bump('errors')
                raise CacheError(f"Failed to delete cache key: {key}", 'delete', {'key': key}) from e
        self._bump('deletes')

    def exists(self, key: str) -> bool:
        if self._get_from_memory(key) is not None:
            return True
        if self._redis is not None:
            try:
                return bool(self._redis.exists(key))
            except redis.RedisError:
                self._bump('errors')
        return False

    def clear(self):
        with self._lock:
            self._memory.clear()
        if self._redis is not None:
            try:
                for key in self._redis.scan_iter(match=f"{self.key_prefix}*"):
                    self._redis.delete(key)
            except redis.RedisError as e:
                self._bump('errors')
                raise CacheError('Failed to clear cache', 'clear') from e

    def _drop_remote(self, key: str):
        try:
            self._redis.delete(key)
        except redis.RedisError as e:
            logger.warning(f"[WARN] Could not remove corrupt cache entry {key}: {e}")

    # --------------------------------------------------------------------------
    # Batch / aspect ratio
    # --------------------------------------------------------------------------

    def mget(self, keys: Iterable[str]) -> Dict[str, Any]:
        results = {}
        for key in keys:
            value = self.get(key)
            if value is not None:
                results[key] = value
        return results

    def mset(self, entries: Iterable[Dict[str, Any]]):
        for entry in entries:
            self.set(entry['key'], entry['value'], entry.get('ttl'))

    def warm_cache(self, tasks: Iterable[Dict[str, Any]]) -> int:
        """Populate missing keys; each task is {key, generator, ttl?}. Returns keys warmed."""
        warmed = 0
        for task in tasks:
            if self.get(task['key']) is not None:
                continue
            try:
                self.set(task['key'], task['generator'](), task.get('ttl'))
                warmed += 1
            except Exception as e:
                logger.error(f"[ERROR] Failed to warm cache key {task['key']}: {e}")
        logger.info(f"Cache warming completed ({warmed} keys)")
        return warmed

    def get_by_aspect_ratio(self, namespace: str, aspect_ratio: Any) -> Dict[str, Any]:
        pattern = self.generate_key(namespace, '*', aspect_ratio)
        keys = set(self._memory_keys_matching(pattern))
        if self._redis is not None:
            try:
                keys.update(k.decode() if isinstance(k, bytes) else k for k in self._redis.scan_iter(match=pattern))
            except redis.RedisError as e:
                self._bump('errors')
                logger.error(f"[ERROR] Cache pattern lookup failed: {e}")
        return self.mget(sorted(keys))

    def clear_by_aspect_ratio(self, namespace: str, aspect_ratio: Any) -> int:
        pattern = self.generate_key(namespace, '*', aspect_ratio)
        removed = 0
        with self._lock:
            for key in self._memory_keys_matching(pattern):
                del self._memory[key]
                removed += 1
        if self._redis is not None:
            try:
                for key in self._redis.scan_iter(match=pattern):
                    removed += self._redis.delete(key)
            except redis.RedisError as e:
                self._bump('errors')
                logger.error(f"[ERROR] Cache pattern clear failed: {e}")
        return removed

    # --------------------------------------------------------------------------
    # Memory level
    # --------------------------------------------------------------------------

    def _get_from_memory(self, key: str) -> Any:
        with self._lock:
            entry = self._memory.get(key)
            if entry is None:
                return None
            if self._clock() > entry['expires_at']:
                del self._memory[key]
                return None
            entry['hit_count'] += 1
            return entry['value']

    def _set_in_memory(self, key: str, value: Any, ttl: int):
        with self._lock:
            if key not in self._memory and len(self._memory) >= self.memory_max_size:
                self._memory.popitem(last=False)
            self._memory[key] = {'value': value, 'expires_at': self._clock() + ttl, 'hit_count': 0}

    def _memory_keys_matching(self, pattern: str) -> List[str]:
        with self._lock:
            return [k for k in self._memory if fnmatch.fnmatchcase(k, pattern)]

    def cleanup_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._memory.items() if now > e['expires_at']]
            for key in expired:
                del self._memory[key]
        if expired:
            logger.info(f"Cleaned up {len(expired)} expired cache entries")
        return len(expired)

    # --------------------------------------------------------------------------
    # Stats
    # --------------------------------------------------------------------------

    def _bump(self, name: str):
        with self._lock:
            self._stats[name] += 1

    def _record(self, start: float, hit: bool):
        self._bump('hits' if hit else 'misses')
        self._record_response_time(start)
        record_cache_access('manager', hit)

    def _record_response_time(self, start: float):
        elapsed = (time.perf_counter() - start) * 1000
        with self._lock:
            self._response_times.append(elapsed)
            if len(self._response_times) > RESPONSE_TIME_WINDOW:
                self._response_times.pop(0)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats = dict(self._stats)
            times = list(self._response_times)
            memory_size = len(self._memory)
        total = stats['hits'] + stats['misses']
        return {
            **stats,
            'hitRate': (stats['hits'] / total * 100) if total else 0.0,
            'avgResponseTime': (sum(times) / len(times)) if times else 0.0,
            'memorySize': memory_size,
            'backend': 'redis' if self._redis is not None else 'memory',
        }


# ==============================================================================
# INTELLIGENT CACHE
# ==============================================================================

TTL_BY_CONTENT_TYPE = {
    'shorts': 15 * 60,
    'video': 60 * 60,
    'metadata': 30 * 60,
    'fallback': 5 * 60,
    'error': 60,
}


class IntelligentCache:
    """Per-content-type TTLs with least-recently-accessed eviction"""

    def __init__(self, max_size: int = 1000, clock: Callable[[], float] = time.time):
        self.max_size = max_size
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: Dict[str, Dict[str, Any]] = {}
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    @staticmethod
    def create_youtube_key(video_id: str, variant: str = None) -> str:
        return f"youtube:{video_id}:{variant}" if variant else f"youtube:{video_id}"

    @staticmethod
    def create_shorts_key(video_id: str, analysis_type: str = None) -> str:
        return f"shorts:{video_id}:{analysis_type}" if analysis_type else f"shorts:{video_id}"

    def set(self, key: str, data: Any, content_type: str, metadata: Dict[str, Any] = None):
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_size:
                self._evict_lru()
            now = self._clock()
            ttl = TTL_BY_CONTENT_TYPE.get(content_type, TTL_BY_CONTENT_TYPE['metadata'])
            self._entries[key] = {
                'data': data,
                'timestamp': now,
                'ttl': ttl,
                'content_type': content_type,
                'access_count': 0,
                'last_accessed': now,
                'metadata': metadata,
            }
        logger.debug(f"Cache set: {key} (type: {content_type}, ttl: {ttl}s)")

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._expired(entry):
                if entry is not None:
                    del self._entries[key]
                self.misses += 1
                record_cache_access('intelligent', False)
                return None
            entry['access_count'] += 1
            entry['last_accessed'] = self._clock()
            self.hits += 1
        record_cache_access('intelligent', True)
        return entry['data']

    def has(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if self._expired(entry):
                del self._entries[key]
                return False
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self):
        with self._lock:
            self._entries.clear()
            self.hits = self.misses = self.evictions = 0
        logger.info("Cache cleared")

    def cleanup(self) -> int:
        with self._lock:
            expired = [k for k, e in self._entries.items() if self._expired(e)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.info(f"Cache cleanup: removed {len(expired)} expired entries")
        return len(expired)

    def get_entries_by_type(self, content_type: str) -> int:
        with self._lock:
            return sum(1 for e in self._entries.values() if e['content_type'] == content_type)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self.hits + self.misses
            entries = list(self._entries.values())
            return {
                'totalEntries': len(entries),
                'hitRate': (self.hits / total * 100) if total else 0.0,
                'missRate': (self.misses / total * 100) if total else 0.0,
                'evictions': self.evictions,
                'averageAccessCount': (sum(e['access_count'] for e in entries) / len(entries)) if entries else 0.0,
            }

    def _expired(self, entry: Dict[str, Any]) -> bool:
        return self._clock() - entry['timestamp'] > entry['ttl']

    def _evict_lru(self):
        if not self._entries:
            return
        oldest = min(self._entries, key=lambda k: self._entries[k]['last_accessed'])
        del self._entries[oldest]
        self.evictions += 1
        logger.debug(f"Cache evicted LRU: {oldest}")
