#!/usr/bin/env python3
"""
Result Cache for Consensus Analyses

Content-addressed, TTL-bound store mapping (source, context) to a previously
computed ConsensusResult. Every cache operation is best-effort: backend
errors turn into a miss on read and a no-op on write, so callers never see a
cache-layer exception.
"""

import hashlib
import json
import logging
import os
import sqlite3
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from core.analysis_models import AnalysisContext, ConsensusResult
from core.exceptions import CacheUnavailableError
from core.source_utils import canonicalize_source

logger = logging.getLogger(__name__)

KEY_PREFIX = "analysis:"
DEFAULT_TTL_SECONDS = 3600
DEFAULT_MAX_MEMORY_ENTRIES = 1024


def canonical_context(context: Any = None, analyzers: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    """Context record as it takes part in the cache key."""
    record = AnalysisContext.from_value(context).to_dict()
    if analyzers is not None:
        record['analyzers'] = sorted(set(analyzers))
    return record


def build_cache_key(source_text, context: Any = None, analyzers: Optional[Iterable[str]] = None) -> str:
    """
    Derive the cache key for a source text and its context.

    The source is canonicalized and trimmed; context keys are sorted before
    serialization, so equivalent contexts given in a different key order hash
    identically. When trimming drops leading lines their count joins the
    context so results with different line numbering never share a key.
    """
    text = canonicalize_source(source_text)
    stripped = text.lstrip()
    leading_lines = text[:len(text) - len(stripped)].count('\n')

    record = canonical_context(context, analyzers)
    if leading_lines:
        record['leading_lines'] = leading_lines

    payload = json.dumps(
        {'source': stripped.rstrip(), 'context': record},
        sort_keys=True,
        separators=(',', ':'),
        ensure_ascii=False,
    )
    return KEY_PREFIX + hashlib.sha256(payload.encode('utf-8')).hexdigest()


@dataclass(frozen=True)
class CacheEntry:
    """Immutable snapshot of a consensus result stored under one key."""
    key: str
    value: Dict[str, Any]
    created_at: float
    ttl: int

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now - self.created_at > self.ttl

    def to_bytes(self) -> bytes:
        return json.dumps({
            'key': self.key,
            'value': self.value,
            'created_at': self.created_at,
            'ttl': self.ttl,
        }).encode('utf-8')

    @classmethod
    def from_bytes(cls, raw: bytes) -> "CacheEntry":
        data = json.loads(raw.decode('utf-8'))
        return cls(
            key=data['key'],
            value=data['value'],
            created_at=float(data['created_at']),
            ttl=int(data['ttl']),
        )


class CacheBackend(ABC):
    """Byte store with per-entry expiry. Implementations raise CacheUnavailableError."""

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        ...

    @abstractmethod
    def set(self, key: str, value: bytes, ttl_seconds: int) -> bool:
        ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    def clear(self) -> int:
        ...


class MemoryCacheBackend(CacheBackend):
    """In-process dict guarded by a lock, bounded by ``max_entries``."""

    def __init__(self, max_entries: int = DEFAULT_MAX_MEMORY_ENTRIES):
        self._entries: Dict[str, Tuple[float, bytes]] = {}
        self._lock = threading.Lock()
        self.max_entries = max(1, max_entries)

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if time.time() > expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: bytes, ttl_seconds: int) -> bool:
        with self._lock:
            self._clear_expired_locked()
            if key not in self._entries and len(self._entries) >= self.max_entries:
                # Evict the entry closest to expiry
                oldest = min(self._entries, key=lambda k: self._entries[k][0])
                del self._entries[oldest]
            self._entries[key] = (time.time() + ttl_seconds, bytes(value))
        return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        return count

    def clear_expired(self) -> int:
        """Drop expired entries and return how many were removed."""
        with self._lock:
            return self._clear_expired_locked()

    def _clear_expired_locked(self) -> int:
        now = time.time()
        expired_keys = [key for key, (expires_at, _) in self._entries.items() if now > expires_at]
        for key in expired_keys:
            del self._entries[key]
        return len(expired_keys)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class FileCacheBackend(CacheBackend):
    """One JSON file per key; writes go through a temp file and an atomic replace."""

    def __init__(self, cache_dir: Optional[Union[str, Path]] = None):
        self.cache_dir = Path(cache_dir) if cache_dir else Path.home() / '.scancore' / 'analysis_cache'
        self.cache_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.cache_dir / f"{key.replace(':', '_')}.json"

    def get(self, key: str) -> Optional[bytes]:
        cache_file = self._path(key)
        if not cache_file.exists():
            return None
        try:
            data = json.loads(cache_file.read_text(encoding='utf-8'))
        except (OSError, ValueError) as e:
            raise CacheUnavailableError(f"Failed to read cache file {cache_file.name}: {e}") from e

        if time.time() > data.get('expires_at', 0):
            cache_file.unlink(missing_ok=True)
            return None
        return data['data'].encode('utf-8')

    def set(self, key: str, value: bytes, ttl_seconds: int) -> bool:
        now = time.time()
        cache_entry = {
            'data': value.decode('utf-8'),
            'timestamp': now,
            'expires_at': now + ttl_seconds,
            'cached_at': datetime.now().isoformat(),
        }
        tmp_name = None
        try:
            with tempfile.NamedTemporaryFile(
                'w', encoding='utf-8', dir=self.cache_dir, suffix='.tmp', delete=False
            ) as tmp:
                tmp_name = tmp.name
                json.dump(cache_entry, tmp)
            os.replace(tmp_name, self._path(key))
        except (OSError, UnicodeDecodeError) as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise CacheUnavailableError(f"Failed to write cache file: {e}") from e
        return True

    def delete(self, key: str) -> bool:
        cache_file = self._path(key)
        if cache_file.exists():
            cache_file.unlink()
            return True
        return False

    def clear(self) -> int:
        removed = 0
        for cache_file in self.cache_dir.glob('*.json'):
            try:
                cache_file.unlink()
                removed += 1
            except OSError:
                continue
        return removed


class SQLiteCacheBackend(CacheBackend):
    """Single-table SQLite store; overwrites use INSERT OR REPLACE."""

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.db_path = Path(db_path) if db_path else Path.home() / '.scancore' / 'analysis_cache.db'
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_database()

    def _initialize_database(self) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute('PRAGMA journal_mode = WAL')
            conn.execute('''
                CREATE TABLE IF NOT EXISTS analysis_cache (
                    key TEXT PRIMARY KEY,
                    value BLOB NOT NULL,
                    created_at REAL NOT NULL,
                    expires_at REAL NOT NULL
                )
            ''')
            conn.execute('CREATE INDEX IF NOT EXISTS idx_analysis_cache_expires_at ON analysis_cache(expires_at)')

    def get(self, key: str) -> Optional[bytes]:
        try:
            with sqlite3.connect(self.db_path) as conn:
                row = conn.execute(
                    'SELECT value, expires_at FROM analysis_cache WHERE key = ?', (key,)
                ).fetchone()
                if row is None:
                    return None
                if time.time() > row[1]:
                    conn.execute('DELETE FROM analysis_cache WHERE key = ?', (key,))
                    return None
                return bytes(row[0])
        except sqlite3.Error as e:
            raise CacheUnavailableError(f"Failed to read cache entry: {e}") from e

    def set(self, key: str, value: bytes, ttl_seconds: int) -> bool:
        now = time.time()
        try:
            with sqlite3.connect(self.db_path) as conn:
                conn.execute('''
                    INSERT OR REPLACE INTO analysis_cache (key, value, created_at, expires_at)
                    VALUES (?, ?, ?, ?)
                ''', (key, sqlite3.Binary(value), now, now + ttl_seconds))
            return True
        except sqlite3.Error as e:
            raise CacheUnavailableError(f"Failed to write cache entry: {e}") from e

    def delete(self, key: str) -> bool:
        try:
            with sqlite3.connect(self.db_path) as conn:
                cursor = conn.execute('DELETE FROM analysis_cache WHERE key = ?', (key,))
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise CacheUnavailableError(f"Failed to delete cache entry: {e}") from e

    def clear(self) -> int:
        try:
            with sqlite3.connect(self.db_path) as conn:
                return conn.execute('DELETE FROM analysis_cache').rowcount
        except sqlite3.Error as e:
            raise CacheUnavailableError(f"Failed to clear cache: {e}") from e


CACHE_BACKENDS = {
    'memory': MemoryCacheBackend,
    'file': FileCacheBackend,
    'sqlite': SQLiteCacheBackend,
}


def create_cache_backend(kind: str = 'memory', cache_dir: Optional[Union[str, Path]] = None) -> CacheBackend:
    """Build a backend by name; ``cache_dir`` is used by the file and sqlite stores."""
    if kind == 'memory':
        return MemoryCacheBackend()
    if kind == 'file':
        return FileCacheBackend(Path(cache_dir) if cache_dir else None)
    if kind == 'sqlite':
        return SQLiteCacheBackend(Path(cache_dir) / 'analysis_cache.db' if cache_dir else None)
    raise ValueError(f"Unknown cache backend: {kind}")


class ResultCache:
    """Cache ConsensusResults so identical analyses are not recomputed."""

    def __init__(self, backend: Optional[CacheBackend] = None, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        """
        Args:
            backend: Byte store to use (in-memory when omitted)
            ttl_seconds: Default time-to-live for new entries
        """
        self.backend = backend if backend is not None else MemoryCacheBackend()
        self.ttl_seconds = ttl_seconds
        self.cache_hits = 0
        self.cache_misses = 0
        self.cache_errors = 0
        self.cache_writes = 0
        self._stats_lock = threading.Lock()

    def get_cache_key(self, source_text, context: Any = None, analyzers: Optional[Iterable[str]] = None) -> str:
        return build_cache_key(source_text, context, analyzers)

    def get(self, source_text, context: Any = None,
            analyzers: Optional[Iterable[str]] = None) -> Optional[ConsensusResult]:
        """
        Retrieve a cached consensus result.

        Returns:
            The stored ConsensusResult, or None on miss, expiry or backend error
        """
        key = self.get_cache_key(source_text, context, analyzers)
        try:
            raw = self.backend.get(key)
            if raw is None:
                self._count('cache_misses')
                return None
            entry = CacheEntry.from_bytes(raw)
            if entry.key != key or entry.is_expired():
                self._count('cache_misses')
                return None
            result = ConsensusResult.from_dict(entry.value)
        except Exception as e:
            logger.warning("Cache read failed, treating as miss: %s", e)
            self._count('cache_errors')
            self._count('cache_misses')
            return None

        self._count('cache_hits')
        logger.debug("Cache hit for %s", key)
        return result

    def put(self, source_text, context: Any, result: ConsensusResult,
            ttl_seconds: Optional[int] = None, analyzers: Optional[Iterable[str]] = None) -> bool:
        """
        Store a consensus result, replacing any previous entry for the key.

        Returns:
            True when the backend accepted the entry
        """
        ttl = self.ttl_seconds if ttl_seconds is None else int(ttl_seconds)
        if ttl <= 0:
            return False

        key = self.get_cache_key(source_text, context, analyzers)
        try:
            entry = CacheEntry(key=key, value=result.to_dict(), created_at=time.time(), ttl=ttl)
            stored = bool(self.backend.set(key, entry.to_bytes(), ttl))
        except Exception as e:
            logger.warning("Cache write failed, result not cached: %s", e)
            self._count('cache_errors')
            return False

        if stored:
            self._count('cache_writes')
        return stored

    def invalidate(self, source_text, context: Any = None, analyzers: Optional[Iterable[str]] = None) -> bool:
        key = self.get_cache_key(source_text, context, analyzers)
        try:
            return self.backend.delete(key)
        except Exception as e:
            logger.warning("Cache invalidation failed: %s", e)
            self._count('cache_errors')
            return False

    def clear_all(self) -> int:
        """Clear all entries and reset statistics."""
        try:
            removed = self.backend.clear()
        except Exception as e:
            logger.warning("Cache clear failed: %s", e)
            removed = 0
        with self._stats_lock:
            self.cache_hits = 0
            self.cache_misses = 0
            self.cache_errors = 0
            self.cache_writes = 0
        return removed

    def _count(self, attr: str) -> None:
        with self._stats_lock:
            setattr(self, attr, getattr(self, attr) + 1)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        total_requests = self.cache_hits + self.cache_misses
        hit_rate = self.cache_hits / total_requests if total_requests > 0 else 0.0

        return {
            'backend': type(self.backend).__name__,
            'cache_hits': self.cache_hits,
            'cache_misses': self.cache_misses,
            'cache_errors': self.cache_errors,
            'cache_writes': self.cache_writes,
            'hit_rate': hit_rate,
            'hit_rate_percentage': f"{hit_rate * 100:.1f}%",
            'total_requests': total_requests,
        }
