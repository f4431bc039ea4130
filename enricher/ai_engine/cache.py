"""AI enrichment cache — content-addressed results with a TTL.

JsonFileCache keeps the whole map in memory behind one lock and rewrites the
file on every insert (temp file + rename). A missing file means an empty cache,
a corrupt one is logged and replaced. When the file cannot be written the
cache keeps serving from memory for the rest of the process lifetime.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

from enricher.telemetry.errors import ErrorCode, emit_structured_error

logger = logging.getLogger(__name__)

TIMESTAMP_FIELD = "ai_enrichment_ts"


class EnrichmentCache(Protocol):
    def get(self, key: str) -> dict[str, Any] | None: ...

    def put(self, key: str, value: dict[str, Any]) -> None: ...

    def clear(self) -> None: ...


def _is_fresh(entry: dict[str, Any], now_s: float, ttl_s: int) -> bool:
    ts = entry.get(TIMESTAMP_FIELD)
    if not isinstance(ts, (int, float)):
        return False
    return now_s - ts <= ttl_s


class InMemoryCache:
    """Process-local cache with the same TTL semantics as the file cache."""

    def __init__(self, ttl_s: int, clock: Callable[[], float] = time.time) -> None:
        self._ttl_s = ttl_s
        self._clock = clock
        self._entries: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or not _is_fresh(entry, self._clock(), self._ttl_s):
                return None
            return dict(entry)

    def put(self, key: str, value: dict[str, Any]) -> None:
        with self._lock:
            self._entries[key] = dict(value)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class JsonFileCache:
    """Cache persisted as a single JSON object mapping cache key to cached value."""

    def __init__(self, path: Path, ttl_s: int, clock: Callable[[], float] = time.time) -> None:
        self._path = path
        self._ttl_s = ttl_s
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, dict[str, Any]] = self._load()
        self._persist_enabled = True

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, dict[str, Any]]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            emit_structured_error(
                logger,
                code=ErrorCode.CACHE_LOAD_FAILED,
                message=str(exc),
                suppressed=True,
                details={"path": str(self._path)},
            )
            return {}
        if not isinstance(data, dict):
            emit_structured_error(
                logger,
                code=ErrorCode.CACHE_LOAD_FAILED,
                message="Cache file does not hold a JSON object",
                suppressed=True,
                details={"path": str(self._path)},
            )
            return {}
        entries = {k: v for k, v in data.items() if isinstance(v, dict)}
        logger.info("Loaded AI cache", extra={"path": str(self._path), "entries": len(entries)})
        return entries

    def _save_locked(self) -> None:
        if not self._persist_enabled:
            return
        temp_path = self._path.with_suffix(".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(json.dumps(self._entries, ensure_ascii=False), encoding="utf-8")
            temp_path.replace(self._path)
        except OSError as exc:
            # Keep serving from memory; retrying every insert would only repeat the failure.
            self._persist_enabled = False
            emit_structured_error(
                logger,
                code=ErrorCode.CACHE_SAVE_FAILED,
                message=str(exc),
                suppressed=True,
                details={"path": str(self._path)},
            )

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or not _is_fresh(entry, self._clock(), self._ttl_s):
                return None
            return dict(entry)

    def put(self, key: str, value: dict[str, Any]) -> None:
        with self._lock:
            self._entries[key] = dict(value)
            self._save_locked()

    def clear(self) -> None:
        """Drop every entry and delete the cache file."""
        with self._lock:
            self._entries.clear()
            try:
                self._path.unlink(missing_ok=True)
            except OSError as exc:
                emit_structured_error(
                    logger,
                    code=ErrorCode.CACHE_SAVE_FAILED,
                    message=str(exc),
                    suppressed=True,
                    details={"path": str(self._path)},
                )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
