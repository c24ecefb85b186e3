from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, Optional, TypedDict


logger = logging.getLogger(__name__)


class CacheEntry(TypedDict):
    data: Any
    last_updated: Optional[int]
    last_error: Optional[str]
    last_error_at: Optional[int]
    fetch_count: int
    error_count: int
    stale_discard_count: int
    sequence: int


class Cache:
    """Per-feed application state.

    Values are replaced wholesale and never mutated after ``set``, so readers
    receive the installed object itself. Each feed carries a monotonic
    sequence so a slow fetch cannot overwrite a newer result.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._store: Dict[str, CacheEntry] = {}
        self._issued: Dict[str, int] = {}

    def _ensure_key(self, key: str) -> CacheEntry:
        if key not in self._store:
            self._store[key] = {
                "data": None,
                "last_updated": None,
                "last_error": None,
                "last_error_at": None,
                "fetch_count": 0,
                "error_count": 0,
                "stale_discard_count": 0,
                "sequence": 0,
            }
        return self._store[key]

    def next_sequence(self, key: str) -> int:
        with self._lock:
            self._issued[key] = self._issued.get(key, 0) + 1
            return self._issued[key]

    def set(self, key: str, data: Any, sequence: Optional[int] = None) -> bool:
        """Install ``data`` for ``key``; returns False if the result was stale."""

        now = int(time.time())
        with self._lock:
            entry = self._ensure_key(key)
            if sequence is not None:
                if sequence < entry["sequence"]:
                    entry["stale_discard_count"] += 1
                    logger.warning(
                        "Discarding out-of-order %s result (sequence %s < %s).",
                        key,
                        sequence,
                        entry["sequence"],
                    )
                    return False
                entry["sequence"] = sequence
            entry["data"] = data
            entry["last_updated"] = now
            entry["last_error"] = None
            entry["last_error_at"] = None
            entry["fetch_count"] += 1
            return True

    def get(self, key: str) -> CacheEntry:
        with self._lock:
            return dict(self._ensure_key(key))  # type: ignore[return-value]

    def record_error(self, key: str, error: str) -> None:
        now = int(time.time())
        with self._lock:
            entry = self._ensure_key(key)
            entry["last_error"] = error
            entry["last_error_at"] = now
            entry["error_count"] += 1

    def get_all_metadata(self) -> Dict[str, CacheEntry]:
        with self._lock:
            return {key: dict(entry) for key, entry in self._store.items()}  # type: ignore[misc]
