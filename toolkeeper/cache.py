"""
Small JSON caches with per-entry time-to-live.

Used for the latest-release lookups of ``tool list --updates`` and for the
registry/GitHub lookups of the dependency audit. Files are written atomically
and an unreadable or foreign-schema file is treated as empty.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Mapping

from .common import atomic_write_text, now_unix_secs, xdg_dir

logger = logging.getLogger(__name__)

CACHE_DIR_NAME = "toolkeeper"
SCHEMA_VERSION = 1


def cache_file_path(env: Mapping[str, str], file_name: str) -> Path | None:
    """Location of a cache file under ``$XDG_CACHE_HOME/toolkeeper`` (or ``~/.cache``)."""
    base = xdg_dir(env, "XDG_CACHE_HOME", ".cache")
    if base is None:
        return None
    return base / CACHE_DIR_NAME / file_name


class TtlCache:
    """
    Keyed JSON cache, safe to share between worker threads.

    File format::

        {"schema_version": 1,
         "entries": {"<key>": {"fetched_at_unix_secs": 0, "data": {...}}}}
    """

    def __init__(self, path: Path | None, entries: dict[str, dict[str, Any]] | None = None):
        self.path = path
        self._entries: dict[str, dict[str, Any]] = entries or {}
        self._dirty = False
        self._lock = threading.Lock()

    @classmethod
    def load(cls, path: Path | None) -> TtlCache:
        if path is None or not path.exists():
            return cls(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.debug(f"Ignoring unreadable cache {path}: {e}")
            return cls(path)
        if not isinstance(data, dict) or data.get("schema_version") != SCHEMA_VERSION:
            return cls(path)
        entries = data.get("entries")
        return cls(path, entries if isinstance(entries, dict) else {})

    def get(self, key: str, ttl_seconds: int, now: int | None = None) -> Any | None:
        """Return cached data if younger than ttl_seconds."""
        now = now_unix_secs() if now is None else now
        with self._lock:
            entry = self._entries.get(key)
        if not isinstance(entry, dict):
            return None
        fetched_at = entry.get("fetched_at_unix_secs")
        if not isinstance(fetched_at, int) or now - fetched_at > ttl_seconds or fetched_at > now:
            return None
        return entry.get("data")

    def put(self, key: str, data: Any, now: int | None = None) -> None:
        now = now_unix_secs() if now is None else now
        with self._lock:
            self._entries[key] = {"fetched_at_unix_secs": now, "data": data}
            self._dirty = True

    def save_if_dirty(self) -> bool:
        """
        Persist changes.

        Returns:
            True if the file was written
        """
        with self._lock:
            if not self._dirty or self.path is None:
                return False
            payload = {"schema_version": SCHEMA_VERSION, "entries": dict(self._entries)}
            self._dirty = False
        try:
            atomic_write_text(self.path, json.dumps(payload, indent=2, sort_keys=True) + "\n")
        except OSError as e:
            logger.warning(f"Failed to persist cache {self.path}: {e}")
            return False
        return True
