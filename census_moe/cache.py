"""
Response Cache - On-disk JSON cache for Census API responses.

Entries are written to a temporary file in the cache directory and
renamed into place, so concurrent readers see either the old entry or
the new one.

Author: Mir Md Tasnim Alam
"""

import os
import json
import hashlib
import logging
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """Cached raw response plus the time it was fetched."""

    data: Any
    fetched_at: datetime

    def age(self) -> timedelta:
        return datetime.now(timezone.utc) - self.fetched_at


class ResponseCache:
    """
    Cache of raw parsed responses keyed by request parameters.

    Entries never expire on their own; use invalidate() or clear().
    """

    def __init__(self, cache_dir: Path):
        """
        Initialize the cache.

        Args:
            cache_dir: Root directory; entries go in cache_dir/api.
        """
        self.cache_dir = Path(cache_dir) / "api"
        self.cache_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def make_key(**parts: Any) -> Dict[str, Any]:
        """Build a normalized request key (None values dropped)."""
        return {k: v for k, v in sorted(parts.items()) if v is not None}

    def get(
        self,
        key: Dict[str, Any],
        max_age: Optional[timedelta] = None
    ) -> Optional[CacheEntry]:
        """
        Look up a cache entry.

        Args:
            key: Request key from make_key().
            max_age: Treat older entries as misses.

        Returns:
            CacheEntry, or None on a miss, stale entry, or unreadable file.
        """
        path = self._path_for(key)
        if not path.exists():
            return None

        try:
            with open(path, "r", encoding="utf-8") as f:
                payload = json.load(f)
            entry = CacheEntry(
                data=payload["data"],
                fetched_at=datetime.fromisoformat(payload["fetched_at"])
            )
        except (OSError, ValueError, KeyError) as e:
            logger.warning(f"Ignoring unreadable cache entry {path.name}: {e}")
            return None

        if max_age is not None and entry.age() > max_age:
            logger.debug(f"Stale cache entry: {path.name}")
            return None

        logger.debug(f"Cache hit: {path.name}")
        return entry

    def put(self, key: Dict[str, Any], data: Any) -> CacheEntry:
        """Write an entry with write-then-rename."""
        entry = CacheEntry(data=data, fetched_at=datetime.now(timezone.utc))
        payload = {
            "fetched_at": entry.fetched_at.isoformat(),
            "key": key,
            "data": data
        }

        path = self._path_for(key)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.cache_dir, prefix=f".{path.stem}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

        logger.debug(f"Cached response: {path.name}")
        return entry

    def invalidate(self, key: Dict[str, Any]) -> bool:
        """Remove one entry. Returns True if it existed."""
        path = self._path_for(key)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False

    def clear(self) -> int:
        """Remove all entries. Returns the number removed."""
        removed = 0
        for path in self.cache_dir.glob("*.json"):
            path.unlink()
            removed += 1
        logger.info(f"Cleared {removed} cache entries")
        return removed

    def _path_for(self, key: Dict[str, Any]) -> Path:
        digest = hashlib.sha256(
            json.dumps(key, sort_keys=True, default=str).encode("utf-8")
        ).hexdigest()
        return self.cache_dir / f"{digest}.json"
