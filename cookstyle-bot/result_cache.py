"""Persisted per-repository result cache keyed by commit fingerprint.

Document layout (``<cache_dir>/cache.json``)::

    {
      "repositories": {
        "<name>": {
          "commit_fingerprint": "<sha>",
          "had_issues": false,
          "result_summary": "...",
          "processing_duration": 12.3,
          "recorded_at": "2024-01-01T00:00:00+00:00"
        }
      },
      "last_updated": "2024-01-01T00:00:00+00:00"
    }

A missing or unreadable document loads as an empty table; a broken cache
means every repository misses, never that the run stops.
"""

import json
import logging
import os
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

CACHE_FILENAME = "cache.json"
DEFAULT_MAX_AGE = 7 * 24 * 60 * 60
# Used to estimate time saved by a hit before any real durations are recorded.
FALLBACK_DURATION = 5.0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CacheEntry:
    commit_fingerprint: str
    had_issues: bool
    result_summary: str
    processing_duration: float
    recorded_at: datetime = field(default_factory=_utc_now)

    def age_seconds(self, now: datetime | None = None) -> float:
        return ((now or _utc_now()) - self.recorded_at).total_seconds()

    def is_fresh(self, fingerprint: str, max_age: float, now: datetime | None = None) -> bool:
        return self.commit_fingerprint == fingerprint and self.age_seconds(now) <= max_age

    def to_dict(self) -> dict:
        data = asdict(self)
        data["recorded_at"] = self.recorded_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "CacheEntry":
        """Build an entry from its JSON form; raises ValueError/KeyError/TypeError on bad data."""
        if not isinstance(data["had_issues"], bool):
            raise TypeError(f"had_issues must be a boolean, got {data['had_issues']!r}")
        recorded_at = datetime.fromisoformat(str(data["recorded_at"]).replace("Z", "+00:00"))
        if recorded_at.tzinfo is None:
            recorded_at = recorded_at.replace(tzinfo=timezone.utc)
        return cls(
            commit_fingerprint=str(data["commit_fingerprint"]),
            had_issues=data["had_issues"],
            result_summary=str(data.get("result_summary") or ""),
            processing_duration=float(data.get("processing_duration") or 0.0),
            recorded_at=recorded_at,
        )


class CacheStats:
    """Running hit/miss counters for one process lifetime."""

    def __init__(self) -> None:
        self.hits = 0
        self.misses = 0
        self.updates = 0
        self.time_saved = 0.0
        self.started = time.monotonic()

    def record_hit(self, estimated_duration: float) -> None:
        self.hits += 1
        self.time_saved += estimated_duration

    def record_miss(self) -> None:
        self.misses += 1

    def record_update(self) -> None:
        self.updates += 1

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return round(self.hits / total * 100, 2) if total else 0.0

    def to_dict(self) -> dict:
        return {
            "cache_hits": self.hits,
            "cache_misses": self.misses,
            "cache_updates": self.updates,
            "cache_hit_rate": self.hit_rate,
            "estimated_time_saved": round(self.time_saved, 2),
            "runtime": round(time.monotonic() - self.started, 2),
        }


class Cache:
    """Fingerprint cache shared by all workers of a run.

    Reads work on the in-memory table. Every mutation rewrites the whole
    document before returning, under one lock, so concurrent workers never
    interleave partial writes.
    """

    def __init__(self, cache_dir: str | Path):
        self.dir = Path(cache_dir)
        self.path = self.dir / CACHE_FILENAME
        self.stats = CacheStats()
        self._lock = threading.Lock()
        self._entries: dict[str, CacheEntry] = {}
        self.last_updated: datetime | None = None
        self._load()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def is_fresh(
        self,
        name: str,
        fingerprint: str,
        max_age: float | None = None,
        average_duration: float | None = None,
    ) -> bool:
        """Return True if *name*'s entry matches *fingerprint* and is at most *max_age* seconds old.

        *max_age* defaults to seven days when omitted.

        A True result records a hit, adding *average_duration* (or the
        table's current average) to the estimated time saved.
        """
        if max_age is None:
            max_age = DEFAULT_MAX_AGE
        entry = self._entries.get(name)
        if entry is None or not entry.is_fresh(fingerprint, max_age):
            return False
        hint = self.average_duration() if average_duration is None else average_duration
        with self._lock:
            self.stats.record_hit(hint)
        return True

    def get(self, name: str) -> CacheEntry | None:
        return self._entries.get(name)

    def put(
        self,
        name: str,
        fingerprint: str,
        had_issues: bool,
        result_summary: str,
        duration: float,
    ) -> CacheEntry:
        entry = CacheEntry(
            commit_fingerprint=fingerprint,
            had_issues=had_issues,
            result_summary=result_summary,
            processing_duration=duration,
        )
        with self._lock:
            self._entries[name] = entry
            self.stats.record_miss()
            self.stats.record_update()
            self._save()
        logger.debug("Cached %s at %s (had_issues=%s)", name, fingerprint, had_issues)
        return entry

    def invalidate(self, name: str) -> None:
        with self._lock:
            if self._entries.pop(name, None) is not None:
                self._save()
                logger.debug("Invalidated cache entry for %s", name)

    def invalidate_all(self) -> None:
        with self._lock:
            self._entries = {}
            self._save()
        logger.info("Cleared all cache entries in %s", self.path)

    def average_duration(self) -> float:
        durations = [e.processing_duration for e in list(self._entries.values())]
        if not durations:
            return FALLBACK_DURATION
        return sum(durations) / len(durations)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def table_stats(self) -> dict:
        entries = list(self._entries.values())
        return {
            "total_repositories": len(entries),
            "repositories_with_issues": sum(1 for e in entries if e.had_issues),
            "average_processing_duration": round(self.average_duration(), 2),
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "cache_file": str(self.path),
        }

    def entries(self) -> dict[str, CacheEntry]:
        return dict(self._entries)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> None:
        if not self.path.exists():
            logger.debug("No cache file at %s, starting empty", self.path)
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            repositories = data["repositories"]
            if not isinstance(repositories, dict):
                raise TypeError("'repositories' is not a mapping")
        except (OSError, json.JSONDecodeError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable cache file %s: %s", self.path, exc)
            return

        for name, raw in repositories.items():
            try:
                self._entries[name] = CacheEntry.from_dict(raw)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Dropping malformed cache entry for %s: %s", name, exc)
        try:
            self.last_updated = datetime.fromisoformat(str(data.get("last_updated")).replace("Z", "+00:00"))
        except ValueError:
            self.last_updated = None
        logger.debug("Loaded %d cache entries from %s", len(self._entries), self.path)

    def _save(self) -> bool:
        """Write the table to disk; a write failure is logged and the in-memory table kept."""
        # caller holds self._lock
        self.last_updated = _utc_now()
        document = {
            "repositories": {name: e.to_dict() for name, e in self._entries.items()},
            "last_updated": self.last_updated.isoformat(),
        }
        tmp_path = self.path.with_suffix(".json.tmp")
        try:
            self.dir.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(document, indent=2, sort_keys=True) + "\n", encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            logger.warning("Could not write cache file %s: %s", self.path, exc)
            return False
        return True
