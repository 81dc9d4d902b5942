"""
Process-wide cache of tag name to tag id.
"""

import threading
from typing import Dict, Iterable, List, Optional, Tuple
from .logging import get_logger
from .performance_monitor import performance_monitor


class TagCache:
    """Thread-safe mapping of canonical tag names to stored tag ids.

    One instance is created at startup and shared by every request thread.
    Entries are never evicted; the store never renames or deletes tags, so an
    id stays valid for the life of the process. ``invalidate`` and ``clear``
    exist for callers that do rename tags out of band.
    """

    def __init__(self, initial: Optional[Dict[str, int]] = None):
        self.logger = get_logger("tag_cache")
        self._lock = threading.Lock()
        self._entries: Dict[str, int] = dict(initial or {})

    def lookup(self, name: str) -> Optional[int]:
        """Return the cached id for ``name``, or None."""
        with self._lock:
            tag_id = self._entries.get(name)
        if tag_id is None:
            performance_monitor.record_cache_miss()
        else:
            performance_monitor.record_cache_hit()
        return tag_id

    def put(self, name: str, tag_id: int) -> None:
        """Cache ``tag_id`` for ``name``. Writing the same pair again is a no-op."""
        with self._lock:
            previous = self._entries.get(name)
            self._entries[name] = tag_id
        if previous is not None and previous != tag_id:
            self.logger.warning(f"⚠️  Tag '{name}' changed id in cache: {previous} -> {tag_id}")

    def update(self, mapping: Dict[str, int]) -> None:
        """Cache several entries at once."""
        for name, tag_id in mapping.items():
            self.put(name, tag_id)

    def get_many(self, names: Iterable[str]) -> Tuple[Dict[str, int], List[str]]:
        """Split ``names`` into cached ``{name: id}`` and the uncached remainder."""
        found: Dict[str, int] = {}
        missing: List[str] = []
        with self._lock:
            for name in names:
                tag_id = self._entries.get(name)
                if tag_id is None:
                    missing.append(name)
                else:
                    found[name] = tag_id

        if found:
            performance_monitor.record_cache_hit(len(found))
        if missing:
            performance_monitor.record_cache_miss(len(missing))
        return found, missing

    def invalidate(self, name: str) -> bool:
        """Drop a single entry. Returns True if it was cached."""
        with self._lock:
            removed = self._entries.pop(name, None) is not None
        if removed:
            self.logger.debug(f"Tag cache entry invalidated: {name}")
        return removed

    def clear(self) -> None:
        """Drop every entry."""
        with self._lock:
            self._entries.clear()
        self.logger.debug("Tag cache cleared")

    def snapshot(self) -> Dict[str, int]:
        """Copy of the current entries."""
        with self._lock:
            return dict(self._entries)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
