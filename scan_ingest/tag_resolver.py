"""
Resolution of canonical tag names to stored tag ids.
"""

from typing import Dict, Iterable, List, Mapping
from .image_store import ImageStore
from .logging import get_logger
from .models import ResolvedTag, TagObservation
from .performance_monitor import performance_monitor
from .tag_cache import TagCache


class TagResolver:
    """Maps tag names to ids via the shared cache, a batched lookup, then creation."""

    def __init__(self, store: ImageStore, cache: TagCache):
        self.store = store
        self.cache = cache
        self.logger = get_logger("tag_resolver")

    def resolve(self, names: Iterable[str]) -> Dict[str, int]:
        """Resolve canonical tag names to ids, creating tags that don't exist yet.

        Costs at most three store round-trips no matter how many names are
        given: one lookup for cache misses, one batched create for names the
        store doesn't have, and one requery for the ids of the created tags.
        Names still unresolved after that are left out of the result.
        Raises StoreError if the store is unreachable.
        """
        wanted = list(dict.fromkeys(names))
        if not wanted:
            return {}

        resolved, unresolved = self.cache.get_many(wanted)

        # Get tags that we don't have cached
        if unresolved:
            found = self.store.find_tags_by_name(unresolved)
            self.cache.update(found)
            resolved.update(found)
            unresolved = [name for name in unresolved if name not in found]

        # Add missing tags
        if unresolved:
            self.logger.debug(f"Creating {len(unresolved)} new tags")
            self.store.create_tags(unresolved)
            created = self.store.find_tags_by_name(unresolved)
            self.cache.update(created)
            resolved.update(created)
            unresolved = [name for name in unresolved if name not in created]

        if unresolved:
            performance_monitor.record_tags_dropped(len(unresolved))
            self.logger.warning(f"⚠️  Could not resolve {len(unresolved)} tags, skipping: {unresolved}")

        # Preserve the caller's ordering
        return {name: resolved[name] for name in wanted if name in resolved}

    def resolve_observations(self, observations: Mapping[str, TagObservation]) -> List[ResolvedTag]:
        """Resolve deduplicated observations, keeping only those that got an id."""
        ids = self.resolve(observations.keys())
        resolved = []
        for name, observation in observations.items():
            tag_id = ids.get(name)
            if tag_id is None:
                continue
            observation.id = tag_id
            resolved.append(ResolvedTag(name=name, tag_id=tag_id, confidence=observation.confidence))
        return resolved

    def prewarm(self) -> int:
        """Load every stored tag into the cache. Returns the number of tags cached."""
        tags = self.store.get_all_tags()
        self.cache.update(tags)
        self.logger.info(f"🏷️  Tag cache pre-warmed with {len(tags)} tags")
        return len(tags)
