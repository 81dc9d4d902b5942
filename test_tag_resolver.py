"""
Tests for tag resolution through the cache, the store lookup, and tag creation.
"""

import sqlite3
from concurrent.futures import ThreadPoolExecutor

import pytest

from scan_ingest.image_store import StoreError
from scan_ingest.models import TagObservation
from scan_ingest.tag_cache import TagCache
from scan_ingest.tag_resolver import TagResolver
from scan_ingest.tags import dedupe_observations


def test_resolve_creates_missing_tags_once(resolver, store, cache, db):
    first = resolver.resolve(["cat", "dog"])
    second = resolver.resolve(["dog", "cat"])

    assert first == db.tag_ids()
    assert second == {"dog": first["dog"], "cat": first["cat"]}
    assert store.calls["create_tags"] == 1
    # Second resolution is served entirely from the cache
    assert store.calls["find_tags_by_name"] == 2
    assert cache.snapshot() == first


def test_resolve_uses_existing_tag_without_creating(resolver, store, db):
    existing = db.add_tag("cat")

    assert resolver.resolve(["cat"]) == {"cat": existing}
    assert store.calls["create_tags"] == 0
    assert db.tag_ids() == {"cat": existing}


def test_resolve_with_stale_cache_miss_in_another_process(store, db):
    # Another process created the tag after this cache was built
    existing = db.add_tag("cat")
    resolver = TagResolver(store, TagCache())

    assert resolver.resolve(["cat", "dog"])["cat"] == existing
    assert len(db.tag_ids()) == 2


def test_resolve_empty(resolver, store):
    assert resolver.resolve([]) == {}
    assert store.calls == {"find_tags_by_name": 0, "create_tags": 0}


def test_unresolvable_names_are_dropped(resolver, store, monkeypatch):
    # Simulate a store that accepts the create but never returns the new row
    monkeypatch.setattr(store, "create_tags", lambda names, *a, **kw: 0)

    assert resolver.resolve(["ghost"]) == {}


def test_store_failure_propagates(resolver, store, monkeypatch):
    def unreachable(names):
        raise StoreError("find_tags_by_name failed: connection refused")

    monkeypatch.setattr(store, "find_tags_by_name", unreachable)

    with pytest.raises(StoreError):
        resolver.resolve(["cat"])


def test_lost_creation_race_requeries_winner(resolver, store, db, failing_tag_insert):
    winner = {}

    def rival_creates_tag():
        winner["cat"] = db.add_tag("cat")

    failing_tag_insert(sqlite3.IntegrityError("UNIQUE constraint failed: tags.name"), before=rival_creates_tag)

    assert resolver.resolve(["cat"]) == winner
    assert store.calls == {"find_tags_by_name": 2, "create_tags": 1}


def test_resolve_observations_pairs_ids_with_confidence(resolver):
    observations = dedupe_observations(
        [TagObservation(tag="Cat", confidence=0.7), TagObservation(tag="dog", confidence=0.2, id=12345)]
    )

    resolved = resolver.resolve_observations(observations)

    assert [(tag.name, tag.confidence) for tag in resolved] == [("cat", 0.7), ("dog", 0.2)]
    # Incoming ids are ignored and overwritten
    assert observations["dog"].id == resolved[1].tag_id != 12345


def test_concurrent_resolution_creates_each_tag_once(store, cache, db):
    names = [f"tag-{i}" for i in range(20)]

    def work(offset):
        resolver = TagResolver(store, cache)
        # Each worker asks for the same names in a different order
        return resolver.resolve(names[offset:] + names[:offset])

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(work, range(8)))

    stored = db.tag_ids()
    assert len(stored) == 20
    for result in results:
        assert result == {name: stored[name] for name in result}
        assert set(result) == set(names)


def test_prewarm_loads_every_tag(resolver, store, cache, db):
    db.add_tag("cat")
    db.add_tag("dog")

    assert resolver.prewarm() == 2
    resolver.resolve(["cat", "dog"])

    assert store.calls["find_tags_by_name"] == 0
    assert cache.snapshot() == db.tag_ids()
