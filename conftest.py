"""
Shared pytest fixtures for the Image Scan Ingest tests.
"""

from contextlib import contextmanager

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.sql.dml import Insert

from scan_ingest.database import Image, Tag, TagsOnImage, TagType
from scan_ingest.image_store import ImageStore
from scan_ingest.processor import ScanResultProcessor
from scan_ingest.tag_cache import TagCache
from scan_ingest.tag_resolver import TagResolver


class CountingStore(ImageStore):
    """ImageStore that records how often each batched tag call is made."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls = {"find_tags_by_name": 0, "create_tags": 0}

    def find_tags_by_name(self, names):
        self.calls["find_tags_by_name"] += 1
        return super().find_tags_by_name(names)

    def create_tags(self, names, *args, **kwargs):
        self.calls["create_tags"] += 1
        return super().create_tags(names, *args, **kwargs)


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'scan_ingest_test.db'}"


@pytest.fixture
def store(database_url):
    store = CountingStore(database_url, echo=False)
    yield store
    store.close()


@pytest.fixture
def cache():
    return TagCache()


@pytest.fixture
def resolver(store, cache):
    return TagResolver(store, cache)


@pytest.fixture
def processor(store, cache, resolver):
    return ScanResultProcessor(store=store, cache=cache, resolver=resolver)


@pytest.fixture
def failing_tag_insert(store, monkeypatch):
    """Make INSERTs issued by ``store`` raise an IntegrityError wrapping ``orig``.

    ``before`` runs just ahead of the failure, e.g. to commit a rival row.
    """
    def arm(orig, before=None):
        real_transaction = store._transaction

        @contextmanager
        def transaction():
            with real_transaction() as session:
                execute = session.execute

                def failing_execute(statement, *args, **kwargs):
                    if isinstance(statement, Insert):
                        if before is not None:
                            before()
                        raise IntegrityError("INSERT INTO tags", None, orig)
                    return execute(statement, *args, **kwargs)

                session.execute = failing_execute
                yield session

        monkeypatch.setattr(store, "_transaction", transaction)

    return arm


@pytest.fixture
def db(store):
    """Direct database access for arranging and asserting state."""
    return Database(store)


class Database:
    """Small helper for seeding rows and reading them back."""

    def __init__(self, store: ImageStore):
        self.engine = store.engine

    def add_image(self, image_id: int, nsfw: bool = False) -> None:
        with Session(self.engine) as session, session.begin():
            session.add(Image(id=image_id, nsfw=nsfw))

    def add_tag(self, name: str, tag_type: TagType = TagType.LABEL) -> int:
        with Session(self.engine) as session, session.begin():
            tag = Tag(name=name, type=tag_type, target=["Image"])
            session.add(tag)
            session.flush()
            return tag.id

    def link(self, image_id: int, tag_id: int, confidence=None, automated: bool = False) -> None:
        with Session(self.engine) as session, session.begin():
            session.add(TagsOnImage(image_id=image_id, tag_id=tag_id, confidence=confidence, automated=automated))

    def get_image(self, image_id: int):
        with Session(self.engine) as session:
            image = session.get(Image, image_id)
            if image is not None:
                session.expunge(image)
            return image

    def tag_ids(self):
        with Session(self.engine) as session:
            return {name: tag_id for name, tag_id in session.execute(select(Tag.name, Tag.id))}

    def get_tag(self, name: str):
        with Session(self.engine) as session:
            tag = session.execute(select(Tag).where(Tag.name == name)).scalar_one_or_none()
            if tag is not None:
                session.expunge(tag)
            return tag

    def image_tags(self, image_id: int, automated=None):
        """``{tag name: (confidence, automated)}`` for an image."""
        stmt = (
            select(Tag.name, TagsOnImage.confidence, TagsOnImage.automated)
            .join(Tag, Tag.id == TagsOnImage.tag_id)
            .where(TagsOnImage.image_id == image_id)
        )
        if automated is not None:
            stmt = stmt.where(TagsOnImage.automated.is_(automated))
        with Session(self.engine) as session:
            return {name: (confidence, is_automated) for name, confidence, is_automated in session.execute(stmt)}
