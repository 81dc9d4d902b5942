"""
Persistent store for images, tags, and image tag associations.
"""

import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, TypeVar
from sqlalchemy import delete, func, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from .config import settings
from .database import Image, Tag, TagsOnImage, TagType, dialect_insert, get_engine
from .logging import get_logger
from .models import ResolvedTag
from .performance_monitor import performance_monitor

T = TypeVar("T")


def _is_tag_name_conflict(error: IntegrityError) -> bool:
    """True when an insert failed only because a tag with that name already exists."""
    orig = error.orig
    # PostgreSQL unique_violation; the name index is the only unique key besides the serial id
    if getattr(orig, "sqlstate", None) == "23505":
        return True
    return "UNIQUE constraint failed: tags.name" in str(orig)


class StoreError(Exception):
    """Custom exception for persistent store errors."""
    pass


class ImageStore:
    """Store client covering everything the scan pipeline needs from the database.

    Every public method runs in its own transaction, so each call either
    commits completely or not at all.
    """

    def __init__(self, database_url: Optional[str] = None, echo: Optional[bool] = None):
        self.database_url = database_url or settings.database_url
        self.logger = get_logger("image_store")
        self.engine = get_engine(
            self.database_url,
            echo=settings.database_echo if echo is None else echo,
        )
        self.default_targets = list(settings.tag_targets)

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        with Session(self.engine) as session, session.begin():
            yield session

    def _run(self, operation: str, work: Callable[[Session], T]) -> T:
        """Run ``work`` in a transaction, timing it and wrapping store failures."""
        start = time.time()
        try:
            with self._transaction() as session:
                return work(session)
        except SQLAlchemyError as e:
            self.logger.error(f"❌ Store operation '{operation}' failed: {e}")
            raise StoreError(f"{operation} failed: {e}") from e
        finally:
            performance_monitor.record_store_call(time.time() - start)

    def delete_image(self, image_id: int) -> bool:
        """Delete an image. Returns False if it was already absent."""
        def work(session: Session) -> bool:
            result = session.execute(
                delete(Image)
                .where(Image.id == image_id)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

        deleted = self._run("delete_image", work)
        self.logger.debug(f"Delete image {image_id}: {'deleted' if deleted else 'not present'}")
        return deleted

    def image_exists(self, image_id: int) -> bool:
        """Check whether an image record exists."""
        return self._run(
            "image_exists",
            lambda session: session.execute(
                select(Image.id).where(Image.id == image_id)
            ).first() is not None,
        )

    def delete_automated_tags(self, image_id: int) -> int:
        """Remove every automated tag association of an image. Curated rows are kept."""
        def work(session: Session) -> int:
            result = session.execute(
                delete(TagsOnImage)
                .where(TagsOnImage.image_id == image_id, TagsOnImage.automated.is_(True))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

        removed = self._run("delete_automated_tags", work)
        self.logger.debug(f"Cleared {removed} automated tags from image {image_id}")
        return removed

    def find_tags_by_name(self, names: Iterable[str]) -> Dict[str, int]:
        """Look up tag ids for the given names in one query."""
        wanted = list(dict.fromkeys(names))
        if not wanted:
            return {}

        def work(session: Session) -> Dict[str, int]:
            rows = session.execute(select(Tag.name, Tag.id).where(Tag.name.in_(wanted)))
            return {name: tag_id for name, tag_id in rows}

        return self._run("find_tags_by_name", work)

    def get_all_tags(self) -> Dict[str, int]:
        """Get every stored tag as ``{name: id}``."""
        return self._run(
            "get_all_tags",
            lambda session: {name: tag_id for name, tag_id in session.execute(select(Tag.name, Tag.id))},
        )

    def create_tags(
        self,
        names: Iterable[str],
        tag_type: TagType = TagType.LABEL,
        targets: Optional[Sequence[str]] = None,
    ) -> int:
        """Create tags in one batched insert, skipping names that already exist.

        A concurrent request creating the same name is not an error: the
        conflict is ignored and callers requery to pick up the winner's id.
        Returns the number of rows actually inserted.
        """
        wanted = list(dict.fromkeys(names))
        if not wanted:
            return 0
        target = list(targets) if targets is not None else list(self.default_targets)

        def work(session: Session) -> int:
            stmt = dialect_insert(session, Tag).values(
                [{"name": name, "type": tag_type, "target": target} for name in wanted]
            )
            stmt = stmt.on_conflict_do_nothing(index_elements=["name"])
            return session.execute(stmt).rowcount

        start = time.time()
        try:
            with self._transaction() as session:
                created = work(session)
        except IntegrityError as e:
            if not _is_tag_name_conflict(e):
                self.logger.error(f"❌ Store operation 'create_tags' failed: {e}")
                raise StoreError(f"create_tags failed: {e}") from e
            # Lost a uniqueness race on tag name; the rows exist, so requery will find them
            performance_monitor.record_tag_creation_race()
            self.logger.info(f"Tag creation raced with another request, will requery: {e.orig}")
            return 0
        except SQLAlchemyError as e:
            self.logger.error(f"❌ Store operation 'create_tags' failed: {e}")
            raise StoreError(f"create_tags failed: {e}") from e
        finally:
            performance_monitor.record_store_call(time.time() - start)

        if created < len(wanted):
            performance_monitor.record_tag_creation_race()
        performance_monitor.record_tags_created(created)
        self.logger.debug(f"Created {created} of {len(wanted)} requested tags")
        return created

    def upsert_image_tags(self, image_id: int, tags: List[ResolvedTag]) -> int:
        """Insert or refresh automated tag associations for an image in one statement.

        An existing row for the same (image, tag) pair keeps its identity and
        only has its confidence replaced.
        """
        if not tags:
            return 0

        def work(session: Session) -> int:
            stmt = dialect_insert(session, TagsOnImage).values(
                [
                    {
                        "image_id": image_id,
                        "tag_id": tag.tag_id,
                        "confidence": tag.confidence,
                        "automated": True,
                    }
                    for tag in tags
                ]
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["image_id", "tag_id"],
                set_={"confidence": stmt.excluded.confidence},
            )
            session.execute(stmt)
            return len(tags)

        applied = self._run("upsert_image_tags", work)
        self.logger.debug(f"Upserted {applied} automated tags on image {image_id}")
        return applied

    def update_scan_status(self, image_id: int) -> bool:
        """Stamp an image as scanned and derive its nsfw flag in one statement.

        The flag is true exactly when the image has an automated association
        with a Moderation-type tag. Returns False if the image does not exist.
        """
        has_moderation_tag = (
            select(TagsOnImage.tag_id)
            .join(Tag, Tag.id == TagsOnImage.tag_id)
            .where(
                TagsOnImage.image_id == image_id,
                TagsOnImage.automated.is_(True),
                Tag.type == TagType.MODERATION,
            )
            .exists()
        )

        def work(session: Session) -> bool:
            result = session.execute(
                update(Image)
                .where(Image.id == image_id)
                .values(scanned_at=func.now(), nsfw=has_moderation_tag)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

        return self._run("update_scan_status", work)

    def test_connection(self) -> bool:
        """Test the connection to the database."""
        try:
            self._run("test_connection", lambda session: session.execute(text("SELECT 1")).scalar())
            self.logger.info("Connection test successful")
            return True
        except StoreError as e:
            self.logger.error(f"Connection test failed: {e}")
            return False

    def close(self):
        """Release pooled connections."""
        self.engine.dispose()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
