"""
SQLAlchemy schema definitions, engine caching, and session management.
"""

import enum
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    create_engine,
    event,
    func,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from .logging import get_logger

logger = get_logger("database")


class TagType(str, enum.Enum):
    """Category of a tag."""

    USER_GENERATED = "UserGenerated"
    LABEL = "Label"
    MODERATION = "Moderation"
    SYSTEM = "System"


class TagTarget(str, enum.Enum):
    """Kinds of record a tag may be applied to."""

    IMAGE = "Image"
    POST = "Post"
    MODEL = "Model"


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class Image(Base):
    """Image record. Created elsewhere; scanned, flagged or deleted here."""

    __tablename__ = "images"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    scanned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    nsfw: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class Tag(Base):
    """A named tag, unique by canonical name."""

    __tablename__ = "tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    type: Mapped[TagType] = mapped_column(
        Enum(TagType, native_enum=False, length=32, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=TagType.LABEL,
    )
    target: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (Index("idx_tags_type", "type"),)


class TagsOnImage(Base):
    """Association of a tag with an image.

    ``automated`` separates scanner output from human-curated tags; only
    automated rows are rewritten by scan events.
    """

    __tablename__ = "tags_on_image"

    image_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("images.id", ondelete="CASCADE"), primary_key=True
    )
    tag_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True
    )
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    automated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        Index("idx_tags_on_image_tag_id", "tag_id"),
        Index("idx_tags_on_image_automated", "image_id", "automated"),
    )


_ENGINE_CACHE: Dict[str, Engine] = {}
_ENGINE_LOCK = Lock()


def normalize_database_url(target: Union[str, Path]) -> str:
    """Normalize database URL or path inputs to absolute URLs."""
    if isinstance(target, Path):
        return f"sqlite:///{target.resolve()}"

    raw = str(target).strip()
    if not raw:
        raise ValueError("database target cannot be empty")

    if "://" not in raw:
        return f"sqlite:///{Path(raw).resolve()}"

    url = make_url(raw)
    if url.drivername.startswith("sqlite"):
        database = url.database or ""
        if database not in {":memory:", ""}:
            db_path = Path(database)
            if not db_path.is_absolute():
                db_path = (Path.cwd() / db_path).resolve()
            url = url.set(database=str(db_path))
        return url.render_as_string(hide_password=False)

    return raw


def get_engine(target: Union[str, Path], echo: bool = False) -> Engine:
    """Return a cached engine for ``target``, creating the schema on first use."""
    normalized = normalize_database_url(target)
    engine = _ENGINE_CACHE.get(normalized)
    if engine is not None:
        return engine

    with _ENGINE_LOCK:
        engine = _ENGINE_CACHE.get(normalized)
        if engine is not None:
            return engine

        sa_url = make_url(normalized)
        is_sqlite = sa_url.drivername.startswith("sqlite")

        engine_kwargs: Dict[str, Any] = {"echo": echo}
        if is_sqlite:
            if sa_url.database and sa_url.database != ":memory:":
                Path(sa_url.database).parent.mkdir(parents=True, exist_ok=True)
            engine_kwargs["connect_args"] = {"timeout": 30.0, "check_same_thread": False}
        else:
            engine_kwargs["pool_pre_ping"] = True

        engine = create_engine(normalized, **engine_kwargs)

        if is_sqlite:

            @event.listens_for(engine, "connect")
            def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
                """Configure SQLite for concurrent access and enforce foreign keys."""
                cursor = dbapi_connection.cursor()
                try:
                    cursor.execute("PRAGMA journal_mode=WAL")
                    cursor.execute("PRAGMA busy_timeout = 30000")
                    cursor.execute("PRAGMA foreign_keys = ON")
                finally:
                    cursor.close()

        try:
            Base.metadata.create_all(engine)
        except OperationalError as exc:
            # Several processes starting against one SQLite file can race on CREATE TABLE
            if "already exists" in str(exc).lower():
                logger.info(f"Schema creation raced with another process: {exc}")
            else:
                raise

        logger.debug(f"Database engine ready: {sa_url.render_as_string(hide_password=True)}")
        _ENGINE_CACHE[normalized] = engine
        return engine


def dispose_engines() -> None:
    """Dispose and forget every cached engine."""
    with _ENGINE_LOCK:
        for engine in _ENGINE_CACHE.values():
            engine.dispose()
        _ENGINE_CACHE.clear()


def dialect_insert(session: Session, table: Any) -> Any:
    """Return a dialect-aware INSERT statement supporting ON CONFLICT."""
    bind = session.get_bind()
    if bind is None:
        raise RuntimeError("Session is not bound to an engine.")

    name = bind.dialect.name
    if name == "sqlite":
        return sqlite_insert(table)
    if name.startswith("postgresql"):
        return pg_insert(table)
    raise NotImplementedError(f"Unsupported dialect for upsert: {name}")


__all__ = [
    "Base",
    "Image",
    "Tag",
    "TagsOnImage",
    "TagTarget",
    "TagType",
    "dialect_insert",
    "dispose_engines",
    "get_engine",
    "normalize_database_url",
]
