"""Engine and session factory for Threadloom storage."""

from __future__ import annotations

import logging

from sqlalchemy import Engine, create_engine, event, select
from sqlalchemy.orm import Session, sessionmaker

from threadloom.storage.schema import Base, MetaRow

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1"
_VERSION_KEY = "schema_version"

_SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA busy_timeout=5000",
    "PRAGMA synchronous=NORMAL",
)


def _sqlite_url(db_path: str) -> str:
    return "sqlite://" if db_path == ":memory:" else f"sqlite:///{db_path}"


def create_store_engine(
    db_path: str = ":memory:",
    *,
    url: str | None = None,
) -> Engine:
    """Create a SQLAlchemy engine for the session store.

    Args:
        db_path: SQLite file path, or ``":memory:"``. Ignored when *url*
            is given.
        url: Any SQLAlchemy database URL.

    WAL journaling and a busy timeout are set on every SQLite connection
    so the CLI can read while a conversation is writing.
    """
    engine = create_engine(url or _sqlite_url(db_path), echo=False)

    if engine.dialect.name == "sqlite":

        @event.listens_for(engine, "connect")
        def _apply_pragmas(dbapi_conn, connection_record):  # type: ignore[no-untyped-def]
            cursor = dbapi_conn.cursor()
            for pragma in _SQLITE_PRAGMAS:
                cursor.execute(pragma)
            cursor.close()

    return engine


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Session factory with expire_on_commit=False (rows are read after commit)."""
    return sessionmaker(bind=engine, expire_on_commit=False)


def read_schema_version(engine: Engine) -> str | None:
    """Stored schema version, or None for an uninitialised database."""
    with create_session_factory(engine)() as session:
        row = session.execute(
            select(MetaRow).where(MetaRow.key == _VERSION_KEY)
        ).scalar_one_or_none()
        return row.value if row is not None else None


def init_db(engine: Engine) -> None:
    """Create missing tables and stamp a new database with SCHEMA_VERSION."""
    Base.metadata.create_all(engine)
    stored = read_schema_version(engine)
    if stored is not None:
        if stored != SCHEMA_VERSION:
            logger.warning(
                "Session store schema version %s, expected %s", stored, SCHEMA_VERSION
            )
        return
    with create_session_factory(engine)() as session:
        session.add(MetaRow(key=_VERSION_KEY, value=SCHEMA_VERSION))
        session.commit()
    logger.debug("Initialised session store schema v%s", SCHEMA_VERSION)
