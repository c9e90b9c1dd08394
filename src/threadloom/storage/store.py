"""SessionStore -- persists ChatSessions through SQLAlchemy.

Implements the SessionPersister protocol. Each call opens a short-lived
ORM session, so one store can be shared by the orchestrator and the CLI.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Engine, select

from threadloom.exceptions import SessionNotFoundError
from threadloom.models.session import ChatSession
from threadloom.storage.engine import create_session_factory, create_store_engine, init_db
from threadloom.storage.schema import SessionRow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionSummary:
    session_id: str
    name: str
    node_count: int
    created_at: datetime
    updated_at: datetime


class SessionStore:
    """Durable storage for chat sessions."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._factory = create_session_factory(engine)

    @classmethod
    def open(cls, db_path: str = ":memory:", *, url: str | None = None) -> SessionStore:
        """Create the engine, initialise the schema and return a store."""
        engine = create_store_engine(db_path, url=url)
        init_db(engine)
        return cls(engine)

    def persist(self, session: ChatSession) -> None:
        """Insert or replace *session*."""
        payload = session.model_dump_json()
        with self._factory() as db:
            row = db.get(SessionRow, session.id)
            if row is None:
                row = SessionRow(
                    session_id=session.id,
                    name=session.name,
                    payload_json=payload,
                    created_at=session.created_at,
                    updated_at=session.updated_at,
                )
                db.add(row)
            else:
                row.name = session.name
                row.payload_json = payload
                row.updated_at = session.updated_at
            db.commit()
        logger.debug("Persisted session %s (%d nodes)", session.id, len(session.nodes))

    def load(self, session_id: str) -> ChatSession:
        """Load a session.

        Raises:
            SessionNotFoundError: If no session has *session_id*.
        """
        with self._factory() as db:
            row = db.get(SessionRow, session_id)
            if row is None:
                raise SessionNotFoundError(session_id)
            return ChatSession.model_validate_json(row.payload_json)

    def list_sessions(self) -> list[SessionSummary]:
        """Summaries of all stored sessions, most recently updated first."""
        with self._factory() as db:
            rows = db.execute(
                select(SessionRow).order_by(SessionRow.updated_at.desc())
            ).scalars().all()
            summaries = []
            for row in rows:
                session = ChatSession.model_validate_json(row.payload_json)
                summaries.append(SessionSummary(
                    session_id=row.session_id,
                    name=row.name,
                    node_count=len(session.nodes),
                    created_at=row.created_at,
                    updated_at=row.updated_at,
                ))
            return summaries

    def delete(self, session_id: str) -> bool:
        """Delete a stored session. Returns False if it did not exist."""
        with self._factory() as db:
            row = db.get(SessionRow, session_id)
            if row is None:
                return False
            db.delete(row)
            db.commit()
            return True

    def close(self) -> None:
        self._engine.dispose()
