"""SQLAlchemy-backed session persistence."""

from threadloom.storage.engine import create_session_factory, create_store_engine, init_db
from threadloom.storage.store import SessionStore, SessionSummary

__all__ = [
    "SessionStore",
    "SessionSummary",
    "create_session_factory",
    "create_store_engine",
    "init_db",
]
