"""Database connection and session management."""

import os
import threading
from contextlib import contextmanager, nullcontext
from typing import Optional, Iterator
from sqlalchemy import create_engine, Engine, text
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool

# Base class for all database models
Base = declarative_base()

DEFAULT_DATABASE_URL = "sqlite:///./taskflow.db"


def _is_memory_sqlite(database_url: str) -> bool:
    return database_url in ("sqlite://", "sqlite:///:memory:") or ":memory:" in database_url


def create_database_engine(database_url: str,
                           echo: bool = False,
                           connect_args: Optional[dict] = None) -> Engine:
    """Create a database engine with settings appropriate for the backend."""
    if connect_args is None:
        if database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False}
        else:
            connect_args = {}

    if database_url.startswith("sqlite") and _is_memory_sqlite(database_url):
        # One shared connection keeps the in-memory database alive across sessions
        return create_engine(
            database_url,
            connect_args=connect_args,
            poolclass=StaticPool,
            echo=echo
        )
    return create_engine(
        database_url,
        echo=echo,
        connect_args=connect_args
    )


class Database:
    """Engine plus session factory for one database URL."""

    def __init__(self, database_url: Optional[str] = None, echo: bool = False):
        self.database_url = database_url or os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
        self.engine = create_database_engine(self.database_url, echo=echo)
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )
        # SQLite allows a single writer; serialize sessions instead of hitting "database is locked"
        self.serialized = self.database_url.startswith("sqlite")
        self._write_lock = threading.RLock()

    def get_db(self) -> Iterator[Session]:
        """Yield a session and close it afterwards."""
        db = self.SessionLocal()
        try:
            yield db
        finally:
            db.close()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Session scope, serialized for SQLite."""
        guard = self._write_lock if self.serialized else nullcontext()
        with guard:
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

    def create_tables(self):
        """Create all database tables."""
        from . import models  # noqa: F401  registers the mappings on Base
        Base.metadata.create_all(bind=self.engine)

    def drop_tables(self):
        """Drop all database tables."""
        Base.metadata.drop_all(bind=self.engine)

    def check_connection(self) -> str:
        with self.session() as db:
            db.execute(text("SELECT 1"))
        return "Database connection OK"

    def dispose(self):
        self.engine.dispose()


# Global database instance
_database: Optional[Database] = None


def get_database(database_url: Optional[str] = None, echo: bool = False) -> Database:
    """Get or create the process-wide database."""
    global _database

    if _database is None:
        _database = Database(database_url, echo=echo)

    return _database


def reset_database():
    """Reset the global database (mainly for testing)."""
    global _database
    if _database:
        _database.dispose()
    _database = None


def get_db() -> Iterator[Session]:
    """Dependency to get database session."""
    yield from get_database().get_db()


def create_tables():
    """Create all database tables."""
    get_database().create_tables()


def drop_tables():
    """Drop all database tables."""
    get_database().drop_tables()
