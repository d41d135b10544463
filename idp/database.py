"""
Database setup and transaction handling.

The engine never talks to a global connection: a Database object is created
once per process (or per test) and handed to whoever needs sessions.
"""

import logging
from contextlib import contextmanager
from typing import Generator

from fastapi import Request
from sqlalchemy import create_engine, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config import DATABASE_URL
from .errors import StorageFault
from .models import Base

logger = logging.getLogger(__name__)

_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """
    Owns the SQLAlchemy engine and session factory.

    Usage:
        database = Database("sqlite:///./idp.db")
        database.init_db()
        with database.session() as db:
            ...
    """

    def __init__(self, url: str = DATABASE_URL, echo: bool = False):
        kwargs = {}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in _MEMORY_URLS:
                # one shared connection, otherwise every session sees an empty database
                kwargs["poolclass"] = StaticPool

        self.engine = create_engine(url, echo=echo, **kwargs)
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)

        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=self.engine,
            expire_on_commit=False,
        )

    def init_db(self):
        """Create missing tables. Failure here is fatal for the process."""
        Base.metadata.create_all(bind=self.engine)
        logger.info("[DB] Tables ready (%s)", self.engine.dialect.name)

    def drop_all(self):
        Base.metadata.drop_all(bind=self.engine)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        db = self.SessionLocal()
        try:
            yield db
        finally:
            db.close()

    def dispose(self):
        self.engine.dispose()


def get_db(request: Request) -> Generator[Session, None, None]:
    """FastAPI dependency yielding a session bound to the app's database."""
    db = request.app.state.database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session) -> Generator[Session, None, None]:
    """
    Run a unit of work: commit on success, roll back on any error.

    Repository failures are logged and surfaced as StorageFault without
    their internal detail; every other exception propagates unchanged.
    """
    try:
        yield db
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("[DB] Transaction rolled back")
        raise StorageFault()
    except BaseException:
        db.rollback()
        raise
