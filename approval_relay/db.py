"""Database engine and session utilities for the relay's keyed store."""

from __future__ import annotations

from contextlib import contextmanager
from functools import lru_cache
from typing import Generator

import structlog
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from approval_relay.config import get_settings

Base = declarative_base()


@lru_cache()
def get_engine() -> Engine:
    """Create or return a cached SQLAlchemy engine.

    Slack events are handled on the background pool, so a SQLite store
    must accept connections that move between threads.
    """

    settings = get_settings()
    url = make_url(settings.database_url)
    connect_args = {"check_same_thread": False} if url.get_backend_name() == "sqlite" else {}
    return create_engine(url, echo=False, pool_pre_ping=True, connect_args=connect_args)


@lru_cache()
def get_session_factory() -> sessionmaker[Session]:
    """Return a cached session factory bound to the engine."""

    return sessionmaker(
        bind=get_engine(),
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Run one unit of work against the store.

    The commit happens when the block exits, so constraint violations
    such as a second decision for a request surface to the caller as
    ``IntegrityError`` after the rollback.
    """

    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception as exc:
        session.rollback()
        structlog.get_logger().debug("store_rolled_back", error_type=type(exc).__name__)
        raise
    finally:
        session.close()


def create_schema() -> None:
    """Create every table registered on :data:`Base`."""

    # Imported for the side effect of registering the mapped tables.
    from approval_relay import models  # noqa: F401

    Base.metadata.create_all(get_engine())
