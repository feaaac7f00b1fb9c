from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker


def create_db_engine(url: str) -> Engine:
    return create_engine(
        url,
        connect_args={"check_same_thread": False} if url.startswith("sqlite") else {},
    )


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """
    Session factory shared by the hierarchy, the grant store and request sessions.

    `expire_on_commit=False` so that rows returned from a committed write
    (e.g. a freshly created unit) stay readable after the session closes.
    """

    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, class_=Session)
