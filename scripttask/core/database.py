"""
Database engine and session factory.

The sqlite in-process default keeps the service runnable without an external
database; any SQLAlchemy URL can be supplied through DATABASE_URL.
"""

from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from scripttask.core.config import settings


def build_engine(url: Optional[str] = None, **kwargs) -> Engine:
    url = url or settings.DATABASE_URL
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(url, future=True, **kwargs)


def build_session_factory(engine: Engine) -> sessionmaker:
    # Records leave the session detached after commit; keep loaded attributes readable.
    return sessionmaker(
        bind=engine, autocommit=False, autoflush=False, expire_on_commit=False
    )


engine = build_engine()
SessionLocal = build_session_factory(engine)


def init_db(bind: Optional[Engine] = None) -> None:
    """Create all tables known to the declarative base."""
    from scripttask.db.base import Base

    Base.metadata.create_all(bind=bind or engine)
