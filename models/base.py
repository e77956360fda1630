# models/base.py
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy import create_engine
from contextlib import contextmanager
import os


class Base(DeclarativeBase):
    pass


def make_engine(url: str):
    return create_engine(url, pool_pre_ping=True, future=True)


def make_engine_from_env():
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set")
    return make_engine(url)


def make_session_factory(engine):
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        future=True,
        expire_on_commit=False,  # prevents DetachedInstanceError after commit
    )


def init_engine_and_session(url: str | None = None):
    """Build an engine + session factory pair. Callers own the result."""
    engine = make_engine(url) if url else make_engine_from_env()
    return engine, make_session_factory(engine)


@contextmanager
def session_scope(factory):
    """Provide a transactional scope around a series of operations."""
    s = factory()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
