# storefront/database.py
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker, declarative_base
from flask import g

from storefront.config import Config

engine_kwargs = {
    "echo": Config.SQL_ECHO,
    "future": True,
    "pool_pre_ping": True,
}

if not Config.DATABASE_URL.startswith("sqlite"):
    engine_kwargs["pool_size"] = Config.DB_POOL_SIZE
    engine_kwargs["max_overflow"] = Config.DB_MAX_OVERFLOW

engine = create_engine(Config.DATABASE_URL, **engine_kwargs)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)

Base = declarative_base()


def init_db() -> None:
    """Create all tables registered on Base."""
    import storefront.models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def get_db() -> Session:
    if 'db' not in g:
        g.db = SessionLocal()
    return g.db


def close_db(e=None):
    try:
        db = g.pop('db', None)
        if db is not None:
            if e is not None:
                db.rollback()
            db.close()
    except RuntimeError:
        # Outside of an application context (test teardown)
        pass


@contextmanager
def session_scope() -> Iterator[Session]:
    """Standalone session for CLI commands running outside a request."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
