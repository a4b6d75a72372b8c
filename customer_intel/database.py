"""
Engine, session factory and declarative base.

Components never call get_session() directly; they receive a
services.db.Store wrapping it (tests hand Store their own factory).
"""
from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from customer_intel.config import DATABASE_URL


class Base(DeclarativeBase):
    pass


def normalize_url(url: str) -> str:
    # SQLAlchemy 2.x only accepts the postgresql:// scheme
    if url.startswith('postgres://'):
        return 'postgresql://' + url[len('postgres://'):]
    return url


def make_engine(url: str):
    """SQLite for local runs and tests, pooled Postgres otherwise."""
    url = normalize_url(url)
    if url.startswith('sqlite'):
        # RQ workers and Flask threads may share the file
        return create_engine(url, connect_args={'check_same_thread': False})
    return create_engine(url, pool_pre_ping=True, pool_size=5, max_overflow=10)


engine = make_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)


def get_session():
    return SessionLocal()


def utcnow():
    """Naive UTC; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
