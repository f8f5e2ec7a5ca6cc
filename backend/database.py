"""
Engine and session factory for the pickup database.

The URL comes from Settings.database_url (env DATABASE_URL). Local runs and
tests use a SQLite file or in-memory database; deployments point at Postgres.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from config import get_settings


def normalize_database_url(url: str) -> str:
    """Rewrite the legacy postgres:// scheme, which SQLAlchemy 2 rejects."""
    if url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://"):]
    return url


def build_engine(url: str):
    """
    Create an engine for the given URL.

    SQLite connections are shared across the threadpool FastAPI runs sync
    work on, so the same-thread check is turned off for them.
    """
    url = normalize_database_url(url)
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


DATABASE_URL = normalize_database_url(get_settings().database_url)
engine = build_engine(DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Request-scoped session for FastAPI endpoints."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """Create any missing tables on the given engine (default: the app engine)."""
    from db_models import Base
    Base.metadata.create_all(bind=bind or engine)
