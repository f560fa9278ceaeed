"""
Database configuration.

Synchronous SQLAlchemy engine, session factory and the FastAPI dependency
that hands one session to each request.
"""
import logging
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from examhost.config import settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}

engine = create_engine(settings.database_url, connect_args=connect_args, pool_pre_ping=True)

SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db() -> None:
    """Create all tables registered on Base"""
    import examhost.models  # noqa: F401  (registers models)

    Base.metadata.create_all(bind=engine)
    logger.info("Database ready: %s", settings.database_url)


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
