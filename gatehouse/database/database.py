"""Database engine, session factory and transaction helpers"""

from typing import Generator, Optional
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
import structlog

from gatehouse.config import settings
from gatehouse.errors import ConflictError

logger = structlog.get_logger()


def _normalize_url(url: str) -> str:
    # Some providers use postgres:// but SQLAlchemy requires postgresql://
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def build_engine(url: Optional[str] = None, **kwargs):
    """Create an engine for the configured (or given) database URL"""
    url = _normalize_url(url or settings.DATABASE_URL)
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    else:
        kwargs.setdefault("pool_pre_ping", True)
        kwargs.setdefault("pool_recycle", 3600)
    return create_engine(url, **kwargs)


engine = build_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Yield a request-scoped session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def commit_or_conflict(db: Session, message: str) -> None:
    """Commit, turning a store-level uniqueness violation into a ConflictError.

    Pre-checks in services only give friendlier messages; the unique
    constraints decide races between concurrent writers.
    """
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.info("integrity_conflict", message=message, error=str(e.orig))
        raise ConflictError(message) from e


def flush_or_conflict(db: Session, message: str) -> None:
    """Flush pending rows, with the same conflict translation as commit"""
    try:
        db.flush()
    except IntegrityError as e:
        db.rollback()
        logger.info("integrity_conflict", message=message, error=str(e.orig))
        raise ConflictError(message) from e
