from contextlib import contextmanager
from sqlalchemy import create_engine
from sqlalchemy.exc import InterfaceError, OperationalError, TimeoutError as SATimeoutError
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from typing import Generator, Iterator
import logging
import redis

from .config import settings
from .exceptions import UpstreamUnavailableError

logger = logging.getLogger(__name__)


def make_engine(url: str, timeout: int = settings.DB_TIMEOUT_SECONDS) -> Engine:
    """Create an engine whose connect, lock and statement waits are bounded."""
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": timeout},
        )

    return create_engine(
        url,
        pool_size=5,
        max_overflow=10,
        pool_timeout=timeout,
        pool_recycle=1800,  # Recycle connections after 30 minutes
        pool_pre_ping=True,
        connect_args={
            "connect_timeout": timeout,
            "options": f"-c statement_timeout={timeout * 1000}",
        },
    )


engine = make_engine(settings.get_database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)

Base = declarative_base()

redis_client = redis.from_url(
    settings.REDIS_URL,
    decode_responses=True,
    socket_timeout=settings.DB_TIMEOUT_SECONDS,
)


# Database dependency
def get_db() -> Generator[Session, None, None]:
    """Get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Redis dependency
def get_redis():
    """Get Redis client."""
    return redis_client


def init_db(bind: Engine = engine):
    """Initialize database tables."""
    from ..models import appointment, doctor, notification  # noqa: F401

    Base.metadata.create_all(bind=bind)


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    """Surface store timeouts and connection failures as UpstreamUnavailableError."""
    try:
        yield
    except (OperationalError, InterfaceError, SATimeoutError) as exc:
        logger.error(f"Store call '{operation}' failed: {exc}")
        raise UpstreamUnavailableError(f"Store unavailable during {operation}") from exc
