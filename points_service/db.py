from contextlib import contextmanager
import logging

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError, TimeoutError as PoolTimeout
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from common.error_handling import StoreTransient
from common.settings import settings

logger = logging.getLogger(__name__)

def build_engine(url: str):
    if url.startswith("sqlite"):
        # In-memory databases only exist on one connection
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_timeout=settings.db_pool_timeout,
        isolation_level="READ COMMITTED",
        connect_args={"connection_timeout": settings.db_connect_timeout},
    )

def make_session_factory(bind):
    return sessionmaker(bind=bind, expire_on_commit=False)

engine = build_engine(settings.sqlalchemy_url)
SessionLocal = make_session_factory(engine)

@contextmanager
def store_errors(operation: str):
    """Translate connection drops, lock waits and pool exhaustion into StoreTransient."""
    try:
        yield
    except (OperationalError, PoolTimeout) as e:
        logger.warning(f"Transient store error during {operation}: {e}", extra={"operation": operation})
        raise StoreTransient(f"{operation} failed: {e.__class__.__name__}", original_error=e) from e
