# relay/db/session.py
"""
Database session management.
Provides database connections for FastAPI and context managers.
"""
import logging
from sqlalchemy import create_engine, make_url, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool
from contextlib import contextmanager

from relay.core.config import DATABASE_URL, DB_ECHO

log = logging.getLogger("relay.database")


def is_memory_sqlite(url: str) -> bool:
    """True for ``sqlite://``, ``:memory:`` and ``mode=memory`` URLs."""
    database = make_url(url).database
    return not database or database == ":memory:" or "mode=memory" in url


def make_engine(url: str = DATABASE_URL) -> Engine:
    """
    Build the SQLAlchemy engine.

    In-memory SQLite (tests) must share its single connection across the
    threadpool. File SQLite gets a connection per session so one session's
    rollback can't discard another's writes. Everything else gets a pooled
    engine.
    """
    if url.startswith("sqlite"):
        if is_memory_sqlite(url):
            return create_engine(
                url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=DB_ECHO,
            )
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            echo=DB_ECHO,
        )
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=20,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before using
        echo=DB_ECHO,
    )


# ────────────────────────────────────────────
# SQLAlchemy Engine
# ────────────────────────────────────────────
engine = make_engine()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


# ────────────────────────────────────────────
# FastAPI Dependency
# ────────────────────────────────────────────
def get_db():
    """
    FastAPI dependency for database sessions.

    Usage:
        @router.get("/items")
        def get_items(db: Session = Depends(get_db)):
            return db.query(Item).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# ────────────────────────────────────────────
# Context Manager
# ────────────────────────────────────────────
@contextmanager
def get_db_session(factory: sessionmaker = SessionLocal):
    """
    Context manager for database sessions.

    Commits on success, rolls back and re-raises on any error.

    Usage:
        with get_db_session() as db:
            user = db.query(User).first()
    """
    db: Session = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# ────────────────────────────────────────────
# Database Utilities
# ────────────────────────────────────────────
def test_db_connection() -> bool:
    """Test database connection"""
    try:
        with get_db_session() as db:
            db.execute(text("SELECT 1"))
        log.info("Database connection successful")
        return True
    except Exception as e:
        log.error(f"Database connection failed: {e}")
        return False


def init_db(bind: Engine = engine):
    """
    Initialize database tables.
    This will create all tables defined in models.
    """
    from relay.db.base import Base
    try:
        Base.metadata.create_all(bind=bind)
        log.info("Database tables initialized")
    except Exception as e:
        log.error(f"Failed to initialize database: {e}")
        raise
