"""
Relational store behind the backend gateway.
GATEWAY_URL is any SQLAlchemy URL (PostgreSQL in production, SQLite locally)
"""
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from core.config import GATEWAY_URL

if not GATEWAY_URL:
    raise ValueError("GATEWAY_URL environment variable is required for the backend gateway")

if GATEWAY_URL.startswith("sqlite"):
    # Single shared connection so in-memory databases survive across sessions
    engine = create_engine(
        GATEWAY_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
else:
    engine = create_engine(
        GATEWAY_URL,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=10,
        max_overflow=20,
        echo=False  # Set to True for SQL query logging in development
    )

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for ORM models
Base = declarative_base()


@contextmanager
def session_scope(factory=None):
    """
    Transactional scope used by the gateway
    Usage:
        with session_scope() as db:
            db.add(row)
    Commits on success, rolls back and re-raises on error.
    """
    db = (factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db():
    """
    Initialize database tables
    Call this on application startup
    """
    # Register every mapped table on Base.metadata before create_all
    import models.user  # noqa: F401
    import models.gallery  # noqa: F401
    import models.purchase  # noqa: F401
    import models.site  # noqa: F401
    Base.metadata.create_all(bind=engine)
