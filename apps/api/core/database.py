"""
Database connection management with connection pooling.

The API process uses the module-level ``SessionLocal`` through ``get_db``.
Worker processes build their own session factory at start-up with
``create_session_factory`` and hand it to the pipeline explicitly.
"""
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool
from core.config import settings, Settings
import logging
import time

logger = logging.getLogger(__name__)


def build_database_url(config: Settings) -> str:
    """Resolve the SQLAlchemy URL from settings."""
    if config.DATABASE_URL:
        return config.DATABASE_URL
    return (
        f"postgresql://{config.POSTGRES_USER}:"
        f"{config.POSTGRES_PASSWORD}@"
        f"{config.POSTGRES_HOST}:"
        f"{config.POSTGRES_PORT}/"
        f"{config.POSTGRES_DB}"
    )


def create_db_engine(url: str, config: Settings = settings) -> Engine:
    """
    Create an engine for ``url``.

    SQLite (tests, local tooling) gets a single shared connection so an
    in-memory database is visible to every session; everything else gets
    a pre-pinged QueuePool.
    """
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=config.DEBUG,
        )

    db_engine = create_engine(
        url,
        poolclass=QueuePool,
        pool_size=config.DB_POOL_SIZE,  # Number of connections to maintain
        max_overflow=config.DB_MAX_OVERFLOW,  # Additional connections beyond pool_size
        pool_timeout=config.DB_POOL_TIMEOUT,  # Seconds to wait for connection
        pool_recycle=config.DB_POOL_RECYCLE,  # Recycle connections after this many seconds
        pool_pre_ping=True,  # Verify connections before using
        echo=config.DEBUG,  # Log SQL queries in debug mode
    )

    @event.listens_for(db_engine, "connect")
    def receive_connect(dbapi_conn, connection_record):
        logger.debug("New database connection established")

    return db_engine


def create_session_factory(db_engine: Engine) -> sessionmaker:
    """Session factory bound to ``db_engine``."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=db_engine,
        expire_on_commit=False,  # Prevent lazy loading issues
    )


DATABASE_URL = build_database_url(settings)

engine = create_db_engine(DATABASE_URL)

# Session factory
SessionLocal = create_session_factory(engine)

Base = declarative_base()


def get_db() -> Session:
    """
    Dependency for FastAPI to get database session.

    This function ensures:
    - Connection is properly acquired from pool
    - Connection is returned to pool after request
    - Transactions are properly managed
    - Connection health is verified with retry logic
    """
    db = None
    max_retries = 3
    retry_delay = 0.1  # 100ms initial delay

    for attempt in range(max_retries):
        try:
            db = SessionLocal()
            # Verify connection is alive
            db.execute(text("SELECT 1"))
            break
        except Exception as e:
            if db:
                db.close()
            if attempt == max_retries - 1:
                logger.error(f"Failed to establish database connection after {max_retries} attempts: {e}")
                raise
            logger.warning(f"Database connection attempt {attempt + 1} failed, retrying...")
            time.sleep(retry_delay * (2 ** attempt))  # Exponential backoff

    try:
        yield db
        db.commit()
    except Exception as e:
        db.rollback()
        # Only log actual database errors, not HTTP exceptions
        from fastapi import HTTPException
        if not isinstance(e, HTTPException):
            logger.error(f"Database transaction error: {e}")
        raise
    finally:
        if db:
            db.close()


def check_db_connection() -> bool:
    """
    Check if database connection is healthy.

    Returns:
        True if connection is healthy, False otherwise
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False
