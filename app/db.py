from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool
import logging

from app.core.settings import settings

logger = logging.getLogger("app.database")

DATABASE_URL = settings.database_url


def enable_sqlite_write_locking(engine: Engine, busy_timeout_ms: int = 30000) -> None:
    """Make every SQLite transaction take the write lock up front.

    pysqlite defers BEGIN until the first write, so a "read max, then insert"
    unit would run unlocked. Emitting BEGIN IMMEDIATE ourselves gives SQLite the
    same serialization that SELECT ... FOR UPDATE gives on PostgreSQL.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Take over transaction control from the driver
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str, **overrides) -> Engine:
    """Create an engine for the given URL with the app's pooling defaults."""
    if url.startswith("sqlite"):
        kwargs = {
            "connect_args": {"check_same_thread": False, "timeout": 30},
            "echo": settings.sql_debug,
        }
        kwargs.update(overrides)
        engine = create_engine(url, **kwargs)
        enable_sqlite_write_locking(engine)
        return engine

    kwargs = {
        "poolclass": QueuePool,
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_pre_ping": True,  # Validate connections before use
        "pool_recycle": settings.db_pool_recycle,
        "echo": settings.sql_debug,
    }
    kwargs.update(overrides)
    return create_engine(url, **kwargs)


engine = build_engine(DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

async def check_database_health():
    """Check if database is accessible."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("Database health check: PASSED")
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        logger.error(f"Database health check: FAILED - {str(e)}")
        return {"status": "unhealthy", "database": f"error: {str(e)}"}

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
