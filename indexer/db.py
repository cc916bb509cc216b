from sqlmodel import create_engine, SQLModel
from sqlalchemy import event, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
import logging

logger = logging.getLogger(__name__)


def make_engine(database_url: str) -> Engine:
    """
    Build the SQLAlchemy engine for the indexer store.

    Postgres gets a small pre-pinged pool and a statement timeout; SQLite
    (local runs and tests) gets a single shared connection.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    engine = create_engine(
        database_url,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=300,  # Serverless Postgres drops idle connections
        pool_timeout=30,
        connect_args={"connect_timeout": 10},
    )
    event.listen(engine, "connect", _set_statement_timeout)
    return engine


def _set_statement_timeout(dbapi_connection, connection_record):
    """Cap query time so a stuck statement cannot wedge an indexing cycle."""
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("SET statement_timeout = '30s'")
    except Exception as e:
        logger.warning(f"Could not set statement timeout: {e}")
    finally:
        cursor.close()


def check_db_connection(engine: Engine) -> None:
    """Raise if the database is unreachable."""
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


def create_db_and_tables(engine: Engine) -> None:
    # Register every table on SQLModel.metadata before create_all
    import indexer.models  # noqa: F401

    SQLModel.metadata.create_all(engine)

