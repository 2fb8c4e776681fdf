import logging
from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from slotwatch import config

log = logging.getLogger(__name__)


def normalize_url(connection_url: str) -> str:
    """Rewrite a provider connection string into one SQLAlchemy can use."""
    if connection_url.startswith("postgres://"):
        connection_url = connection_url.replace("postgres://", "postgresql://", 1)

    # Convert postgresql+psycopg:// to postgresql+psycopg2:// for compatibility
    if "postgresql+psycopg:" in connection_url and "postgresql+psycopg2:" not in connection_url:
        connection_url = connection_url.replace("postgresql+psycopg:", "postgresql+psycopg2:")

    # Supabase session mode (5432) has very low connection limits, use transaction mode
    if "supabase.com" in connection_url and ":5432" in connection_url:
        log.warning("[Database] Supabase session mode detected (port 5432) - switching to transaction mode (port 6543)")
        connection_url = connection_url.replace(":5432", ":6543")

    if "supabase.com" in connection_url and "sslmode=" not in connection_url:
        separator = "&" if "?" in connection_url else "?"
        connection_url = f"{connection_url}{separator}sslmode=require"

    return connection_url


def create_db_engine(connection_url: str) -> Engine:
    connection_url = normalize_url(connection_url)
    if connection_url.startswith("sqlite"):
        return create_engine(connection_url)

    engine = create_engine(
        connection_url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=3,
        max_overflow=7,
        pool_recycle=300,
        echo=False,
    )
    log.info("[Database] SQLAlchemy engine created with pool_size=3, max_overflow=7")
    return engine


@lru_cache()
def get_engine() -> Engine:
    return create_db_engine(config.get_settings().POSTGRES_URI)
