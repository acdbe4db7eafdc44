# app/db/engine.py

from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from app.config import get_settings


def build_engine(db_url: str) -> Engine:
    """
    Create an engine for db_url.

    SQLite connections are shared across the FastAPI threadpool, and writers
    wait up to SQLITE_BUSY_TIMEOUT on a locked database before the ledger
    treats it as contention.
    """
    settings = get_settings()
    connect_args = {}
    if db_url.startswith("sqlite"):
        connect_args = {
            "check_same_thread": False,
            "timeout": settings.SQLITE_BUSY_TIMEOUT,
        }
    # echo=True if you want to see SQL printed in the terminal
    return create_engine(db_url, future=True, connect_args=connect_args)


@lru_cache
def get_engine() -> Engine:
    return build_engine(get_settings().DATABASE_URL)
