"""
Database engine
Default engine for partitioned tables built without an explicit engine.
Created on first use from the configured database URL.
"""
from sqlalchemy import Engine
from sqlmodel import create_engine

from core.config import settings

_engine: Engine | None = None


def get_engine() -> Engine:
    """Get or create the database engine for the configured URL."""
    global _engine
    if _engine is None:
        _engine = create_engine(settings.get_database_url(), echo=settings.database_echo)
    return _engine
