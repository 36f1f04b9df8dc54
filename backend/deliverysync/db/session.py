"""Database session management."""

from collections.abc import Generator
from typing import Annotated, Any, Dict

from fastapi import Depends
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from deliverysync.core.config import Settings, settings


def engine_options(config: Settings) -> Dict[str, Any]:
    """Keyword arguments for ``create_engine`` for the configured database."""
    options: Dict[str, Any] = {"echo": config.database_echo, "pool_pre_ping": True}
    if config.database_url.startswith("sqlite"):
        # Request handlers and the queue worker share connections across threads
        options["connect_args"] = {"check_same_thread": False}
        options["pool_recycle"] = 1800
    else:
        options["pool_size"] = config.database_pool_size
        options["max_overflow"] = config.database_max_overflow
        options["pool_recycle"] = 3600
    return options


engine = create_engine(settings.database_url, **engine_options(settings))

if settings.database_url.startswith("sqlite"):
    # ON DELETE rules on orders and order items
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


DbSession = Annotated[Session, Depends(get_db)]
