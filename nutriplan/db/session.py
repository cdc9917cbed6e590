import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from nutriplan.db.models import Base

DB_PATH = os.getenv("DB_PATH", "./nutriplan.db")


def record_store_engine(db_path: str) -> Engine:
    """SQLite engine backing the record store. Creates the parent directory on demand."""
    Path(db_path).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
    # Sync route handlers reach the store from the threadpool.
    return create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})


engine = record_store_engine(DB_PATH)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def configure_database(db_path: str) -> Engine:
    global DB_PATH, engine
    DB_PATH = db_path
    engine.dispose()
    engine = record_store_engine(db_path)
    SessionLocal.configure(bind=engine)
    return engine


def create_tables() -> None:
    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    db = (factory or SessionLocal)()
    try:
        yield db
    finally:
        db.close()
