"""
Database engine for the durable cache store.
Synchronous SQLAlchemy engine: tier snapshots are written synchronously
right after each cache mutation.
"""

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from wikicache.datastore.models import Base

DEFAULT_DATABASE_URL = "sqlite:///./wikicache.db"


def create_store_engine(database_url: str = DEFAULT_DATABASE_URL, echo: bool = False) -> Engine:
    """Create the engine and make sure the snapshot table exists."""
    engine = create_engine(database_url or DEFAULT_DATABASE_URL, echo=echo, future=True)
    Base.metadata.create_all(engine)
    return engine


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, expire_on_commit=False)
