"""SQLAlchemy engine and session setup."""

from __future__ import annotations

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from staycal.config import get_database_url


class Base(DeclarativeBase):
    pass


def create_db_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine; SQLite gets thread access and immediate write transactions."""
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo, pool_pre_ping=True)

    sqlite_engine = create_engine(
        url,
        echo=echo,
        connect_args={"check_same_thread": False, "timeout": 15},
    )

    # pysqlite defers BEGIN until the first write, which lets two readers race
    # to upgrade their locks. Take the write lock when the transaction starts.
    @event.listens_for(sqlite_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return sqlite_engine


engine = create_db_engine(get_database_url())

SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)


def get_session() -> Session:
    """Create a new database session."""
    return SessionLocal()


def init_db(bind: Engine | None = None) -> None:
    """Create all tables. Import models first so they register with Base."""
    import staycal.models.availability  # noqa: F401
    import staycal.models.booking  # noqa: F401
    import staycal.models.hold  # noqa: F401
    import staycal.models.listing  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
