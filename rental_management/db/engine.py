import os
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker


def configure_sqlite_locking(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first write; take the write lock up front
    # so the availability check and the insert run under the same lock.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(db_url: str) -> Engine:
    if db_url.startswith("sqlite"):
        engine = create_engine(
            db_url,
            connect_args={"timeout": 30, "check_same_thread": False},
            future=True,
        )
        configure_sqlite_locking(engine)
        return engine

    return create_engine(
        db_url,
        pool_pre_ping=True,
        pool_size=int(os.environ.get("DB_POOL_SIZE") or "5"),
        max_overflow=int(os.environ.get("DB_MAX_OVERFLOW") or "5"),
        future=True,
    )


def build_sessionmaker(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    """One unit of work: commit on success, roll back on any error, always release."""
    db = session_factory()
    try:
        yield db
        db.commit()
    except BaseException:
        db.rollback()
        raise
    finally:
        db.close()
