from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config import get_settings


def make_engine(database_url: str) -> Engine:
    connect_args: dict[str, object] = {}
    kwargs: dict[str, object] = {}
    is_sqlite = database_url.startswith("sqlite")
    if is_sqlite:
        connect_args["check_same_thread"] = False
        if ":memory:" in database_url:
            # one shared connection, otherwise every checkout sees an empty db
            kwargs["poolclass"] = StaticPool

    eng = create_engine(database_url, connect_args=connect_args, **kwargs)
    if is_sqlite:
        event.listen(eng, "connect", _configure_sqlite_connection)
        event.listen(eng, "begin", _emit_sqlite_begin)
    return eng


def _configure_sqlite_connection(dbapi_conn, _record):
    # pysqlite defers BEGIN until the first DML, which breaks SAVEPOINT;
    # take over transaction demarcation in _emit_sqlite_begin instead.
    dbapi_conn.isolation_level = None
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def _emit_sqlite_begin(conn):
    conn.exec_driver_sql("BEGIN")


engine = make_engine(get_settings().database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
