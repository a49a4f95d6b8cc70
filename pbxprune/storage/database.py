"""Database access for pbxprune using SQLAlchemy."""
from __future__ import annotations

import contextlib
from pathlib import Path
from typing import Generator

from sqlalchemy import Column, DateTime, Index, Integer, String, create_engine, event, text
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.orm import declarative_base

Base = declarative_base()

_TABLE_ARGS = {"mysql_charset": "utf8mb4", "mysql_collate": "utf8mb4_unicode_ci"}


def _text(length: int) -> Column:
    return Column(String(length), nullable=False, server_default=text("''"))


def _counter() -> Column:
    return Column(Integer, nullable=False, server_default=text("'0'"))


class CallDetailRecord(Base):
    """Asterisk ``cdr`` row: one completed call attempt.

    The table has no primary key in Asterisk; the mapper uses the
    ``uniqueid``/``sequence`` pair so rows can be loaded through the ORM.
    """

    __tablename__ = "cdr"

    calldate = Column(DateTime, nullable=False, server_default=text("'0000-00-00 00:00:00'"))
    clid = _text(80)
    src = _text(80)
    dst = _text(80)
    dcontext = _text(80)
    channel = _text(80)
    dstchannel = _text(80)
    lastapp = _text(80)
    lastdata = _text(80)
    duration = _counter()
    billsec = _counter()
    disposition = _text(45)
    amaflags = _counter()
    accountcode = _text(20)
    uniqueid = _text(32)
    userfield = _text(255)
    did = _text(50)
    recordingfile = _text(255)
    cnum = _text(80)
    cnam = _text(80)
    outbound_cnum = _text(80)
    outbound_cnam = _text(80)
    dst_cnam = _text(80)
    linkedid = _text(32)
    peeraccount = _text(80)
    sequence = _counter()

    __table_args__ = (
        Index("calldate", "calldate"),
        Index("dst", "dst"),
        Index("accountcode", "accountcode"),
        Index("uniqueid", "uniqueid"),
        Index("did", "did"),
        Index("recordingfile", "recordingfile", mysql_length=191),
        _TABLE_ARGS,
    )
    __mapper_args__ = {"primary_key": [uniqueid, sequence]}


class ChannelEventRecord(Base):
    """Asterisk ``cel`` row: one channel event during a call's lifecycle."""

    __tablename__ = "cel"

    id = Column(Integer, primary_key=True, autoincrement=True)
    eventtype = Column(String(30), nullable=False)
    eventtime = Column(DateTime, nullable=False)
    cid_name = Column(String(80), nullable=False)
    cid_num = Column(String(80), nullable=False)
    cid_ani = Column(String(80), nullable=False)
    cid_rdnis = Column(String(80), nullable=False)
    cid_dnid = Column(String(80), nullable=False)
    exten = Column(String(80), nullable=False)
    context = Column(String(80), nullable=False)
    channame = Column(String(80), nullable=False)
    appname = Column(String(80), nullable=False)
    appdata = Column(String(255), nullable=False)
    amaflags = Column(Integer, nullable=False)
    accountcode = Column(String(20), nullable=False)
    uniqueid = Column(String(32), nullable=False)
    linkedid = Column(String(32), nullable=False)
    peer = Column(String(80), nullable=False)
    userdeftype = Column(String(255), nullable=False)
    extra = Column(String(512), nullable=False)

    __table_args__ = (
        Index("uniqueid_index", "uniqueid"),
        Index("linkedid_index", "linkedid"),
        Index("context_index", "context"),
        _TABLE_ARGS,
    )


def _enable_sqlite_transactional_ddl(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first DML statement; emit it ourselves so
    # CREATE/ALTER/DROP take part in the surrounding transaction.

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn: Connection) -> None:
        conn.exec_driver_sql("BEGIN")


def create_db_engine(database_url: str) -> Engine:
    """Create an engine for ``database_url`` (MySQL/MariaDB, PostgreSQL or SQLite)."""

    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(url, future=True, connect_args={"check_same_thread": False})
        _enable_sqlite_transactional_ddl(engine)
        return engine
    return create_engine(url, future=True, pool_pre_ping=True)


def init_storage(database_url: str) -> Engine:
    """Create the Asterisk ``cdr``/``cel`` tables if missing and return the engine."""

    engine = create_db_engine(database_url)
    Base.metadata.create_all(engine)
    return engine


@contextlib.contextmanager
def connection_scope(engine: Engine) -> Generator[Connection, None, None]:
    """Provide a transactional scope for database operations."""

    conn = engine.connect()
    trans = conn.begin()
    try:
        yield conn
        trans.commit()
    except Exception:
        trans.rollback()
        raise
    finally:
        conn.close()


__all__ = [
    "Base",
    "CallDetailRecord",
    "ChannelEventRecord",
    "create_db_engine",
    "init_storage",
    "connection_scope",
]
