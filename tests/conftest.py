from __future__ import annotations

import datetime as dt
from pathlib import Path
from typing import Any, Iterator

import pytest
from sqlalchemy import select
from sqlalchemy.engine import Engine

from pbxprune.common.config import RetentionPolicy
from pbxprune.storage.database import CallDetailRecord, ChannelEventRecord, init_storage
from pbxprune.storage.schema import reflect_table

NOW = dt.datetime(2026, 10, 18, 12, 0, 0)
CUTOFF = dt.datetime(2026, 4, 18)


def fixed_clock() -> dt.datetime:
    return NOW


class PbxSeeder:
    """Writes Asterisk-shaped rows straight into the live tables."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def call(self, uniqueid: str, calldate: dt.datetime, sequence: int = 0, **extra: Any) -> None:
        row = {"uniqueid": uniqueid, "linkedid": uniqueid, "calldate": calldate, "sequence": sequence}
        row.update(extra)
        with self.engine.begin() as conn:
            conn.execute(CallDetailRecord.__table__.insert(), [row])

    def event(self, event_id: int, uniqueid: str, eventtime: dt.datetime, eventtype: str = "CHAN_START") -> None:
        row = {column.name: "" for column in ChannelEventRecord.__table__.columns}
        row.update(
            id=event_id,
            eventtype=eventtype,
            eventtime=eventtime,
            amaflags=3,
            uniqueid=uniqueid,
            linkedid=uniqueid,
        )
        with self.engine.begin() as conn:
            conn.execute(ChannelEventRecord.__table__.insert(), [row])

    def call_ids(self, table: str = "cdr") -> set[str]:
        with self.engine.connect() as conn:
            cdr = reflect_table(conn, table)
            return set(conn.execute(select(cdr.c.uniqueid)).scalars())

    def event_ids(self, table: str = "cel") -> set[int]:
        with self.engine.connect() as conn:
            cel = reflect_table(conn, table)
            return set(conn.execute(select(cel.c.id)).scalars())

    def rows(self, table: str) -> list[tuple[Any, ...]]:
        with self.engine.connect() as conn:
            reflected = reflect_table(conn, table)
            order = [reflected.c.id] if "id" in reflected.c else [reflected.c.uniqueid, reflected.c.sequence]
            return [tuple(row) for row in conn.execute(select(reflected).order_by(*order))]


@pytest.fixture()
def engine(tmp_path: Path) -> Iterator[Engine]:
    engine = init_storage(f"sqlite:///{tmp_path / 'asteriskcdrdb.db'}")
    yield engine
    engine.dispose()


@pytest.fixture()
def pbx(engine: Engine) -> PbxSeeder:
    return PbxSeeder(engine)


@pytest.fixture()
def policy() -> RetentionPolicy:
    return RetentionPolicy(months=6)


@pytest.fixture()
def clock():
    return fixed_clock
