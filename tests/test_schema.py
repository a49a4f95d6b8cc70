from __future__ import annotations

import datetime as dt

import pytest
from sqlalchemy import inspect, text
from sqlalchemy.dialects import mysql, postgresql
from sqlalchemy.exc import OperationalError

from pbxprune.common.config import CallTableBinding, RetentionPolicy
from pbxprune.common.errors import SchemaDriftError
from pbxprune.storage.database import connection_scope
from pbxprune.storage.retention import run_retention
from pbxprune.storage.schema import (
    create_staging_table,
    diff_schemas,
    drop_table_if_exists,
    rename_tables,
    snapshot_schema,
    staging_index_name,
    table_exists,
)


def test_staging_index_names_alternate() -> None:
    assert staging_index_name("calldate", "cdr_new") == "cdr_new__calldate"
    assert staging_index_name("cdr_new__calldate", "cdr_new") == "calldate"
    assert staging_index_name(None, "cdr_new") is None


def test_staging_table_matches_live_schema(engine) -> None:
    with connection_scope(engine) as conn:
        create_staging_table(conn, "cdr", "cdr_new")
        create_staging_table(conn, "cel", "cel_new")

        for live in ("cdr", "cel"):
            assert diff_schemas(snapshot_schema(conn, live), snapshot_schema(conn, f"{live}_new")) == []
        index_names = {index["name"] for index in inspect(conn).get_indexes("cdr_new")}

    assert "cdr_new__calldate" in index_names
    assert "cdr_new__recordingfile" in index_names


def test_staging_follows_columns_added_to_live_table(engine) -> None:
    with connection_scope(engine) as conn:
        conn.execute(text("ALTER TABLE cdr ADD COLUMN transcript VARCHAR(255)"))
        create_staging_table(conn, "cdr", "cdr_new")
        staging = snapshot_schema(conn, "cdr_new")

    assert "transcript" in staging.column_names()


def test_diff_reports_column_and_index_drift(engine) -> None:
    with connection_scope(engine) as conn:
        conn.execute(text("CREATE TABLE cel_new (id INTEGER NOT NULL PRIMARY KEY, eventtype VARCHAR(40) NOT NULL)"))
        differences = diff_schemas(snapshot_schema(conn, "cel"), snapshot_schema(conn, "cel_new"))

    assert "column eventtype is VARCHAR(40), expected VARCHAR(30)" in differences
    assert "column uniqueid missing from cel_new" in differences
    assert any(difference.startswith("index on ('linkedid',)") for difference in differences)


def test_drop_table_if_exists_reports_whether_it_dropped(engine) -> None:
    with connection_scope(engine) as conn:
        create_staging_table(conn, "cdr", "cdr_new")
        assert drop_table_if_exists(conn, "cdr_new") is True
        assert drop_table_if_exists(conn, "cdr_new") is False


def test_rename_tables_swaps_every_pair(engine, pbx) -> None:
    pbx.call("c-live", dt.datetime(2026, 1, 1))
    with connection_scope(engine) as conn:
        create_staging_table(conn, "cdr", "cdr_new")
        create_staging_table(conn, "cel", "cel_new")
        rename_tables(conn, [("cdr", "cdr_new", "cdr_old"), ("cel", "cel_new", "cel_old")])

    assert pbx.call_ids() == set()
    assert pbx.call_ids("cdr_old") == {"c-live"}
    with engine.connect() as conn:
        assert not table_exists(conn, "cdr_new")
        assert not table_exists(conn, "cel_new")


def test_failed_swap_rolls_back_every_rename(engine, pbx) -> None:
    pbx.call("c-live", dt.datetime(2026, 1, 1))
    with pytest.raises(OperationalError):
        with connection_scope(engine) as conn:
            create_staging_table(conn, "cdr", "cdr_new")
            # cel_new was never created, so the second pair fails.
            rename_tables(conn, [("cdr", "cdr_new", "cdr_old"), ("cel", "cel_new", "cel_old")])

    assert pbx.call_ids() == {"c-live"}
    with engine.connect() as conn:
        assert table_exists(conn, "cel")
        assert not table_exists(conn, "cdr_old")


def test_missing_binding_column_is_schema_drift(engine, clock) -> None:
    policy = RetentionPolicy(calls=CallTableBinding(sequence="seq_no"))

    with pytest.raises(SchemaDriftError) as excinfo:
        run_retention(engine, policy, clock=clock)

    assert excinfo.value.table == "cdr"
    assert excinfo.value.differences == ["column seq_no missing from cdr"]


class RecordedResult:
    def __init__(self, rows) -> None:
        self._rows = rows

    def all(self):
        return list(self._rows)


class RecordingConnection:
    """Stands in for a server connection and records the SQL sent to it."""

    def __init__(self, dialect, column_sequences=None) -> None:
        self.dialect = dialect
        self.statements = []
        self._column_sequences = column_sequences or {}

    def execute(self, statement, parameters=None):
        sql = " ".join(str(statement).split())
        self.statements.append((sql, parameters))
        if "pg_attribute" in sql:
            return RecordedResult(self._column_sequences.get(parameters["live"], []))
        return RecordedResult([])

    def sql(self):
        return [sql for sql, _ in self.statements]


def test_mysql_swaps_every_pair_in_one_statement() -> None:
    conn = RecordingConnection(mysql.dialect())

    rename_tables(conn, [("cdr", "cdr_new", "cdr_old"), ("cel", "cel_new", "cel_old")])

    assert conn.sql() == ["RENAME TABLE cdr TO cdr_old, cdr_new TO cdr, cel TO cel_old, cel_new TO cel"]


def test_mysql_staging_table_is_created_like_live() -> None:
    conn = RecordingConnection(mysql.dialect())

    create_staging_table(conn, "cdr", "cdr_new")

    assert conn.sql() == ["CREATE TABLE cdr_new LIKE cdr"]


def test_postgres_staging_table_copies_defaults_and_indexes() -> None:
    conn = RecordingConnection(postgresql.dialect())

    create_staging_table(conn, "cel", "cel_new")

    assert conn.sql() == ["CREATE TABLE cel_new (LIKE cel INCLUDING ALL)"]


def test_postgres_swap_hands_sequences_to_live_tables() -> None:
    conn = RecordingConnection(
        postgresql.dialect(),
        column_sequences={
            "cdr": [
                ("acctid", True, "public.cdr_new_acctid_seq", None),
                ("calldate", False, None, None),
            ],
            "cel": [
                ("id", False, None, "public.cel_id_seq"),
                ("eventtype", False, None, None),
            ],
        },
    )

    rename_tables(conn, [("cdr", "cdr_new", "cdr_old"), ("cel", "cel_new", "cel_old")])

    sql = conn.sql()
    assert sql[:2] == ["ALTER TABLE cdr RENAME TO cdr_old", "ALTER TABLE cdr_new RENAME TO cdr"]
    assert "pg_attribute" in sql[2]
    assert conn.statements[2][1] == {"live": "cdr", "backup": "cdr_old"}
    assert sql[3] == "SELECT setval(:sequence, COALESCE((SELECT MAX(acctid) FROM cdr), 0) + 1, false)"
    assert conn.statements[3][1] == {"sequence": "public.cdr_new_acctid_seq"}
    assert sql[4:6] == ["ALTER TABLE cel RENAME TO cel_old", "ALTER TABLE cel_new RENAME TO cel"]
    assert sql[7:] == ["ALTER SEQUENCE public.cel_id_seq OWNED BY cel.id"]


def test_postgres_swap_leaves_sequences_already_owned_by_live_table() -> None:
    conn = RecordingConnection(
        postgresql.dialect(),
        column_sequences={"cel": [("id", False, "public.cel_id_seq", "public.cel_id_seq")]},
    )

    rename_tables(conn, [("cel", "cel_new", "cel_old")])

    assert not any(sql.startswith(("ALTER SEQUENCE", "SELECT setval")) for sql in conn.sql())
