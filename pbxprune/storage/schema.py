"""Schema helpers: derive staging tables, compare schemas and swap tables."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, List, Sequence, Tuple

from sqlalchemy import Index, MetaData, Table, inspect, text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import CompileError

from pbxprune.common.logger import logger

_STAGING_INDEX_SEPARATOR = "__"


@dataclass(frozen=True, slots=True)
class ColumnShape:
    name: str
    type: str
    nullable: bool
    default: str | None


@dataclass(frozen=True, slots=True)
class IndexShape:
    columns: Tuple[str, ...]
    unique: bool


@dataclass(frozen=True, slots=True)
class SchemaSnapshot:
    """Structure of a table as reported by the database, ignoring its name."""

    table: str
    columns: Tuple[ColumnShape, ...]
    primary_key: Tuple[str, ...]
    indexes: frozenset[IndexShape]

    def column_names(self) -> List[str]:
        return [column.name for column in self.columns]


def _quote(conn: Connection, name: str) -> str:
    return conn.dialect.identifier_preparer.quote(name)


def _dialect(conn: Connection) -> str:
    return conn.dialect.name


def _type_name(type_: Any, conn: Connection) -> str:
    try:
        return str(type_.compile(dialect=conn.dialect))
    except CompileError:
        return repr(type_)


def table_exists(conn: Connection, name: str) -> bool:
    return inspect(conn).has_table(name)


def reflect_table(conn: Connection, name: str) -> Table:
    """Load the current definition of ``name`` from the database."""

    return Table(name, MetaData(), autoload_with=conn)


def drop_table_if_exists(conn: Connection, name: str) -> bool:
    """Drop ``name`` when present; returns whether a table was dropped."""

    existed = table_exists(conn, name)
    conn.execute(text(f"DROP TABLE IF EXISTS {_quote(conn, name)}"))
    return existed


def staging_index_name(name: str | None, staging: str) -> str | None:
    """Name an index of ``staging`` without colliding with the live table's.

    Used where index names share one namespace per schema. A name that already
    carries the staging prefix (left there by a previous swap) loses it, so
    names alternate between runs instead of growing.
    """

    if name is None:
        return None
    prefix = f"{staging}{_STAGING_INDEX_SEPARATOR}"
    if name.startswith(prefix):
        return name[len(prefix):]
    return f"{prefix}{name}"


def create_staging_table(conn: Connection, source: str, staging: str) -> None:
    """Create ``staging`` as an empty structural copy of the live ``source`` table."""

    dialect = _dialect(conn)
    if dialect in ("mysql", "mariadb"):
        conn.execute(text(f"CREATE TABLE {_quote(conn, staging)} LIKE {_quote(conn, source)}"))
        return
    if dialect == "postgresql":
        conn.execute(
            text(f"CREATE TABLE {_quote(conn, staging)} (LIKE {_quote(conn, source)} INCLUDING ALL)")
        )
        return

    live = reflect_table(conn, source)
    clone = live.to_metadata(MetaData(), name=staging)
    clone.indexes.clear()
    for index in live.indexes:
        columns = [clone.c[column.name] for column in index.columns]
        if not columns:
            logger.warning("Index {} on {} has no plain columns; not copied", index.name, source)
            continue
        Index(staging_index_name(index.name, staging), *columns, unique=index.unique)
    clone.create(conn)


def snapshot_schema(conn: Connection, name: str) -> SchemaSnapshot:
    inspector = inspect(conn)
    columns = tuple(
        ColumnShape(
            name=column["name"],
            type=_type_name(column["type"], conn),
            nullable=bool(column.get("nullable", True)),
            default=None if column.get("default") is None else str(column["default"]),
        )
        for column in inspector.get_columns(name)
    )
    pk = inspector.get_pk_constraint(name) or {}
    indexes = frozenset(
        IndexShape(
            columns=tuple(str(column) for column in index.get("column_names") or ()),
            unique=bool(index.get("unique")),
        )
        for index in inspector.get_indexes(name)
    )
    return SchemaSnapshot(
        table=name,
        columns=columns,
        primary_key=tuple(pk.get("constrained_columns") or ()),
        indexes=indexes,
    )


def diff_schemas(expected: SchemaSnapshot, actual: SchemaSnapshot) -> List[str]:
    """Describe how ``actual`` differs from ``expected``; empty when they match."""

    differences: List[str] = []
    expected_columns = {column.name: column for column in expected.columns}
    actual_columns = {column.name: column for column in actual.columns}

    for name in expected_columns.keys() - actual_columns.keys():
        differences.append(f"column {name} missing from {actual.table}")
    for name in actual_columns.keys() - expected_columns.keys():
        differences.append(f"unexpected column {name} on {actual.table}")
    for name in expected_columns.keys() & actual_columns.keys():
        want, got = expected_columns[name], actual_columns[name]
        if want.type != got.type:
            differences.append(f"column {name} is {got.type}, expected {want.type}")
        if want.nullable != got.nullable:
            differences.append(f"column {name} nullable={got.nullable}, expected {want.nullable}")
        if want.default != got.default:
            differences.append(f"column {name} default {got.default!r}, expected {want.default!r}")
    if not differences and expected.column_names() != actual.column_names():
        differences.append(f"column order on {actual.table} differs from {expected.table}")

    if expected.primary_key != actual.primary_key:
        differences.append(f"primary key {actual.primary_key}, expected {expected.primary_key}")
    for index in sorted(expected.indexes - actual.indexes, key=repr):
        differences.append(f"index on {index.columns} (unique={index.unique}) missing from {actual.table}")
    for index in sorted(actual.indexes - expected.indexes, key=repr):
        differences.append(f"unexpected index on {index.columns} (unique={index.unique}) on {actual.table}")
    return sorted(differences)


_PG_COLUMN_SEQUENCES = """
SELECT a.attname,
       a.attidentity <> '' AS is_identity,
       pg_get_serial_sequence(:live, a.attname) AS live_sequence,
       pg_get_serial_sequence(:backup, a.attname) AS backup_sequence
FROM pg_attribute a
WHERE a.attrelid = CAST(:live AS regclass) AND a.attnum > 0 AND NOT a.attisdropped
ORDER BY a.attnum
"""


def _carry_postgres_sequences(conn: Connection, live: str, backup: str) -> None:
    """Re-home the sequences of a table that was just swapped in on PostgreSQL.

    A serial column copied with ``LIKE`` keeps drawing from the sequence owned
    by the old table, now the backup; ownership moves to the live column so
    dropping the backup leaves the default intact. An identity column gets a
    fresh sequence starting at 1, which is advanced past the copied rows.
    """

    live_name, backup_name = _quote(conn, live), _quote(conn, backup)
    rows = conn.execute(text(_PG_COLUMN_SEQUENCES), {"live": live_name, "backup": backup_name}).all()
    for column, is_identity, live_sequence, backup_sequence in rows:
        column_name = _quote(conn, column)
        if is_identity and live_sequence:
            conn.execute(
                text(
                    f"SELECT setval(:sequence, COALESCE((SELECT MAX({column_name}) FROM {live_name}), 0) + 1, false)"
                ),
                {"sequence": live_sequence},
            )
            logger.debug("Advanced identity sequence {} for {}.{}", live_sequence, live, column)
        elif backup_sequence and not live_sequence:
            conn.execute(text(f"ALTER SEQUENCE {backup_sequence} OWNED BY {live_name}.{column_name}"))
            logger.debug("Moved sequence {} from {} to {}.{}", backup_sequence, backup, live, column)


def rename_tables(conn: Connection, swaps: Sequence[Tuple[str, str, str]]) -> None:
    """Swap staging tables in for live ones as a single unit.

    ``swaps`` holds ``(live, staging, backup)`` triples; every live table is
    renamed to its backup and every staging table to the live name. MySQL
    performs all renames in one ``RENAME TABLE`` statement; SQLite and
    PostgreSQL run them inside the caller's transaction. On PostgreSQL the
    column sequences are then handed over to the swapped-in tables.
    """

    if not swaps:
        return
    dialect = _dialect(conn)
    if dialect in ("mysql", "mariadb"):
        clauses: List[str] = []
        for live, staging, backup in swaps:
            clauses.append(f"{_quote(conn, live)} TO {_quote(conn, backup)}")
            clauses.append(f"{_quote(conn, staging)} TO {_quote(conn, live)}")
        conn.execute(text("RENAME TABLE " + ", ".join(clauses)))
        return
    for live, staging, backup in swaps:
        conn.execute(text(f"ALTER TABLE {_quote(conn, live)} RENAME TO {_quote(conn, backup)}"))
        conn.execute(text(f"ALTER TABLE {_quote(conn, staging)} RENAME TO {_quote(conn, live)}"))
        if dialect == "postgresql":
            _carry_postgres_sequences(conn, live, backup)


def missing_columns(table: Table, required: Iterable[str]) -> List[str]:
    return [name for name in required if name not in table.c]


__all__ = [
    "SchemaSnapshot",
    "table_exists",
    "reflect_table",
    "drop_table_if_exists",
    "staging_index_name",
    "create_staging_table",
    "snapshot_schema",
    "diff_schemas",
    "rename_tables",
    "missing_columns",
]
