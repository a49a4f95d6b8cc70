"""Retention rebuild of the Asterisk call detail and channel event tables.

The live tables are never pruned row by row. Each one is rebuilt into a
staging table that holds only the rows to keep, rows written while the bulk
copy ran are caught up through watermarks, and the staging tables replace the
live ones in a single rename. The replaced tables are kept as backups until
the swap has been verified.
"""
from __future__ import annotations

import calendar
import datetime as dt
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import Table, and_, exists, func, insert, or_, select, true
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.sql.elements import ColumnElement

from pbxprune.common.config import RetentionPolicy
from pbxprune.common.errors import (
    BackupExistsError,
    MissingTableError,
    RetentionVerificationError,
    SchemaDriftError,
)
from pbxprune.common.logger import logger
from pbxprune.storage.database import connection_scope
from pbxprune.storage.schema import (
    SchemaSnapshot,
    create_staging_table,
    diff_schemas,
    drop_table_if_exists,
    missing_columns,
    reflect_table,
    rename_tables,
    snapshot_schema,
    table_exists,
)

Clock = Callable[[], dt.datetime]


def subtract_months(day: dt.date, months: int) -> dt.date:
    """Return ``day`` moved back ``months`` calendar months.

    The day of month is clamped to the length of the target month, so
    31 August minus six months is 28 (or 29) February.
    """

    index = day.year * 12 + (day.month - 1) - months
    year, month_index = divmod(index, 12)
    month = month_index + 1
    last_day = calendar.monthrange(year, month)[1]
    return day.replace(year=year, month=month, day=min(day.day, last_day))


def retention_window(now: dt.datetime, months: int) -> tuple[dt.datetime, dt.datetime]:
    """Return ``(today, cutoff)`` as midnights for a run started at ``now``."""

    today = dt.datetime.combine(now.date(), dt.time.min)
    cutoff = dt.datetime.combine(subtract_months(now.date(), months), dt.time.min)
    return today, cutoff


@dataclass(slots=True)
class TableCounts:
    table: str
    before: int = 0
    copied: int = 0
    caught_up: int = 0
    after: Optional[int] = None

    @property
    def kept(self) -> int:
        return self.copied + self.caught_up

    @property
    def pruned(self) -> int:
        return max(self.before - self.copied, 0)


@dataclass(slots=True)
class RetentionResult:
    """Outcome of a retention run (or of a dry run when ``dry_run`` is set)."""

    today: dt.datetime
    cutoff: dt.datetime
    strategy: str
    calls: TableCounts
    events: Optional[TableCounts] = None
    sequence_watermark: Optional[int] = None
    event_watermark: Optional[int] = None
    boundary_event_id: Optional[int] = None
    orphaned_events: int = 0
    backups_dropped: bool = False
    dry_run: bool = False
    timings: Dict[str, float] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["today"] = self.today.isoformat()
        payload["cutoff"] = self.cutoff.isoformat()
        return payload


@dataclass(slots=True)
class _RunContext:
    result: RetentionResult
    snapshots: Dict[str, SchemaSnapshot] = field(default_factory=dict)
    live_event_max: Optional[int] = None


def _count(conn: Connection, table: Table, *criteria: ColumnElement) -> int:
    stmt = select(func.count()).select_from(table)
    if criteria:
        stmt = stmt.where(*criteria)
    return int(conn.execute(stmt).scalar_one())


def _copy_rows(conn: Connection, source: Table, target: Table, *criteria: ColumnElement) -> None:
    columns = [column.name for column in source.columns]
    query = select(*[source.c[name] for name in columns])
    if criteria:
        query = query.where(*criteria)
    conn.execute(insert(target).from_select(columns, query))


class RetentionJob:
    """Rebuild the call and event tables keeping ``policy.months`` of data."""

    STEPS = ("preflight", "copy_calls", "copy_events", "watermarks", "swap", "verify", "drop_backups")

    def __init__(self, engine: Engine, policy: RetentionPolicy, clock: Clock | None = None) -> None:
        self._engine = engine
        self._policy = policy
        self._clock = clock or dt.datetime.now

    # Public API -----------------------------------------------------------------

    def run(self) -> RetentionResult:
        ctx = _RunContext(result=self._new_result())
        result = ctx.result
        logger.info(
            "Retention run: keeping {} month(s) from {} ({} correlation)",
            self._policy.months,
            result.cutoff.date(),
            result.strategy,
        )
        for step in self.STEPS:
            if step == "copy_events" and self._policy.events is None:
                continue
            started = time.monotonic()
            try:
                getattr(self, f"_{step}")(ctx)
            except Exception:
                logger.error("Retention step {} failed; {}", step, self._state_after_failure(step))
                raise
            result.timings[step] = round(time.monotonic() - started, 3)
            logger.debug("Step {} finished in {}s", step, result.timings[step])
        logger.info("Retention run complete: {}", self._summary(result))
        return result

    def plan(self) -> RetentionResult:
        """Count what a run would keep without modifying the database."""

        result = self._new_result()
        result.dry_run = True
        calls_cfg = self._policy.calls
        with connection_scope(self._engine) as conn:
            self._require_live_tables(conn)
            calls = reflect_table(conn, calls_cfg.table)
            retained = calls.c[calls_cfg.timestamp] >= result.cutoff
            result.calls.before = _count(conn, calls)
            result.calls.copied = _count(conn, calls, retained)
            if self._policy.events is not None and result.events is not None:
                events = reflect_table(conn, self._policy.events.table)
                criteria = self._event_criteria(conn, events, calls, retained, result)
                result.events.before = _count(conn, events)
                result.events.copied = _count(conn, events, *criteria)
        logger.info("Retention plan: {}", self._summary(result))
        return result

    # Steps ----------------------------------------------------------------------

    def _preflight(self, ctx: _RunContext) -> None:
        policy = self._policy
        with connection_scope(self._engine) as conn:
            self._require_live_tables(conn)
            leftovers = [
                policy.backup_name(table)
                for table in policy.live_tables()
                if table_exists(conn, policy.backup_name(table))
            ]
            if leftovers:
                raise BackupExistsError(leftovers)

            for table, required in self._required_columns().items():
                absent = missing_columns(reflect_table(conn, table), required)
                if absent:
                    raise SchemaDriftError(table, [f"column {name} missing from {table}" for name in absent])

            for table in policy.live_tables():
                staging = policy.staging_name(table)
                if drop_table_if_exists(conn, staging):
                    logger.warning("Dropped stale staging table {} left by an earlier run", staging)
                create_staging_table(conn, table, staging)
                live_snapshot = snapshot_schema(conn, table)
                differences = diff_schemas(live_snapshot, snapshot_schema(conn, staging))
                if differences:
                    drop_table_if_exists(conn, staging)
                    raise SchemaDriftError(table, differences)
                ctx.snapshots[table] = live_snapshot
                logger.info("Created staging table {} from live {}", staging, table)

    def _copy_calls(self, ctx: _RunContext) -> None:
        calls_cfg = self._policy.calls
        counts = ctx.result.calls
        with connection_scope(self._engine) as conn:
            live = reflect_table(conn, calls_cfg.table)
            staging = reflect_table(conn, self._policy.staging_name(calls_cfg.table))
            counts.before = _count(conn, live)
            _copy_rows(conn, live, staging, live.c[calls_cfg.timestamp] >= ctx.result.cutoff)
            counts.copied = _count(conn, staging)
        logger.info(
            "Copied {} of {} call records into {}",
            counts.copied,
            counts.before,
            self._policy.staging_name(calls_cfg.table),
        )

    def _copy_events(self, ctx: _RunContext) -> None:
        events_cfg = self._policy.events
        counts = ctx.result.events
        assert events_cfg is not None and counts is not None
        with connection_scope(self._engine) as conn:
            live = reflect_table(conn, events_cfg.table)
            staging = reflect_table(conn, self._policy.staging_name(events_cfg.table))
            staged_calls = reflect_table(conn, self._policy.staging_name(self._policy.calls.table))
            ctx.live_event_max = conn.execute(select(func.max(live.c[events_cfg.identifier]))).scalar()
            criteria = self._event_criteria(conn, live, staged_calls, None, ctx.result)
            counts.before = _count(conn, live)
            _copy_rows(conn, live, staging, *criteria)
            counts.copied = _count(conn, staging)
        logger.info(
            "Copied {} of {} event records into {}",
            counts.copied,
            counts.before,
            self._policy.staging_name(events_cfg.table),
        )

    def _watermarks(self, ctx: _RunContext) -> None:
        result = ctx.result
        calls_cfg = self._policy.calls
        with connection_scope(self._engine) as conn:
            staged_calls = reflect_table(conn, self._policy.staging_name(calls_cfg.table))
            result.sequence_watermark = conn.execute(
                select(func.max(staged_calls.c[calls_cfg.sequence])).where(
                    staged_calls.c[calls_cfg.timestamp] >= result.today
                )
            ).scalar()
            events_cfg = self._policy.events
            if events_cfg is not None:
                staged_events = reflect_table(conn, self._policy.staging_name(events_cfg.table))
                staged_max = conn.execute(select(func.max(staged_events.c[events_cfg.identifier]))).scalar()
                marks = [mark for mark in (staged_max, ctx.live_event_max) if mark is not None]
                result.event_watermark = max(marks) if marks else None
        logger.info(
            "Watermarks: call sequence today={}, event id={}",
            result.sequence_watermark,
            result.event_watermark,
        )

    def _swap(self, ctx: _RunContext) -> None:
        policy = self._policy
        result = ctx.result
        calls_cfg = policy.calls
        with connection_scope(self._engine) as conn:
            live_calls = reflect_table(conn, calls_cfg.table)
            staged_calls = reflect_table(conn, policy.staging_name(calls_cfg.table))
            criteria: List[ColumnElement] = [live_calls.c[calls_cfg.timestamp] >= result.today]
            if result.sequence_watermark is not None:
                criteria.append(live_calls.c[calls_cfg.sequence] > result.sequence_watermark)
            _copy_rows(conn, live_calls, staged_calls, *criteria)
            result.calls.caught_up = _count(conn, staged_calls) - result.calls.copied

            swaps = [(calls_cfg.table, policy.staging_name(calls_cfg.table), policy.backup_name(calls_cfg.table))]
            events_cfg = policy.events
            if events_cfg is not None and result.events is not None:
                live_events = reflect_table(conn, events_cfg.table)
                staged_events = reflect_table(conn, policy.staging_name(events_cfg.table))
                event_criteria: List[ColumnElement] = []
                if result.event_watermark is not None:
                    event_criteria.append(live_events.c[events_cfg.identifier] > result.event_watermark)
                _copy_rows(conn, live_events, staged_events, *event_criteria)
                result.events.caught_up = _count(conn, staged_events) - result.events.copied
                swaps.append(
                    (events_cfg.table, policy.staging_name(events_cfg.table), policy.backup_name(events_cfg.table))
                )

            rename_tables(conn, swaps)
        logger.info(
            "Swapped in rebuilt tables (caught up {} call(s), {} event(s)); originals kept as {}",
            result.calls.caught_up,
            result.events.caught_up if result.events is not None else 0,
            ", ".join(backup for _, _, backup in swaps),
        )

    def _verify(self, ctx: _RunContext) -> None:
        policy = self._policy
        result = ctx.result
        problems: List[str] = []
        with connection_scope(self._engine) as conn:
            tallies = [result.calls] + ([result.events] if result.events is not None else [])
            for counts in tallies:
                differences = diff_schemas(ctx.snapshots[counts.table], snapshot_schema(conn, counts.table))
                problems.extend(f"{counts.table}: {difference}" for difference in differences)
                counts.after = _count(conn, reflect_table(conn, counts.table))
                if counts.after < counts.kept:
                    problems.append(f"{counts.table} holds {counts.after} rows, expected at least {counts.kept}")

            events_cfg = policy.events
            if events_cfg is not None:
                calls = reflect_table(conn, policy.calls.table)
                events = reflect_table(conn, events_cfg.table)
                backup = reflect_table(conn, policy.backup_name(events_cfg.table))
                identifier = events_cfg.identifier
                result.orphaned_events = _count(
                    conn,
                    backup,
                    backup.c[events_cfg.correlation].in_(select(calls.c[policy.calls.correlation])),
                    ~exists().where(events.c[identifier] == backup.c[identifier]),
                )
                if result.orphaned_events:
                    problems.append(
                        f"{result.orphaned_events} event(s) correlated to retained calls are missing from {events_cfg.table}"
                    )

        if problems:
            for problem in problems:
                logger.error("Verification: {}", problem)
            raise RetentionVerificationError(problems)
        logger.info("Verification passed for {}", ", ".join(policy.live_tables()))

    def _drop_backups(self, ctx: _RunContext) -> None:
        if not self._policy.drop_backup:
            logger.info("Keeping backup tables as configured")
            return
        with connection_scope(self._engine) as conn:
            for table in self._policy.live_tables():
                backup = self._policy.backup_name(table)
                drop_table_if_exists(conn, backup)
                logger.info("Dropped backup table {}", backup)
        ctx.result.backups_dropped = True

    # Internal helpers -----------------------------------------------------------

    def _new_result(self) -> RetentionResult:
        today, cutoff = retention_window(self._clock(), self._policy.months)
        events = TableCounts(self._policy.events.table) if self._policy.events is not None else None
        return RetentionResult(
            today=today,
            cutoff=cutoff,
            strategy=self._policy.correlation,
            calls=TableCounts(self._policy.calls.table),
            events=events,
        )

    def _required_columns(self) -> Dict[str, List[str]]:
        calls_cfg = self._policy.calls
        required = {calls_cfg.table: [calls_cfg.timestamp, calls_cfg.sequence, calls_cfg.correlation]}
        events_cfg = self._policy.events
        if events_cfg is not None:
            required[events_cfg.table] = [events_cfg.identifier, events_cfg.timestamp, events_cfg.correlation]
        return required

    def _require_live_tables(self, conn: Connection) -> None:
        for table in self._policy.live_tables():
            if not table_exists(conn, table):
                raise MissingTableError(f"Live table {table} does not exist")

    def _event_criteria(
        self,
        conn: Connection,
        events: Table,
        calls: Table,
        call_filter: Optional[ColumnElement],
        result: RetentionResult,
    ) -> List[ColumnElement]:
        """Build the filter selecting which events survive.

        ``calls`` is the set of retained calls, narrowed by ``call_filter`` when
        it is the live table rather than the staged copy.
        """

        events_cfg = self._policy.events
        calls_cfg = self._policy.calls
        assert events_cfg is not None
        correlation = calls.c[calls_cfg.correlation]

        if self._policy.correlation == "join":
            retained = select(correlation)
            if call_filter is not None:
                retained = retained.where(call_filter)
            return [
                or_(
                    events.c[events_cfg.timestamp] >= result.cutoff,
                    events.c[events_cfg.correlation].in_(retained),
                )
            ]

        # boundary: first event of the calls at the start of the window, everything after it.
        live_calls = reflect_table(conn, calls_cfg.table)
        slice_end = result.cutoff + dt.timedelta(days=self._policy.slice_days)
        reference = select(live_calls.c[calls_cfg.correlation]).where(
            and_(
                live_calls.c[calls_cfg.timestamp] >= result.cutoff,
                live_calls.c[calls_cfg.timestamp] <= slice_end,
            )
        )
        boundary = conn.execute(
            select(func.min(events.c[events_cfg.identifier])).where(events.c[events_cfg.correlation].in_(reference))
        ).scalar()
        result.boundary_event_id = boundary
        if boundary is None:
            logger.warning(
                "No events correlated to calls between {} and {}; keeping the whole event table",
                result.cutoff,
                slice_end,
            )
            return [true()]
        logger.info("Event boundary: keeping {} from id {}", events_cfg.table, boundary)
        return [events.c[events_cfg.identifier] >= boundary]

    def _state_after_failure(self, step: str) -> str:
        position = self.STEPS.index(step)
        if position < self.STEPS.index("swap"):
            return "live tables untouched, staging tables are dropped by the next run"
        if step == "swap":
            return "catch-up and renames rolled back where the database supports transactional DDL"
        backups = ", ".join(self._policy.backup_name(table) for table in self._policy.live_tables())
        return f"rebuilt tables are live, originals kept as {backups}"

    @staticmethod
    def _summary(result: RetentionResult) -> Dict[str, Any]:
        summary: Dict[str, Any] = {result.calls.table: {"before": result.calls.before, "kept": result.calls.kept}}
        if result.events is not None:
            summary[result.events.table] = {"before": result.events.before, "kept": result.events.kept}
        return summary


def run_retention(
    engine: Engine,
    policy: RetentionPolicy,
    clock: Clock | None = None,
    dry_run: bool = False,
) -> RetentionResult:
    """Run (or, with ``dry_run``, plan) a retention rebuild."""

    job = RetentionJob(engine, policy, clock=clock)
    return job.plan() if dry_run else job.run()


__all__ = [
    "RetentionJob",
    "RetentionResult",
    "TableCounts",
    "run_retention",
    "retention_window",
    "subtract_months",
]
