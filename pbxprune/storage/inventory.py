from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.engine import Connection

from pbxprune.common.config import RetentionPolicy
from pbxprune.common.logger import logger
from pbxprune.storage.schema import drop_table_if_exists, reflect_table, table_exists


@dataclass(slots=True)
class TableStatus:
    name: str
    role: str
    live_table: str
    exists: bool
    rows: Optional[int] = None


def table_statuses(conn: Connection, policy: RetentionPolicy) -> List[TableStatus]:
    """Report the live, staging and backup tables of every configured pair."""

    statuses: List[TableStatus] = []
    for live in policy.live_tables():
        for role, name in (
            ("live", live),
            ("staging", policy.staging_name(live)),
            ("backup", policy.backup_name(live)),
        ):
            status = TableStatus(name=name, role=role, live_table=live, exists=table_exists(conn, name))
            if status.exists:
                table = reflect_table(conn, name)
                status.rows = int(conn.execute(select(func.count()).select_from(table)).scalar_one())
            statuses.append(status)
    return statuses


def find_leftovers(conn: Connection, policy: RetentionPolicy) -> List[TableStatus]:
    """Staging and backup tables that exist outside of a running job."""

    return [status for status in table_statuses(conn, policy) if status.role != "live" and status.exists]


def drop_leftovers(conn: Connection, policy: RetentionPolicy, include_backups: bool = False) -> List[str]:
    """Drop leftover staging tables (and backups when asked); returns the dropped names."""

    dropped: List[str] = []
    for status in find_leftovers(conn, policy):
        if status.role == "backup" and not include_backups:
            logger.info("Keeping backup table {} ({} rows)", status.name, status.rows)
            continue
        if drop_table_if_exists(conn, status.name):
            logger.warning("Dropped leftover {} table {}", status.role, status.name)
            dropped.append(status.name)
    return dropped


__all__ = ["TableStatus", "table_statuses", "find_leftovers", "drop_leftovers"]
