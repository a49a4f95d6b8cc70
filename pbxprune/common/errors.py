"""Exceptions raised by the retention job."""
from __future__ import annotations


class RetentionError(Exception):
    """Base class for every failure the retention job reports itself."""


class MissingTableError(RetentionError):
    """A live table named in the retention policy does not exist."""


class BackupExistsError(RetentionError):
    """A backup table from an earlier run is still present."""

    def __init__(self, tables: list[str]) -> None:
        self.tables = list(tables)
        super().__init__(
            "Backup table(s) already exist: {}. Inspect and drop them before pruning again.".format(
                ", ".join(self.tables)
            )
        )


class SchemaDriftError(RetentionError):
    """The staging table does not match the live table it was derived from."""

    def __init__(self, table: str, differences: list[str]) -> None:
        self.table = table
        self.differences = list(differences)
        super().__init__(f"Schema drift on {table}: " + "; ".join(self.differences))


class RetentionVerificationError(RetentionError):
    """Post-swap checks failed; backups were left in place."""

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        super().__init__("Retention verification failed: " + "; ".join(self.problems))


__all__ = [
    "RetentionError",
    "MissingTableError",
    "BackupExistsError",
    "SchemaDriftError",
    "RetentionVerificationError",
]
