"""Logging utilities centralised for pbxprune."""
from __future__ import annotations

import os
from pathlib import Path

from loguru import logger

DEFAULT_ROTATION = "30 days"
DEFAULT_RETENTION = "180 days"


def configure_logging(
    service_name: str,
    level: str = "INFO",
    log_dir: str | None = None,
    rotation: str = DEFAULT_ROTATION,
    retention: str = DEFAULT_RETENTION,
) -> None:
    """Configure loguru logging for a pbxprune entry point.

    ``rotation`` and ``retention`` accept any loguru spec ("30 days",
    "100 MB", "00:00") and only apply to the file sink under ``log_dir``.
    """

    logger.remove()
    logger.add(
        sink=lambda msg: print(msg, end=""),
        level=level.upper(),
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
        f"{service_name} | {{message}}",
        colorize=False,
        backtrace=False,
        diagnose=False,
    )

    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        logger.add(
            path / f"{service_name}.log",
            level=level.upper(),
            rotation=rotation,
            retention=retention,
            compression="zip",
        )


def configure_logging_from_config(service_name: str, cfg, default_level: str = "INFO") -> None:
    """Apply the ``logging.*`` section of a loaded pbxprune configuration."""

    configure_logging(
        service_name,
        cfg.get("logging.level", get_log_level_from_env(default_level)),
        cfg.get("logging.directory"),
        rotation=cfg.get("logging.rotation", DEFAULT_ROTATION),
        retention=cfg.get("logging.retention", DEFAULT_RETENTION),
    )


def get_log_level_from_env(default: str = "INFO") -> str:
    return os.getenv("PBXPRUNE_LOG_LEVEL", default)


__all__ = ["logger", "configure_logging", "configure_logging_from_config", "get_log_level_from_env"]
