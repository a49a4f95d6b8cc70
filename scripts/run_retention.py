"""Entry point for the CDR/CEL retention rebuild."""

from __future__ import annotations

import argparse

from pbxprune.common.config import ConfigLoader, get_database_url, load_policy
from pbxprune.common.logger import configure_logging_from_config, logger
from pbxprune.storage.database import create_db_engine
from pbxprune.storage.retention import run_retention


def main() -> None:
    """Rebuild the call and event tables keeping the configured retention window."""

    parser = argparse.ArgumentParser(description="Prune Asterisk CDR/CEL tables by rebuilding them")
    parser.add_argument(
        "--config",
        default="configs/pbxprune.yaml",
        help="Path to pbxprune YAML configuration",
    )
    parser.add_argument("--months", type=int, default=None, help="Override retention.months")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only count the rows that would be kept",
    )
    args = parser.parse_args()

    cfg = ConfigLoader.load(args.config)
    configure_logging_from_config("retention", cfg)

    policy = load_policy(cfg, months=args.months)
    engine = create_db_engine(get_database_url(cfg))
    try:
        result = run_retention(engine, policy, dry_run=args.dry_run)
    finally:
        engine.dispose()
    logger.info("Retention result: {}", result.as_dict())


if __name__ == "__main__":
    main()
