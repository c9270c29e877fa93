#!/usr/bin/env python3
"""
Example: legacy dispatch database to the target schema

Usage:
    # Dry run (extract, validate and transform only)
    python run_migration.py --config config.json --dry-run

    # Full migration, source and target taken from the environment
    MIGRATION_SOURCE_URL=... MIGRATION_TARGET_URL=... python run_migration.py
"""

import argparse
import logging
import sys

from legacy_migrate.models.migration import MigrationConfig, MigrationStatus
from legacy_migrate.orchestrator import MigrationOrchestrator
from legacy_migrate.progress import ProgressEvent, logging_sink

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler('migration.log')
    ]
)
logger = logging.getLogger(__name__)


def print_progress(event: ProgressEvent) -> None:
    """Progress callback printing one line per finished entity type."""
    if event.entity_type:
        print(f"[{event.percentage:5.1f}%] {event.entity_type}: {event.counts}")


def run_migration(config: MigrationConfig) -> int:
    """Run the migration."""
    logger.info("=" * 60)
    logger.info("STARTING MIGRATION")
    logger.info("=" * 60)
    logger.info(f"Name: {config.name}")
    logger.info(f"Dry Run: {config.dry_run}")

    orchestrator = MigrationOrchestrator(config, progress_sinks=[logging_sink, print_progress])
    result = orchestrator.run_migration()

    logger.info("=" * 60)
    logger.info("MIGRATION COMPLETE")
    logger.info("=" * 60)
    logger.info(f"Status: {result.status.value}")
    logger.info(f"Total Processed: {result.total_records_processed}")
    logger.info(f"Succeeded: {result.total_records_succeeded}")
    logger.info(f"Failed: {result.total_records_failed}")
    logger.info(f"Rejected: {result.total_records_rejected}")

    if result.duration_seconds:
        logger.info(f"Duration: {result.duration_seconds:.2f} seconds")

    if result.errors:
        logger.warning(f"Errors ({len(result.errors)}):")
        for error in result.errors[:10]:
            logger.warning(f"  - {error}")

    if result.integrity_report is not None:
        logger.info(f"Integrity: {result.integrity_report.overall_status.value}")

    return 1 if result.status == MigrationStatus.FAILED else 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Legacy dispatch to target migration"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Extract, validate and transform without writing"
    )
    parser.add_argument(
        "--config",
        help="Path to JSON config file"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose output"
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    config = MigrationConfig.from_json_file(args.config) if args.config else MigrationConfig.from_env()
    if args.dry_run:
        config.dry_run = True

    sys.exit(run_migration(config))


if __name__ == "__main__":
    main()
