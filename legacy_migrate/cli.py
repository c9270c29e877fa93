"""Command line interface for the legacy migration engine."""

import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .catalog import build_catalog
from .db import create_engine_from_url
from .exceptions import MigrationError
from .models.migration import MigrationConfig, MigrationStatus
from .models.report import CheckStatus, IntegrityReport
from .orchestrator import MigrationOrchestrator
from .services.content_types import ContentTypeRegistry
from .services.contract_registry import ContractRegistry
from .services.report_store import ReportStore
from .services.resolver import kind_for_logical_name
from .services.schema_prober import SchemaProber

logger = logging.getLogger(__name__)


def load_config(args) -> MigrationConfig:
    """Build the run configuration: file (or environment), then command line overrides."""
    if getattr(args, "config", None):
        config = MigrationConfig.from_json_file(args.config)
    else:
        config = MigrationConfig.from_env()

    overrides: Dict[str, Any] = {
        "source_url": getattr(args, "source_url", None),
        "target_url": getattr(args, "target_url", None),
        "output_dir": getattr(args, "output_dir", None),
        "batch_size": getattr(args, "batch_size", None),
        "parallel_workers": getattr(args, "parallel_workers", None),
        "entity_types": getattr(args, "entity", None) or None,
    }
    if getattr(args, "dry_run", False):
        overrides["dry_run"] = True
    return config.merge(overrides)


def print_report(report: IntegrityReport) -> None:
    print(f"\nIntegrity: {report.overall_status.value}")
    for item in report.items:
        if item.status != CheckStatus.PASS:
            print(f"  [{item.status.value}] {item.name}: {item.message}")
    passed = len(report.by_status(CheckStatus.PASS))
    if passed:
        print(f"  {passed} checks passed")


def run_migration(args) -> int:
    """Run a migration and print its summary."""
    config = load_config(args)
    orchestrator = MigrationOrchestrator(config)
    result = orchestrator.run_migration()

    print("\n" + "=" * 60)
    print("MIGRATION COMPLETE" if result.status != MigrationStatus.FAILED else "MIGRATION FAILED")
    print("=" * 60)
    print(f"Run: {result.id}{' (dry run)' if result.dry_run else ''}")
    print(f"Status: {result.status.value}")
    print(f"Records Processed: {result.total_records_processed}")
    print(f"Succeeded: {result.total_records_succeeded}")
    print(f"Failed: {result.total_records_failed}")
    print(f"Rejected: {result.total_records_rejected}")
    if result.duration_seconds:
        print(f"Duration: {result.duration_seconds:.2f} seconds")

    for entity_type, counts in orchestrator.summary().items():
        print(
            f"  {entity_type:<20} {counts['status']:<10} "
            f"{counts['succeeded']}/{counts['processed']} ok, "
            f"{counts['failed']} failed, {counts['rejected']} rejected"
        )
    for error in result.errors:
        print(f"  error: {error.get('entity_type') or ''} {error.get('error') or error.get('message')}")

    if result.integrity_report is not None:
        print_report(result.integrity_report)

    if result.status == MigrationStatus.FAILED:
        return 1
    if result.integrity_report is not None and result.integrity_report.overall_status == CheckStatus.FAIL:
        return 2
    return 0


def run_probe(args) -> int:
    """Show how each catalog entity resolves against the source schema."""
    config = load_config(args)
    prober = SchemaProber(create_engine_from_url(config.source_url))

    tables = set(args.table or [])

    print("\n=== Source Schema ===")
    for spec in build_catalog():
        if tables and spec.source_table not in tables:
            continue
        if spec.source_table is None:
            print(f"\n{spec.name}: built-in reference data")
            continue
        if not prober.table_exists(spec.source_table):
            print(f"\n{spec.name}: table {spec.source_table} absent")
            continue

        print(f"\n{spec.name} ({spec.source_table}):")
        for strategy in spec.fields:
            column = prober.resolve_column(spec.source_table, strategy.candidates)
            if column == strategy.name:
                print(f"  {strategy.name}")
            elif column:
                print(f"  {strategy.name} <- {column}")
            elif strategy.required:
                print(f"  {strategy.name} MISSING (required)")
            else:
                default = "current timestamp" if strategy.default_now else repr(strategy.default)
                print(f"  {strategy.name} missing, default {default}")
    return 0


def run_content_types(args) -> int:
    """List the source content types and how they are classified."""
    config = load_config(args)
    engine = create_engine_from_url(config.source_url)
    registry = ContentTypeRegistry(SchemaProber(engine))
    with engine.connect() as conn:
        names = registry.load(conn)

    print(f"\n=== Content Types ({len(names)}) ===")
    for type_id, logical_name in sorted(names.items()):
        print(f"  {type_id:>4}  {logical_name:<40} {kind_for_logical_name(logical_name).value}")
    return 0


def run_contracts(args) -> int:
    """Export the source and target contracts as JSON Schema."""
    count = ContractRegistry().export_json_schema(args.output)
    print(f"Exported {count} contracts to {args.output}")
    return 0


def run_audit(args) -> int:
    """Re-run the integrity checks for a stored run."""
    config = load_config(args)
    report = MigrationOrchestrator(config).audit(args.run_id)
    print_report(report)
    return 2 if report.overall_status == CheckStatus.FAIL else 0


def run_report(args) -> int:
    """Show stored runs, or one run's report."""
    store = ReportStore(args.output_dir)
    if not args.run_id:
        runs = store.list_runs()
        if not runs:
            print(f"No runs in {store.logs_dir}")
        for run in runs:
            print(
                f"{run['id']}  {run['status']:<10} {run['started_at']}  "
                f"{run['total_records_succeeded']}/{run['total_records_processed']} ok"
            )
        return 0

    data = store.get_run(args.run_id)
    if data is None:
        print(f"Run not found: {args.run_id}")
        return 1
    print(json.dumps(data, indent=2, default=str))
    report = store.get_integrity(args.run_id)
    if report is not None:
        print_report(report)
    return 0


def _add_connection_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", help="Path to migration config file (JSON)")
    parser.add_argument("--source-url", help="Source database URL")
    parser.add_argument("--target-url", help="Target database URL")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Legacy Migration Tool - Migrate a legacy dispatch database into the target schema"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Run migration
    run_parser = subparsers.add_parser("run", help="Run a migration")
    _add_connection_args(run_parser)
    run_parser.add_argument("--dry-run", action="store_true", help="Extract, validate and transform only")
    run_parser.add_argument("--batch-size", type=int, help="Records per load transaction")
    run_parser.add_argument("--parallel-workers", type=int, help="Entity types run concurrently")
    run_parser.add_argument("--entity", action="append", help="Entity type to migrate (repeatable)")
    run_parser.add_argument("--output-dir", help="Directory for reports")

    # Source inspection
    probe_parser = subparsers.add_parser("probe", help="Show source columns per entity type")
    _add_connection_args(probe_parser)
    probe_parser.add_argument("--table", action="append", help="Only show this source table (repeatable)")

    ct_parser = subparsers.add_parser("content-types", help="List source content types")
    _add_connection_args(ct_parser)

    contracts_parser = subparsers.add_parser("contracts", help="Export contracts as JSON Schema")
    contracts_parser.add_argument("--output", required=True, help="Output directory")

    # Reports
    audit_parser = subparsers.add_parser("audit", help="Re-run integrity checks for a run")
    _add_connection_args(audit_parser)
    audit_parser.add_argument("--run-id", required=True, help="Run to audit")
    audit_parser.add_argument("--output-dir", help="Directory holding reports")

    report_parser = subparsers.add_parser("report", help="Show stored run reports")
    report_parser.add_argument("--run-id", help="Run to show (lists runs when omitted)")
    report_parser.add_argument("--output-dir", default="./data", help="Directory holding reports")

    return parser


COMMANDS = {
    "run": run_migration,
    "probe": run_probe,
    "content-types": run_content_types,
    "contracts": run_contracts,
    "audit": run_audit,
    "report": run_report,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Set up logging
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    try:
        return handler(args)
    except MigrationError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    except SQLAlchemyError as e:
        logger.error(f"{args.command} failed with a database error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
