"""CLI for database migrations.

Usage:
    tachyon-migrate --env local migrate
    tachyon-migrate --env staging migrate --dry-run
    tachyon-migrate --env production --yes migrate
    tachyon-migrate status                       # uses MIGRATION_ENV
    tachyon-migrate --env local init-compliance-data

Exit code 0 on success, 1 on any fatal error (configuration, declined
confirmation, connection failure, drift, failed migration).
"""

import argparse
import asyncio
import logging
import os
import sys
from collections.abc import Mapping
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.table import Table

from ...audit.trail import AuditSink, AuditTrail, ComplianceEvent, emit_best_effort
from ...config.environments import ConfigurationError, EnvironmentContext, resolve_environment
from ...ui.prompt_helpers import display_error, display_success, display_target, display_warning
from ...utils.confirmation import ConfirmationDeclinedError, PromptFn
from ...utils.logging import setup_logging
from ..compliance import ComplianceInitError, initialize_compliance_data
from ..connection import ConnectionError, Database
from .base import MigrationError
from .registry import MigrationCatalog, load_catalog

logger = logging.getLogger(__name__)

# Commands that change the target and therefore go through the confirmation gate
MUTATING_COMMANDS = {"migrate", "init-compliance-data"}


async def cmd_migrate(
    args: argparse.Namespace,
    context: EnvironmentContext,
    database: Database,
    catalog: MigrationCatalog,
    console: Console,
    sink: Optional[AuditSink],
) -> int:
    """Apply pending migrations, then initialise compliance data."""
    executor = context.build_executor(database, catalog)

    report = await executor.status()
    if report.pending:
        console.print(f"Pending migrations: {len(report.pending)}")
        for unit in report.pending:
            console.print(f"  - {unit.full_name}")

    applied = await executor.migrate(dry_run=args.dry_run)

    if args.dry_run:
        display_success(console, f"[DRY-RUN] {applied} migration(s) would be applied")
        return 0

    emit_best_effort(
        sink,
        ComplianceEvent.create(
            "migration.applied",
            environment=context.name,
            actor=args.actor,
            details={"applied": applied, "versions": [u.version for u in report.pending]},
        ),
    )

    if applied:
        display_success(console, f"{applied} migration(s) applied to {context.name}")
    else:
        display_success(console, "Database is up to date")

    if not args.skip_compliance:
        await initialize_compliance_data(database, context.name, sink=sink, actor=args.actor)

    return 0


async def cmd_status(
    args: argparse.Namespace,
    context: EnvironmentContext,
    database: Database,
    catalog: MigrationCatalog,
    console: Console,
    sink: Optional[AuditSink],
) -> int:
    """Show migration status."""
    executor = context.build_executor(database, catalog)
    report = await executor.status()

    table = Table(title=f"Migration status ({context.name})", show_header=True, header_style="bold")
    table.add_column("Version")
    table.add_column("Description")
    table.add_column("Status")
    table.add_column("Applied at")

    for record in report.applied:
        applied_at = record.applied_at.strftime("%Y-%m-%d %H:%M") if record.applied_at else ""
        table.add_row(record.version, record.description, "[green]applied[/green]", applied_at)
    for unit in report.pending:
        table.add_row(unit.version, unit.description, "[yellow]pending[/yellow]", "")
    for record in report.orphaned:
        table.add_row(record.version, record.description, "[red]not in catalog[/red]", "")

    console.print(table)
    console.print(
        f"Total: {len(catalog)} | Applied: {len(report.applied)} | Pending: {len(report.pending)}"
    )
    if report.orphaned:
        display_warning(
            console,
            f"{len(report.orphaned)} applied migration(s) are missing from the catalog",
        )
    return 0


async def cmd_init_compliance(
    args: argparse.Namespace,
    context: EnvironmentContext,
    database: Database,
    catalog: MigrationCatalog,
    console: Console,
    sink: Optional[AuditSink],
) -> int:
    """Initialise compliance data only."""
    inserted = await initialize_compliance_data(database, context.name, sink=sink, actor=args.actor)
    display_success(
        console,
        "APPI compliance data initialized" if inserted else "APPI compliance data already present",
    )
    return 0


COMMANDS = {
    "migrate": cmd_migrate,
    "status": cmd_status,
    "init-compliance-data": cmd_init_compliance,
}


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog="tachyon-migrate",
        description="Apply and inspect Tachyon database migrations",
    )
    parser.add_argument(
        "--env",
        "-e",
        default=None,
        help="Target environment (local, staging, production). Defaults to MIGRATION_ENV",
    )
    parser.add_argument(
        "--yes",
        "-y",
        action="store_true",
        help="Skip interactive confirmation (same as AUTO_CONFIRM=true)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose output",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs as JSON lines",
    )
    parser.add_argument(
        "--env-dir",
        type=Path,
        default=Path("."),
        help="Directory holding .env.<environment> files (default: current directory)",
    )
    parser.add_argument(
        "--migrations-dir",
        type=Path,
        default=None,
        help="Directory of NNN_description.sql files (default: built-in catalog)",
    )
    parser.add_argument(
        "--audit-dir",
        type=Path,
        default=None,
        help="Write compliance audit events under this directory",
    )
    parser.add_argument(
        "--actor",
        default=os.getenv("USER", "migration_script"),
        help="Actor recorded on audit events",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")
    subparsers.required = True

    migrate_parser = subparsers.add_parser("migrate", help="Apply pending migrations")
    migrate_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be applied without executing",
    )
    migrate_parser.add_argument(
        "--skip-compliance",
        action="store_true",
        help="Do not initialize compliance data after migrating",
    )

    subparsers.add_parser("status", help="Show migration status")
    subparsers.add_parser("init-compliance-data", help="Initialize APPI compliance data")

    return parser


async def async_main(
    args: argparse.Namespace,
    environ: Mapping[str, str],
    prompt: Optional[PromptFn] = None,
    console: Optional[Console] = None,
) -> int:
    """Async main entry point.

    Args:
        args: Parsed command-line arguments
        environ: Process variables used to resolve the environment
        prompt: Confirmation prompt (defaults to the terminal prompt)
        console: Rich console for output

    Returns:
        Process exit code
    """
    console = console or Console()

    try:
        context = resolve_environment(
            args.env or environ.get("MIGRATION_ENV"),
            environ,
            auto_confirm=args.yes,
            env_dir=args.env_dir,
        )
        catalog = load_catalog(args.migrations_dir)
    except (ConfigurationError, MigrationError) as e:
        display_error(console, str(e))
        return 1

    sink = AuditTrail(args.audit_dir) if args.audit_dir else None

    display_target(
        console,
        "MIGRATION TARGET",
        context.describe(),
        risk=context.config.risk.value,
    )

    if args.command in MUTATING_COMMANDS:
        try:
            context.require_confirmation(context.confirmation_gate(prompt))
        except ConfirmationDeclinedError as e:
            logger.warning(f"{args.command} cancelled in {context.name}: {e}")
            display_error(console, "Migration cancelled by user")
            emit_best_effort(
                sink,
                ComplianceEvent.create(
                    "migration.declined",
                    environment=context.name,
                    actor=args.actor,
                    status="rejected",
                    details={"command": args.command},
                ),
            )
            return 1

    database = context.open_database()

    try:
        await database.connect()
        return await COMMANDS[args.command](args, context, database, catalog, console, sink)
    except (ConnectionError, MigrationError, ComplianceInitError) as e:
        logger.error(f"{args.command} failed in {context.name}: {e}")
        display_error(console, str(e))
        return 1
    finally:
        await database.close()


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose, json_format=args.json_logs)

    exit_code = asyncio.run(async_main(args, dict(os.environ)))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
