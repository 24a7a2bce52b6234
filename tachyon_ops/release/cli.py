"""CLI for release manifests and promotions.

Usage:
    tachyon-release create 0.2.0 abc1234 def5678 ghi9012
    tachyon-release list
    tachyon-release show 0.2.0
    tachyon-release promote-staging 0.2.0 --actor ci \\
        --deploy-command "./deploy.sh {environment} {service} {image}:{tag}" \\
        --health-url tachyon-api=https://api.staging.example/health
    tachyon-release promote-production --confirm-version 0.2.0 --actor alice --approver bob \\
        --deploy-command "./deploy.sh {environment} {service} {image}:{tag}" \\
        --health-url tachyon-api=https://api.example/health \\
        --health-url tachyon-workers=https://workers.example/health \\
        --health-url tachyon-db-migrate=https://migrate.example/health

Promotions without any --health-url are refused unless --skip-health-check is given.

Exit code 0 on success, 1 on any fatal error.
"""

import argparse
import asyncio
import logging
import os
import shlex
import sys
from collections.abc import Mapping
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.table import Table

from ..audit.trail import AuditTrail
from ..config.environments import BUILTIN_ENVIRONMENTS, is_true
from ..ui.prompt_helpers import display_error, display_success, display_target
from ..utils.confirmation import ConfirmationDeclinedError, ConfirmationGate, PromptFn
from ..utils.logging import setup_logging
from .deployer import CommandDeployer, Deployer, RecordOnlyDeployer
from .gate import KNOWN_SERVICES, PromotionResult, ReleasePromotionGate, service_artifact
from .health import HealthCheckConfig, HealthChecker
from .manifest import ManifestStore, ReleaseError

logger = logging.getLogger(__name__)


def parse_pairs(pairs: Optional[list[str]], option: str) -> dict[str, str]:
    """Parse repeated NAME=VALUE options into a dict.

    Raises:
        ValueError: If an item has no '='
    """
    result: dict[str, str] = {}
    for pair in pairs or []:
        name, sep, value = pair.partition("=")
        if not sep or not name or not value:
            raise ValueError(f"{option} expects NAME=VALUE, got '{pair}'")
        result[name.strip()] = value.strip()
    return result


def _build_gate(args: argparse.Namespace, store: ManifestStore, environ: Mapping[str, str]) -> ReleasePromotionGate:
    command = args.deploy_command or environ.get("TACHYON_DEPLOY_COMMAND")
    deployer: Deployer
    if args.record_only:
        deployer = RecordOnlyDeployer()
    elif command:
        deployer = CommandDeployer(shlex.split(command), timeout=args.deploy_timeout)
    else:
        raise ValueError("Either --deploy-command (or TACHYON_DEPLOY_COMMAND) or --record-only is required")

    health_config = HealthCheckConfig(
        max_attempts=args.health_attempts,
        timeout_seconds=args.health_timeout,
    )
    errors = health_config.validate()
    if errors:
        raise ValueError("; ".join(errors))

    endpoints = parse_pairs(args.health_url, "--health-url")
    if not endpoints and not args.skip_health_check:
        raise ValueError(
            "No --health-url given; pass --skip-health-check to promote without health verification"
        )

    checker = HealthChecker(endpoints, health_config)
    sink = AuditTrail(args.audit_dir) if args.audit_dir else None
    return ReleasePromotionGate(
        store,
        deployer,
        checker,
        audit_sink=sink,
        skip_health_check=args.skip_health_check,
    )


def _print_promotion(console: Console, result: PromotionResult) -> None:
    table = Table(title=f"Release {result.version} -> {result.environment}", header_style="bold")
    table.add_column("Service")
    table.add_column("Image")
    table.add_column("Health")
    for name, artifact in result.artifacts.items():
        status = result.health.get(name)
        if status is None or not status.checked:
            health = "not checked"
        else:
            health = f"healthy ({status.latency_ms}ms)"
        table.add_row(name, f"{artifact.image}:{artifact.tag}", health)
    console.print(table)
    display_success(console, f"Release {result.version} promoted to {result.environment}")


def cmd_create(args: argparse.Namespace, store: ManifestStore, console: Console) -> int:
    """Create a release manifest pinning one SHA per service."""
    shas = dict(zip(KNOWN_SERVICES, (args.api_sha, args.workers_sha, args.db_sha)))
    services = {name: service_artifact(name, sha) for name, sha in shas.items()}
    manifest = store.create(args.version, services, description=args.description)

    display_success(console, f"Release manifest created: {store.releases_dir}/{manifest.version}.json")
    for name, artifact in manifest.services.items():
        console.print(f"  {name}: {artifact.sha}")
    return 0


def cmd_show(args: argparse.Namespace, store: ManifestStore, console: Console) -> int:
    """Print a manifest as JSON."""
    manifest = store.read(args.version) if args.version else store.current()
    console.print_json(manifest.model_dump_json())
    return 0


def cmd_list(args: argparse.Namespace, store: ManifestStore, console: Console) -> int:
    """List all releases with their deployment state."""
    versions = store.list_versions()
    if not versions:
        console.print("No releases found")
        return 0

    table = Table(title="Releases", header_style="bold")
    table.add_column("Version")
    table.add_column("Created")
    table.add_column("Staging")
    table.add_column("Production")

    for version in versions:
        manifest = store.read(version)
        staging = manifest.environments.staging
        production = manifest.environments.production
        table.add_row(
            version,
            manifest.created_at.strftime("%Y-%m-%d %H:%M"),
            f"{staging.deployed_at:%Y-%m-%d %H:%M} by {staging.deployed_by}" if staging.is_done else "-",
            f"{production.deployed_at:%Y-%m-%d %H:%M} by {production.deployed_by}"
            if production.is_done
            else "-",
        )
    console.print(table)
    return 0


async def cmd_promote_staging(
    args: argparse.Namespace,
    store: ManifestStore,
    console: Console,
    environ: Mapping[str, str],
) -> int:
    """Deploy a release to staging."""
    gate = _build_gate(args, store, environ)
    overrides = parse_pairs(args.override, "--override")
    result = await gate.promote_to_staging(args.version, args.actor, override_shas=overrides)
    _print_promotion(console, result)
    return 0


async def cmd_promote_production(
    args: argparse.Namespace,
    store: ManifestStore,
    console: Console,
    environ: Mapping[str, str],
    prompt: Optional[PromptFn],
) -> int:
    """Deploy the current release to production after confirmation."""
    gate = _build_gate(args, store, environ)
    production = BUILTIN_ENVIRONMENTS["production"]

    display_target(
        console,
        "PRODUCTION RELEASE",
        [
            f"Release:  {args.confirm_version}",
            f"Actor:    {args.actor}",
            f"Approver: {args.approver}",
        ],
        risk=production.risk.value,
    )

    automated = args.yes or is_true(environ.get("CI")) or is_true(environ.get("AUTO_CONFIRM"))
    ConfirmationGate(prompt=prompt).require(production.policy, automated, production.name)

    result = await gate.promote_to_production(args.confirm_version, args.actor, args.approver)
    _print_promotion(console, result)
    return 0


def _add_promotion_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--actor",
        default=os.getenv("USER", "unknown"),
        help="Who is performing the promotion",
    )
    parser.add_argument(
        "--deploy-command",
        default=None,
        help="Deployment command template ({environment} {service} {image} {tag} {sha})",
    )
    parser.add_argument(
        "--deploy-timeout",
        type=int,
        default=600,
        help="Timeout per service deployment in seconds (default: 600)",
    )
    parser.add_argument(
        "--record-only",
        action="store_true",
        help="Do not deploy; verify health and record the promotion",
    )
    parser.add_argument(
        "--health-url",
        action="append",
        metavar="SERVICE=URL",
        help="Health endpoint of a service (repeatable)",
    )
    parser.add_argument(
        "--skip-health-check",
        action="store_true",
        help="Record the promotion without polling service health",
    )
    parser.add_argument(
        "--health-timeout",
        type=float,
        default=300.0,
        help="Wall-clock health budget per service in seconds (default: 300)",
    )
    parser.add_argument(
        "--health-attempts",
        type=int,
        default=10,
        help="Maximum health probes per service (default: 10)",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog="tachyon-release",
        description="Create release manifests and promote them across environments",
    )
    parser.add_argument(
        "--releases-dir",
        type=Path,
        default=Path("releases"),
        help="Directory holding release manifests (default: releases)",
    )
    parser.add_argument(
        "--audit-dir",
        type=Path,
        default=None,
        help="Write compliance audit events under this directory",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose output")
    parser.add_argument("--json-logs", action="store_true", help="Emit logs as JSON lines")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")
    subparsers.required = True

    create = subparsers.add_parser("create", help="Create a release manifest")
    create.add_argument("version", help="Semantic version (e.g. 0.2.0)")
    create.add_argument("api_sha", help="tachyon-api image SHA")
    create.add_argument("workers_sha", help="tachyon-workers image SHA")
    create.add_argument("db_sha", help="tachyon-db-migrate image SHA")
    create.add_argument("--description", default="", help="Release description")

    show = subparsers.add_parser("show", help="Show a release manifest")
    show.add_argument("version", nargs="?", default=None, help="Version (default: current)")

    subparsers.add_parser("list", help="List release manifests")

    staging = subparsers.add_parser("promote-staging", help="Deploy a release to staging")
    staging.add_argument("version", help="Release version")
    staging.add_argument(
        "--override",
        action="append",
        metavar="SERVICE=SHA",
        help="Deploy SERVICE at SHA instead of the pinned one (repeatable)",
    )
    _add_promotion_arguments(staging)

    production = subparsers.add_parser(
        "promote-production", help="Deploy the current release to production"
    )
    production.add_argument(
        "--confirm-version",
        required=True,
        help="Version expected to be the current release",
    )
    production.add_argument("--approver", required=True, help="Who approved the release")
    production.add_argument(
        "--yes", "-y", action="store_true", help="Skip the interactive confirmation"
    )
    _add_promotion_arguments(production)

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
        environ: Process variables (CI, AUTO_CONFIRM, TACHYON_DEPLOY_COMMAND)
        prompt: Confirmation prompt (defaults to the terminal prompt)
        console: Rich console for output

    Returns:
        Process exit code
    """
    console = console or Console()
    store = ManifestStore(args.releases_dir)

    try:
        if args.command == "create":
            return cmd_create(args, store, console)
        elif args.command == "show":
            return cmd_show(args, store, console)
        elif args.command == "list":
            return cmd_list(args, store, console)
        elif args.command == "promote-staging":
            return await cmd_promote_staging(args, store, console, environ)
        elif args.command == "promote-production":
            return await cmd_promote_production(args, store, console, environ, prompt)
        else:
            display_error(console, f"Unknown command: {args.command}")
            return 1
    except ConfirmationDeclinedError:
        display_error(console, "Production promotion cancelled by user")
        return 1
    except (ReleaseError, ValueError) as e:
        logger.error(f"{args.command} failed: {e}")
        display_error(console, str(e))
        return 1


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose, json_format=args.json_logs)

    exit_code = asyncio.run(async_main(args, dict(os.environ)))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
