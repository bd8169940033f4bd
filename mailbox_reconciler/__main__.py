"""
Mailbox Reconciler — Main Orchestrator

Usage:
    python -m mailbox_reconciler compliance --policy-name "Default MRM Policy"
    python -m mailbox_reconciler compliance --exempt-group Archive-Exempt --parallel
    python -m mailbox_reconciler permissions --group-prefix MBX-FullAccess-
    python -m mailbox_reconciler compliance --config config.json --no-dry-run

Credentials come from --config or from --tenant-id/--client-id/--cert-path
plus --organization. Every run is a DRY-RUN unless --no-dry-run is given.

Exit codes: 0 = clean (skips allowed), 1 = permanent failures, 2 = fatal
initialization error.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from . import __version__
from .auth.authenticator import AuthenticationError, Authenticator
from .config import (
    DEFAULT_PARALLEL_THROTTLE,
    CertificateAuth,
    DelegatedAuth,
    EngineConfig,
)
from .engine import BatchScheduler, MutationExecutor, RunSummary, TransientErrorClassifier
from .engine.pipeline import ComplianceProcessor, PermissionProcessor
from .exchange import ExchangeClient
from .graph.client import GraphClient
from .reference import FetchError, ReferenceDataLoader
from .reporting import ProgressReporter, export_csv, export_json, export_markdown
from .safety.guardian import DryRunGuardian
from .sources import MailboxSource, PermissionTargetSource

logger = logging.getLogger("mailbox_reconciler")

EXIT_FATAL = 2   # 0/1 come from RunSummary.exit_code

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


class ConfigurationError(Exception):
    """Raised when the run cannot be configured from the given inputs."""
    pass


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", "-c", type=Path, help="Path to JSON configuration file")
    common.add_argument(
        "--dry-run",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Simulate every mutation (default). Use --no-dry-run to apply changes.",
    )
    common.add_argument("--concurrency", type=int, default=None, help="Worker pool size (default: 1)")
    common.add_argument(
        "--parallel",
        action="store_true",
        help=f"Shortcut for --concurrency {DEFAULT_PARALLEL_THROTTLE}",
    )
    common.add_argument("--batch-size", type=int, default=None, help="Targets per batch in parallel mode")
    common.add_argument("--tenant-id", type=str, default=None, help="Tenant ID (GUID)")
    common.add_argument("--client-id", type=str, default=None, help="App registration client ID")
    common.add_argument("--cert-path", type=Path, default=None, help="Path to base64-encoded PFX")
    common.add_argument(
        "--organization",
        type=str,
        default=None,
        help="Primary tenant domain, e.g. contoso.onmicrosoft.com",
    )
    common.add_argument(
        "--delegated",
        action="store_true",
        help="Use delegated (device-code) authentication instead of certificate",
    )
    common.add_argument(
        "--output-dir", "-o",
        type=Path,
        default=None,
        help="Directory for reports and the run log (default: ./mailbox_reconcile_output)",
    )
    common.add_argument(
        "--formats",
        nargs="*",
        choices=["json", "csv", "markdown"],
        default=None,
        help="Report formats to write (default: json csv markdown)",
    )
    common.add_argument("--tenant-name", type=str, default="", help="Display name for reports")
    common.add_argument("--verbose", "-v", action="store_true", help="Debug logging on the console")

    parser = argparse.ArgumentParser(
        prog="mailbox_reconciler",
        description="Exchange Online mailbox compliance and permission reconciliation",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    comp = subparsers.add_parser(
        "compliance",
        parents=[common],
        help="Assign the retention policy and enable archives",
    )
    comp.add_argument("--policy-name", type=str, default=None, help="Retention policy to assign")
    comp.add_argument(
        "--exempt-group",
        type=str,
        default=None,
        help="Group whose members skip archive enablement (name, mail or object id)",
    )

    perm = subparsers.add_parser(
        "permissions",
        parents=[common],
        help="Sync shared-mailbox FullAccess with permission groups",
    )
    perm.add_argument(
        "--group-prefix",
        type=str,
        default=None,
        help="Name prefix of permission-management groups",
    )

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> EngineConfig:
    """Build engine configuration from a config file and CLI overrides."""
    if args.config:
        if not args.config.exists():
            raise ConfigurationError(f"Config file not found: {args.config}")
        config = EngineConfig.from_file(args.config)
    else:
        config = EngineConfig()

    # --- Tenant identity ---
    if args.delegated:
        config.auth.mode = "delegated"
    if args.organization:
        config.auth.organization = args.organization

    if args.tenant_id and args.client_id:
        if config.auth.mode == "delegated":
            config.auth.delegated = DelegatedAuth(tenant_id=args.tenant_id, client_id=args.client_id)
        else:
            config.auth.certificate = CertificateAuth(
                tenant_id=args.tenant_id,
                client_id=args.client_id,
                certificate_path=str(args.cert_path or "./base64.txt"),
            )
    elif args.cert_path and config.auth.certificate:
        config.auth.certificate.certificate_path = str(args.cert_path)

    if config.auth.mode == "delegated" and not config.auth.delegated:
        if config.auth.certificate:
            config.auth.delegated = DelegatedAuth(
                tenant_id=config.auth.certificate.tenant_id,
                client_id=config.auth.certificate.client_id,
            )
    if not config.auth.tenant_id:
        raise ConfigurationError(
            "No tenant credentials found. Use --config config.json or "
            "--tenant-id X --client-id Y [--cert-path base64.txt]."
        )
    if not config.auth.organization:
        raise ConfigurationError("--organization (primary tenant domain) is required.")

    # --- Reconciliation settings ---
    rc = config.reconcile
    if getattr(args, "policy_name", None):
        rc.policy_name = args.policy_name
    if getattr(args, "exempt_group", None):
        rc.exempt_group = args.exempt_group
    if getattr(args, "group_prefix", None):
        rc.group_prefix = args.group_prefix
    if args.dry_run is not None:
        rc.dry_run = args.dry_run
    if args.concurrency is not None:
        rc.concurrency = args.concurrency
    elif args.parallel:
        rc.concurrency = DEFAULT_PARALLEL_THROTTLE
    if args.batch_size is not None:
        rc.batch_size = args.batch_size
    if rc.concurrency < 1 or rc.batch_size < 1:
        raise ConfigurationError("--concurrency and --batch-size must be at least 1.")

    # --- Output ---
    if args.output_dir:
        config.output.base_dir = str(args.output_dir)
    if args.formats is not None:
        config.output.formats = list(args.formats)
    config.verbose = config.verbose or args.verbose

    return config


def configure_logging(verbose: bool, log_file: Optional[Path] = None):
    """Console gets warnings (or debug with --verbose); the run log gets everything."""
    root = logging.getLogger("mailbox_reconciler")
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(console)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)


async def run_reconciliation(
    mode: str,
    config: EngineConfig,
    graph: GraphClient,
    exchange: ExchangeClient,
    reporter: Optional[ProgressReporter] = None,
) -> RunSummary:
    """
    Load reference data, enumerate targets and reconcile them.

    Raises FetchError when reference data cannot be loaded or the first
    enumeration page fails, both before any mutation. A later enumeration
    failure ends the run early with a partial summary instead.
    """
    rc = config.reconcile
    loader = ReferenceDataLoader(graph)
    executor = MutationExecutor(
        exchange,
        dry_run=rc.dry_run,
        max_attempts=rc.max_attempts,
        backoff_seconds=rc.retry_backoff_seconds,
        classifier=TransientErrorClassifier(rc.transient_patterns),
    )

    if mode == "compliance":
        print(f"\n  Loading reference data (licenses, SKUs, exempt group '{rc.exempt_group}')...")
        reference = await loader.load_compliance(rc.exempt_group)
        source = MailboxSource(exchange)
        processor = ComplianceProcessor(
            reference,
            executor,
            rc.policy_name,
            rules=rc.license_rules,
            archive_requires_policy=rc.archive_requires_policy,
        )
    elif mode == "permissions":
        print(f"\n  Loading permission groups with prefix '{rc.group_prefix}'...")
        reference = await loader.load_permissions(rc.group_prefix)
        source = PermissionTargetSource(exchange, reference)
        processor = PermissionProcessor(reference, exchange, executor)
    else:
        raise ConfigurationError(f"Unknown mode: {mode}")

    scheduler = BatchScheduler(
        concurrency=rc.concurrency,
        batch_size=rc.batch_size,
        reporter=reporter,
        dry_run=rc.dry_run,
    )
    label = "sequential" if rc.concurrency == 1 else f"{rc.concurrency} workers, batches of {rc.batch_size}"
    print(f"  Reconciling ({label})...\n")
    summary = await scheduler.run(source.targets(), processor)
    if source.error:
        if not source.enumerated:
            raise FetchError(source.error)
        summary.enumeration_error = source.error
    summary.merge(source.rejected)
    return summary


def generate_reports(
    summary: RunSummary,
    output_dir: Path,
    run_id: str,
    tenant_name: str,
    formats: list[str],
    audit: Optional[dict] = None,
) -> list[Path]:
    """Write all requested report formats."""
    created = []

    if "json" in formats:
        path = export_json(summary, output_dir, run_id, audit=audit)
        created.append(path)
        print(f"  📄 JSON:       {path}")

    if "csv" in formats:
        paths = export_csv(summary, output_dir, run_id)
        created.extend(paths)
        for p in paths:
            print(f"  📊 CSV:        {p}")

    if "markdown" in formats:
        path = export_markdown(summary, output_dir, run_id, tenant_name)
        created.append(path)
        print(f"  📝 Markdown:   {path}")

    return created


async def main_async(argv: Optional[list[str]] = None) -> int:
    """Async entry point. Returns the process exit code."""
    args = parse_args(argv)

    try:
        config = build_config(args)
    except ConfigurationError as e:
        print(f"\n❌ {e}")
        return EXIT_FATAL

    run_id = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S") + "_" + uuid.uuid4().hex[:8]
    output_dir = config.output.run_dir
    configure_logging(config.verbose, output_dir / f"{args.command}_run_{run_id}.log")

    guardian = DryRunGuardian(dry_run=config.reconcile.dry_run)
    guardian.print_banner()

    print("=" * 70)
    print(f" Mailbox Reconciler v{__version__} — {args.command}")
    print("=" * 70)
    print(f"\n📋 Run ID:  {run_id}")
    print(f"📂 Output:  {output_dir.resolve()}")
    print(f"🏢 Tenant:  {args.tenant_name or config.auth.organization}")

    # --- Authentication ---
    print("\n🔐 Authenticating...")
    try:
        graph_token, exchange_token = await Authenticator(config.auth).acquire_tokens()
    except AuthenticationError as e:
        logger.error(f"Authentication failed: {e}")
        print(f"❌ Authentication failed: {e}")
        return EXIT_FATAL
    print("✅ Authentication successful.")

    reporter = ProgressReporter(interval=config.reconcile.progress_interval)
    graph = GraphClient(access_token=graph_token, guardian=guardian)
    exchange = ExchangeClient(
        access_token=exchange_token,
        tenant_id=config.auth.tenant_id,
        organization=config.auth.organization,
        guardian=guardian,
        max_connections=config.reconcile.concurrency,
    )

    async with graph, exchange:
        try:
            summary = await run_reconciliation(args.command, config, graph, exchange, reporter)
        except FetchError as e:
            logger.error(f"Fatal: {e}")
            print(f"\n❌ {e}\n   No further changes were attempted.")
            return EXIT_FATAL

        audit = {
            **guardian.get_audit_record(),
            "graph": graph.get_stats(),
            "exchange": exchange.get_stats(),
        }

    print()
    reporter.final(summary)
    if summary.enumeration_failed:
        print(f"\n⚠️  Run ended early: {summary.enumeration_error}")
        print("   Targets before the failure were reconciled; re-run to cover the rest.")

    if config.output.formats:
        print()
        generate_reports(
            summary,
            output_dir,
            run_id,
            args.tenant_name or config.auth.organization,
            config.output.formats,
            audit=audit,
        )
    print()
    return summary.exit_code


def main():
    """Synchronous entry point for `python -m mailbox_reconciler`."""
    sys.exit(asyncio.run(main_async()))


if __name__ == "__main__":
    main()
