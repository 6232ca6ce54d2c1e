"""
AR Follow-up Automation -- CLI

Operational controls for the follow-up engine and the credential manager.

Usage:
    python -m ar_followups.main init-db --seed-templates
    python -m ar_followups.main scan
    python -m ar_followups.main run                 # one tick
    python -m ar_followups.main run --loop          # until Ctrl+C
    python -m ar_followups.main run --dry-run       # write .eml/.txt instead of sending
    python -m ar_followups.main send-now INVOICE_ID TEMPLATE_ID
    python -m ar_followups.main exclude INVOICE_ID
    python -m ar_followups.main pause COMPANY_ID
    python -m ar_followups.main refresh-credentials
    python -m ar_followups.main revoke-credential OWNER_ID
    python -m ar_followups.main purge
    python -m ar_followups.main report --days 7
    python -m ar_followups.main export-ledger output/ledger.xlsx
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from .channels import build_providers
from .clock import Clock, SystemClock
from .config import FollowUpConfig, get_config
from .dispatcher import DispatchWorker
from .errors import CredentialRevoked, FollowUpError
from .ledger import FollowUpLedger
from .refresher import CredentialRefresher, IntuitOAuthClient
from .reports import export_ledger_xlsx, format_summary, weekly_summary
from .scanner import DueWindowScanner
from .scheduler import FollowUpScheduler
from .store import Database, Store
from .templates import TemplateResolver
from .vault import CredentialVault

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Runtime assembly
# ---------------------------------------------------------------------------

@dataclass
class Runtime:
    """Every component of one worker process, wired to one database."""

    config: FollowUpConfig
    db: Database
    store: Store
    ledger: FollowUpLedger
    resolver: TemplateResolver
    scanner: DueWindowScanner
    worker: DispatchWorker
    refresher: Optional[CredentialRefresher] = None

    def scheduler(self) -> FollowUpScheduler:
        return FollowUpScheduler(
            self.scanner, self.worker, self.ledger,
            refresher=self.refresher, config=self.config, clock=self.worker.clock,
        )


def build_runtime(config: FollowUpConfig, clock: Optional[Clock] = None, dry_run: bool = False) -> Runtime:
    """Wire the store, ledger, scanner, dispatcher and (if keyed) the refresher."""
    clock = clock or SystemClock()
    db = Database(config.database.resolved_path, config.database.busy_timeout_ms)
    db.init_schema()
    store = Store(db)
    ledger = FollowUpLedger(db)
    resolver = TemplateResolver(store, config.templates)
    scanner = DueWindowScanner(store, resolver, config, clock=clock)
    worker = DispatchWorker(store, ledger, resolver, build_providers(config, dry_run), config, clock)

    refresher = None
    if config.credentials.master_key:
        vault = CredentialVault(db, config.credentials)
        refresher = CredentialRefresher(
            db, vault, IntuitOAuthClient(config.oauth), config.credentials,
            clock=clock, worker_id=config.dispatch.worker_id,
        )
    else:
        logger.warning("No credential master key configured; credential sweep disabled")

    return Runtime(config, db, store, ledger, resolver, scanner, worker, refresher)


def _require_refresher(runtime: Runtime) -> CredentialRefresher:
    if runtime.refresher is None:
        raise FollowUpError("credential master key is not configured (AR_FOLLOWUPS_MASTER_KEY)")
    return runtime.refresher


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_init_db(runtime: Runtime, args: argparse.Namespace) -> int:
    print(f"Database ready: {runtime.db.db_path}")
    if args.seed_templates:
        added = runtime.store.seed_default_templates()
        print(f"Default templates added: {added}")
    return 0


def cmd_scan(runtime: Runtime, args: argparse.Namespace) -> int:
    candidates = runtime.scanner.scan(company_id=args.company, limit=args.limit)
    print(f"{len(candidates)} candidate(s) due")
    for c in candidates:
        print(
            f"  {c.scheduled_at:%Y-%m-%d}  {c.company_name or c.invoice.company_id:<24.24s} "
            f"inv {c.invoice.external_id:<12s} {c.template.channel.value:<5s} "
            f"offset {c.template.day_offset:+d}  attempt {c.next_attempt}"
        )
    return 0


def cmd_run(runtime: Runtime, args: argparse.Namespace) -> int:
    scheduler = runtime.scheduler()
    if args.loop:
        try:
            scheduler.run_forever(max_ticks=args.max_ticks)
        except KeyboardInterrupt:
            print("\nStopped.")
        return 0
    result = scheduler.tick()
    print(f"Released stale claims: {result.released}")
    print(f"Candidates: {result.candidates}  ({result.batch.summary()})")
    sweep = scheduler.sweep_credentials()
    if sweep is not None:
        print(f"Credential sweep: {sweep.summary()}")
    for error in result.batch.errors + result.errors:
        print(f"  ! {error}")
    return 1 if result.errors else 0


def cmd_send_now(runtime: Runtime, args: argparse.Namespace) -> int:
    outcome = runtime.worker.send_now(args.invoice_id, args.template_id)
    if outcome.status == "sent":
        print(f"Sent (follow-up {outcome.follow_up_id})")
        return 0
    if outcome.status == "conflict":
        print("Not sent: this reminder was already sent or is in flight")
        return 1
    print(f"Failed: {outcome.error}")
    return 1


def cmd_exclude(runtime: Runtime, args: argparse.Namespace) -> int:
    excluded = args.command == "exclude"
    if not runtime.store.set_invoice_excluded(args.invoice_id, excluded):
        print(f"Invoice not found: {args.invoice_id}")
        return 1
    print(f"Invoice {args.invoice_id} {'excluded from' if excluded else 'included in'} follow-ups")
    return 0


def cmd_pause(runtime: Runtime, args: argparse.Namespace) -> int:
    paused = args.command == "pause"
    if not runtime.store.set_company_paused(args.company_id, paused):
        print(f"Company not found: {args.company_id}")
        return 1
    print(f"Company {args.company_id} {'paused' if paused else 'resumed'}")
    return 0


def cmd_revoke_credential(runtime: Runtime, args: argparse.Namespace) -> int:
    refresher = _require_refresher(runtime)
    if not refresher.vault.revoke(args.owner_id, args.reason):
        print(f"No credential stored for owner {args.owner_id}")
        return 1
    print(f"Credential for owner {args.owner_id} revoked")
    return 0


def cmd_refresh_credentials(runtime: Runtime, args: argparse.Namespace) -> int:
    refresher = _require_refresher(runtime)
    if args.owner:
        try:
            refresher.refresh(args.owner, force=True)
        except CredentialRevoked as exc:
            print(f"Revoked: {exc}")
            return 1
        print(f"Refreshed credential for owner {args.owner}")
        return 0
    result = refresher.sweep()
    print(f"Credential sweep: {result.summary()}")
    for owner_id, error in result.errors.items():
        print(f"  ! {owner_id}: {error}")
    return 1 if result.failed else 0


def cmd_credential_status(runtime: Runtime, args: argparse.Namespace) -> int:
    refresher = _require_refresher(runtime)
    owners = [args.owner] if args.owner else refresher.vault.owners()
    for owner_id in owners:
        print(f"  {owner_id:<30s} {refresher.status(owner_id).value}")
    return 0


def cmd_purge(runtime: Runtime, args: argparse.Namespace) -> int:
    result = runtime.scheduler().purge_ledger()
    if result is None:
        print("Purge failed; see the log")
        return 1
    print(f"Purged follow-ups: {result.summary()}")
    return 0


def cmd_report(runtime: Runtime, args: argparse.Namespace) -> int:
    summary = weekly_summary(runtime.ledger, runtime.worker.clock.now(), days=args.days, company_id=args.company)
    print(format_summary(summary))
    return 0


def cmd_export_ledger(runtime: Runtime, args: argparse.Namespace) -> int:
    since = None
    if args.since_days:
        since = runtime.worker.clock.now() - timedelta(days=args.since_days)
    path = args.output or runtime.config.output.resolved_report_dir / "ledger.xlsx"
    written = export_ledger_xlsx(runtime.ledger, runtime.store, path, since=since, company_id=args.company)
    print(f"Ledger exported to {written}")
    return 0


_COMMANDS = {
    "init-db": cmd_init_db,
    "scan": cmd_scan,
    "run": cmd_run,
    "send-now": cmd_send_now,
    "exclude": cmd_exclude,
    "include": cmd_exclude,
    "pause": cmd_pause,
    "resume": cmd_pause,
    "revoke-credential": cmd_revoke_credential,
    "refresh-credentials": cmd_refresh_credentials,
    "credential-status": cmd_credential_status,
    "purge": cmd_purge,
    "report": cmd_report,
    "export-ledger": cmd_export_ledger,
}


# ---------------------------------------------------------------------------
# CLI Entry Point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ar-followups",
        description="AR Follow-up Automation - scheduled invoice reminders",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  ar-followups init-db --seed-templates\n"
            "  ar-followups run --loop\n"
            "  ar-followups send-now INVOICE_ID TEMPLATE_ID\n"
            "  ar-followups report --days 7\n"
        ),
    )
    parser.add_argument("--config", type=str, default=None,
                        help="Path to config.yaml (default: project root config.yaml)")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Enable verbose (DEBUG) logging")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create the database schema")
    p.add_argument("--seed-templates", action="store_true", help="Insert the global default templates")

    p = sub.add_parser("scan", help="List due candidates without sending")
    p.add_argument("--company", default=None)
    p.add_argument("--limit", type=int, default=None)

    p = sub.add_parser("run", help="Run one scheduler tick (or loop)")
    p.add_argument("--loop", action="store_true", help="Keep ticking every scan interval")
    p.add_argument("--max-ticks", type=int, default=None)
    p.add_argument("--dry-run", action="store_true", help="Write messages to the outbox instead of sending")

    p = sub.add_parser("send-now", help="Send one reminder immediately")
    p.add_argument("invoice_id")
    p.add_argument("template_id")
    p.add_argument("--dry-run", action="store_true")

    for name, help_text in (("exclude", "Stop reminders for an invoice"),
                            ("include", "Resume reminders for an invoice")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("invoice_id")

    for name, help_text in (("pause", "Pause reminders for a company"),
                            ("resume", "Resume reminders for a company")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("company_id")

    p = sub.add_parser("revoke-credential", help="Revoke an owner's stored credential")
    p.add_argument("owner_id")
    p.add_argument("--reason", default="revoked by operator")

    p = sub.add_parser("refresh-credentials", help="Sweep (or force-refresh one) credential")
    p.add_argument("--owner", default=None)

    p = sub.add_parser("credential-status", help="Show credential states")
    p.add_argument("--owner", default=None)

    sub.add_parser("purge", help="Delete ledger rows past their retention age")

    p = sub.add_parser("report", help="Print ledger statistics")
    p.add_argument("--days", type=int, default=7)
    p.add_argument("--company", default=None)

    p = sub.add_parser("export-ledger", help="Export the ledger to an .xlsx workbook")
    p.add_argument("output", nargs="?", default=None)
    p.add_argument("--since-days", type=int, default=None)
    p.add_argument("--company", default=None)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point.

    Returns:
        Exit code (0 = success, 1 = error).
    """
    args = build_parser().parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        config = get_config(args.config)
        runtime = build_runtime(config, dry_run=getattr(args, "dry_run", False))
        return _COMMANDS[args.command](runtime, args)
    except FileNotFoundError as exc:
        logger.error("File not found: %s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except FollowUpError as exc:
        logger.error("%s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except Exception as exc:
        logger.exception("Unexpected error")
        print(f"\nUNEXPECTED ERROR: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
