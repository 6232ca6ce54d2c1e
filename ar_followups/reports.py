"""
AR Follow-up Automation -- Reports

Ledger statistics for operators:

  - ``weekly_summary``  counts by status/channel over the last N days
  - ``format_summary``  the same as a printable block
  - ``export_ledger_xlsx``  every ledger row in an Excel workbook
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter

from .clock import ensure_utc
from .ledger import FollowUpLedger
from .models import FollowUp
from .store import Store

logger = logging.getLogger(__name__)

_HEADER_FONT = Font(bold=True, color="FFFFFF")
_HEADER_FILL = PatternFill("solid", fgColor="1F4E78")

LEDGER_COLUMNS = [
    ("Follow-up ID", "id"),
    ("Company", "company"),
    ("Invoice #", "invoice_number"),
    ("Channel", "channel"),
    ("Attempt", "attempt"),
    ("Scheduled", "scheduled_at"),
    ("Status", "status"),
    ("Recipient", "recipient"),
    ("Subject", "subject"),
    ("Sent", "sent_at"),
    ("Delivered", "delivered_at"),
    ("Failed", "failed_at"),
    ("Error kind", "error_kind"),
    ("Error", "error_message"),
    ("Retry eligible", "retry_eligible"),
    ("Provider message ID", "provider_message_id"),
]


@dataclass
class ReportSummary:
    since: datetime
    until: datetime
    stats: dict[str, Any] = field(default_factory=dict)


def weekly_summary(
    ledger: FollowUpLedger,
    now: datetime,
    days: int = 7,
    company_id: Optional[str] = None,
) -> ReportSummary:
    """Ledger statistics for attempts created in the last ``days`` days."""
    now = ensure_utc(now)
    since = now - timedelta(days=days)
    stats = ledger.get_stats(since=since, company_id=company_id)
    logger.info(
        "Follow-up report %s..%s: total=%d success_rate=%.1f%%",
        since.date(), now.date(), stats["total"], stats["success_rate"],
    )
    return ReportSummary(since=since, until=now, stats=stats)


def format_summary(summary: ReportSummary) -> str:
    stats = summary.stats
    lines = [
        "=" * 60,
        "  AR Follow-ups -- Report",
        f"  {summary.since:%b %d, %Y} to {summary.until:%b %d, %Y}",
        "=" * 60,
        f"  Total attempts      : {stats.get('total', 0)}",
    ]
    for status, count in stats.get("by_status", {}).items():
        lines.append(f"    {status:<18s}: {count}")
    lines.append("-" * 60)
    for channel, count in stats.get("by_channel", {}).items():
        lines.append(f"  {channel.upper():<20s}: {count}")
    failures = stats.get("failures_by_kind", {})
    if failures:
        lines.append("-" * 60)
        lines.append("  Failures by kind:")
        for kind, count in sorted(failures.items(), key=lambda x: -x[1]):
            lines.append(f"    {kind or 'unknown':<18s}: {count}")
    lines.append("-" * 60)
    lines.append(f"  Success rate        : {stats.get('success_rate', 0.0):.1f}%")
    lines.append("=" * 60)
    return "\n".join(lines)


def _row_values(follow_up: FollowUp, company: str, invoice_number: str) -> dict[str, Any]:
    def _ts(value: Optional[datetime]) -> Optional[datetime]:
        # Excel has no timezone support; write naive UTC
        return value.replace(tzinfo=None) if value else None

    return {
        "id": follow_up.id,
        "company": company,
        "invoice_number": invoice_number,
        "channel": follow_up.channel.value,
        "attempt": follow_up.attempt,
        "scheduled_at": _ts(follow_up.scheduled_at),
        "status": follow_up.status.value,
        "recipient": follow_up.recipient,
        "subject": follow_up.subject,
        "sent_at": _ts(follow_up.sent_at),
        "delivered_at": _ts(follow_up.delivered_at),
        "failed_at": _ts(follow_up.failed_at),
        "error_kind": follow_up.error_kind,
        "error_message": follow_up.error_message,
        "retry_eligible": "yes" if follow_up.retry_eligible else "no",
        "provider_message_id": follow_up.provider_message_id,
    }


def export_ledger_xlsx(
    ledger: FollowUpLedger,
    store: Store,
    path: str | Path,
    since: Optional[datetime] = None,
    company_id: Optional[str] = None,
) -> Path:
    """Write ledger rows (and a summary sheet) to an .xlsx workbook."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    follow_ups = ledger.filter(company_id=company_id, since=since)
    companies = {c.id: c.name for c in store.list_companies()}
    invoice_numbers: dict[str, str] = {}

    wb = Workbook()
    ws = wb.active
    ws.title = "Follow-ups"
    ws.append([header for header, _ in LEDGER_COLUMNS])
    for cell in ws[1]:
        cell.font = _HEADER_FONT
        cell.fill = _HEADER_FILL

    for fu in follow_ups:
        if fu.invoice_id not in invoice_numbers:
            invoice = store.get_invoice(fu.invoice_id)
            invoice_numbers[fu.invoice_id] = invoice.external_id if invoice else ""
        values = _row_values(fu, companies.get(fu.company_id, ""), invoice_numbers[fu.invoice_id])
        ws.append([values[key] for _, key in LEDGER_COLUMNS])

    for idx, (header, _) in enumerate(LEDGER_COLUMNS, start=1):
        ws.column_dimensions[get_column_letter(idx)].width = max(12, len(header) + 4)
    ws.freeze_panes = "A2"

    stats = ledger.get_stats(since=since, company_id=company_id)
    summary = wb.create_sheet("Summary")
    summary.append(["Metric", "Value"])
    for cell in summary[1]:
        cell.font = _HEADER_FONT
        cell.fill = _HEADER_FILL
    summary.append(["Total attempts", stats["total"]])
    for status, count in stats["by_status"].items():
        summary.append([f"Status: {status}", count])
    for channel, count in stats["by_channel"].items():
        summary.append([f"Channel: {channel}", count])
    summary.append(["Success rate (%)", stats["success_rate"]])
    summary.column_dimensions["A"].width = 24

    wb.save(path)
    logger.info("Exported %d ledger rows to %s", len(follow_ups), path)
    return path
