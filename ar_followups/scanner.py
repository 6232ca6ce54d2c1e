"""
AR Follow-up Automation -- Due-Window Scanner

Finds the (invoice, template) pairs whose send window has opened and that
the ledger has not already handled.  The scan is read-only; exclusivity is
enforced later by ``FollowUpLedger.claim``.

A pair is a candidate when:
  - the invoice is collectible, not excluded and has a due date
  - its company is not paused
  - the template is the company's own for (channel, day_offset), or the
    global one when the company has none
  - due_date + day_offset (00:00 UTC) <= now
  - no pending/sent/delivered ledger row exists for the pair
  - for pairs that already failed, the retry policy allows another attempt

Usage:
    scanner = DueWindowScanner(store, resolver, config, clock=clock)
    for candidate in scanner.scan():
        worker.dispatch(candidate)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from .clock import Clock, SystemClock, ensure_utc, from_iso
from .config import FollowUpConfig
from .models import (
    COLLECTIBLE_STATUSES,
    Candidate,
    FollowUpStatus,
    MessageTemplate,
    scheduled_at_for,
)
from .store import Store, _row_to_invoice
from .templates import TemplateResolver

logger = logging.getLogger(__name__)


@dataclass
class PairHistory:
    """Ledger summary for one (invoice, template) pair."""

    attempts: int = 0               # highest attempt number written
    failures: int = 0
    blocking: bool = False          # a pending/sent/delivered row exists
    last_status: str = ""
    last_retry_eligible: bool = False
    last_failed_at: Optional[datetime] = None


class DueWindowScanner:
    """Produces dispatch candidates from invoices, templates and the ledger."""

    def __init__(
        self,
        store: Store,
        resolver: TemplateResolver,
        config: Optional[FollowUpConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.resolver = resolver
        self.config = config or FollowUpConfig()
        self.clock = clock or SystemClock()

    def scan(
        self,
        now: Optional[datetime] = None,
        company_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Candidate]:
        """Return the candidates due at ``now`` ordered by scheduled time."""
        now = ensure_utc(now) if now else self.clock.now()

        invoices = self._eligible_invoices(company_id)
        if not invoices:
            return []

        history = self._pair_history(company_id)
        templates_by_company: dict[str, list[MessageTemplate]] = {}
        candidates: list[Candidate] = []
        skipped_retry = 0

        for invoice, company_name in invoices:
            templates = templates_by_company.get(invoice.company_id)
            if templates is None:
                templates = self.resolver.effective_templates(invoice.company_id)
                templates_by_company[invoice.company_id] = templates

            for template in templates:
                scheduled_at = scheduled_at_for(invoice.due_date, template.day_offset)  # type: ignore[arg-type]
                if scheduled_at > now:
                    continue
                pair = history.get((invoice.id, template.id), PairHistory())
                if not self._allows_attempt(pair, scheduled_at, now):
                    if pair.failures:
                        skipped_retry += 1
                    continue
                candidates.append(Candidate(
                    invoice=invoice,
                    template=template,
                    scheduled_at=scheduled_at,
                    prior_attempts=pair.attempts,
                    company_name=company_name,
                ))

        candidates.sort(key=lambda c: (c.scheduled_at, c.invoice.id, c.template.day_offset))
        if limit:
            candidates = candidates[:limit]

        logger.debug(
            "Scan at %s: %d invoices, %d candidates, %d failed pairs held back",
            now.isoformat(), len(invoices), len(candidates), skipped_retry,
        )
        return candidates

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    def _allows_attempt(self, pair: PairHistory, scheduled_at: datetime, now: datetime) -> bool:
        if pair.blocking:
            return False

        if pair.attempts == 0:
            window = self.config.dispatch.catch_up_window
            return window is None or now - scheduled_at <= window

        policy = self.config.retry
        if pair.last_status != FollowUpStatus.FAILED.value or not pair.last_retry_eligible:
            return False
        if pair.attempts >= policy.max_attempts:
            return False
        if now - scheduled_at > policy.max_retry_age:
            return False
        if pair.last_failed_at is None:
            return True
        return now >= pair.last_failed_at + policy.backoff_for(pair.failures)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _eligible_invoices(self, company_id: Optional[str]) -> list[tuple[Any, str]]:
        statuses = [s.value for s in COLLECTIBLE_STATUSES]
        sql = (
            "SELECT i.*, c.name AS company_name FROM invoices i "
            "JOIN companies c ON c.id = i.company_id "
            "WHERE c.paused = 0 AND i.excluded = 0 AND i.due_date IS NOT NULL "
            f"AND i.status IN ({', '.join('?' for _ in statuses)})"
        )
        params: list[Any] = list(statuses)
        if company_id:
            sql += " AND i.company_id = ?"
            params.append(company_id)
        sql += " ORDER BY i.due_date ASC, i.id ASC"

        with self.store.db.read() as conn:
            rows = conn.execute(sql, params).fetchall()

        result = []
        for row in rows:
            data = dict(row)
            company_name = data.pop("company_name", "") or ""
            invoice = _row_to_invoice(data)
            if invoice.is_followup_eligible:
                result.append((invoice, company_name))
        return result

    def _pair_history(self, company_id: Optional[str]) -> dict[tuple[str, str], PairHistory]:
        where = "WHERE template_id IS NOT NULL"
        params: list[Any] = []
        if company_id:
            where += " AND company_id = ?"
            params.append(company_id)

        summary_sql = f"""
            SELECT invoice_id, template_id,
                   MAX(attempt) AS attempts,
                   SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failures,
                   SUM(CASE WHEN status IN ('pending', 'sent', 'delivered') THEN 1 ELSE 0 END) AS blocking
            FROM follow_ups {where}
            GROUP BY invoice_id, template_id
        """
        latest_sql = f"""
            SELECT f.invoice_id, f.template_id, f.status, f.retry_eligible, f.failed_at
            FROM follow_ups f
            JOIN (
                SELECT invoice_id, template_id, MAX(attempt) AS attempt
                FROM follow_ups {where}
                GROUP BY invoice_id, template_id
            ) m ON m.invoice_id = f.invoice_id
               AND m.template_id = f.template_id
               AND m.attempt = f.attempt
        """

        history: dict[tuple[str, str], PairHistory] = {}
        with self.store.db.read() as conn:
            for row in conn.execute(summary_sql, params).fetchall():
                history[(row["invoice_id"], row["template_id"])] = PairHistory(
                    attempts=int(row["attempts"] or 0),
                    failures=int(row["failures"] or 0),
                    blocking=bool(row["blocking"]),
                )
            for row in conn.execute(latest_sql, params).fetchall():
                pair = history.get((row["invoice_id"], row["template_id"]))
                if pair is None:
                    continue
                pair.last_status = row["status"]
                pair.last_retry_eligible = bool(row["retry_eligible"])
                pair.last_failed_at = from_iso(row["failed_at"])
        return history
