"""
AR Follow-up Automation -- Follow-up Ledger

Durable record of every dispatch attempt.  The ledger is both the dedup
source for the Due-Window Scanner and the claim primitive for the
Dispatch Worker:

    claim() -> PENDING -> SENT -> DELIVERED
                       |-> FAILED  (retry creates a new row, attempt + 1)

Dedup is enforced by the schema (see ``store._SCHEMA_SQL``):
    - one 'sent'/'delivered' row per (invoice_id, template_id)
    - one 'pending' row per (invoice_id, template_id)
    - (invoice_id, template_id, attempt) unique

Usage:
    ledger = FollowUpLedger(db)
    follow_up = ledger.claim(candidate, worker_id="host:123", now=now)
    ledger.attach_message(follow_up.id, recipient, subject, body)
    ledger.mark_sent(follow_up.id, now=now, provider_message_id="SM123")
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from .clock import from_iso, to_iso
from .errors import ClaimConflict, ErrorKind
from .models import Candidate, Channel, FollowUp, FollowUpStatus
from .store import Database, _now_iso

logger = logging.getLogger(__name__)

CLAIM_EXPIRED_MESSAGE = "claim expired before an outcome was recorded"

_BLOCKING_STATUSES = (
    FollowUpStatus.PENDING.value,
    FollowUpStatus.SENT.value,
    FollowUpStatus.DELIVERED.value,
)


# ---------------------------------------------------------------------------
# Serialization Helpers
# ---------------------------------------------------------------------------

def _row_to_follow_up(row: dict[str, Any]) -> FollowUp:
    """Convert a follow_ups row dict into a FollowUp dataclass."""
    status = FollowUpStatus.PENDING
    for s in FollowUpStatus:
        if s.value == row.get("status"):
            status = s
            break

    response: dict[str, Any] = {}
    raw = row.get("response_data")
    if raw:
        try:
            parsed = json.loads(raw)
            response = parsed if isinstance(parsed, dict) else {"value": parsed}
        except (json.JSONDecodeError, TypeError):
            response = {}

    return FollowUp(
        id=row["id"],
        invoice_id=row["invoice_id"],
        template_id=row.get("template_id") or "",
        company_id=row["company_id"],
        channel=Channel(row["channel"]),
        attempt=int(row["attempt"]),
        scheduled_at=from_iso(row["scheduled_at"]),  # type: ignore[arg-type]
        status=status,
        claimed_at=from_iso(row.get("claimed_at")),
        claimed_by=row.get("claimed_by", ""),
        sent_at=from_iso(row.get("sent_at")),
        delivered_at=from_iso(row.get("delivered_at")),
        failed_at=from_iso(row.get("failed_at")),
        error_kind=row.get("error_kind", ""),
        error_message=row.get("error_message", ""),
        retry_eligible=bool(row.get("retry_eligible", 0)),
        recipient=row.get("recipient", ""),
        subject=row.get("subject", ""),
        message_content=row.get("message_content", ""),
        provider_message_id=row.get("provider_message_id", ""),
        response_data=response,
        created_at=from_iso(row.get("created_at")),
        updated_at=from_iso(row.get("updated_at")),
    )


def _dump_response(response: dict[str, Any] | None) -> str:
    try:
        return json.dumps(response or {}, default=str)
    except (TypeError, ValueError):
        return json.dumps({"repr": repr(response)})


@dataclass
class PurgeResult:
    success: int = 0
    failed: int = 0
    audit: int = 0

    def summary(self) -> str:
        return f"success={self.success} failed={self.failed} audit={self.audit}"


# ---------------------------------------------------------------------------
# FollowUpLedger
# ---------------------------------------------------------------------------

class FollowUpLedger:
    """Ledger of follow-up attempts backed by the shared SQLite store."""

    def __init__(self, db: Database):
        self.db = db

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    def claim(self, candidate: Candidate, worker_id: str, now: datetime) -> FollowUp:
        """Take exclusive ownership of a candidate before any side effect.

        Inserts the next attempt row as 'pending' in a single conditional
        INSERT inside a write transaction.  The insert only happens when
        no pending/sent/delivered row exists for the pair and the number
        of prior attempts still matches what the scanner saw, so a stale
        candidate from an earlier scan cannot claim again.

        Raises:
            ClaimConflict: Another worker already claimed or completed
                the pair.
        """
        invoice, template = candidate.invoice, candidate.template
        follow_up_id = str(uuid.uuid4())
        attempt = candidate.next_attempt
        now_iso = to_iso(now)

        try:
            with self.db.transaction() as conn:
                result = conn.execute(
                    """INSERT INTO follow_ups
                       (id, invoice_id, template_id, company_id, channel, attempt,
                        scheduled_at, status, claimed_at, claimed_by, created_at, updated_at)
                       SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?
                       WHERE NOT EXISTS (
                           SELECT 1 FROM follow_ups
                           WHERE invoice_id = ? AND template_id = ? AND status IN (?, ?, ?)
                       )
                       AND (
                           SELECT COALESCE(MAX(attempt), 0) FROM follow_ups
                           WHERE invoice_id = ? AND template_id = ?
                       ) = ?""",
                    (
                        follow_up_id, invoice.id, template.id, invoice.company_id,
                        template.channel.value, attempt, to_iso(candidate.scheduled_at),
                        FollowUpStatus.PENDING.value, now_iso, worker_id, now_iso, now_iso,
                        invoice.id, template.id, *_BLOCKING_STATUSES,
                        invoice.id, template.id, candidate.prior_attempts,
                    ),
                )
                if result.rowcount == 0:
                    raise ClaimConflict(invoice.id, template.id, attempt)
                self._log_action(conn, follow_up_id, "claimed", actor=worker_id, details={
                    "invoice_id": invoice.id,
                    "template_id": template.id,
                    "attempt": attempt,
                })
        except sqlite3.IntegrityError as exc:
            raise ClaimConflict(invoice.id, template.id, attempt) from exc

        logger.debug("Claimed follow-up %s (invoice=%s template=%s attempt=%d)",
                     follow_up_id, invoice.id, template.id, attempt)
        return self.get(follow_up_id)  # type: ignore[return-value]

    # ------------------------------------------------------------------
    # Status Transitions
    # ------------------------------------------------------------------

    def attach_message(self, follow_up_id: str, recipient: str, subject: str, content: str) -> bool:
        """Store the rendered message snapshot on an in-flight attempt."""
        with self.db.transaction() as conn:
            result = conn.execute(
                """UPDATE follow_ups
                   SET recipient = ?, subject = ?, message_content = ?
                   WHERE id = ? AND status = ?""",
                (recipient, subject, content, follow_up_id, FollowUpStatus.PENDING.value),
            )
        return result.rowcount > 0

    def mark_sent(
        self,
        follow_up_id: str,
        now: datetime,
        provider_message_id: str = "",
        response: dict[str, Any] | None = None,
    ) -> bool:
        """Mark a claimed attempt as sent and stamp the invoice's last follow-up.

        Transitions from 'pending', or from a claim the reaper already
        released (the send finished after the lease ran out).  Returns True
        if the transition succeeded.
        """
        now_iso = to_iso(now)
        try:
            with self.db.transaction() as conn:
                result = conn.execute(
                    """UPDATE follow_ups
                       SET status = ?, sent_at = ?, provider_message_id = ?,
                           response_data = ?, error_kind = '', error_message = '',
                           retry_eligible = 0, failed_at = NULL, updated_at = ?
                       WHERE id = ?
                         AND (status = ? OR (status = ? AND error_message = ?))""",
                    (
                        FollowUpStatus.SENT.value, now_iso, provider_message_id,
                        _dump_response(response), now_iso,
                        follow_up_id, FollowUpStatus.PENDING.value,
                        FollowUpStatus.FAILED.value, CLAIM_EXPIRED_MESSAGE,
                    ),
                )
                if result.rowcount == 0:
                    return False
                conn.execute(
                    """UPDATE invoices SET last_followup_at = ?
                       WHERE id = (SELECT invoice_id FROM follow_ups WHERE id = ?)""",
                    (now_iso, follow_up_id),
                )
                self._log_action(conn, follow_up_id, "sent", details={
                    "provider_message_id": provider_message_id,
                })
        except sqlite3.IntegrityError:
            # A later attempt for the same pair already succeeded
            logger.error("Follow-up %s sent after another attempt already succeeded", follow_up_id)
            return False
        return True

    def mark_failed(
        self,
        follow_up_id: str,
        now: datetime,
        kind: ErrorKind,
        error: str,
        retry_eligible: bool,
        response: dict[str, Any] | None = None,
    ) -> bool:
        """Mark a claimed attempt as failed.  Only transitions from 'pending'."""
        now_iso = to_iso(now)
        with self.db.transaction() as conn:
            result = conn.execute(
                """UPDATE follow_ups
                   SET status = ?, failed_at = ?, error_kind = ?, error_message = ?,
                       retry_eligible = ?, response_data = ?, updated_at = ?
                   WHERE id = ? AND status = ?""",
                (
                    FollowUpStatus.FAILED.value, now_iso, kind.value, error,
                    1 if retry_eligible else 0, _dump_response(response), now_iso,
                    follow_up_id, FollowUpStatus.PENDING.value,
                ),
            )
            if result.rowcount == 0:
                return False
            self._log_action(conn, follow_up_id, "failed", details={
                "kind": kind.value,
                "error": error,
                "retry_eligible": retry_eligible,
            })
        return True

    def mark_delivered(self, provider_message_id: str, now: datetime) -> bool:
        """Record a provider delivery receipt (sent -> delivered)."""
        if not provider_message_id:
            return False
        now_iso = to_iso(now)
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT id FROM follow_ups WHERE provider_message_id = ? AND status = ?",
                (provider_message_id, FollowUpStatus.SENT.value),
            ).fetchone()
            if row is None:
                return False
            conn.execute(
                "UPDATE follow_ups SET status = ?, delivered_at = ?, updated_at = ? WHERE id = ?",
                (FollowUpStatus.DELIVERED.value, now_iso, now_iso, row["id"]),
            )
            self._log_action(conn, row["id"], "delivered")
        return True

    def release_stale_claims(self, now: datetime, claim_timeout: timedelta) -> int:
        """Fail 'pending' claims older than ``claim_timeout``.

        A worker that died between claim and outcome leaves a pending row
        that would block the pair forever.  Releasing it as a transient
        failure hands the pair back to the scanner's retry policy.
        Returns the number of claims released.
        """
        cutoff = to_iso(now - claim_timeout)
        now_iso = to_iso(now)
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT id FROM follow_ups WHERE status = ? AND claimed_at < ?",
                (FollowUpStatus.PENDING.value, cutoff),
            ).fetchall()
            ids = [r["id"] for r in rows]
            for fid in ids:
                conn.execute(
                    """UPDATE follow_ups
                       SET status = ?, failed_at = ?, error_kind = ?, error_message = ?,
                           retry_eligible = 1, updated_at = ?
                       WHERE id = ? AND status = ?""",
                    (
                        FollowUpStatus.FAILED.value, now_iso, ErrorKind.TRANSIENT.value,
                        CLAIM_EXPIRED_MESSAGE, now_iso,
                        fid, FollowUpStatus.PENDING.value,
                    ),
                )
                self._log_action(conn, fid, "claim_expired")
        if ids:
            logger.warning("Released %d stale follow-up claims", len(ids))
        return len(ids)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, follow_up_id: str) -> FollowUp | None:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM follow_ups WHERE id = ?", (follow_up_id,)).fetchone()
        return _row_to_follow_up(dict(row)) if row else None

    def history(self, invoice_id: str, template_id: str | None = None) -> list[FollowUp]:
        """All attempts for an invoice (optionally one template), oldest first."""
        sql = "SELECT * FROM follow_ups WHERE invoice_id = ?"
        params: list[Any] = [invoice_id]
        if template_id:
            sql += " AND template_id = ?"
            params.append(template_id)
        sql += " ORDER BY created_at ASC, attempt ASC"
        with self.db.read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_follow_up(dict(r)) for r in rows]

    def attempt_count(self, invoice_id: str, template_id: str) -> int:
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(attempt), 0) AS n FROM follow_ups "
                "WHERE invoice_id = ? AND template_id = ?",
                (invoice_id, template_id),
            ).fetchone()
        return int(row["n"])

    def filter(
        self,
        status: FollowUpStatus | None = None,
        company_id: str | None = None,
        channel: Channel | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[FollowUp]:
        """Filter ledger rows.  All criteria are optional and ANDed."""
        clauses = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if company_id:
            clauses.append("company_id = ?")
            params.append(company_id)
        if channel is not None:
            clauses.append("channel = ?")
            params.append(channel.value)
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(to_iso(since))

        sql = "SELECT * FROM follow_ups"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at ASC"
        if limit:
            sql += " LIMIT ?"
            params.append(int(limit))

        with self.db.read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_follow_up(dict(r)) for r in rows]

    def count(self, status: FollowUpStatus | None = None) -> int:
        with self.db.read() as conn:
            if status is None:
                row = conn.execute("SELECT COUNT(*) AS n FROM follow_ups").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS n FROM follow_ups WHERE status = ?", (status.value,)
                ).fetchone()
        return int(row["n"])

    def get_stats(self, since: datetime | None = None, company_id: str | None = None) -> dict[str, Any]:
        """Counts by status and channel, for reporting."""
        clauses = []
        params: list[Any] = []
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(to_iso(since))
        if company_id:
            clauses.append("company_id = ?")
            params.append(company_id)
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""

        with self.db.read() as conn:
            by_status = {
                r["status"]: r["n"]
                for r in conn.execute(
                    f"SELECT status, COUNT(*) AS n FROM follow_ups{where} GROUP BY status", params
                ).fetchall()
            }
            by_channel = {
                r["channel"]: r["n"]
                for r in conn.execute(
                    f"SELECT channel, COUNT(*) AS n FROM follow_ups{where} GROUP BY channel", params
                ).fetchall()
            }
            by_error = {
                r["error_kind"]: r["n"]
                for r in conn.execute(
                    f"SELECT error_kind, COUNT(*) AS n FROM follow_ups{where}"
                    f"{' AND' if where else ' WHERE'} status = 'failed' GROUP BY error_kind",
                    params,
                ).fetchall()
            }

        total = sum(by_status.values())
        successful = by_status.get("sent", 0) + by_status.get("delivered", 0)
        return {
            "total": total,
            "by_status": {s.value: by_status.get(s.value, 0) for s in FollowUpStatus},
            "by_channel": {c.value: by_channel.get(c.value, 0) for c in Channel},
            "failures_by_kind": by_error,
            "success_rate": round(successful / total * 100, 1) if total else 0.0,
        }

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def purge(
        self,
        now: datetime,
        keep_success: timedelta,
        keep_failed: timedelta,
        horizon: timedelta | None,
    ) -> PurgeResult:
        """Delete finished rows past their retention age, with their audit entries.

        ``horizon`` is how long after ``scheduled_at`` the scanner may still
        produce a candidate for a pair.  Rows scheduled inside it are kept
        whatever their age: deleting them would let the pair be sent again.
        ``None`` means the scanner has no such bound, and nothing is purged.
        Pending claims are never purged.
        """
        result = PurgeResult()
        if horizon is None:
            logger.info("Ledger purge skipped: first attempts have no catch-up bound")
            return result

        with self.db.transaction() as conn:
            rows = conn.execute(
                """SELECT id, status FROM follow_ups
                   WHERE scheduled_at < ?
                     AND ((status IN (?, ?) AND COALESCE(delivered_at, sent_at) < ?)
                          OR (status = ? AND failed_at < ?))""",
                (
                    to_iso(now - horizon),
                    FollowUpStatus.SENT.value, FollowUpStatus.DELIVERED.value, to_iso(now - keep_success),
                    FollowUpStatus.FAILED.value, to_iso(now - keep_failed),
                ),
            ).fetchall()
            ids = [(r["id"],) for r in rows]
            if ids:
                audit = conn.executemany("DELETE FROM audit_log WHERE follow_up_id = ?", ids)
                result.audit = audit.rowcount
                conn.executemany("DELETE FROM follow_ups WHERE id = ?", ids)
            result.failed = sum(1 for r in rows if r["status"] == FollowUpStatus.FAILED.value)
            result.success = len(rows) - result.failed

        if rows:
            logger.info(
                "Purged %d delivered and %d failed follow-ups (%d audit entries)",
                result.success, result.failed, result.audit,
            )
        return result

    # ------------------------------------------------------------------
    # Audit Log
    # ------------------------------------------------------------------

    def get_audit_log(self, follow_up_id: str | None = None, limit: int = 200) -> list[dict[str, Any]]:
        with self.db.read() as conn:
            if follow_up_id:
                rows = conn.execute(
                    "SELECT * FROM audit_log WHERE follow_up_id = ? ORDER BY id ASC LIMIT ?",
                    (follow_up_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
        entries = []
        for r in rows:
            entry = dict(r)
            try:
                entry["details"] = json.loads(entry.get("details") or "{}")
            except (json.JSONDecodeError, TypeError):
                entry["details"] = {}
            entries.append(entry)
        return entries

    def _log_action(
        self,
        conn: sqlite3.Connection,
        follow_up_id: str,
        action: str,
        actor: str = "system",
        details: dict[str, Any] | None = None,
    ) -> None:
        """Write an audit log entry (internal, must be within a transaction)."""
        conn.execute(
            """INSERT INTO audit_log (follow_up_id, action, actor, details, timestamp)
               VALUES (?, ?, ?, ?, ?)""",
            (
                follow_up_id,
                action,
                actor,
                json.dumps(details or {}),
                _now_iso(),
            ),
        )
