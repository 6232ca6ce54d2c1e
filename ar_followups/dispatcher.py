"""
AR Follow-up Automation -- Dispatch Worker

Executes candidate jobs from the Due-Window Scanner:

    1. claim the (invoice, template) pair in the ledger
    2. render the template for the invoice
    3. send through the provider registered for the template's channel
    4. record the outcome (sent / failed + whether a retry is allowed)

A lost claim is a silent no-op.  Per-job failures are recorded in the
ledger and never raised to the caller, so one bad invoice cannot stop a
batch.

Usage:
    worker = DispatchWorker(store, ledger, resolver, providers, config, clock)
    result = worker.run_batch(scanner.scan())
    print(result.summary())
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Optional

from .channels import ChannelProvider
from .clock import Clock, SystemClock
from .config import FollowUpConfig
from .errors import (
    ClaimConflict,
    DeliveryError,
    ErrorKind,
    PermanentDeliveryError,
    TransientDeliveryError,
    ValidationError,
)
from .ledger import FollowUpLedger
from .models import Candidate, Channel, scheduled_at_for
from .store import Store
from .templates import TemplateResolver

logger = logging.getLogger(__name__)


@dataclass
class DispatchOutcome:
    """What happened to one candidate."""

    invoice_id: str
    template_id: str
    status: str                     # 'sent' | 'failed' | 'conflict'
    follow_up_id: str = ""
    error: str = ""


@dataclass
class BatchResult:
    """Summary of one ``run_batch`` call."""

    processed: int = 0
    sent: int = 0
    failed: int = 0
    conflicts: int = 0
    errors: list[str] = field(default_factory=list)
    outcomes: list[DispatchOutcome] = field(default_factory=list)

    def add(self, outcome: DispatchOutcome) -> None:
        self.processed += 1
        self.outcomes.append(outcome)
        if outcome.status == "sent":
            self.sent += 1
        elif outcome.status == "conflict":
            self.conflicts += 1
        else:
            self.failed += 1
            self.errors.append(f"{outcome.invoice_id}/{outcome.template_id}: {outcome.error}")

    def summary(self) -> str:
        return (
            f"processed={self.processed} sent={self.sent} "
            f"failed={self.failed} conflicts={self.conflicts}"
        )


class DispatchWorker:
    """Claims, renders, sends and records follow-up jobs."""

    def __init__(
        self,
        store: Store,
        ledger: FollowUpLedger,
        resolver: TemplateResolver,
        providers: dict[Channel, ChannelProvider],
        config: Optional[FollowUpConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.resolver = resolver
        self.providers = providers
        self.config = config or FollowUpConfig()
        self.clock = clock or SystemClock()

    @property
    def worker_id(self) -> str:
        return self.config.dispatch.worker_id

    # ------------------------------------------------------------------
    # Single job
    # ------------------------------------------------------------------

    def dispatch(self, candidate: Candidate) -> DispatchOutcome:
        invoice, template = candidate.invoice, candidate.template

        try:
            follow_up = self.ledger.claim(candidate, self.worker_id, self.clock.now())
        except ClaimConflict as exc:
            logger.debug("Skipping %s: %s", candidate.key, exc)
            return DispatchOutcome(invoice.id, template.id, "conflict", error=str(exc))
        except Exception as exc:
            logger.exception("Could not claim invoice %s template %s", invoice.external_id, template.id)
            return DispatchOutcome(invoice.id, template.id, "failed", error=f"claim failed: {exc}")

        outcome = DispatchOutcome(invoice.id, template.id, "failed", follow_up_id=follow_up.id)
        try:
            message = self.resolver.render_for(candidate, today=self.clock.now().date())
            self.ledger.attach_message(follow_up.id, message.recipient, message.subject, message.body)

            provider = self.providers.get(template.channel)
            if provider is None:
                raise TransientDeliveryError(
                    f"no provider registered for channel {template.channel.value}",
                    code="no_provider",
                )
            result = provider.send(message.recipient, message.subject, message.body)

        except ValidationError as exc:
            logger.warning("Invoice %s template %s not sendable: %s", invoice.external_id, template.id, exc)
            self._record_failure(follow_up.id, ErrorKind.VALIDATION, str(exc), retry_eligible=False)
            outcome.error = str(exc)
        except PermanentDeliveryError as exc:
            logger.warning("Permanent delivery failure for invoice %s: %s", invoice.external_id, exc)
            self._record_failure(follow_up.id, ErrorKind.PERMANENT, str(exc), False, exc.response)
            outcome.error = str(exc)
        except (TransientDeliveryError, DeliveryError) as exc:
            logger.warning("Transient delivery failure for invoice %s: %s", invoice.external_id, exc)
            self._record_failure(follow_up.id, ErrorKind.TRANSIENT, str(exc), True, exc.response)
            outcome.error = str(exc)
        except Exception as exc:
            logger.exception("Unexpected error dispatching invoice %s", invoice.external_id)
            self._record_failure(follow_up.id, ErrorKind.TRANSIENT, f"unexpected error: {exc}", True)
            outcome.error = str(exc)
        else:
            try:
                recorded = self.ledger.mark_sent(
                    follow_up.id,
                    now=self.clock.now(),
                    provider_message_id=result.provider_message_id,
                    response={"status": result.status, **result.response},
                )
            except Exception as exc:
                # The message is out; the pending claim will be reaped as transient
                logger.exception("Sent follow-up %s but could not record it", follow_up.id)
                outcome.error = f"sent but not recorded: {exc}"
                return outcome
            if not recorded:
                logger.warning("Follow-up %s was released before its send was recorded", follow_up.id)
            outcome.status = "sent"
            logger.info(
                "Sent %s reminder for invoice %s (offset %+d, attempt %d)",
                template.channel.value, invoice.external_id, template.day_offset, follow_up.attempt,
            )
        return outcome

    def _record_failure(self, follow_up_id, kind, error, retry_eligible, response=None) -> None:
        try:
            recorded = self.ledger.mark_failed(
                follow_up_id, now=self.clock.now(), kind=kind, error=error,
                retry_eligible=retry_eligible, response=response,
            )
        except Exception:
            logger.exception("Could not record failure for follow-up %s", follow_up_id)
            return
        if not recorded:
            logger.warning("Follow-up %s was no longer pending when its failure was recorded", follow_up_id)

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def run_batch(self, candidates: list[Candidate]) -> BatchResult:
        """Dispatch candidates in parallel on a bounded thread pool."""
        result = BatchResult()
        if not candidates:
            return result

        workers = max(1, min(self.config.dispatch.max_workers, len(candidates)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dispatch") as executor:
            futures = {executor.submit(self.dispatch, c): c for c in candidates}
            for future in as_completed(futures):
                try:
                    result.add(future.result())
                except Exception as exc:
                    candidate = futures[future]
                    logger.exception("Dispatch of %s crashed", candidate.key)
                    result.add(DispatchOutcome(
                        candidate.invoice.id, candidate.template.id, "failed", error=f"dispatch crashed: {exc}",
                    ))

        logger.info("Dispatch batch: %s", result.summary())
        return result

    # ------------------------------------------------------------------
    # Manual override
    # ------------------------------------------------------------------

    def send_now(self, invoice_id: str, template_id: str) -> DispatchOutcome:
        """Dispatch one pair immediately, ignoring its send window.

        The claim still applies, so a pair that was already sent (or is
        in flight) is reported as a conflict rather than sent twice.

        Raises:
            ValidationError: Unknown invoice/template, a template owned by
                another company, or an excluded invoice.
        """
        invoice = self.store.get_invoice(invoice_id)
        if invoice is None:
            raise ValidationError(f"invoice {invoice_id} not found")
        template = self.store.get_template(template_id)
        if template is None:
            raise ValidationError(f"template {template_id} not found")
        if template.company_id not in (None, invoice.company_id):
            raise ValidationError(f"template {template_id} belongs to another company")
        if invoice.excluded:
            raise ValidationError(f"invoice {invoice.external_id} is excluded from follow-ups")
        if invoice.due_date is None:
            raise ValidationError(f"invoice {invoice.external_id} has no due date")

        company = self.store.get_company(invoice.company_id)
        candidate = Candidate(
            invoice=invoice,
            template=template,
            scheduled_at=scheduled_at_for(invoice.due_date, template.day_offset),
            prior_attempts=self.ledger.attempt_count(invoice.id, template.id),
            company_name=company.name if company else "",
        )
        logger.info("Manual send requested for invoice %s template %s", invoice.external_id, template.id)
        return self.dispatch(candidate)
