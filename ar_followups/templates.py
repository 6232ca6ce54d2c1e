"""
AR Follow-up Automation -- Template Resolver

Selects the template for a reminder and renders it with invoice data.

Responsibilities:
  1. Pick the company's template for a (channel, day_offset), falling back
     to the global default
  2. Build the placeholder context from an Invoice and its company
  3. Render subject and body with Jinja2 in a sandbox; missing values
     render as the empty string
  4. Produce plain-text SMS bodies clipped to the provider's limit
  5. Format dates (Mon DD, YYYY) and currency ($X,XXX.XX) consistently

Usage:
    from ar_followups.templates import TemplateResolver

    resolver = TemplateResolver(store, config.templates)
    template = resolver.select("c1", Channel.EMAIL, -1)
    message = resolver.render_for(candidate, today=date(2025, 1, 9))
    print(message.subject)
"""

from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Any, Optional

from jinja2 import ChainableUndefined, TemplateError, TemplateSyntaxError
from jinja2.sandbox import SandboxedEnvironment

from .config import TemplateSettings
from .errors import ValidationError
from .models import Candidate, Channel, Invoice, MessageTemplate
from .store import Store

logger = logging.getLogger(__name__)

# Date format: "Jan 10, 2025"
_DATE_FORMAT = "%b %d, %Y"


# ---------------------------------------------------------------------------
# Helper: Format Utilities
# ---------------------------------------------------------------------------

def format_date(d: date | None, fmt: str = _DATE_FORMAT) -> str:
    """Format a date as 'Mon DD, YYYY' (e.g. 'Jan 10, 2025').

    Returns empty string for None.
    """
    if d is None:
        return ""
    if isinstance(d, str):
        return d
    return d.strftime(fmt)


def format_currency(amount: float | None, symbol: str = "$") -> str:
    """Format a float as currency: '$1,510.00'.

    Always includes 2 decimal places and comma thousands separator.
    Returns '$0.00' for None.
    """
    if amount is None:
        amount = 0.0
    if isinstance(amount, str):
        return amount
    if amount < 0:
        return f"-{symbol}{abs(amount):,.2f}"
    return f"{symbol}{amount:,.2f}"


def html_to_plaintext(html_content: str) -> str:
    """Convert a rendered body that may contain HTML into plain text.

    SMS cannot carry markup.  Block elements become newlines, links keep
    their URL, remaining tags are stripped and entities decoded.
    """
    text = html_content

    text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</(?:div|li)>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</p>", "\n\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<li[^>]*>", "  - ", text, flags=re.IGNORECASE)

    text = re.sub(
        r'<a[^>]+href=["\']([^"\']+)["\'][^>]*>(.*?)</a>',
        r"\2 (\1)",
        text,
        flags=re.IGNORECASE | re.DOTALL,
    )

    text = re.sub(r"<[^>]+>", "", text)
    text = html.unescape(text)

    text = re.sub(r"\n{3,}", "\n\n", text)
    lines = [line.strip() for line in text.split("\n")]
    return "\n".join(lines).strip()


def clip(text: str, max_length: int) -> str:
    """Trim ``text`` to ``max_length`` characters, ending with an ellipsis."""
    if max_length <= 0 or len(text) <= max_length:
        return text
    if max_length <= 3:
        return text[:max_length]
    return text[: max_length - 3].rstrip() + "..."


# ---------------------------------------------------------------------------
# Rendered output
# ---------------------------------------------------------------------------

@dataclass
class RenderedMessage:
    """A message ready for a channel provider."""

    channel: Channel
    subject: str
    body: str
    recipient: str = ""


# ---------------------------------------------------------------------------
# TemplateResolver
# ---------------------------------------------------------------------------

class TemplateResolver:
    """Template selection and rendering.

    Attributes:
        store: Data access used to look templates up.
        settings: Formatting options (date format, currency symbols, SMS limit).
        env: Sandboxed Jinja2 Environment used for every render.
    """

    def __init__(self, store: Store, settings: Optional[TemplateSettings] = None) -> None:
        self.store = store
        self.settings = settings or TemplateSettings()

        # Templates are edited by account owners, so they render sandboxed
        self.env = SandboxedEnvironment(
            undefined=ChainableUndefined,
            autoescape=False,
            keep_trailing_newline=False,
        )
        self.env.filters["format_date"] = lambda d: format_date(d, self.settings.date_format)
        self.env.filters["format_currency"] = format_currency

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select(self, company_id: str, channel: Channel, day_offset: int) -> MessageTemplate | None:
        """Company template for (channel, day_offset) if present, else the global one."""
        fallback = None
        for template in self.store.list_templates(company_id=company_id, include_global=True):
            if template.channel is not channel or template.day_offset != day_offset:
                continue
            if template.company_id == company_id:
                return template
            fallback = template
        return fallback

    def effective_templates(self, company_id: str) -> list[MessageTemplate]:
        """All templates that apply to a company after overrides, by day offset."""
        chosen: dict[tuple[Channel, int], MessageTemplate] = {}
        for template in self.store.list_templates(company_id=company_id, include_global=True):
            key = (template.channel, template.day_offset)
            if key not in chosen or template.company_id == company_id:
                chosen[key] = template
        return sorted(chosen.values(), key=lambda t: (t.day_offset, t.channel.value))

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def build_context(self, invoice: Invoice, company_name: str = "", today: date | None = None) -> dict[str, Any]:
        """Placeholder values for an invoice.

        Snake_case names are the documented placeholders; the camelCase
        aliases keep templates written for the older placeholder set working.
        """
        symbol = self.settings.currency_symbols.get(invoice.currency.upper(), "")
        days_overdue = invoice.days_overdue(today) if today else 0

        context: dict[str, Any] = {
            "company_name": company_name,
            "customer_name": invoice.customer_name or self.settings.fallback_customer_name,
            "customer_email": invoice.customer_email,
            "invoice_number": invoice.external_id,
            "due_date": format_date(invoice.due_date, self.settings.date_format),
            "amount": format_currency(invoice.amount, symbol),
            "balance": format_currency(invoice.open_balance, symbol),
            "currency": invoice.currency,
            "days_overdue": max(days_overdue, 0),
        }
        context.update({
            "companyName": context["company_name"],
            "customerName": context["customer_name"],
            "invoiceNumber": context["invoice_number"],
            "dueDate": context["due_date"],
            "amountDue": context["balance"],
            "daysOverdue": context["days_overdue"],
        })
        return context

    def render(self, template: MessageTemplate, context: dict[str, Any]) -> RenderedMessage:
        """Render a template's subject and body.

        Raises:
            ValidationError: If the template text cannot be compiled or
                fails while rendering.
        """
        subject = self._render_string(template.subject or "", context, template, "subject")
        body = self._render_string(template.body, context, template, "body")

        if template.channel is Channel.SMS:
            subject = ""
            body = clip(html_to_plaintext(body), self.settings.sms_max_length)
        else:
            subject = " ".join(subject.split())

        if not body.strip():
            raise ValidationError(f"template {template.id} rendered an empty body")

        return RenderedMessage(channel=template.channel, subject=subject, body=body)

    def render_for(self, candidate: Candidate, today: date | None = None) -> RenderedMessage:
        """Render a scanner candidate and attach its recipient.

        Raises:
            ValidationError: If the invoice has no address for the
                template's channel, or the template is malformed.
        """
        invoice, template = candidate.invoice, candidate.template
        recipient = self.recipient_for(invoice, template.channel)
        if not recipient:
            raise ValidationError(
                f"invoice {invoice.external_id} has no {template.channel.value} recipient"
            )
        context = self.build_context(invoice, candidate.company_name, today)
        message = self.render(template, context)
        message.recipient = recipient
        return message

    @staticmethod
    def recipient_for(invoice: Invoice, channel: Channel) -> str:
        if channel is Channel.SMS:
            return (invoice.customer_phone or "").strip()
        return (invoice.customer_email or "").strip()

    def _render_string(
        self,
        source: str,
        context: dict[str, Any],
        template: MessageTemplate,
        part: str,
    ) -> str:
        try:
            compiled = self.env.from_string(source)
        except TemplateSyntaxError as exc:
            raise ValidationError(
                f"template {template.id} {part} has a syntax error on line {exc.lineno}: {exc.message}"
            ) from exc
        try:
            return compiled.render(**context)
        except TemplateError as exc:
            raise ValidationError(f"template {template.id} {part} failed to render: {exc}") from exc
        except (TypeError, ValueError, ArithmeticError) as exc:
            raise ValidationError(f"template {template.id} {part} failed to render: {exc}") from exc
