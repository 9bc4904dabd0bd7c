from __future__ import annotations
import base64
import html
from typing import Any, Dict, Optional

import httpx
from starlette.concurrency import run_in_threadpool

from .applog import get_logger
from .helpers import format_amount
from .infra.timings import timeit
from .model.order.record import StoredOrder
from .tickets import TicketArtifacts, TicketIssuer

logger = get_logger(__name__)


class MailerError(RuntimeError):
    pass


class MailerNotConfigured(MailerError):
    pass


def ticket_email_html(order: StoredOrder, ticket: TicketArtifacts) -> str:
    e = html.escape
    return "".join([
        f"<p>Hello, {e(order.buyer_name or 'guest')}!</p>",
        "<p>Your payment was received and your ticket is attached.</p>",
        f"<p><strong>Order:</strong> {e(order.order_id)}<br/>",
        f"<strong>Show:</strong> {e(order.show_id)}<br/>",
        f"<strong>Event:</strong> {e(order.event_id or '-')}<br/>",
        f"<strong>Qty:</strong> {order.qty}<br/>",
        "<strong>Amount:</strong> "
        f"{e(format_amount(order.amount, order.currency))}<br/>",
        f"<strong>Ticket code:</strong> {e(ticket.ticket_code)}</p>",
        f'<p><a href="{e(ticket.verify_url)}">Ticket link</a></p>',
    ])


class ResendMailer:
    """Sends mail through the Resend HTTP API."""

    def __init__(self, http: httpx.AsyncClient, api_key: str, sender: str,
                 api_url: str = "https://api.resend.com/emails") -> None:
        self.http = http
        self.api_key = api_key
        self.sender = sender
        self.api_url = api_url

    async def send_ticket(
        self, order: StoredOrder, ticket: TicketArtifacts
    ) -> Dict[str, Any]:
        if not self.api_key:
            raise MailerNotConfigured("RESEND_API_KEY is required")
        body = {
            "from": self.sender,
            "to": [order.buyer_email],
            "subject": "Payment received: your ticket",
            "html": ticket_email_html(order, ticket),
            "attachments": [{
                "filename": ticket.pdf_filename,
                "content": base64.b64encode(ticket.pdf_bytes).decode("ascii"),
            }],
        }
        try:
            r = await self.http.post(
                self.api_url,
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.HTTPError as e:
            raise MailerError(f"resend transport error: {e}") from e
        if r.is_error:
            raise MailerError(f"resend failed: {r.status_code} {r.text[:500]}")
        try:
            data = r.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}


class TicketDelivery:
    """Issues the ticket for a paid order and emails it to the buyer."""

    def __init__(self, issuer: TicketIssuer, mailer: ResendMailer) -> None:
        self.issuer = issuer
        self.mailer = mailer

    async def send(self, order: StoredOrder) -> Optional[str]:
        async with timeit("ticket.render"):
            ticket = await run_in_threadpool(self.issuer.issue, order)
        async with timeit("ticket.email"):
            result = await self.mailer.send_ticket(order, ticket)
        logger.info("ticket email sent order=%s to=%s id=%s",
                    order.order_id, order.buyer_email, result.get("id"))
        return result.get("id")

    async def deliver(self, order: StoredOrder) -> Optional[str]:
        # payment is already durable; a failed email must not fail the caller
        try:
            return await self.send(order)
        except Exception:
            logger.exception("ticket delivery FAILED order=%s to=%s",
                             order.order_id, order.buyer_email)
            return None
