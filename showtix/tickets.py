"""
E-tickets.

A ticket is not stored anywhere: its code is derived from the order id
(``sha256(order_id)[:12]``, upper-cased) and recomputed whenever a ticket is
shown or scanned. Possession of the order id is the capability; it is only
ever sent to the buyer and the admins.
"""
from __future__ import annotations
import hashlib
import io
import json
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Mapping, Optional
from urllib.parse import urlencode

from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.pdfgen import canvas
import qrcode

from .applog import get_logger
from .helpers import clean_str, format_amount
from .model.order.record import StoredOrder

logger = get_logger(__name__)

TICKET_CODE_LEN = 12
VERIFY_PATH = "/ticket/validate"
PDF_MIME = "application/pdf"

_FONT_REGULAR = "Helvetica"
_FONT_BOLD = "Helvetica-Bold"
_CUSTOM_FONT = "TicketSans"


class TicketRenderError(RuntimeError):
    pass


def ticket_code(order_id: str) -> str:
    digest = hashlib.sha256(order_id.encode("utf-8")).hexdigest()
    return digest[:TICKET_CODE_LEN].upper()


def verify_url(base_url: str, order_id: str) -> str:
    query = urlencode({"order_id": order_id, "ticket": ticket_code(order_id)})
    return f"{base_url.rstrip('/')}{VERIFY_PATH}?{query}"


def pdf_filename(order_id: str) -> str:
    return f"ticket-{order_id}.pdf"


@dataclass(frozen=True)
class EventDetails:
    show_title: str
    starts_at: str
    venue: str


EventDetailsResolver = Callable[[StoredOrder], EventDetails]


def default_event_details(order: StoredOrder) -> EventDetails:
    # no schedule entry; fall back to raw ids
    return EventDetails(
        show_title=order.show_id,
        starts_at=order.event_id or "-",
        venue="-",
    )


def _format_day(date_iso: str) -> str:
    try:
        day = date.fromisoformat(date_iso[:10])
    except ValueError:
        return date_iso
    return f"{day.day} {day.strftime('%B')} {day.year}"


class ScheduleDetails:
    """
    Show titles, dates and venues from a JSON schedule file::

        {"<show_id>": {"title": "Zlata",
                       "events": {"<event_id>": {"date": "2026-11-20",
                                                 "time": "20:00",
                                                 "venue": "Tmuna Hall"}}}}

    An event may carry ``date_text`` instead of ``date``. Whatever the file
    does not know is filled in by :func:`default_event_details`.
    """

    def __init__(self, shows: Mapping[str, Any]) -> None:
        self.shows = shows

    @classmethod
    def from_file(cls, path: str) -> "ScheduleDetails":
        try:
            with open(path, encoding="utf-8") as f:
                shows = json.load(f)
        except (OSError, ValueError) as e:
            raise RuntimeError(f"cannot load show schedule {path}: {e}") from e
        if not isinstance(shows, dict):
            raise RuntimeError(f"show schedule {path} must be a JSON object")
        logger.info("show schedule loaded from %s: %d shows", path, len(shows))
        return cls(shows)

    def __call__(self, order: StoredOrder) -> EventDetails:
        fallback = default_event_details(order)
        show = self.shows.get(order.show_id)
        if not isinstance(show, dict):
            return fallback
        title = clean_str(show.get("title")) or fallback.show_title
        events = show.get("events")
        event = events.get(order.event_id) if isinstance(events, dict) else None
        if not isinstance(event, dict):
            return EventDetails(title, fallback.starts_at, fallback.venue)

        when = clean_str(event.get("date_text")) \
            or _format_day(clean_str(event.get("date"))) \
            or fallback.starts_at
        time_text = clean_str(event.get("time"))
        if time_text:
            when = f"{when} {time_text}"
        return EventDetails(
            show_title=title,
            starts_at=when,
            venue=clean_str(event.get("venue")) or fallback.venue,
        )


@dataclass
class TicketArtifacts:
    ticket_code: str
    verify_url: str
    pdf_bytes: bytes
    pdf_filename: str


# ----------------------------
# PDF rendering
# ----------------------------
def _qr_png(data: str) -> bytes:
    qr = qrcode.QRCode(version=None, box_size=8, border=2)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white").get_image()
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def _register_font(font_path: Optional[str]) -> tuple[str, str]:
    if not font_path:
        return _FONT_REGULAR, _FONT_BOLD
    if _CUSTOM_FONT not in pdfmetrics.getRegisteredFontNames():
        try:
            pdfmetrics.registerFont(TTFont(_CUSTOM_FONT, font_path))
        except Exception as e:
            raise TicketRenderError(
                f"cannot load ticket font {font_path}: {e}"
            ) from e
    return _CUSTOM_FONT, _CUSTOM_FONT


def render_ticket_pdf(
    order: StoredOrder,
    details: EventDetails,
    code: str,
    url: str,
    font_path: Optional[str] = None,
) -> bytes:
    regular, bold = _register_font(font_path)

    buffer = io.BytesIO()
    try:
        c = canvas.Canvas(buffer, pagesize=A4)
        c.setTitle(f"E-ticket {code}")
        width, height = A4
        left = 20 * mm
        top = height - 20 * mm

        # header band
        c.setFillColorRGB(0.075, 0.137, 0.247)
        c.rect(0, height - 40 * mm, width, 40 * mm, stroke=0, fill=1)
        c.setFillColorRGB(0.97, 0.98, 0.99)
        c.setFont(bold, 24)
        c.drawString(left, top - 4 * mm, "E-TICKET")
        c.setFont(regular, 14)
        c.drawString(left, top - 13 * mm, f"Ticket code: {code}")
        c.setFillColorRGB(0.07, 0.09, 0.15)

        y = height - 55 * mm
        rows = [
            ("Show", details.show_title),
            ("Date & time", details.starts_at),
            ("Venue", details.venue),
            ("Buyer", order.buyer_name or "-"),
            ("Email", order.buyer_email),
            ("Qty", str(order.qty)),
            ("Amount", format_amount(order.amount, order.currency)),
            ("Order", order.order_id),
        ]
        for label, value in rows:
            c.setFont(regular, 10)
            c.drawString(left, y, label)
            c.setFont(bold, 12)
            c.drawString(left + 35 * mm, y, value)
            y -= 9 * mm

        qr_size = 55 * mm
        qr_x = width - qr_size - 20 * mm
        qr_y = height - 50 * mm - qr_size
        try:
            c.drawImage(ImageReader(io.BytesIO(_qr_png(url))),
                        qr_x, qr_y, qr_size, qr_size, mask="auto")
        except Exception:
            logger.warning("QR render failed for order %s; using placeholder",
                           order.order_id, exc_info=True)
            c.rect(qr_x, qr_y, qr_size, qr_size, stroke=1, fill=0)
            c.setFont(regular, 9)
            c.drawCentredString(qr_x + qr_size / 2, qr_y + qr_size / 2 + 3 * mm,
                                "QR unavailable")
            c.setFont(bold, 11)
            c.drawCentredString(qr_x + qr_size / 2, qr_y + qr_size / 2 - 3 * mm,
                                code)

        c.setFont(regular, 9)
        c.drawString(left, 15 * mm,
                     "Show the QR code at the entrance. One ticket, one entry.")
        c.showPage()
        c.save()
    except TicketRenderError:
        raise
    except Exception as e:
        raise TicketRenderError(
            f"ticket PDF build failed for {order.order_id}: {e}"
        ) from e
    return buffer.getvalue()


class TicketIssuer:

    def __init__(
        self,
        base_url: str,
        details: Optional[EventDetailsResolver] = None,
        font_path: Optional[str] = None,
    ) -> None:
        self.base_url = base_url
        self.details = details or default_event_details
        self.font_path = font_path

    def issue(self, order: StoredOrder) -> TicketArtifacts:
        code = ticket_code(order.order_id)
        url = verify_url(self.base_url, order.order_id)
        pdf = render_ticket_pdf(
            order, self.details(order), code, url, font_path=self.font_path
        )
        return TicketArtifacts(
            ticket_code=code,
            verify_url=url,
            pdf_bytes=pdf,
            pdf_filename=pdf_filename(order.order_id),
        )
