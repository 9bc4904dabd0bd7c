from __future__ import annotations
import re
import uuid
from urllib.parse import quote
from typing import Any, Dict, Optional

import httpx
import redis.asyncio as redis
from fastapi import APIRouter, BackgroundTasks, FastAPI, Form, Request
from fastapi.responses import ORJSONResponse, RedirectResponse, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from .allpay import AllPay, PaymentRequest
from .applog import get_logger, setup_logging
from .config import Settings
from .errors import DuplicateOrder, OrderNotFound, Reason, StoreError, http_status
from .helpers import (
    clean_str, ct_equal, is_valid_email, normalize_payment_ref,
    parse_positive_int, to_iso,
)
from .infra.sql import open_database
from .infra.timings import install_shutdown_log, timeit
from .mailer import MailerError, ResendMailer, TicketDelivery
from .model.order.orm import create_schema
from .model.order.record import NewOrder, StoredOrder
from .model.orderstore import OrderStore, new_store
from .redemption import RedemptionGate, RedemptionResult
from .signature import SignatureVerifier
from .tickets import (
    PDF_MIME, ScheduleDetails, TicketIssuer, TicketRenderError, VERIFY_PATH,
    ticket_code,
)
from .webhook import WebhookHandler

logger = get_logger(__name__)

WEBHOOK_PATH = "/api/payment/allpay-callback"

router = APIRouter()


def _fail(reason: Reason, **extra: Any) -> ORJSONResponse:
    return ORJSONResponse({"ok": False, "reason": reason.value, **extra},
                          status_code=http_status(reason))


# ----------------------------
# Helpers
# ----------------------------
def current_admin(request: Request) -> Optional[str]:
    return request.session.get("admin_user") or None


def _safe_next(dest: Optional[str]) -> str:
    if not dest or not dest.startswith("/") or dest.startswith("//"):
        return "/admin"
    return dest


def ticket_view(order: StoredOrder) -> Dict[str, Any]:
    view = order.to_view()
    view["ticket_code"] = ticket_code(order.order_id)
    return view


def _redemption_response(result: RedemptionResult,
                         login: Optional[str] = None) -> ORJSONResponse:
    if not result.ok:
        return _fail(result.reason)
    body: Dict[str, Any] = {
        "ok": True,
        "ticket": ticket_view(result.order),
        "redeemed": result.redeemed,
        "alreadyRedeemed": result.already_redeemed,
    }
    if login:
        body["adminLogin"] = login
    return ORJSONResponse(body)


_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]+")


def content_disposition(filename: str) -> str:
    """ASCII filename for old clients, RFC 5987 filename* for the rest."""
    fallback = _UNSAFE_FILENAME.sub("_", filename) or "ticket.pdf"
    return (f'attachment; filename="{fallback}"; '
            f"filename*=UTF-8''{quote(filename, safe='')}")


def pdf_response(order_id: str, code: str, pdf: bytes,
                 filename: str) -> Response:
    # header values go out as latin-1; ids may carry any show name
    return Response(
        content=pdf,
        media_type=PDF_MIME,
        headers={
            "content-disposition": content_disposition(filename),
            "cache-control": "no-store",
            "x-order-id": quote(order_id, safe=""),
            "x-ticket-code": code,
        },
    )


async def _json_body(request: Request) -> Optional[Dict[str, Any]]:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


# ----------------------------
# Webhook
# ----------------------------
@router.post(WEBHOOK_PATH)
async def allpay_callback(request: Request, background: BackgroundTasks):
    state = request.app.state
    body = await request.body()
    outcome = await state.webhook.handle(
        body, request.headers.get("content-type", "")
    )
    if outcome.paid_order is not None:
        # runs after the response is sent; failures are only logged
        background.add_task(state.delivery.deliver, outcome.paid_order)
    return ORJSONResponse(outcome.body(), status_code=outcome.status_code)


# ----------------------------
# Checkout
# ----------------------------
@router.post("/api/checkout")
async def create_checkout(request: Request):
    state = request.app.state
    settings: Settings = state.settings
    adapter: AllPay = state.adapter
    store: OrderStore = state.store

    if not adapter.checkout_configured:
        return _fail(Reason.MISSING_ENV, required=[
            "ALLPAY_TERMINAL_ID", "ALLPAY_API_KEY", "APP_BASE_URL",
        ])

    payload = await _json_body(request)
    if payload is None:
        return _fail(Reason.INVALID_JSON)

    buyer = payload.get("buyer") if isinstance(payload.get("buyer"), dict) \
        else {}
    buyer_name = clean_str(buyer.get("name"))
    buyer_email = clean_str(buyer.get("email")).lower()
    show_id = clean_str(payload.get("showId"))
    event_id = clean_str(payload.get("eventId"))
    qty = parse_positive_int(payload.get("qty"), 1)

    if not buyer_name:
        return _fail(Reason.BUYER_NAME_REQUIRED)
    if not is_valid_email(buyer_email):
        return _fail(Reason.BUYER_EMAIL_INVALID)
    if not show_id:
        return _fail(Reason.SHOW_REQUIRED)
    if not event_id:
        return _fail(Reason.EVENT_REQUIRED)

    unit_price = settings.default_ticket_price
    order_id = f"{show_id}-{event_id}-{uuid.uuid4()}"
    try:
        async with timeit("store.create_pending"):
            await store.create_pending(NewOrder(
                order_id=order_id,
                show_id=show_id,
                event_id=event_id,
                qty=qty,
                buyer_name=buyer_name,
                buyer_email=buyer_email,
                amount=unit_price * qty * 100,
                currency=settings.currency,
                consent_terms=bool(payload.get("termsAccepted")),
                consent_marketing=bool(payload.get("marketingAccepted")),
            ))
    except (StoreError, DuplicateOrder):
        logger.exception("failed to create pending order %s", order_id)
        return _fail(Reason.DB_CREATE_PENDING_FAILED, orderId=order_id)

    base = settings.app_base_url
    async with timeit("allpay.create_payment"):
        payment = await adapter.create_payment(PaymentRequest(
            order_id=order_id,
            item_name=settings.default_ticket_name,
            unit_price=unit_price,
            qty=qty,
            client_name=buyer_name,
            client_email=buyer_email,
            success_url=f"{base}/payment/success",
            backlink_url=f"{base}/payment/return",
            webhook_url=f"{base}{WEBHOOK_PATH}",
            currency=settings.currency,
        ))

    if not payment.get("payment_url"):
        try:
            await store.mark_failed(
                order_id, normalize_payment_ref(payment.get("payment_id")),
                raw=dict(payment),
            )
        except (StoreError, OrderNotFound):
            logger.exception("failed to mark order %s as failed", order_id)
        logger.error("allpay error order=%s payment=%s", order_id, payment)
        return _fail(Reason.ALLPAY_CREATE_PAYMENT_FAILED, orderId=order_id,
                     details=dict(payment))

    logger.info("payment created order=%s qty=%d payment=%s",
                order_id, qty, payment.get("payment_id"))
    return {
        "ok": True,
        "orderId": order_id,
        "paymentUrl": payment["payment_url"],
        "status": "pending",
    }


# ----------------------------
# API: Order status (polled by success page)
# ----------------------------
@router.get("/api/orders/{order_id}")
async def get_order(order_id: str, request: Request):
    store: OrderStore = request.app.state.store
    try:
        async with timeit("store.get"):
            order = await store.get(order_id)
    except StoreError:
        logger.exception("order lookup failed for %s", order_id)
        return _fail(Reason.TICKET_LOAD_FAILED)
    if order is None:
        return _fail(Reason.ORDER_NOT_FOUND)
    return {
        "order_id": order.order_id,
        "status": order.status,
        "qty": order.qty,
        "amount": order.amount,
        "currency": order.currency,
        "paid_at": to_iso(order.paid_at),
        "ticket_code": ticket_code(order.order_id) if order.is_paid else "",
    }


@router.get("/api/schedule/availability")
async def availability(request: Request, show: str = ""):
    show_id = show.strip()
    if not show_id:
        return _fail(Reason.SHOW_REQUIRED)
    store: OrderStore = request.app.state.store
    try:
        sold = await store.get_paid_quantity_by_event(show_id)
    except StoreError:
        logger.exception("availability failed for %s", show_id)
        return _fail(Reason.AVAILABILITY_FAILED)
    return ORJSONResponse(
        {
            "ok": True,
            "show": show_id,
            "events": {eid: {"soldQty": n} for eid, n in sold.items()},
        },
        headers={"Cache-Control": "no-store"},
    )


# ----------------------------
# Admin session
# ----------------------------
@router.post("/admin/login")
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    next: str = Form("/admin"),
):
    settings: Settings = request.app.state.settings
    ok_user = ct_equal(username.strip(), settings.admin_username)
    ok_pass = ct_equal(password, settings.admin_password)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        return RedirectResponse(url=_safe_next(next),
                                status_code=HTTP_303_SEE_OTHER)
    logger.info("admin login failed for %r", username.strip())
    return _fail(Reason.UNAUTHORIZED)


@router.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return RedirectResponse(url="/", status_code=HTTP_303_SEE_OTHER)


@router.get("/api/admin/session")
async def admin_session(request: Request):
    login = current_admin(request)
    if not login:
        return _fail(Reason.UNAUTHORIZED)
    return {"ok": True, "adminLogin": login}


# ----------------------------
# Admin: ticket validation / redemption
# ----------------------------
@router.get("/api/admin/ticket/validate")
async def ticket_validate_get(request: Request, order_id: str = "",
                              ticket: str = ""):
    login = current_admin(request)
    if not login:
        return _fail(Reason.UNAUTHORIZED)
    if not order_id.strip() or not ticket.strip():
        return _fail(Reason.MISSING_PARAMS)
    result = await request.app.state.gate.lookup(order_id, ticket)
    return _redemption_response(result, login)


@router.post("/api/admin/ticket/validate")
async def ticket_validate_post(request: Request):
    login = current_admin(request)
    if not login:
        return _fail(Reason.UNAUTHORIZED)
    body = await _json_body(request)
    if body is None:
        return _fail(Reason.INVALID_JSON)
    order_id = clean_str(body.get("orderId"))
    code = clean_str(body.get("ticketCode"))
    if not order_id or not code:
        return _fail(Reason.MISSING_PARAMS)
    result = await request.app.state.gate.redeem(order_id, code, login)
    return _redemption_response(result, login)


# QR target: door staff open it on a phone with an admin session
@router.get(VERIFY_PATH)
async def ticket_verify_page(request: Request, order_id: str = "",
                             ticket: str = ""):
    login = current_admin(request)
    if not login:
        dest = request.url.path
        if request.url.query:
            dest = f"{dest}?{request.url.query}"
        return RedirectResponse(
            url=f"/admin/login?next={quote(dest, safe='/')}",
            status_code=307,
        )
    if not order_id.strip() or not ticket.strip():
        return _fail(Reason.MISSING_PARAMS)
    result = await request.app.state.gate.lookup(order_id, ticket)
    return _redemption_response(result, login)


# ----------------------------
# Admin: complimentary tickets
# ----------------------------
@router.post("/api/admin/ticket/issue")
async def issue_complimentary(request: Request):
    login = current_admin(request)
    if not login:
        return _fail(Reason.UNAUTHORIZED)
    state = request.app.state
    body = await _json_body(request)
    if body is None:
        return _fail(Reason.INVALID_JSON)

    show_id = clean_str(body.get("showId"))
    event_id = clean_str(body.get("eventId"))
    buyer_name = clean_str(body.get("buyerName"))
    buyer_email = clean_str(body.get("buyerEmail")).lower()
    qty = parse_positive_int(body.get("qty"), 1)
    action = (clean_str(body.get("action")) or "download").lower()

    if not show_id:
        return _fail(Reason.SHOW_REQUIRED)
    if not event_id:
        return _fail(Reason.EVENT_REQUIRED)
    if not buyer_name:
        return _fail(Reason.BUYER_NAME_REQUIRED)
    if not is_valid_email(buyer_email):
        return _fail(Reason.BUYER_EMAIL_INVALID)

    order_id = f"manual-{show_id}-{event_id}-{uuid.uuid4()}"
    try:
        async with timeit("store.create_complimentary"):
            order = await state.store.create_complimentary(NewOrder(
                order_id=order_id,
                show_id=show_id,
                event_id=event_id,
                qty=qty,
                buyer_name=buyer_name,
                buyer_email=buyer_email,
                amount=0,
                currency=state.settings.currency,
                consent_terms=True,
                consent_marketing=False,
                payment_ref="complimentary-admin",
                raw_payload={
                    "source": "admin_complimentary_ticket",
                    "created_by": login,
                    "action": action,
                },
            ))
    except (StoreError, DuplicateOrder):
        logger.exception("complimentary insert failed for %s", order_id)
        return _fail(Reason.DB_INSERT_FAILED)

    logger.info("complimentary ticket %s issued by %s", order_id, login)

    if action == "issue":
        try:
            email_id = await state.delivery.send(order)
        except (MailerError, TicketRenderError, httpx.HTTPError) as e:
            logger.exception("complimentary ticket email failed for %s",
                             order_id)
            return _fail(Reason.EMAIL_SEND_FAILED, message=str(e),
                         orderId=order_id)
        return {
            "ok": True,
            "mode": "issue",
            "orderId": order_id,
            "email": order.buyer_email,
            "emailId": email_id,
        }

    try:
        ticket = await run_in_threadpool(state.issuer.issue, order)
    except TicketRenderError as e:
        logger.exception("ticket build failed for %s", order_id)
        return _fail(Reason.TICKET_BUILD_FAILED, message=str(e),
                     orderId=order_id)
    return pdf_response(order_id, ticket.ticket_code, ticket.pdf_bytes,
                        ticket.pdf_filename)


@router.get("/api/admin/orders")
async def api_admin_orders(request: Request, limit: int = 200):
    if not current_admin(request):
        return _fail(Reason.UNAUTHORIZED)
    limit = max(1, min(limit, 500))
    try:
        orders = await request.app.state.store.list_recent(limit)
    except StoreError:
        logger.exception("admin order list failed")
        return _fail(Reason.TICKET_LOAD_FAILED)
    return {"items": [o.to_view() for o in orders], "limit": limit}


# ----------------------------
# App factory / wiring
# ----------------------------
def _wire(app: FastAPI) -> None:
    """Build the request-independent services once per process."""
    s: Settings = app.state.settings
    verifier = SignatureVerifier(s.webhook_secrets, s.signature_candidates)
    adapter = AllPay(
        http=app.state.http,
        verifier=verifier,
        login=s.allpay_terminal_id,
        api_key=s.allpay_api_key,
        api_url=s.allpay_api_url,
    )
    details = ScheduleDetails.from_file(s.schedule_path) \
        if s.schedule_path else None
    issuer = TicketIssuer(s.app_base_url, details=details,
                          font_path=s.ticket_font_path)
    mailer = ResendMailer(app.state.http, s.resend_api_key, s.email_from,
                          api_url=s.resend_api_url)
    app.state.adapter = adapter
    app.state.issuer = issuer
    app.state.delivery = TicketDelivery(issuer, mailer)
    app.state.webhook = WebhookHandler(
        app.state.store, adapter,
        success_status=s.allpay_success_status,
        store_timeout=s.store_timeout_seconds,
    )
    app.state.gate = RedemptionGate(app.state.store,
                                    store_timeout=s.store_timeout_seconds)


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[OrderStore] = None,
    http: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    setup_logging(settings.log_level)

    app = FastAPI(
        title="showtix",
        default_response_class=ORJSONResponse,
    )
    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)
    app.include_router(router)
    install_shutdown_log(app)

    app.state.settings = settings
    app.state.store = store
    app.state.http = http
    app.state.owns_http = False
    app.state.db = None
    app.state.redis = None
    if store is not None and http is not None:
        _wire(app)

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _startup():
        if app.state.store is None:
            if settings.order_backend == "redis":
                app.state.redis = redis.from_url(
                    settings.redis_url,
                    decode_responses=True,
                    max_connections=settings.redis_max_conn,
                    socket_timeout=2.0,
                    socket_connect_timeout=2.0,
                    retry_on_timeout=True,
                )
                app.state.store = new_store("redis", r=app.state.redis)
            else:
                if not settings.database_url:
                    raise RuntimeError("DATABASE_URL is required")
                db = open_database(settings.database_url, settings.pool)
                await create_schema(db.engine)
                app.state.db = db
                app.state.store = new_store("sql", sessions=db.sessions,
                                            gated=db.gated)
        if app.state.http is None:
            app.state.http = httpx.AsyncClient(
                timeout=10.0,
                limits=httpx.Limits(max_connections=64,
                                    max_keepalive_connections=32),
            )
            app.state.owns_http = True
        _wire(app)
        logger.info(
            "showtix starting: order backend=%s, webhook secrets=%d, "
            "signature candidates=%s",
            settings.order_backend, len(settings.webhook_secrets),
            ",".join(settings.signature_candidates),
        )
        if not settings.webhook_secrets:
            logger.warning("no ALLPAY_WEBHOOK_SECRET / ALLPAY_API_KEY set; "
                           "payment callbacks will be refused")

    @app.on_event("shutdown")
    async def _shutdown():
        # a client handed to create_app belongs to the caller
        if app.state.owns_http:
            await app.state.http.aclose()
            app.state.http = None
            app.state.owns_http = False
        r = getattr(app.state, "redis", None)
        if r is not None:
            await r.aclose()
            app.state.redis = None
        db = getattr(app.state, "db", None)
        if db is not None:
            await db.dispose()
            app.state.db = None

    return app
