# tests/conftest.py
from __future__ import annotations

import json
import logging
import sys
from typing import Any, Dict, List

import httpx
import pytest
from httpx import AsyncClient, ASGITransport

from showtix.config import Settings
from showtix.infra.sql import open_database
from showtix.model.order.orm import create_schema
from showtix.model.order.record import NewOrder
from showtix.model.orderstore import new_store
from showtix.server import create_app
from showtix.signature import compute_signature

WEBHOOK_SECRET = "whsec_test"
API_KEY = "apikey_test"
BASE_URL = "https://tickets.example"
ALLPAY_URL = "https://allpay.test/app/?show=getpayment&mode=api10"
RESEND_URL = "https://resend.test/emails"


@pytest.fixture(scope="session", autouse=True)
def _tests_log_to_stdout():
    root = logging.getLogger()
    if not any(getattr(h, "stream", None) is sys.stdout for h in root.handlers):
        h = logging.StreamHandler(sys.stdout)
        h.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        root.addHandler(h)


# Make anyio run on asyncio (so our async fixtures work everywhere)
@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path}/orders.db",
        app_base_url=BASE_URL,
        allpay_webhook_secret=WEBHOOK_SECRET,
        allpay_api_key=API_KEY,
        allpay_terminal_id="terminal-1",
        allpay_api_url=ALLPAY_URL,
        resend_api_key="re_test",
        resend_api_url=RESEND_URL,
        email_from="tickets@example.com",
        admin_username="door",
        admin_password="letmein",
        session_secret="test-session-secret",
        default_ticket_price=100,
        store_timeout_seconds=5.0,
    )


@pytest.fixture
async def store(settings, anyio_backend):
    db = open_database(settings.database_url, settings.pool)
    await create_schema(db.engine)
    yield new_store("sql", sessions=db.sessions, gated=db.gated)
    await db.dispose()


class FakeGateway:
    """Records outbound calls to AllPay and Resend."""

    def __init__(self) -> None:
        self.emails: List[Dict[str, Any]] = []
        self.payments: List[Dict[str, Any]] = []
        self.payment_response: Dict[str, Any] = {
            "payment_url": "https://allpay.test/pay/abc",
            "payment_id": "pay-created-1",
        }
        self.email_status = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content or b"{}")
        if str(request.url) == RESEND_URL:
            self.emails.append(body)
            if self.email_status >= 400:
                return httpx.Response(self.email_status,
                                      json={"message": "boom"})
            return httpx.Response(200, json={"id": f"email-{len(self.emails)}"})
        if str(request.url) == ALLPAY_URL:
            self.payments.append(body)
            return httpx.Response(200, json=self.payment_response)
        return httpx.Response(404, json={"error": "unexpected"})


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
async def http(gateway, anyio_backend):
    async with httpx.AsyncClient(transport=httpx.MockTransport(gateway)) as c:
        yield c


@pytest.fixture
def app(settings, store, http):
    return create_app(settings, store=store, http=http)


@pytest.fixture
async def client(app, anyio_backend):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport,
                           base_url="http://testserver") as c:
        yield c


@pytest.fixture
async def admin_client(client):
    r = await client.post(
        "/admin/login",
        data={"username": "door", "password": "letmein", "next": "/admin"},
    )
    assert r.status_code == 303
    return client


def signed(payload: Dict[str, Any], secret: str = WEBHOOK_SECRET
           ) -> Dict[str, Any]:
    out = dict(payload)
    out["sign"] = compute_signature(payload, secret)
    return out


def new_order(order_id: str = "demo-show-evt1-abc", **kw: Any) -> NewOrder:
    fields: Dict[str, Any] = dict(
        order_id=order_id,
        show_id="demo-show",
        event_id="evt1",
        qty=2,
        buyer_name="Dana",
        buyer_email="dana@example.com",
        amount=20000,
        currency="ILS",
        consent_terms=True,
    )
    fields.update(kw)
    return NewOrder(**fields)
