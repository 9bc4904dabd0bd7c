import json

import httpx
import pytest

from showtix.allpay import (
    AllPay,
    InvalidPayload,
    PaymentRequest,
    normalize_callback,
    parse_callback_body,
)
from showtix.signature import SignatureVerifier, compute_signature, is_valid_signature

API_URL = "https://allpay.test/api"


def _request(**kw):
    fields = dict(
        order_id="demo-show-evt1-1",
        item_name="Ticket",
        unit_price=100,
        qty=2,
        client_name="Dana",
        client_email="dana@example.com",
        success_url="https://t.example/payment/success",
        backlink_url="https://t.example/payment/return",
        webhook_url="https://t.example/api/payment/allpay-callback",
    )
    fields.update(kw)
    return PaymentRequest(**fields)


def _adapter(handler=None, **kw):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler)) \
        if handler else None
    opts = dict(login="term-1", api_key="key-1", api_url=API_URL)
    opts.update(kw)
    return AllPay(http=http, verifier=SignatureVerifier(["key-1"]), **opts)


# ----------------------------
# Callback parsing
# ----------------------------
def test_parse_json_body():
    body = json.dumps({"order_id": "o-1", "status": "1", "amount": 200}).encode()
    payload = parse_callback_body(body, "application/json; charset=utf-8")
    assert payload == {"order_id": "o-1", "status": "1", "amount": 200}


def test_parse_json_body_without_content_type():
    payload = parse_callback_body(b'{"order_id": "o-1"}', "")
    assert payload == {"order_id": "o-1"}


def test_parse_form_body_keeps_blank_values_and_groups_items():
    body = (
        b"order_id=o-1&status=1&inst=&items%5B1%5D%5Bname%5D=B"
        b"&items%5B0%5D%5Bname%5D=A&items%5B0%5D%5Bqty%5D=2"
    )
    payload = parse_callback_body(body, "application/x-www-form-urlencoded")
    assert payload["order_id"] == "o-1"
    assert payload["inst"] == ""
    assert payload["items"] == [{"name": "A", "qty": "2"}, {"name": "B"}]


@pytest.mark.parametrize("body,ctype", [
    (b"", "application/json"),
    (b"   ", "application/x-www-form-urlencoded"),
    (b"{not json", "application/json"),
    (b"[1, 2]", "application/json"),
    (b"{}", "application/json"),
    (b"\xff\xfe", "application/json"),
    (b"no-equals-sign", "application/x-www-form-urlencoded"),
    (b"[" * 100000 + b"]" * 100000, "application/json"),
])
def test_parse_rejects_bad_bodies(body, ctype):
    with pytest.raises(InvalidPayload):
        parse_callback_body(body, ctype)


def test_normalize_callback():
    fields = normalize_callback({
        "order_id": " o-1 ",
        "payment_id": "EMPTY",
        "status": 1,
        "amount": "99.90",
        "currency": "ils",
        "client_email": "Dana@Example.com",
    })
    assert fields.order_id == "o-1"
    assert fields.payment_ref is None
    assert fields.status == "1"
    assert fields.amount == 9990
    assert fields.currency == "ILS"
    assert fields.client_email == "dana@example.com"


def test_normalize_callback_missing_fields():
    fields = normalize_callback({"status": "1"})
    assert fields.order_id == ""
    assert fields.amount is None
    assert fields.currency is None


# ----------------------------
# Outbound payment creation
# ----------------------------
def test_payment_payload_is_signed_with_api_key():
    adapter = _adapter()
    payload = adapter.build_payment_payload(_request())
    assert payload["login"] == "term-1"
    assert payload["items"][0]["price"] == "100"
    assert payload["items"][0]["qty"] == "2"
    assert is_valid_signature(payload, payload["sign"], "key-1")
    assert payload["sign"] == compute_signature(
        {k: v for k, v in payload.items() if k != "sign"}, "key-1"
    )


def test_checkout_configured():
    assert _adapter().checkout_configured
    assert not _adapter(login="").checkout_configured
    assert not _adapter(api_key="").checkout_configured


@pytest.mark.anyio
async def test_create_payment_success():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={
            "payment_url": "https://allpay.test/pay/1", "payment_id": 123,
        })

    result = await _adapter(handler).create_payment(_request())
    assert result == {"payment_url": "https://allpay.test/pay/1",
                      "payment_id": "123"}
    assert seen[0]["order_id"] == "demo-show-evt1-1"


@pytest.mark.anyio
async def test_create_payment_gateway_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"error_code": "17",
                                         "error_msg": "bad terminal"})

    result = await _adapter(handler).create_payment(_request())
    assert "payment_url" not in result
    assert result["error_code"] == "17"


@pytest.mark.anyio
async def test_create_payment_non_json_and_http_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="maintenance")

    result = await _adapter(handler).create_payment(_request())
    assert result["error_code"] == "503"
    assert "maintenance" in result["error_msg"]


@pytest.mark.anyio
async def test_create_payment_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    result = await _adapter(handler).create_payment(_request())
    assert result["error_code"] == "transport"


@pytest.mark.anyio
async def test_create_payment_retries_on_bad_signature():
    signs = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        signs.append(body["sign"])
        if len(signs) == 1:
            return httpx.Response(200, json={"error_code": 3,
                                             "error_msg": "wrong sign"})
        return httpx.Response(200, json={"payment_url": "https://allpay.test/p"})

    result = await _adapter(handler).create_payment(_request())
    assert result["payment_url"] == "https://allpay.test/p"
    assert len(signs) == 2
    assert signs[0] != signs[1]


@pytest.mark.anyio
async def test_create_payment_gives_up_after_last_variant():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"error_code": "3"})

    result = await _adapter(handler).create_payment(_request())
    assert result["error_code"] == "3"
    assert len(calls) == 2


@pytest.mark.parametrize("raw", [
    "-50", "0", "0.00", "NaN", "Infinity", "1e999999", "1000000000000",
    "abc", "", True,
])
def test_normalize_callback_drops_unusable_amounts(raw):
    assert normalize_callback({"amount": raw}).amount is None


def test_normalize_callback_large_but_sane_amount():
    assert normalize_callback({"amount": "999999.99"}).amount == 99999999
