from __future__ import annotations
from enum import Enum


class Reason(str, Enum):
    """Reason codes returned to HTTP callers as ``{"ok": false, "reason": ...}``."""

    # validation
    INVALID_PAYLOAD = "invalid_payload"
    MISSING_SIGN = "missing_sign"
    MISSING_ORDER_ID = "missing_order_id"
    MISSING_PARAMS = "missing_params"
    INVALID_JSON = "invalid_json"
    BUYER_NAME_REQUIRED = "buyer_name_required"
    BUYER_EMAIL_INVALID = "buyer_email_invalid"
    SHOW_REQUIRED = "show_required"
    EVENT_REQUIRED = "event_required"
    INVALID_TICKET_CODE = "invalid_ticket_code"
    ORDER_NOT_PAID = "order_not_paid"

    # authentication
    INVALID_SIGNATURE = "invalid_signature"
    UNAUTHORIZED = "unauthorized"

    # lookups
    ORDER_NOT_FOUND = "order_not_found"

    # server side
    SERVER_NOT_CONFIGURED = "server_not_configured"
    MISSING_ENV = "missing_env"
    DB_UPDATE_FAILED = "db_update_failed"
    DB_CREATE_PENDING_FAILED = "db_create_pending_failed"
    DB_INSERT_FAILED = "db_insert_failed"
    REDEEM_FAILED = "redeem_failed"
    TICKET_LOAD_FAILED = "ticket_load_failed"
    TICKET_BUILD_FAILED = "ticket_build_failed"
    EMAIL_SEND_FAILED = "email_send_failed"
    ALLPAY_CREATE_PAYMENT_FAILED = "allpay_create_payment_failed"
    AVAILABILITY_FAILED = "availability_failed"


HTTP_STATUS = {
    Reason.INVALID_PAYLOAD: 400,
    Reason.MISSING_SIGN: 400,
    Reason.MISSING_ORDER_ID: 400,
    Reason.MISSING_PARAMS: 400,
    Reason.INVALID_JSON: 400,
    Reason.BUYER_NAME_REQUIRED: 400,
    Reason.BUYER_EMAIL_INVALID: 400,
    Reason.SHOW_REQUIRED: 400,
    Reason.EVENT_REQUIRED: 400,
    Reason.INVALID_TICKET_CODE: 400,
    Reason.ORDER_NOT_PAID: 400,
    Reason.INVALID_SIGNATURE: 401,
    Reason.UNAUTHORIZED: 401,
    Reason.ORDER_NOT_FOUND: 404,
    Reason.ALLPAY_CREATE_PAYMENT_FAILED: 502,
}


def http_status(reason: Reason) -> int:
    return HTTP_STATUS.get(reason, 500)


# ----------------------------
# Store exceptions
# ----------------------------
class StoreError(Exception):
    """The backing store could not complete the operation."""


class DuplicateOrder(Exception):
    def __init__(self, order_id: str) -> None:
        super().__init__(f"order already exists: {order_id}")
        self.order_id = order_id


class OrderNotFound(Exception):
    def __init__(self, order_id: str) -> None:
        super().__init__(f"order not found: {order_id}")
        self.order_id = order_id
