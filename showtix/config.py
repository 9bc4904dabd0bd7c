from __future__ import annotations
import os
from dataclasses import dataclass, field
from typing import List, Optional

from .helpers import parse_positive_int
from .infra.sql import PoolConfig


# ----------------------------
# Config & Constants
# ----------------------------
DEFAULT_ALLPAY_API_URL = "https://allpay.to/app/?show=getpayment&mode=api10"
DEFAULT_RESEND_API_URL = "https://api.resend.com/emails"
DEFAULT_SIGNATURE_CANDIDATES = "all_scalars,strings_only"


def _env(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _split(raw: str) -> List[str]:
    return [p.strip() for p in raw.split(",") if p.strip()]


@dataclass
class Settings:
    database_url: Optional[str] = None
    order_backend: str = "sql"  # 'sql' | 'redis'
    redis_url: str = "redis://127.0.0.1:6379"
    redis_max_conn: int = 64

    app_base_url: str = "http://localhost:8000"

    # AllPay
    allpay_webhook_secret: str = ""
    allpay_api_key: str = ""
    allpay_terminal_id: str = ""
    allpay_api_url: str = DEFAULT_ALLPAY_API_URL
    allpay_success_status: str = "1"
    signature_candidates: List[str] = field(
        default_factory=lambda: _split(DEFAULT_SIGNATURE_CANDIDATES)
    )

    default_ticket_name: str = "Ticket"
    default_ticket_price: int = 1  # ILS, major units
    currency: str = "ILS"

    # email (Resend)
    resend_api_key: str = ""
    resend_api_url: str = DEFAULT_RESEND_API_URL
    email_from: str = "onboarding@resend.dev"

    # admin
    session_secret: str = "dev-secret-change-me"
    admin_username: str = "admin"
    admin_password: str = "supasecret"

    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_gate_limit: Optional[int] = None

    store_timeout_seconds: float = 10.0
    ticket_font_path: Optional[str] = None
    schedule_path: Optional[str] = None  # JSON: titles, dates, venues
    log_level: str = "INFO"

    @property
    def webhook_secrets(self) -> List[str]:
        """Dedicated webhook secret first, then the API key as fallback."""
        out: List[str] = []
        for s in (self.allpay_webhook_secret, self.allpay_api_key):
            if s and s not in out:
                out.append(s)
        return out

    @property
    def pool(self) -> PoolConfig:
        return PoolConfig(
            pool_size=self.db_pool_size,
            max_overflow=self.db_max_overflow,
            pool_timeout=self.db_pool_timeout,
            gate_limit=self.db_gate_limit,
        )

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=_env("DATABASE_URL") or None,
            order_backend=_env("ORDER_BACKEND", "sql").lower(),
            redis_url=_env("REDIS_URL", "redis://127.0.0.1:6379"),
            redis_max_conn=int(_env("REDIS_MAX_CONN", "64")),
            app_base_url=_env(
                "APP_BASE_URL", "http://localhost:8000"
            ).rstrip("/"),
            allpay_webhook_secret=_env("ALLPAY_WEBHOOK_SECRET"),
            allpay_api_key=_env("ALLPAY_API_KEY"),
            allpay_terminal_id=_env("ALLPAY_TERMINAL_ID"),
            allpay_api_url=_env("ALLPAY_API_URL", DEFAULT_ALLPAY_API_URL),
            allpay_success_status=_env("ALLPAY_SUCCESS_STATUS", "1"),
            signature_candidates=_split(_env(
                "ALLPAY_SIGNATURE_CANDIDATES", DEFAULT_SIGNATURE_CANDIDATES
            )),
            default_ticket_name=_env("DEFAULT_TICKET_NAME", "Ticket"),
            default_ticket_price=parse_positive_int(
                _env("DEFAULT_TICKET_PRICE_ILS"), 1
            ),
            resend_api_key=_env("RESEND_API_KEY"),
            resend_api_url=_env("RESEND_API_URL", DEFAULT_RESEND_API_URL),
            email_from=_env("EMAIL_FROM", "onboarding@resend.dev"),
            session_secret=_env("SESSION_SECRET", "dev-secret-change-me"),
            admin_username=_env("ADMIN_USERNAME", "admin"),
            admin_password=_env("ADMIN_PASSWORD", "supasecret"),
            db_pool_size=int(_env("DB_POOL_SIZE", "10")),
            db_max_overflow=int(_env("DB_MAX_OVERFLOW", "10")),
            db_pool_timeout=int(_env("DB_POOL_TIMEOUT", "30")),
            db_gate_limit=parse_positive_int(_env("DB_GATE_LIMIT"), 0) or None,
            store_timeout_seconds=float(_env("STORE_TIMEOUT_SECONDS", "10")),
            ticket_font_path=_env("TICKET_FONT_PATH") or None,
            schedule_path=_env("SHOW_SCHEDULE_PATH") or None,
            log_level=_env("LOG_LEVEL", "INFO"),
        )
