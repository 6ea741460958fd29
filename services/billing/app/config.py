"""
Billing Service — 設定

環境変数から一度だけ読み込む。DATABASE_URL だけは必須。
"""

import logging
import os
from typing import Literal

from pydantic import BaseModel


class Settings(BaseModel):
    database_url: str
    redis_url: str = "redis://localhost:6379"
    redis_socket_timeout: float = 5.0

    # sql: 請求書と同じトランザクションで採番 / redis: INCR で採番
    sequence_backend: Literal["sql", "redis"] = "sql"
    invoice_prefix: str = "INV-"
    invoice_number_width: int = 5

    tax_rate: float = 0.0
    total_tolerance: float = 0.01
    invoice_timeout_seconds: float = 10.0

    shop_name: str = "Durai Auto Parts"
    currency_symbol: str = "₹"
    phone_country_code: str = "+91"
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_phone_number: str | None = None

    log_level: str = "INFO"

    @property
    def sms_enabled(self) -> bool:
        return bool(
            self.twilio_account_sid
            and self.twilio_auth_token
            and self.twilio_phone_number
        )

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ
        return cls(
            database_url=env["DATABASE_URL"],
            redis_url=env.get("REDIS_URL", "redis://localhost:6379"),
            redis_socket_timeout=float(env.get("REDIS_SOCKET_TIMEOUT", "5")),
            sequence_backend=env.get("SEQUENCE_BACKEND", "sql"),
            invoice_prefix=env.get("INVOICE_PREFIX", "INV-"),
            invoice_number_width=int(env.get("INVOICE_NUMBER_WIDTH", "5")),
            tax_rate=float(env.get("TAX_RATE", "0")),
            total_tolerance=float(env.get("TOTAL_TOLERANCE", "0.01")),
            invoice_timeout_seconds=float(env.get("INVOICE_TIMEOUT_SECONDS", "10")),
            shop_name=env.get("SHOP_NAME", "Durai Auto Parts"),
            currency_symbol=env.get("CURRENCY_SYMBOL", "₹"),
            phone_country_code=env.get("PHONE_COUNTRY_CODE", "+91"),
            twilio_account_sid=env.get("TWILIO_ACCOUNT_SID"),
            twilio_auth_token=env.get("TWILIO_AUTH_TOKEN"),
            twilio_phone_number=env.get("TWILIO_PHONE_NUMBER"),
            log_level=env.get("LOG_LEVEL", "INFO"),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
