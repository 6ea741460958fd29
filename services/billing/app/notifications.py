"""
Billing Service — 通知 (Notification Dispatcher)

請求書のコミット後に顧客へ SMS を送る。
送信はバックグラウンドタスクで行い、結果はログに残すだけ。
失敗しても請求書作成のレスポンスには影響しない（リトライもしない）。

  ┌─────────────┐ commit ┌────────────────────────┐  HTTPS  ┌────────┐
  │ Coordinator │──────▶│ NotificationDispatcher │───────▶│ Twilio │
  └─────────────┘        └────────────────────────┘         └────────┘
"""

import asyncio
import logging
import re
from typing import Protocol

import httpx

from .errors import NotificationError
from .models import Invoice

logger = logging.getLogger(__name__)

TWILIO_API_URL = "https://api.twilio.com/2010-04-01"


class Notifier(Protocol):
    async def notify(self, destination: str, message: str) -> bool: ...


def normalize_phone(number: str, country_code: str = "+91") -> str:
    """
    国際形式 (+<国番号><番号>) に正規化する。

    "+" で始まる番号はそのまま、"00" で始まる番号は "+" に置き換え、
    それ以外は country_code を先頭に付ける。
    """
    digits = re.sub(r"[\s\-().]", "", number)
    if digits.startswith("+"):
        return digits
    if digits.startswith("00"):
        return "+" + digits[2:]
    return f"{country_code}{digits.lstrip('0')}"


def build_invoice_message(
    invoice: Invoice,
    customer_name: str,
    shop_name: str,
    currency: str = "₹",
) -> str:
    details = (
        f"Invoice Number: {invoice.invoice_number}\n"
        f"Total: {currency}{invoice.grand_total:.2f}\n"
        f"Date: {invoice.date}"
    )
    return (
        f"Hello {customer_name}, your invoice from {shop_name} "
        f"has been created successfully!\n{details}"
    )


class TwilioSmsNotifier:
    """Twilio Messages API で SMS を送る。"""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.transport = transport
        self.timeout = timeout

    async def notify(self, destination: str, message: str) -> bool:
        url = f"{TWILIO_API_URL}/Accounts/{self.account_sid}/Messages.json"
        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self.transport
        ) as client:
            try:
                resp = await client.post(
                    url,
                    auth=(self.account_sid, self.auth_token),
                    data={"To": destination, "From": self.from_number, "Body": message},
                )
                resp.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise NotificationError(
                    f"SMS to {destination} rejected: {e.response.text}"
                ) from e
            except httpx.HTTPError as e:
                raise NotificationError(f"SMS to {destination} failed: {e}") from e

        # 2xx なら送信済み。本文は sid をログに出すためだけに読む
        try:
            body = resp.json()
        except ValueError:
            body = None
        sid = body.get("sid") if isinstance(body, dict) else None
        logger.info("SMS sent to %s: sid=%s", destination, sid)
        return True


class LoggingNotifier:
    """SMS の認証情報がない環境用。送信内容をログに出すだけ。"""

    async def notify(self, destination: str, message: str) -> bool:
        logger.info("SMS (not sent) to %s: %s", destination, message)
        return True


class NotificationDispatcher:
    def __init__(self, notifier: Notifier, country_code: str = "+91") -> None:
        self.notifier = notifier
        self.country_code = country_code
        self._pending: set[asyncio.Task] = set()

    def schedule(self, destination: str, message: str) -> asyncio.Task:
        """送信をバックグラウンドで開始する。呼び出し元は待たない。"""
        task = asyncio.create_task(self.send(destination, message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def send(self, destination: str, message: str) -> bool:
        """送信して成否を返す。例外は送出しない。"""
        to = normalize_phone(destination, self.country_code)
        try:
            ok = await self.notifier.notify(to, message)
        except Exception:
            logger.exception("Failed to send notification to %s", to)
            return False
        if ok:
            logger.info("Notification sent to %s", to)
        else:
            logger.warning("Notification to %s was not accepted", to)
        return ok

    async def drain(self) -> None:
        """未完了の送信をすべて待つ（シャットダウン時・テスト用）。"""
        if self._pending:
            await asyncio.gather(*list(self._pending))
