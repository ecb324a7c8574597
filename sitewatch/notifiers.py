from __future__ import annotations

import logging
from typing import Protocol

import httpx

from sitewatch.domain import DeliveryError

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"
TWILIO_API_URL = "https://api.twilio.com/2010-04-01"


class NotificationSink(Protocol):
    recipient: str

    async def send(self, message: str) -> None: ...


async def send_telegram_message(
    client: httpx.AsyncClient,
    *,
    bot_token: str,
    chat_id: str,
    text: str,
    timeout_seconds: float = 20.0,
) -> None:
    url = f"{TELEGRAM_API_URL}/bot{bot_token}/sendMessage"
    payload = {
        "chat_id": chat_id,
        "text": text,
        "disable_web_page_preview": True,
    }

    r = await client.post(url, json=payload, timeout=timeout_seconds)
    r.raise_for_status()
    data = r.json()
    if not data.get("ok", False):
        raise RuntimeError(f"Telegram API error: {data}")


async def send_twilio_sms(
    client: httpx.AsyncClient,
    *,
    account_sid: str,
    auth_token: str,
    sms_from: str,
    sms_to: str,
    body: str,
    timeout_seconds: float = 20.0,
) -> None:
    url = f"{TWILIO_API_URL}/Accounts/{account_sid}/Messages.json"
    r = await client.post(
        url,
        auth=(account_sid, auth_token),
        data={"Body": body, "From": sms_from, "To": sms_to},
        timeout=timeout_seconds,
    )
    r.raise_for_status()


class TelegramSink:
    def __init__(self, client: httpx.AsyncClient, *, bot_token: str, chat_id: str) -> None:
        self.client = client
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.recipient = f"telegram:{chat_id}"

    async def send(self, message: str) -> None:
        try:
            await send_telegram_message(self.client, bot_token=self.bot_token, chat_id=self.chat_id, text=message)
        except (httpx.HTTPError, RuntimeError, ValueError) as e:
            raise DeliveryError(self.recipient, f"{type(e).__name__}: {e}") from e


class TwilioSmsSink:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        account_sid: str,
        auth_token: str,
        sms_from: str,
        sms_to: str,
    ) -> None:
        self.client = client
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.sms_from = sms_from
        self.sms_to = sms_to
        self.recipient = f"sms:{sms_to}"

    async def send(self, message: str) -> None:
        logger.debug("Sending SMS to %s", self.sms_to)
        try:
            await send_twilio_sms(
                self.client,
                account_sid=self.account_sid,
                auth_token=self.auth_token,
                sms_from=self.sms_from,
                sms_to=self.sms_to,
                body=message,
            )
        except httpx.HTTPError as e:
            raise DeliveryError(self.recipient, f"{type(e).__name__}: {e}") from e


class LogSink:
    """Recipient that only writes the message to the log."""

    recipient = "log"

    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level

    async def send(self, message: str) -> None:
        for line in message.splitlines():
            logger.log(self.level, line)
