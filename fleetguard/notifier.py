"""
Outbound messaging channel used for drivers and responsables.

The escalation engine only relies on the ``Notifier`` protocol. Inbound
replies reach the engine through ``on_incoming_reply`` callbacks; the HTTP
gateway posts them to the ``/replies`` webhook, which calls
``receive_reply``.
"""
from typing import Awaitable, Callable, List, Optional, Protocol

import httpx
from pydantic import BaseModel

from fleetguard.logging_config import get_logger

logger = get_logger("notifier", "notifier.log")

ReplyCallback = Callable[[str, str], Awaitable[object]]


class DeliveryResult(BaseModel):
    delivered: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class Notifier(Protocol):
    async def send(self, recipient: str, message: str) -> DeliveryResult:
        ...

    def on_incoming_reply(self, callback: ReplyCallback) -> None:
        ...


class ReplyDispatcher:
    """Fan-out of inbound replies to the registered callbacks."""

    def __init__(self):
        self._reply_callbacks: List[ReplyCallback] = []

    def on_incoming_reply(self, callback: ReplyCallback) -> None:
        self._reply_callbacks.append(callback)

    async def receive_reply(self, recipient: str, body: str) -> list:
        logger.info(f"Reply received from {recipient}: {body!r}")
        results = []
        for cb in self._reply_callbacks:
            try:
                results.append(await cb(recipient, body))
            except Exception as e:
                logger.exception(f"Reply callback failed for {recipient}: {e}")
        return results


def format_phone(phone: Optional[str], country_code: str = "39") -> Optional[str]:
    """International digits-only form, e.g. ``393331234567``."""
    if not phone:
        return None
    raw = phone.strip()
    digits = "".join(ch for ch in raw if ch.isdigit())
    if not digits:
        return None

    if raw.startswith("+"):
        return digits
    if digits.startswith("00"):
        return digits[2:]
    if digits.startswith("0"):
        return country_code + digits[1:]
    if digits.startswith(country_code) and len(digits) > 10:
        return digits
    return country_code + digits


class HttpNotifier(ReplyDispatcher):
    """Sends chat messages through an HTTP messaging gateway."""

    def __init__(self, gateway_url: Optional[str], token: Optional[str] = None, *,
                 country_code: str = "39", timeout: float = 30.0,
                 client: Optional[httpx.AsyncClient] = None):
        super().__init__()
        self.gateway_url = gateway_url
        self.token = token
        self.country_code = country_code
        self.timeout = timeout
        self._client = client

    async def send(self, recipient: str, message: str) -> DeliveryResult:
        if not self.gateway_url:
            logger.error("Messaging gateway not configured - message not sent")
            return DeliveryResult(delivered=False, error="gateway not configured")

        number = format_phone(recipient, self.country_code)
        if not number:
            return DeliveryResult(delivered=False, error="invalid phone number")

        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            resp = await client.post(
                f"{self.gateway_url.rstrip('/')}/messages",
                json={"to": number, "body": message},
                headers=headers,
            )
            resp.raise_for_status()
            data = resp.json() if resp.content else {}
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Sending to {recipient} failed: {e}")
            return DeliveryResult(delivered=False, error=str(e))
        finally:
            if self._client is None:
                await client.aclose()

        logger.info(f"Message sent to {recipient}")
        return DeliveryResult(delivered=True, message_id=str(data.get("id")) if data.get("id") else None)
