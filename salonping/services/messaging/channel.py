"""Channel client contract and the WhatsApp HTTP bridge adapter.

A channel client owns one tenant's connection to the messaging protocol. It
reports lifecycle changes as `SessionEvent`s through the `on_event` callback
it was built with and never touches the database itself.
"""

import asyncio
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx

from salonping.common.errors import InvalidRecipient, PermanentDeliveryError, TransientDeliveryError
from salonping.common.logging import logger
from salonping.common.state_machine import (
    AuthFailed,
    Authenticated,
    Disconnected,
    MessageReceived,
    PairingCodeIssued,
    Ready,
    SessionEvent,
)


EventCallback = Callable[[SessionEvent], Awaitable[None]]

MIN_RECIPIENT_DIGITS = 8
MAX_RECIPIENT_DIGITS = 15


@dataclass(frozen=True)
class DeliveryResult:
    protocol_message_id: str
    chat_id: str


def to_chat_id(recipient: str) -> str:
    """Map a phone-like address to a WhatsApp chat id (`<digits>@c.us`)."""

    digits = re.sub(r"\D", "", recipient or "")
    if not MIN_RECIPIENT_DIGITS <= len(digits) <= MAX_RECIPIENT_DIGITS:
        raise InvalidRecipient(f"invalid recipient address: {recipient!r}")
    return f"{digits}@c.us"


def identity_from_chat_id(chat_id: str) -> str:
    return chat_id.split("@", 1)[0]


class ChannelClient(ABC):
    """One tenant's live protocol connection."""

    def __init__(self, tenant_id: str, on_event: EventCallback) -> None:
        self.tenant_id = tenant_id
        self.on_event = on_event

    @abstractmethod
    async def start(self) -> None:
        """Begin the handshake; progress is reported through `on_event`."""

    @abstractmethod
    async def send_text(self, chat_id: str, body: str) -> str:
        """Send one text message and return the protocol message id."""

    @abstractmethod
    async def stop(self) -> None:
        """Tear the connection down; must be safe to call more than once."""


ChannelClientFactory = Callable[[str, EventCallback], ChannelClient]


class WahaChannelClient(ChannelClient):
    """Adapter for a WAHA-compatible WhatsApp HTTP bridge.

    The bridge keeps the browser session and its stored credentials, so a
    restart of this process resumes without a new pairing code whenever the
    bridge still holds a valid login. Status is polled because the bridge's
    webhooks would need a public callback URL per worker.
    """

    def __init__(
        self,
        tenant_id: str,
        on_event: EventCallback,
        base_url: str,
        api_key: str = "",
        poll_interval_seconds: float = 2.0,
        request_timeout_seconds: float = 30.0,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(tenant_id, on_event)
        self.session_name = f"salon_{tenant_id}"
        self.poll_interval_seconds = poll_interval_seconds
        headers = {"X-Api-Key": api_key} if api_key else {}
        self.http = http or httpx.AsyncClient(
            base_url=base_url, headers=headers, timeout=request_timeout_seconds
        )
        self._poll_task: asyncio.Task | None = None
        self._last_status: str | None = None
        self._last_qr: str | None = None
        self._seen_inbound: set[str] = set()

    async def start(self) -> None:
        resp = await self.http.post("/api/sessions/start", json={"name": self.session_name})
        # 422 from the bridge means the session is already running.
        if resp.status_code >= 400 and resp.status_code != 422:
            raise TransientDeliveryError(f"bridge refused session start status={resp.status_code}")
        self._poll_task = asyncio.create_task(self._poll_forever())

    async def _poll_forever(self) -> None:
        while True:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("bridge_poll_failed tenant_id=%s error=%s", self.tenant_id, exc)
            await asyncio.sleep(self.poll_interval_seconds)

    async def poll_once(self) -> None:
        """Translate the bridge's session status into session events."""

        resp = await self.http.get(f"/api/sessions/{self.session_name}")
        if resp.status_code == 404:
            await self._emit_status("STOPPED", {})
            return
        resp.raise_for_status()
        payload = resp.json()
        await self._emit_status(payload.get("status", ""), payload)

    async def _emit_status(self, status: str, payload: dict) -> None:
        if status == "SCAN_QR_CODE":
            qr = await self._fetch_qr()
            if qr and qr != self._last_qr:
                self._last_qr = qr
                await self.on_event(PairingCodeIssued(code=qr))
        elif status == "WORKING" and self._last_status != "WORKING":
            me = payload.get("me") or {}
            identity = identity_from_chat_id(me.get("id", ""))
            await self.on_event(Authenticated(identity=identity))
            await self.on_event(Ready(identity=identity))
        elif status == "FAILED" and self._last_status != "FAILED":
            await self.on_event(AuthFailed(reason="bridge_session_failed"))
        elif status == "STOPPED" and self._last_status not in (None, "STOPPED"):
            await self.on_event(Disconnected(reason="protocol_disconnect"))
        if status == "WORKING":
            await self._drain_inbound()
        self._last_status = status

    async def _fetch_qr(self) -> str | None:
        resp = await self.http.get(f"/api/{self.session_name}/auth/qr", params={"format": "raw"})
        if resp.status_code >= 400:
            return None
        return resp.json().get("value")

    async def _drain_inbound(self) -> None:
        resp = await self.http.get(
            f"/api/{self.session_name}/messages", params={"limit": 20, "downloadMedia": "false"}
        )
        if resp.status_code >= 400:
            return
        page = resp.json()
        seen = self._seen_inbound
        # Only ids still inside the bridge's page can come back; older ones are dropped.
        self._seen_inbound = {item.get("id") for item in page if item.get("id")}
        for item in page:
            message_id = item.get("id")
            if not message_id or item.get("fromMe") or message_id in seen:
                continue
            await self.on_event(
                MessageReceived(
                    sender=identity_from_chat_id(item.get("from", "")),
                    body=item.get("body") or "",
                    protocol_message_id=message_id,
                )
            )

    async def send_text(self, chat_id: str, body: str) -> str:
        try:
            resp = await self.http.post(
                "/api/sendText",
                json={"session": self.session_name, "chatId": chat_id, "text": body},
            )
        except httpx.TimeoutException as exc:
            raise TransientDeliveryError(f"bridge timeout: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientDeliveryError(f"bridge unreachable: {exc}") from exc

        if resp.status_code in (408, 429) or resp.status_code >= 500:
            raise TransientDeliveryError(f"bridge status={resp.status_code} body={resp.text[:200]}")
        if resp.status_code >= 400:
            raise PermanentDeliveryError(f"bridge rejected message status={resp.status_code} body={resp.text[:200]}")
        payload = resp.json()
        message_id = payload.get("id")
        if isinstance(message_id, dict):
            message_id = message_id.get("_serialized") or message_id.get("id")
        return str(message_id or "")

    async def stop(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        try:
            await self.http.post("/api/sessions/stop", json={"name": self.session_name})
        except httpx.HTTPError as exc:
            logger.warning("bridge_stop_failed tenant_id=%s error=%s", self.tenant_id, exc)
        finally:
            await self.http.aclose()


def waha_client_factory(base_url: str, api_key: str = "", poll_interval_seconds: float = 2.0) -> ChannelClientFactory:
    """Build the pool's client factory bound to one bridge endpoint."""

    def build(tenant_id: str, on_event: EventCallback) -> ChannelClient:
        return WahaChannelClient(
            tenant_id,
            on_event,
            base_url=base_url,
            api_key=api_key,
            poll_interval_seconds=poll_interval_seconds,
        )

    return build
