"""Client for the messaging-account microservice (HTTP + push websocket).

The service wraps the account's own protocol; this client only speaks its
HTTP API and its ``/ws/GetSyncMsg`` push channel.  Every call authenticates
with the account auth key in the ``key`` query parameter.

Config keys:
    host: Service host (default ``127.0.0.1``)
    port: Service port (default ``8099``)
    auth_key: Account auth key
    admin_key: Admin key, only needed to generate an auth key
    request_timeout: Per-request HTTP timeout in seconds (default 30)
    handshake_timeout: Push channel connect timeout in seconds (default 10)
    dry_run: Log outbound sends instead of delivering them
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import time
from typing import Any

import aiohttp

from ..content import classify_message_type, parse_image_xml
from ..errors import AccountTransportError, LoginTimeoutError, RemoteRejection
from ..models import (
    ConnectionState,
    ImageTransfer,
    LoginState,
    MessageType,
    NormalizedMessage,
)
from ..utils import truncate, unwrap_qr_url
from .base import Listener, ReconnectingClient

logger = logging.getLogger(__name__)

PAGE_SIZE = 64 * 1024
_SUCCESS = 200


def _ok(body: dict[str, Any]) -> bool:
    return body.get("Code") == _SUCCESS


def _data(body: dict[str, Any]) -> Any:
    return body.get("Data")


class AccountClient(ReconnectingClient):
    """HTTP + push-channel client for the messaging account."""

    def __init__(
        self,
        config: dict[str, Any],
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        super().__init__("account", config)
        host = config.get("host", "127.0.0.1")
        port = int(config.get("port", 8099))
        self.base_url = f"http://{host}:{port}"
        self.push_url = f"ws://{host}:{port}/ws/GetSyncMsg"
        self.auth_key: str = config.get("auth_key", "")
        self._admin_key: str = config.get("admin_key", "")
        self._timeout = aiohttp.ClientTimeout(total=float(config.get("request_timeout", 30)))
        self._handshake_timeout = float(config.get("handshake_timeout", 10))
        self._dry_run: bool = config.get("dry_run", False)

        self._session = session
        self._owns_session = session is None
        self._closed = False
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._inbound_tasks: set[asyncio.Task[None]] = set()

        self.login_state = LoginState.LOGGED_OUT
        self.login_time: Any = None
        self._login_notified = False
        self._expired_notified = False

        self._on_message: Listener | None = None
        self._on_qr_code: Listener | None = None
        self._on_login_success: Listener | None = None
        self._on_login_expired: Listener | None = None

    # ---- listener slots (last registration wins) ----

    def set_on_message(self, callback: Listener) -> None:
        """Register the listener invoked with each inbound NormalizedMessage."""
        self._on_message = callback

    def set_on_qr_code(self, callback: Listener) -> None:
        self._on_qr_code = callback

    def set_on_login_success(self, callback: Listener) -> None:
        self._on_login_success = callback

    def set_on_login_expired(self, callback: Listener) -> None:
        self._on_login_expired = callback

    # ---- HTTP plumbing ----

    def _http(self) -> aiohttp.ClientSession:
        if self._closed:
            raise AccountTransportError("account client is disconnected")
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _call(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        key: str | None = None,
    ) -> dict[str, Any]:
        """Issue one API call and return the decoded JSON envelope.

        Raises :class:`AccountTransportError` when the service cannot be
        reached or answers with something other than a JSON object.
        """
        params = {"key": key if key is not None else self.auth_key}
        kwargs: dict[str, Any] = {"params": params}
        if method != "GET":
            kwargs["json"] = payload or {}
        try:
            async with self._http().request(method, self.base_url + path, **kwargs) as resp:
                body = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise AccountTransportError(f"{method} {path} failed: {exc}") from exc
        if not isinstance(body, dict):
            raise AccountTransportError(f"{method} {path} returned a non-object body")
        return body

    # ---- auth key ----

    async def generate_auth_key(self, count: int = 1, days: int = 365) -> str:
        """Ask the service to mint a new account auth key (needs the admin key)."""
        body = await self._call(
            "POST",
            "/admin/GenAuthKey1",
            {"count": count, "days": days},
            key=self._admin_key,
        )
        keys = _data(body) or []
        if not _ok(body) or not keys:
            raise RemoteRejection(body.get("Text") or "auth key generation failed", body.get("Code"))
        self.auth_key = keys[0]
        return self.auth_key

    # ---- login ----

    async def attempt_silent_login(self) -> bool:
        """Resume a previous session without a QR challenge."""
        logger.info("Attempting wake-up login")
        try:
            body = await self._call("POST", "/login/WakeUpLogin")
        except AccountTransportError as exc:
            logger.warning("Wake-up login failed: %s", exc)
            return False
        if _ok(body):
            logger.info("Wake-up login accepted")
            return True
        logger.warning("Wake-up login rejected: %s", body.get("Text") or "unknown reason")
        return False

    async def request_login_challenge(self) -> dict[str, Any]:
        """Fetch a login QR challenge and announce its URL to the QR listener."""
        body = await self._call("POST", "/login/GetLoginQrCodeNew")
        if not _ok(body):
            raise RemoteRejection(body.get("Text") or "QR code request failed", body.get("Code"))

        data = _data(body) or {}
        qr_url = unwrap_qr_url(data.get("QrCodeUrl") or "")
        self.login_state = LoginState.AWAITING_CREDENTIAL
        if qr_url:
            await self._fire(self._on_qr_code, qr_url)
        return data

    async def check_login_status(self) -> dict[str, Any]:
        """Query the remote login status; transport failures propagate."""
        body = await self._call("GET", "/login/GetLoginStatus")
        if not _ok(body):
            return {"loginState": 0}
        data = _data(body) or {}
        await self._apply_login_status(data)
        return data

    async def get_login_status(self) -> dict[str, Any]:
        """Like :meth:`check_login_status` but reports failures as logged out."""
        try:
            return await self.check_login_status()
        except AccountTransportError as exc:
            logger.error("Login status check failed: %s", exc)
            return {"loginState": 0}

    async def _apply_login_status(self, data: dict[str, Any]) -> None:
        if data.get("loginState") == 1:
            self.login_time = data.get("loginTime")
            if self.login_state != LoginState.LOGGED_IN:
                self.login_state = LoginState.LOGGED_IN
                if not self._login_notified:
                    self._login_notified = True
                    await self._fire(self._on_login_success, data)
            return

        if self.login_state == LoginState.LOGGED_IN:
            self.login_state = LoginState.EXPIRED
            if not self._expired_notified:
                self._expired_notified = True
                logger.warning("Account login expired; operator re-login required")
                await self._fire(self._on_login_expired)

    async def poll_login_until(self, interval: float = 2.0, timeout: float = 120.0) -> bool:
        """Poll the login status until logged in; raise on timeout."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            status = await self.get_login_status()
            if status.get("loginState") == 1:
                logger.info("Account logged in")
                return True
            await asyncio.sleep(max(0.0, min(interval, deadline - loop.time())))
        raise LoginTimeoutError(f"account not logged in after {timeout:.0f}s")

    # ---- outbound ----

    async def send_text(self, recipient: str, content: str) -> bool:
        if self._dry_run:
            logger.info("[DRY RUN] would send text to '%s': %s", recipient, content[:200])
            return True
        payload = {
            "MsgItem": [
                {
                    "ToUserName": recipient,
                    "MsgType": 1,
                    "Content": content,
                    "TextContent": content,
                }
            ]
        }
        try:
            body = await self._call("POST", "/message/SendTextMessage", payload)
        except AccountTransportError as exc:
            logger.error("Sending text to %s failed: %s", recipient, exc)
            return False
        if not _ok(body):
            return False
        results = _data(body) or []
        return bool(results and results[0].get("isSendSuccess"))

    async def send_image(self, recipient: str, path: str) -> bool:
        if self._dry_run:
            logger.info("[DRY RUN] would send image to '%s': %s", recipient, path)
            return True
        payload = {"ToUserName": recipient, "ImagePath": path}
        try:
            body = await self._call("POST", "/message/SendImageMessage", payload)
        except AccountTransportError as exc:
            logger.error("Sending image to %s failed: %s", recipient, exc)
            return False
        if not _ok(body):
            return False
        return bool((_data(body) or {}).get("isSendSuccess"))

    async def revoke_message(self, message_id: int | str, recipient: str) -> bool:
        try:
            body = await self._call(
                "POST",
                "/message/RevokeMsg",
                {"MsgId": message_id, "ToUserName": recipient},
            )
        except AccountTransportError as exc:
            logger.error("Revoking message %s failed: %s", message_id, exc)
            return False
        return _ok(body)

    # ---- contacts ----

    async def get_contact_list(self) -> list[str]:
        body = await self._call("POST", "/friend/GetContactList")
        if not _ok(body):
            raise RemoteRejection(body.get("Text") or "contact list request failed", body.get("Code"))
        contacts = (_data(body) or {}).get("ContactList") or {}
        return list(contacts.get("contactUsernameList") or [])

    async def search_contact(self, keyword: str) -> list[Any]:
        try:
            body = await self._call("POST", "/friend/SearchContact", {"keyword": keyword})
        except AccountTransportError as exc:
            logger.error("Contact search failed: %s", exc)
            return []
        if not _ok(body):
            return []
        return _data(body) or []

    # ---- image download ----

    async def download_image(
        self,
        message_id: int | str,
        total_length: int,
        sender: str,
        recipient: str,
    ) -> bytes | None:
        """Fetch an image in 64 KiB pages and reassemble it by offset.

        The next request starts where the server says the returned page
        ends.  Any failed page discards everything fetched so far.
        """
        if not message_id or not total_length:
            logger.warning("Image download needs a message id and a length")
            return None

        logger.info("Downloading image msg_id=%s size=%d", message_id, total_length)
        transfer = ImageTransfer(message_id=message_id, total_length=total_length)
        start = 0
        while not transfer.complete:
            payload = {
                "MsgId": message_id,
                "TotalLen": total_length,
                "Section": {"StartPos": start, "DataLen": PAGE_SIZE},
                "ToUserName": recipient,
                "FromUserName": sender,
                "CompressType": 0,
            }
            try:
                body = await self._call("POST", "/message/GetMsgBigImg", payload)
            except AccountTransportError as exc:
                logger.error("Image page at %d failed: %s", start, exc)
                return None
            if not _ok(body):
                logger.error("Image page at %d rejected: %s", start, body.get("Text"))
                return None

            page = _data(body) or {}
            inner = page.get("Data") or {}
            if not inner.get("iLen"):
                break
            try:
                chunk = base64.b64decode(inner.get("buffer") or "")
            except (binascii.Error, ValueError):
                logger.error("Image page at %d carried invalid base64", start)
                return None

            offset = int(page.get("StartPos", start))
            if offset in transfer.chunks:
                logger.error("Image server repeated offset %d; aborting download", offset)
                return None
            transfer.add_chunk(offset, chunk)
            start = offset + int(page.get("DataLen") or len(chunk))
            logger.debug("Image progress %d/%d", transfer.bytes_received, total_length)

        if not transfer.chunks:
            return None
        data = transfer.assemble()
        logger.info("Image download complete (%d bytes)", len(data))
        return data

    # ---- push channel ----

    async def subscribe(self) -> bool:
        """Open the push channel. On failure, fall back to the reconnect loop."""
        try:
            await self._open_push()
        except AccountTransportError as exc:
            logger.warning("Push channel unavailable: %s", exc)
            self.state = ConnectionState.DISCONNECTED
            self.schedule_reconnect()
            return False
        return True

    async def _open_push(self) -> None:
        logger.info("Connecting push channel %s", self.push_url)
        self.state = (
            ConnectionState.RECONNECTING
            if self.state == ConnectionState.RECONNECTING
            else ConnectionState.CONNECTING
        )
        try:
            ws = await asyncio.wait_for(
                self._http().ws_connect(self.push_url, params={"key": self.auth_key}),
                timeout=self._handshake_timeout,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            raise AccountTransportError(f"push channel connect failed: {exc}") from exc

        self._ws = ws
        self._mark_connected()
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        logger.info("Push channel connected")

    async def _reopen(self) -> None:
        await self._open_push()

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                self._handle_frame(msg.data)
            elif msg.type == aiohttp.WSMsgType.BINARY:
                self._handle_frame(msg.data.decode("utf-8", errors="replace"))
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.error("Push channel error: %s", ws.exception())
                await self._fire(self._on_error, ws.exception())
                break

        logger.warning("Push channel closed (code=%s)", ws.close_code)
        if self._ws is ws:
            self._ws = None
            self.state = ConnectionState.DISCONNECTED
            self.schedule_reconnect()

    def _handle_frame(self, raw: str) -> None:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.error("Dropping unparsable push frame: %s", truncate(raw, 200))
            return
        if not isinstance(data, dict):
            logger.error("Dropping push frame that is not an object")
            return

        message = self.parse_frame(data)
        if message is None or self._on_message is None:
            return
        task = asyncio.create_task(self._fire(self._on_message, message))
        self._inbound_tasks.add(task)
        task.add_done_callback(self._inbound_tasks.discard)

    @staticmethod
    def parse_frame(data: dict[str, Any]) -> NormalizedMessage | None:
        """Normalize a push frame; None unless it names sender, recipient and content."""
        sender = (data.get("from_user_name") or {}).get("str", "")
        recipient = (data.get("to_user_name") or {}).get("str", "")
        content = (data.get("content") or {}).get("str", "")
        if not sender or not recipient or not content:
            return None

        logger.info("Push message from=%s content=%s", sender, truncate(content))
        message_type = classify_message_type(data.get("msg_type"))
        return NormalizedMessage(
            sender_id=sender,
            recipient_id=recipient,
            raw_content=content,
            message_type=message_type,
            message_id=data.get("msg_id"),
            timestamp=data.get("create_time") or int(time.time()),
            image_metadata=(
                parse_image_xml(content) if message_type == MessageType.IMAGE else None
            ),
            raw=data,
        )

    # ---- shutdown ----

    async def _close_transport(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            await ws.close()
        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._reader_task = None
        self.state = ConnectionState.DISCONNECTED

    async def disconnect(self) -> None:
        """Disable reconnection, close the push channel and the HTTP session.

        The client is single-use: later calls fail with AccountTransportError.
        """
        self._closed = True
        self.disable_reconnect()
        await self._close_transport()
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    def status(self) -> dict[str, Any]:
        status = super().status()
        status.update(
            {
                "login_state": self.login_state.value,
                "logged_in": self.login_state == LoginState.LOGGED_IN,
                "has_auth_key": bool(self.auth_key),
            }
        )
        return status
