"""Websocket client for the AI agent gateway.

Frames are JSON objects:

    request   {"type": "req", "id": ..., "method": ..., "params": {...}}
    response  {"type": "res", "id": ..., "ok": true, "payload": {...}}
              {"type": "res", "id": ..., "ok": false, "error": {...}}
    event     {"type": "event", "event": ..., "payload": {...}}

Responses are matched to requests only by ``id``, so any number of calls
can be in flight on one connection.

Config keys:
    url: Gateway websocket URL (default ``ws://127.0.0.1:18789``)
    token: Bearer token for the connect handshake
    client_id: Identity reported during the handshake (default ``wechat-bridge``)
    connect_timeout: Socket open + handshake timeout in seconds (default 10)
    call_timeout: Agent call timeout in seconds (default 120)
"""

from __future__ import annotations

import asyncio
import json
import logging
import platform
import uuid
from typing import Any

import aiohttp

from .. import __version__
from ..errors import (
    GatewayAuthError,
    GatewayConnectionError,
    GatewayTimeoutError,
    RemoteRejection,
)
from ..models import AgentRequest, AgentResponse, ConnectionState
from .base import Listener, ReconnectingClient

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 3


def extract_reply_text(payload: dict[str, Any]) -> str:
    """Pull the reply text out of an agent response payload."""
    text = payload.get("text")
    if isinstance(text, str):
        return text
    result = payload.get("result")
    if isinstance(result, dict):
        if isinstance(result.get("text"), str):
            return result["text"]
        parts = [
            p.get("text", "")
            for p in result.get("payloads") or []
            if isinstance(p, dict) and p.get("text")
        ]
        return "\n\n".join(parts)
    return ""


class GatewayClient(ReconnectingClient):
    """Authenticated request/response client over the gateway websocket."""

    def __init__(
        self,
        config: dict[str, Any],
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        super().__init__("gateway", config)
        self.url: str = config.get("url", "ws://127.0.0.1:18789")
        self._token: str = config.get("token", "")
        self._client_id: str = config.get("client_id", "wechat-bridge")
        self._connect_timeout = float(config.get("connect_timeout", 10))
        self._call_timeout = float(config.get("call_timeout", 120))

        self._session = session
        self._owns_session = session is None
        self._closed = False
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._send_lock = asyncio.Lock()
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._event_tasks: set[asyncio.Task[None]] = set()

        self._on_connected: Listener | None = None
        self._on_disconnected: Listener | None = None
        self._on_event: Listener | None = None

    # ---- listener slots (last registration wins) ----

    def set_on_connected(self, callback: Listener) -> None:
        self._on_connected = callback

    def set_on_disconnected(self, callback: Listener) -> None:
        """Register the listener invoked with the close code after a drop."""
        self._on_disconnected = callback

    def set_on_event(self, callback: Listener) -> None:
        """Register the listener invoked with ``(event_name, payload)``."""
        self._on_event = callback

    # ---- connection ----

    def _http(self) -> aiohttp.ClientSession:
        if self._closed:
            raise GatewayConnectionError("gateway client is disconnected")
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def connect(self) -> None:
        """Open the socket and authenticate.

        Raises :class:`GatewayConnectionError` if the gateway is unreachable
        and :class:`GatewayAuthError` if it rejects the token.
        """
        logger.info("Connecting to gateway %s", self.url)
        self.state = ConnectionState.CONNECTING
        try:
            await self._open()
        except Exception:
            self.state = ConnectionState.DISCONNECTED
            raise

    async def _reopen(self) -> None:
        await self._open()

    async def _open(self) -> None:
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        try:
            ws = await asyncio.wait_for(
                self._http().ws_connect(self.url, headers=headers, heartbeat=30),
                timeout=self._connect_timeout,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            raise GatewayConnectionError(f"gateway connect failed: {exc}") from exc

        self._ws = ws
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        try:
            await self._request("connect", self._connect_params(), self._connect_timeout)
        except RemoteRejection as exc:
            await self._close_transport()
            raise GatewayAuthError(f"gateway rejected authentication: {exc}") from exc
        except Exception:
            await self._close_transport()
            raise

        self._mark_connected()
        logger.info("Gateway connected and authenticated")
        await self._fire(self._on_connected)

    def _connect_params(self) -> dict[str, Any]:
        return {
            "minProtocol": PROTOCOL_VERSION,
            "maxProtocol": PROTOCOL_VERSION,
            "client": {
                "id": self._client_id,
                "version": __version__,
                "platform": platform.system().lower(),
                "mode": "backend",
            },
            "auth": {"token": self._token},
        }

    # ---- request / response ----

    async def _request(
        self,
        method: str,
        params: dict[str, Any],
        timeout: float,
    ) -> dict[str, Any]:
        ws = self._ws
        if ws is None or ws.closed:
            raise GatewayConnectionError("gateway socket is not open")

        request_id = uuid.uuid4().hex
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        frame = {"type": "req", "id": request_id, "method": method, "params": params}
        try:
            async with self._send_lock:
                await ws.send_json(frame)
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise GatewayTimeoutError(f"{method} got no response within {timeout:.0f}s") from exc
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            raise GatewayConnectionError(f"{method} could not be sent: {exc}") from exc
        finally:
            self._pending.pop(request_id, None)

    async def call_agent(self, request: AgentRequest) -> AgentResponse:
        """Run one agent turn and return its reply."""
        params = request.to_params()
        params["idempotencyKey"] = uuid.uuid4().hex
        payload = await self._request("agent", params, self._call_timeout)
        return AgentResponse(text=extract_reply_text(payload), raw=payload)

    def _resolve(self, frame: dict[str, Any]) -> None:
        future = self._pending.get(frame.get("id", ""))
        if future is None or future.done():
            logger.debug("Response for unknown request %s", frame.get("id"))
            return

        if frame.get("ok"):
            payload = frame.get("payload")
            if not isinstance(payload, dict):
                payload = {"value": payload}
            if payload.get("status") == "accepted":
                # Interim ack; the final response reuses the same id
                return
            future.set_result(payload)
            return

        error = frame.get("error")
        if isinstance(error, dict):
            future.set_exception(
                RemoteRejection(error.get("message") or "request failed", error.get("code"))
            )
        else:
            future.set_exception(RemoteRejection(str(error or "request failed")))

    def _fail_pending(self, reason: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(GatewayConnectionError(reason))
        self._pending.clear()

    # ---- reader ----

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                self._handle_frame(msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.error("Gateway socket error: %s", ws.exception())
                await self._fire(self._on_error, ws.exception())
                break

        self._fail_pending("gateway connection closed")
        if self._ws is not ws:
            return
        was_connected = self.state == ConnectionState.CONNECTED
        self._ws = None
        self.state = ConnectionState.DISCONNECTED
        if was_connected:
            logger.warning("Gateway connection closed (code=%s)", ws.close_code)
            await self._fire(self._on_disconnected, ws.close_code)
            self.schedule_reconnect()

    def _handle_frame(self, raw: str) -> None:
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Invalid JSON from gateway")
            return
        if not isinstance(frame, dict):
            return

        kind = frame.get("type")
        if kind == "res":
            self._resolve(frame)
        elif kind == "event":
            event = frame.get("event", "")
            if event == "connect.challenge" or self._on_event is None:
                return
            task = asyncio.create_task(self._fire(self._on_event, event, frame.get("payload")))
            self._event_tasks.add(task)
            task.add_done_callback(self._event_tasks.discard)
        else:
            logger.debug("Ignoring gateway frame of type %r", kind)

    # ---- shutdown ----

    async def _close_transport(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            await ws.close()
        if self._reader_task and not self._reader_task.done():
            if self._reader_task is not asyncio.current_task():
                self._reader_task.cancel()
                try:
                    await self._reader_task
                except asyncio.CancelledError:
                    pass
        self._reader_task = None
        self._fail_pending("gateway connection closed")
        self.state = ConnectionState.DISCONNECTED

    async def disconnect(self) -> None:
        """Disable reconnection and close the socket. Safe to call repeatedly."""
        self._closed = True
        self.disable_reconnect()
        await self._close_transport()
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
