"""Shared fakes for wechat-bridge tests.

Provides in-process aiohttp stand-ins for the account service (HTTP API +
push websocket) and the agent gateway websocket, plus small helpers.
"""

from __future__ import annotations

import asyncio
import base64
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer

# ---------------------------------------------------------------------------
# Fake account service
# ---------------------------------------------------------------------------


class FakeAccountService:
    """Mimics the account microservice's HTTP API and push channel."""

    def __init__(self) -> None:
        self.login_state = 0
        self.login_time = "2024-01-01 00:00:00"
        self.wake_up_ok = False
        self.qr_url = "https://qr.example.com/render?data=https%3A%2F%2Flogin.example%2Fx%2Fabc"
        self.send_ok = True
        self.image_send_ok = True
        self.auth_keys = ["generated-key"]
        self.sent_texts: list[tuple[str, str]] = []
        self.sent_images: list[tuple[str, str]] = []
        self.revoked: list[tuple[Any, str]] = []
        self.requests: list[tuple[str, dict[str, Any]]] = []
        self.image_pages: list[dict[str, Any]] = []
        self.page_requests: list[dict[str, Any]] = []
        self.push_sockets: list[web.WebSocketResponse] = []
        self.push_connects = 0
        self.push_keys: list[str] = []
        self.connected = asyncio.Event()

        self.app = web.Application()
        r = self.app.router
        r.add_get("/login/GetLoginStatus", self._login_status)
        r.add_post("/login/WakeUpLogin", self._wake_up)
        r.add_post("/login/GetLoginQrCodeNew", self._qr)
        r.add_post("/message/SendTextMessage", self._send_text)
        r.add_post("/message/SendImageMessage", self._send_image)
        r.add_post("/message/RevokeMsg", self._revoke)
        r.add_post("/message/GetMsgBigImg", self._image_page)
        r.add_post("/admin/GenAuthKey1", self._gen_key)
        r.add_post("/friend/GetContactList", self._contacts)
        r.add_post("/friend/SearchContact", self._search)
        r.add_get("/ws/GetSyncMsg", self._push)
        self.app.on_shutdown.append(self._close_sockets)

    # ---- scripting helpers ----

    def add_page(self, offset: int, data: bytes, code: int = 200) -> None:
        """Queue one GetMsgBigImg response."""
        self.image_pages.append(
            {
                "Code": code,
                "Data": {
                    "StartPos": offset,
                    "DataLen": len(data),
                    "Data": {"iLen": len(data), "buffer": base64.b64encode(data).decode()},
                },
            }
        )

    async def push(self, frame: dict[str, Any] | str) -> None:
        raw = frame if isinstance(frame, str) else json.dumps(frame)
        for ws in list(self.push_sockets):
            if not ws.closed:
                await ws.send_str(raw)

    async def drop_push(self) -> None:
        self.connected.clear()
        for ws in list(self.push_sockets):
            await ws.close()

    # ---- handlers ----

    async def _body(self, request: web.Request) -> dict[str, Any]:
        body = await request.json() if request.can_read_body else {}
        self.requests.append((request.path, {"key": request.query.get("key"), **body}))
        return body

    async def _login_status(self, request: web.Request) -> web.Response:
        await self._body(request)
        return web.json_response(
            {"Code": 200, "Data": {"loginState": self.login_state, "loginTime": self.login_time}}
        )

    async def _wake_up(self, request: web.Request) -> web.Response:
        await self._body(request)
        if self.wake_up_ok:
            return web.json_response({"Code": 200})
        return web.json_response({"Code": 300, "Text": "no session"})

    async def _qr(self, request: web.Request) -> web.Response:
        await self._body(request)
        return web.json_response({"Code": 200, "Data": {"QrCodeUrl": self.qr_url}})

    async def _send_text(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        item = body["MsgItem"][0]
        self.sent_texts.append((item["ToUserName"], item["Content"]))
        return web.json_response({"Code": 200, "Data": [{"isSendSuccess": self.send_ok}]})

    async def _send_image(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        self.sent_images.append((body["ToUserName"], body["ImagePath"]))
        return web.json_response({"Code": 200, "Data": {"isSendSuccess": self.image_send_ok}})

    async def _revoke(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        self.revoked.append((body["MsgId"], body["ToUserName"]))
        return web.json_response({"Code": 200})

    async def _image_page(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        self.page_requests.append(body)
        if not self.image_pages:
            return web.json_response({"Code": 200, "Data": {"Data": {"iLen": 0}}})
        return web.json_response(self.image_pages.pop(0))

    async def _gen_key(self, request: web.Request) -> web.Response:
        await self._body(request)
        if request.query.get("key") != "admin":
            return web.json_response({"Code": 403, "Text": "bad admin key"})
        return web.json_response({"Code": 200, "Data": self.auth_keys})

    async def _contacts(self, request: web.Request) -> web.Response:
        await self._body(request)
        return web.json_response(
            {"Code": 200, "Data": {"ContactList": {"contactUsernameList": ["wxid_a", "wxid_b"]}}}
        )

    async def _search(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        return web.json_response({"Code": 200, "Data": [{"UserName": body["keyword"]}]})

    async def _push(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.push_connects += 1
        self.push_keys.append(request.query.get("key", ""))
        self.push_sockets.append(ws)
        self.connected.set()
        async for _ in ws:
            pass
        return ws

    async def _close_sockets(self, app: web.Application) -> None:
        for ws in list(self.push_sockets):
            await ws.close()


# ---------------------------------------------------------------------------
# Fake agent gateway
# ---------------------------------------------------------------------------

AgentHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


async def _echo_agent(params: dict[str, Any]) -> dict[str, Any]:
    return {"text": f"echo: {params['message']}"}


class FakeGateway:
    """Mimics the agent gateway's websocket protocol."""

    def __init__(self, token: str = "secret") -> None:
        self.token = token
        self.agent_handler: AgentHandler = _echo_agent
        self.send_accepted = False
        self.auth_headers: list[str | None] = []
        self.connect_params: list[dict[str, Any]] = []
        self.agent_calls: list[dict[str, Any]] = []
        self.sockets: list[web.WebSocketResponse] = []
        self.connects = 0

        self.app = web.Application()
        self.app.router.add_get("/", self._ws)
        self.app.on_shutdown.append(self._close_sockets)

    async def push_event(self, event: str, payload: dict[str, Any]) -> None:
        for ws in list(self.sockets):
            if not ws.closed:
                await ws.send_json({"type": "event", "event": event, "payload": payload})

    async def drop(self) -> None:
        for ws in list(self.sockets):
            await ws.close()

    async def _ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.connects += 1
        self.auth_headers.append(request.headers.get("Authorization"))
        self.sockets.append(ws)
        await ws.send_json({"type": "event", "event": "connect.challenge", "payload": {"nonce": "n"}})

        tasks: set[asyncio.Task[None]] = set()
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            frame = json.loads(msg.data)
            if frame.get("method") == "connect":
                self.connect_params.append(frame["params"])
                ok = frame["params"]["auth"]["token"] == self.token
                reply: dict[str, Any] = {"type": "res", "id": frame["id"], "ok": ok}
                if ok:
                    reply["payload"] = {"type": "hello-ok"}
                else:
                    reply["error"] = {"code": "UNAUTHORIZED", "message": "bad token"}
                await ws.send_json(reply)
            elif frame.get("method") == "agent":
                task = asyncio.create_task(self._answer_agent(ws, frame))
                tasks.add(task)
                task.add_done_callback(tasks.discard)
        return ws

    async def _answer_agent(self, ws: web.WebSocketResponse, frame: dict[str, Any]) -> None:
        self.agent_calls.append(frame["params"])
        if self.send_accepted:
            await ws.send_json(
                {"type": "res", "id": frame["id"], "ok": True, "payload": {"status": "accepted"}}
            )
        try:
            payload = await self.agent_handler(frame["params"])
        except Exception as exc:
            reply = {"type": "res", "id": frame["id"], "ok": False, "error": {"message": str(exc)}}
        else:
            reply = {"type": "res", "id": frame["id"], "ok": True, "payload": payload}
        if not ws.closed:
            await ws.send_json(reply)

    async def _close_sockets(self, app: web.Application) -> None:
        for ws in list(self.sockets):
            await ws.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@asynccontextmanager
async def serve(app: web.Application) -> AsyncIterator[TestServer]:
    """Run *app* on a random local port for the duration of the block."""
    server = TestServer(app)
    await server.start_server()
    try:
        yield server
    finally:
        await server.close()


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll *predicate* until it is true or fail the test after *timeout*."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def account_config(server: TestServer, **overrides: Any) -> dict[str, Any]:
    return {
        "host": server.host,
        "port": server.port,
        "auth_key": "test-key",
        "reconnect_base_delay": 0.01,
        "reconnect_max_delay": 0.05,
        **overrides,
    }


def gateway_config(server: TestServer, **overrides: Any) -> dict[str, Any]:
    return {
        "url": str(server.make_url("/")).replace("http://", "ws://"),
        "token": "secret",
        "connect_timeout": 2,
        "call_timeout": 2,
        "reconnect_base_delay": 0.01,
        "reconnect_max_delay": 0.05,
        **overrides,
    }


@pytest.fixture()
def account_service() -> FakeAccountService:
    return FakeAccountService()


@pytest.fixture()
def fake_gateway() -> FakeGateway:
    return FakeGateway()
