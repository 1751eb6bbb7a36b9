"""Bridge orchestrator: account ⇄ pairing gate ⇄ agent gateway."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from .auth import PairingStore
from .clients.account import AccountClient
from .clients.gateway import GatewayClient
from .config import client_config
from .content import parse_image_xml
from .errors import BridgeStartupError
from .files import extract_image_paths, image_attachment, resolve_media_dir, save_inbound_image
from .health import HealthMonitor
from .models import AgentRequest, BridgeStage, LoginState, MessageType, NormalizedMessage
from .utils import build_session_key, is_chat_room, truncate

logger = logging.getLogger(__name__)

PAIRING_CONFIRMATION = "✅ Pairing successful! You can start chatting now."
APOLOGY = "Sorry, something went wrong while processing your message. Please try again later."
IMAGE_PLACEHOLDER = "[User sent an image]"
IMAGE_FAILED_PLACEHOLDER = "[User sent an image, but the download failed]"


class BridgeOrchestrator:
    """Wires the account client to the gateway client.

    Startup runs strictly in stages; a failing stage stops whatever was
    started and raises :class:`BridgeStartupError`.  Once running, every
    inbound message goes through the pairing gate, then (for paired
    senders) to the agent, and the reply goes back to the sender.
    """

    def __init__(
        self,
        config: dict[str, Any],
        *,
        account: AccountClient | None = None,
        gateway: GatewayClient | None = None,
        store: PairingStore | None = None,
    ) -> None:
        self._config = config
        account_cfg = config.get("account", {})
        gateway_cfg = config.get("gateway", {})
        behavior = config.get("behavior", {})

        self._channel: str = behavior.get("channel", "wechat")
        self._agent_id: str = gateway_cfg.get("agent_id", "main")
        self._ignore_chatrooms: bool = behavior.get("ignore_chatrooms", False)
        self._drain_timeout = float(behavior.get("drain_timeout", 5))
        self._login_interval = float(account_cfg.get("login_poll_interval", 2))
        self._login_timeout = float(account_cfg.get("login_timeout", 120))
        self._qr_file: str | None = account_cfg.get("qr_file")
        self._media_dir = resolve_media_dir(config.get("media", {}))

        self.store = store or PairingStore(config.get("auth", {}))
        self.account = account or AccountClient(client_config(config, "account"))
        self.gateway = gateway or GatewayClient(client_config(config, "gateway"))
        self.health = HealthMonitor(
            self.account,
            self.gateway,
            interval=float(behavior.get("health_interval", 30)),
        )

        self.stage = BridgeStage.INITIALIZING
        self._accepting = False
        self._session_locks: dict[str, asyncio.Lock] = {}
        self._session_users: dict[str, int] = {}
        self._inflight: set[asyncio.Task[Any]] = set()
        self._shutdown_task: asyncio.Task[None] | None = None
        self._stage_task: asyncio.Task[None] | None = None
        self._stopped = asyncio.Event()

        self.account.set_on_message(self.handle_message)
        self.account.set_on_qr_code(self._on_qr_code)
        self.account.set_on_login_success(self._on_login_success)
        self.account.set_on_login_expired(self._on_login_expired)
        self.account.set_on_error(self._on_transport_error)
        self.gateway.set_on_connected(self._on_gateway_connected)
        self.gateway.set_on_disconnected(self._on_gateway_disconnected)
        self.gateway.set_on_event(self._on_gateway_event)
        self.gateway.set_on_error(self._on_transport_error)

    # ---- lifecycle ----

    async def start(self) -> None:
        """Run the startup stages in order, then begin serving messages."""
        stages = [
            (BridgeStage.STARTING_ACCOUNT_TRANSPORT, self._start_account_transport),
            (BridgeStage.VERIFYING_LOGIN, self._verify_login),
            (BridgeStage.CONNECTING_GATEWAY, self._connect_gateway),
            (BridgeStage.SUBSCRIBING_MESSAGES, self._subscribe_messages),
        ]
        for stage, step in stages:
            if self._shutdown_task is not None:
                raise BridgeStartupError(stage.value, RuntimeError("shutdown requested"))
            self.stage = stage
            logger.info("Bridge stage: %s", stage.value)
            # Held so shutdown can interrupt a long stage such as the login wait
            self._stage_task = asyncio.create_task(step())
            try:
                await self._stage_task
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if self._shutdown_task is None or (current and current.cancelling()):
                    raise
                logger.warning("Startup interrupted by shutdown during %s", stage.value)
                await self.shutdown()
                raise BridgeStartupError(
                    stage.value, RuntimeError("shutdown requested")
                ) from None
            except Exception as exc:
                logger.error("Startup failed during %s: %s", stage.value, exc)
                await self.shutdown()
                raise BridgeStartupError(stage.value, exc) from exc
            finally:
                self._stage_task = None

        if self._shutdown_task is not None:
            raise BridgeStartupError(BridgeStage.RUNNING.value, RuntimeError("shutdown requested"))
        self._accepting = True
        self.health.start()
        self.stage = BridgeStage.RUNNING
        logger.info("Bridge running, waiting for messages")

    async def _start_account_transport(self) -> None:
        await self.account.check_login_status()
        logger.info("Account service reachable")

    async def _verify_login(self) -> None:
        if self.account.login_state == LoginState.LOGGED_IN:
            logger.info("Account already logged in (since %s)", self.account.login_time)
            return

        logger.warning("Account not logged in, trying wake-up login")
        if await self.account.attempt_silent_login():
            await self.account.poll_login_until(self._login_interval, self._login_timeout)
            return

        logger.warning("Wake-up login failed, requesting QR code")
        await self.account.request_login_challenge()
        await self.account.poll_login_until(self._login_interval, self._login_timeout)

    async def _connect_gateway(self) -> None:
        await self.gateway.connect()

    async def _subscribe_messages(self) -> None:
        await self.account.subscribe()

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    async def shutdown(self) -> None:
        """Stop admitting messages and close both transports.

        Idempotent; concurrent callers all wait for the same shutdown.
        """
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.create_task(self._shutdown())
        await asyncio.shield(self._shutdown_task)

    async def _shutdown(self) -> None:
        logger.info("Shutting down bridge")
        stage_task = self._stage_task
        if stage_task is not None and not stage_task.done():
            logger.info("Interrupting startup stage %s", self.stage.value)
            stage_task.cancel()
        self.stage = BridgeStage.SHUTTING_DOWN
        self._accepting = False
        await self.health.stop()

        # In-flight relays are allowed to finish; new ones are refused above
        pending = {t for t in self._inflight if t is not asyncio.current_task()}
        if pending:
            logger.info("Waiting for %d in-flight messages", len(pending))
            await asyncio.wait(pending, timeout=self._drain_timeout)

        for client in (self.gateway, self.account):
            try:
                await client.disconnect()
            except Exception:
                logger.exception("Error disconnecting %s client", client.name)

        self.stage = BridgeStage.STOPPED
        self._stopped.set()
        logger.info("Bridge stopped")

    # ---- inbound pipeline ----

    async def handle_message(self, message: NormalizedMessage) -> None:
        """Entry point for every inbound message from the account."""
        if not self._accepting:
            logger.debug("Not accepting messages, dropping one from %s", message.sender_id)
            return

        task = asyncio.current_task()
        if task is not None:
            self._inflight.add(task)
        try:
            await self._process(message)
        finally:
            if task is not None:
                self._inflight.discard(task)

    async def _process(self, message: NormalizedMessage) -> None:
        sender = message.sender_id
        logger.info("Message from=%s type=%s", sender, message.message_type.value)

        if self._ignore_chatrooms and is_chat_room(sender):
            logger.debug("Ignoring chatroom message from %s", sender)
            return

        # 1. Pairing gate
        if not self.store.is_allowed(sender):
            if self.store.try_pair(sender, message.raw_content):
                logger.info("Sender %s paired", sender)
                await self.account.send_text(sender, PAIRING_CONFIRMATION)
            else:
                logger.info("Ignoring message from unpaired sender %s", sender)
            return

        # At most one agent call per session in flight, so replies keep order
        session_key = build_session_key(self._agent_id, self._channel, sender)
        lock = self._session_locks.setdefault(session_key, asyncio.Lock())
        self._session_users[session_key] = self._session_users.get(session_key, 0) + 1
        try:
            async with lock:
                try:
                    await self._relay(message, session_key)
                except Exception:
                    logger.exception("Failed to process message from %s", sender)
                    if not await self.account.send_text(sender, APOLOGY):
                        logger.error("Could not deliver apology to %s", sender)
        finally:
            # Drop the lock once nobody holds or waits for it
            self._session_users[session_key] -= 1
            if not self._session_users[session_key]:
                del self._session_users[session_key]
                del self._session_locks[session_key]

    async def _relay(self, message: NormalizedMessage, session_key: str) -> None:
        text = message.raw_content
        attachments: list[dict[str, Any]] = []

        # 2. Inbound image
        if message.message_type == MessageType.IMAGE and message.message_id:
            text, attachments = await self._resolve_image(message)

        # 3. Agent call
        request = AgentRequest(
            session_key=session_key,
            agent_id=self._agent_id,
            message=text,
            attachments=attachments,
        )
        response = await self.gateway.call_agent(request)

        # 4. Reply
        reply = (response.text or "").strip()
        if not reply:
            logger.info("Agent returned an empty reply for %s", message.sender_id)
            return
        logger.info("Agent reply: %s", truncate(reply))
        await self.deliver_reply(message.sender_id, reply)

    async def _resolve_image(
        self, message: NormalizedMessage
    ) -> tuple[str, list[dict[str, Any]]]:
        """Download an inbound image; return the agent text and attachments."""
        meta = message.image_metadata or parse_image_xml(message.raw_content)
        if meta is None or not meta.download_length:
            logger.warning("Image message %s has no usable metadata", message.message_id)
            return IMAGE_FAILED_PLACEHOLDER, []

        data = await self.account.download_image(
            message.message_id,
            meta.download_length,
            message.sender_id,
            message.recipient_id,
        )
        if not data:
            logger.warning("Image download failed for message %s", message.message_id)
            return IMAGE_FAILED_PLACEHOLDER, []

        try:
            path = save_inbound_image(self._media_dir, message.message_id, data)
        except OSError:
            logger.exception("Could not save image for message %s", message.message_id)
            return IMAGE_FAILED_PLACEHOLDER, []
        return IMAGE_PLACEHOLDER, [image_attachment(path)]

    async def deliver_reply(self, recipient: str, reply: str) -> None:
        """Send an agent reply: prose first, then any local images it names."""
        text, image_paths = extract_image_paths(reply)
        if not image_paths:
            await self.account.send_text(recipient, reply)
            return

        if text:
            await self.account.send_text(recipient, text)
        for path in image_paths:
            logger.info("Sending image %s to %s", path, recipient)
            if not await self.account.send_image(recipient, path):
                logger.warning("Image send failed: %s", path)
                await self.account.send_text(recipient, f"Failed to send image: {path}")

    # ---- listeners ----

    async def _on_gateway_event(self, event: str, payload: Any) -> None:
        """Deliver gateway-initiated messages that name a recipient."""
        if not isinstance(payload, dict):
            return
        recipient = payload.get("from")
        content = payload.get("content") or payload.get("message")
        if not recipient or not isinstance(content, str) or not content:
            logger.debug("Ignoring gateway event %s", event)
            return
        if not self.store.is_allowed(recipient):
            logger.warning("Gateway event %s targets unpaired user %s, dropped", event, recipient)
            return
        logger.info("Delivering gateway message to %s", recipient)
        await self.deliver_reply(recipient, content.strip())

    def _on_qr_code(self, url: str) -> None:
        logger.warning("Scan this QR code with the account's phone to log in: %s", url)
        if self._qr_file:
            path = Path(self._qr_file).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(url + "\n")
            logger.info("QR code URL saved to %s", path)

    def _on_login_success(self, data: dict[str, Any]) -> None:
        logger.info("Account login confirmed (login time %s)", data.get("loginTime"))

    def _on_login_expired(self) -> None:
        logger.warning("Account login expired; restart the bridge to log in again")

    def _on_gateway_connected(self) -> None:
        logger.info("Gateway session ready")

    def _on_gateway_disconnected(self, code: int | None) -> None:
        logger.warning("Gateway disconnected (code=%s)", code)

    def _on_transport_error(self, error: BaseException | None) -> None:
        logger.error("Transport error: %s", error)

    # ---- introspection ----

    @property
    def accepting(self) -> bool:
        return self._accepting

    def status(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "account": self.account.status(),
            "gateway": self.gateway.status(),
            "paired_senders": len(self.store.get_all_allowed()),
        }
