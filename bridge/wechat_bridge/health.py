"""Periodic health sampling of both transports.

The monitor only observes and logs.  Recovery belongs to each client's own
reconnect loop, and an expired login needs an operator.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from .models import LoginState

if TYPE_CHECKING:
    from .clients.account import AccountClient
    from .clients.gateway import GatewayClient

logger = logging.getLogger(__name__)

_HISTORY_LIMIT = 100


class HealthMonitor:
    """Samples connection and login flags on a fixed interval."""

    def __init__(
        self,
        account: AccountClient,
        gateway: GatewayClient,
        *,
        interval: float = 30.0,
    ) -> None:
        self._account = account
        self._gateway = gateway
        self._interval = interval
        self._task: asyncio.Task[None] | None = None
        self._history: deque[dict[str, Any]] = deque(maxlen=_HISTORY_LIMIT)

    async def check(self) -> dict[str, Any]:
        """Take one sample, log degraded states, and record the result."""
        result: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "degraded": [],
        }
        try:
            # Login state is owned by the remote service; refresh before reading
            await self._account.get_login_status()

            result["account_connected"] = self._account.connected
            result["login_state"] = self._account.login_state.value
            result["gateway_connected"] = self._gateway.connected

            if not self._gateway.connected:
                result["degraded"].append("gateway")
                logger.warning("Gateway not connected, waiting for reconnect")
            if not self._account.connected:
                result["degraded"].append("push_channel")
                logger.warning("Account push channel not connected, waiting for reconnect")
            if self._account.login_state != LoginState.LOGGED_IN:
                result["degraded"].append("login")
                logger.warning("Account not logged in (%s)", self._account.login_state.value)
        except Exception as e:
            result["error"] = str(e)
            logger.exception("Health check failed")

        self._history.append(result)
        return result

    async def _run_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break
            await self.check()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run_loop())
            logger.info("Health monitor started (every %.0fs)", self._interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def history(self) -> list[dict[str, Any]]:
        """Return recorded samples (most recent last)."""
        return list(self._history)
