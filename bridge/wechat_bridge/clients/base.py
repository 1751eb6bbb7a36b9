"""Base class for the two long-lived transport clients."""

from __future__ import annotations

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from ..models import ConnectionState
from ..utils import DEFAULT_BACKOFF_BASE, DEFAULT_BACKOFF_CAP, backoff_delay

logger = logging.getLogger(__name__)

# Listener type: sync or async callable; its return value is ignored
Listener = Callable[..., Awaitable[None] | None]


class ReconnectingClient(ABC):
    """Connection state plus an exponential-backoff reconnect loop.

    Each client owns its state, attempt counter and reconnect task; nothing
    here is shared between clients, so one transport failing never delays
    the other.

    Config keys:
        reconnect_base_delay: First backoff delay in seconds (default 2).
        reconnect_max_delay: Backoff ceiling in seconds (default 30).
        max_reconnect_attempts: Give up after this many attempts (0 = never).
    """

    def __init__(self, name: str, config: dict[str, Any]) -> None:
        self.name = name
        self.config = config
        self.state = ConnectionState.DISCONNECTED
        self.reconnect_attempts = 0
        self._should_reconnect = True
        self._reconnect_task: asyncio.Task[None] | None = None
        self._base_delay = float(config.get("reconnect_base_delay", DEFAULT_BACKOFF_BASE))
        self._max_delay = float(config.get("reconnect_max_delay", DEFAULT_BACKOFF_CAP))
        self._max_attempts = int(config.get("max_reconnect_attempts", 0))
        self._on_error: Listener | None = None

    def set_on_error(self, callback: Listener) -> None:
        """Register the listener invoked with transport errors."""
        self._on_error = callback

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def reconnect_enabled(self) -> bool:
        return self._should_reconnect

    # ---- reconnect state machine ----

    def _mark_connected(self) -> None:
        self.state = ConnectionState.CONNECTED
        self.reconnect_attempts = 0

    def schedule_reconnect(self) -> bool:
        """Schedule one reconnect attempt after the current backoff delay.

        Returns False when reconnection is disabled, already pending, or the
        attempt budget is spent.
        """
        if not self._should_reconnect:
            return False
        pending = self._reconnect_task
        if pending and not pending.done() and pending is not asyncio.current_task():
            return False
        if self._max_attempts and self.reconnect_attempts >= self._max_attempts:
            logger.error(
                "%s: giving up after %d reconnect attempts",
                self.name,
                self.reconnect_attempts,
            )
            self.state = ConnectionState.DISCONNECTED
            return False

        delay = backoff_delay(self.reconnect_attempts, self._base_delay, self._max_delay)
        self.reconnect_attempts += 1
        self.state = ConnectionState.RECONNECTING
        logger.info(
            "%s: reconnecting in %.1fs (attempt %d)",
            self.name,
            delay,
            self.reconnect_attempts,
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))
        return True

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if not self._should_reconnect:
            return
        try:
            await self._reopen()
        except Exception as exc:
            logger.warning("%s: reconnect failed: %s", self.name, exc)
            self.state = ConnectionState.DISCONNECTED
            self.schedule_reconnect()
            return
        if not self._should_reconnect:
            # Disabled while the attempt was in flight
            await self._close_transport()

    def disable_reconnect(self) -> None:
        """Stop all future reconnect attempts, including a pending one."""
        self._should_reconnect = False
        task = self._reconnect_task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._reconnect_task = None

    # ---- listeners ----

    async def _fire(self, callback: Listener | None, *args: Any) -> None:
        """Invoke a listener, logging rather than propagating its failures."""
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("%s: listener %r failed", self.name, callback)

    # ---- transport hooks ----

    @abstractmethod
    async def _reopen(self) -> None:
        """Re-establish the transport; raise on failure."""

    @abstractmethod
    async def _close_transport(self) -> None:
        """Close the transport without touching reconnect settings."""

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "connected": self.connected,
            "reconnect_attempts": self.reconnect_attempts,
            "reconnect_enabled": self._should_reconnect,
        }
