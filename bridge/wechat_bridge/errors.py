"""Exception hierarchy for the bridge."""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for all bridge errors."""


class TransportError(BridgeError):
    """Network or socket failure. Retried via backoff where a loop owns it."""


class AccountTransportError(TransportError):
    """The messaging microservice could not be reached."""


class GatewayConnectionError(TransportError):
    """The agent gateway socket is unavailable or dropped."""


class RemoteRejection(BridgeError):
    """A remote call answered with a non-success status."""

    def __init__(self, message: str, code: int | str | None = None) -> None:
        super().__init__(message)
        self.code = code


class GatewayAuthError(BridgeError):
    """The gateway refused the connect handshake."""


class LoginTimeoutError(BridgeError, TimeoutError):
    """The account did not reach the logged-in state in time."""


class GatewayTimeoutError(BridgeError, TimeoutError):
    """No response frame arrived for a gateway request in time."""


class BridgeStartupError(BridgeError):
    """A startup stage failed; the bridge was stopped."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        super().__init__(f"startup failed during {stage}: {cause}")
        self.stage = stage
        self.cause = cause
