"""Transport clients: the messaging account service and the agent gateway."""

from .account import AccountClient
from .base import ReconnectingClient
from .gateway import GatewayClient

__all__ = [
    "AccountClient",
    "GatewayClient",
    "ReconnectingClient",
]
