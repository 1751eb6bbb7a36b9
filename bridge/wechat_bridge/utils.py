"""Small pure helpers shared by the clients and the orchestrator."""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

DEFAULT_BACKOFF_BASE = 2.0
DEFAULT_BACKOFF_CAP = 30.0

CHATROOM_SUFFIX = "@chatroom"


def backoff_delay(
    attempt: int,
    base: float = DEFAULT_BACKOFF_BASE,
    cap: float = DEFAULT_BACKOFF_CAP,
) -> float:
    """Exponential reconnect delay in seconds: ``min(base * 2**attempt, cap)``."""
    attempt = max(0, attempt)
    # 2**attempt overflows float range long before it matters; clamp early
    if attempt >= 64:
        return cap
    return min(base * (2**attempt), cap)


def build_session_key(agent_id: str, channel: str, sender_id: str) -> str:
    """Derive the gateway session key: ``agent:<agentId>:<channel>:<senderId>``."""
    return f"agent:{agent_id}:{channel}:{sender_id}"


def unwrap_qr_url(url: str) -> str:
    """Return the real login URL when *url* wraps it in a QR-rendering service.

    Such services carry the payload in a ``data`` query parameter.  Anything
    that fails to parse is returned unchanged.
    """
    if not url or "data=" not in url:
        return url
    try:
        values = parse_qs(urlparse(url).query).get("data")
    except ValueError:
        return url
    if values and values[0]:
        return values[0]
    return url


def is_chat_room(user_id: str | None) -> bool:
    return bool(user_id) and user_id.endswith(CHATROOM_SUFFIX)


def truncate(text: str, max_length: int = 50, suffix: str = "...") -> str:
    if not text or len(text) <= max_length:
        return text
    return text[: max_length - len(suffix)] + suffix
