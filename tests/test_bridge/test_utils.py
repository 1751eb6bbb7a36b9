"""Tests for backoff, session keys and other small helpers."""

from __future__ import annotations

from wechat_bridge.utils import (
    backoff_delay,
    build_session_key,
    is_chat_room,
    truncate,
    unwrap_qr_url,
)


def test_backoff_starts_at_base():
    assert backoff_delay(0) == 2.0


def test_backoff_doubles_until_cap():
    delays = [backoff_delay(n) for n in range(6)]
    assert delays == [2.0, 4.0, 8.0, 16.0, 30.0, 30.0]


def test_backoff_is_monotonic_and_capped():
    previous = 0.0
    for attempt in range(200):
        delay = backoff_delay(attempt)
        assert delay >= previous
        assert delay <= 30.0
        previous = delay
    assert backoff_delay(1000) == 30.0


def test_backoff_custom_base_and_cap():
    assert backoff_delay(0, base=0.5, cap=3.0) == 0.5
    assert backoff_delay(3, base=0.5, cap=3.0) == 3.0


def test_backoff_negative_attempt_treated_as_zero():
    assert backoff_delay(-3) == 2.0


def test_session_key_is_deterministic():
    key = build_session_key("main", "wechat", "wxid_abc")
    assert key == "agent:main:wechat:wxid_abc"
    assert key == build_session_key("main", "wechat", "wxid_abc")


def test_unwrap_qr_url_extracts_data_param():
    wrapped = "https://api.qrserver.com/v1/create?size=200&data=https%3A%2F%2Flogin.example%2Fq%2F42"
    assert unwrap_qr_url(wrapped) == "https://login.example/q/42"


def test_unwrap_qr_url_leaves_plain_url():
    assert unwrap_qr_url("https://login.example/q/42") == "https://login.example/q/42"
    assert unwrap_qr_url("") == ""


def test_unwrap_qr_url_empty_data_param():
    url = "https://qr.example/render?data="
    assert unwrap_qr_url(url) == url


def test_is_chat_room():
    assert is_chat_room("12345@chatroom")
    assert not is_chat_room("wxid_abc")
    assert not is_chat_room(None)


def test_truncate():
    assert truncate("short") == "short"
    assert truncate("x" * 60, 10) == "xxxxxxx..."
