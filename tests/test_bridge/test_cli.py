"""Tests for the command-line interface."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from conftest import FakeAccountService, account_config, serve

from wechat_bridge.cli import _build_parser, _ensure_auth_key, _run_bridge, main
from wechat_bridge.errors import BridgeError

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_config(tmp_path: Path, **auth) -> Path:
    path = tmp_path / "config.yaml"
    config = {
        "auth": {"pairing_db_path": str(tmp_path / "pairing.json"), **auth},
    }
    path.write_text(yaml.safe_dump(config))
    return path


def _run(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as exc_info:
        main(argv)
    return exc_info.value.code


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def test_parser_defaults():
    args = _build_parser().parse_args([])
    assert args.command is None
    assert args.log_level == "INFO"
    assert args.config.endswith("config.yaml")


def test_parser_pairing_approve():
    args = _build_parser().parse_args(
        ["--config", "/tmp/c.yaml", "pairing", "approve", "wxid_alice", "--label", "Alice"]
    )
    assert args.config == "/tmp/c.yaml"
    assert args.command == "pairing"
    assert args.pairing_command == "approve"
    assert args.sender_id == "wxid_alice"
    assert args.label == "Alice"


def test_parser_pairing_code_rotate():
    args = _build_parser().parse_args(["pairing", "code", "--rotate"])
    assert args.pairing_command == "code"
    assert args.rotate is True


# ---------------------------------------------------------------------------
# pairing subcommands
# ---------------------------------------------------------------------------


def test_pairing_code_prints_configured_code(tmp_path: Path, capsys):
    config = _write_config(tmp_path, pairing_code="xyz789")
    assert _run(["--config", str(config), "pairing", "code"]) == 0
    assert capsys.readouterr().out.strip() == "XYZ789"


def test_pairing_code_rotate(tmp_path: Path, capsys):
    config = _write_config(tmp_path)
    assert _run(["--config", str(config), "pairing", "code"]) == 0
    first = capsys.readouterr().out.strip()
    assert _run(["--config", str(config), "pairing", "code", "--rotate"]) == 0
    rotated = capsys.readouterr().out.strip()
    assert _run(["--config", str(config), "pairing", "code"]) == 0
    assert capsys.readouterr().out.strip() == rotated
    assert len(first) == len(rotated) == 6


def test_pairing_code_rotate_refused_when_configured(tmp_path: Path, capsys):
    """A configured code wins on every load, so rotating it is refused."""
    config = _write_config(tmp_path, pairing_code="XYZ789")
    assert _run(["--config", str(config), "pairing", "code", "--rotate"]) == 1
    captured = capsys.readouterr()
    assert captured.out == ""
    assert "auth.pairing_code" in captured.err

    assert _run(["--config", str(config), "pairing", "code"]) == 0
    assert capsys.readouterr().out.strip() == "XYZ789"


def test_pairing_approve_and_list(tmp_path: Path, capsys):
    config = _write_config(tmp_path)
    assert _run(["--config", str(config), "pairing", "approve", "wxid_alice", "--label", "Alice"]) == 0
    assert "Approved: wxid_alice" in capsys.readouterr().out

    assert _run(["--config", str(config), "pairing", "approve", "wxid_alice"]) == 0
    assert "Already approved: wxid_alice" in capsys.readouterr().out

    assert _run(["--config", str(config), "pairing", "list"]) == 0
    out = capsys.readouterr().out
    assert "wxid_alice" in out
    assert "label='Alice'" in out


def test_pairing_without_subcommand(tmp_path: Path, capsys):
    config = _write_config(tmp_path)
    assert _run(["--config", str(config), "pairing"]) == 1
    assert "Usage" in capsys.readouterr().err


# ---------------------------------------------------------------------------
# Auth key bootstrap
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_ensure_auth_key_generates_and_persists(
    tmp_path: Path, account_service: FakeAccountService
):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("gateway:\n  url: ws://127.0.0.1:1\n")
    async with serve(account_service.app) as server:
        config = {"account": account_config(server, auth_key="", admin_key="admin")}
        await _ensure_auth_key(config, str(config_path))

    assert config["account"]["auth_key"] == "generated-key"
    saved = yaml.safe_load(config_path.read_text())
    assert saved["account"]["auth_key"] == "generated-key"
    assert saved["gateway"]["url"] == "ws://127.0.0.1:1"


@pytest.mark.asyncio
async def test_ensure_auth_key_keeps_existing(tmp_path: Path):
    config = {"account": {"auth_key": "already"}}
    await _ensure_auth_key(config, str(tmp_path / "config.yaml"))
    assert config["account"]["auth_key"] == "already"
    assert not (tmp_path / "config.yaml").exists()


@pytest.mark.asyncio
async def test_ensure_auth_key_without_admin_key(tmp_path: Path):
    with pytest.raises(BridgeError):
        await _ensure_auth_key({}, str(tmp_path / "config.yaml"))


@pytest.mark.asyncio
async def test_run_bridge_refuses_without_credentials(tmp_path: Path):
    assert await _run_bridge({}, str(tmp_path / "config.yaml")) == 1
