"""Pairing code and allow-list store for inbound senders."""

from __future__ import annotations

import json
import logging
import os
import secrets
import string
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any

from .errors import BridgeError
from .models import SenderRecord

logger = logging.getLogger(__name__)


def generate_pairing_code() -> str:
    """Generate a 6-character alphanumeric pairing code."""
    alphabet = string.ascii_uppercase + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(6))


def normalize_code(text: str | None) -> str:
    return (text or "").strip().upper()


class PairingStore:
    """Allow-list of paired senders plus the shared pairing code, backed by JSON.

    The allow-list is append-only: once a sender is paired it stays paired.
    A ``pairing_code`` in config wins over the stored one; when neither
    exists a fresh code is generated and persisted.
    """

    def __init__(self, config: dict[str, Any] | None = None) -> None:
        config = config or {}
        default_path = Path("~/.openclaw/wechat-bridge/pairing.json").expanduser()
        self._db_path = Path(config.get("pairing_db_path", str(default_path))).expanduser()
        self._senders: dict[str, SenderRecord] = {}
        self._pairing_code: str = ""

        self._load()

        configured = normalize_code(config.get("pairing_code"))
        self._code_from_config = bool(configured)
        if configured:
            self._pairing_code = configured
        elif not self._pairing_code:
            self._pairing_code = generate_pairing_code()
            logger.info("Generated new pairing code")
            self._save()

    # ---- persistence ----

    def _load(self) -> None:
        if not self._db_path.exists():
            return
        try:
            data = json.loads(self._db_path.read_text())
        except (json.JSONDecodeError, OSError):
            logger.warning("Unreadable pairing store at %s, starting empty", self._db_path)
            return

        self._pairing_code = normalize_code(data.get("pairing_code"))
        for sender_id, rec in data.get("allowed", {}).items():
            self._senders[sender_id] = SenderRecord(
                sender_id=sender_id,
                label=rec.get("label", ""),
                approved_at=datetime.fromisoformat(rec["approved_at"]),
            )

    def _save(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        allowed = {
            sender_id: {
                "label": rec.label,
                "approved_at": rec.approved_at.isoformat(),
            }
            for sender_id, rec in self._senders.items()
        }
        payload = json.dumps(
            {"pairing_code": self._pairing_code, "allowed": allowed},
            indent=2,
        )

        # Atomic write: temp file + rename
        fd, tmp = tempfile.mkstemp(dir=str(self._db_path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as fh:
                fh.write(payload)
            os.replace(tmp, str(self._db_path))
        except Exception:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    # ---- pairing API ----

    @property
    def pairing_code(self) -> str:
        return self._pairing_code

    def matches_code(self, text: str | None) -> bool:
        """Compare trimmed, upper-cased *text* against the pairing code."""
        return bool(self._pairing_code) and normalize_code(text) == self._pairing_code

    def is_allowed(self, sender_id: str) -> bool:
        return sender_id in self._senders

    def add_allowed(self, sender_id: str, label: str = "") -> bool:
        """Add *sender_id* to the allow-list. Returns False if already present."""
        if sender_id in self._senders:
            return False
        self._senders[sender_id] = SenderRecord(sender_id=sender_id, label=label)
        self._save()
        return True

    def try_pair(self, sender_id: str, text: str | None, label: str = "") -> bool:
        """Authorize *sender_id* if *text* is the pairing code.

        Check and append run back to back with no suspension point, so two
        concurrent attempts from one sender can never double-add.
        """
        if not self.matches_code(text):
            return False
        self.add_allowed(sender_id, label)
        return True

    def get_all_allowed(self) -> list[SenderRecord]:
        return sorted(self._senders.values(), key=lambda rec: rec.approved_at)

    @property
    def code_from_config(self) -> bool:
        """True when ``pairing_code`` in config fixes the code."""
        return self._code_from_config

    def rotate_code(self) -> str:
        """Replace the pairing code with a fresh one. Existing pairings stay.

        Raises :class:`BridgeError` when the code is fixed by config.
        """
        if self._code_from_config:
            raise BridgeError("pairing code is set by auth.pairing_code in the config file")
        self._pairing_code = generate_pairing_code()
        self._save()
        return self._pairing_code
