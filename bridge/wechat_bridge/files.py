"""File exchange between the agent and the messaging account.

- Inbound: downloaded images are written under the media directory and
  handed to the agent as ``{"type": "image", "path": ...}`` attachments.
- Outbound: local image paths mentioned in an agent reply are pulled out of
  the text and sent as images instead.
"""

from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

IMAGE_MARKER = "[image]"

_EXT = r"\.(?:jpg|jpeg|png|gif|webp)"
_TAIL = r"[^\s`'\"]+"
# A match must not start inside a longer path
_START = r"(?<![\w/.~-])"

IMAGE_PATH_PATTERNS = [
    re.compile(rf"{_START}/Users/{_TAIL}{_EXT}", re.IGNORECASE),
    re.compile(rf"{_START}/home/{_TAIL}{_EXT}", re.IGNORECASE),
    re.compile(rf"{_START}/tmp/{_TAIL}{_EXT}", re.IGNORECASE),
    re.compile(rf"{_START}~/{_TAIL}{_EXT}", re.IGNORECASE),
]


def _resolve(raw_path: str) -> Path:
    return Path(raw_path.replace("`", "").strip()).expanduser()


def extract_image_paths(text: str) -> tuple[str, list[str]]:
    """Pull existing local image paths out of *text*.

    Returns ``(cleaned_text, paths)``.  Each path that exists on disk is
    replaced by :data:`IMAGE_MARKER`; paths are de-duplicated in order of
    first appearance.  The cleaned text is empty when nothing but markers
    would remain.
    """
    paths: list[str] = []
    matched: list[str] = []
    for pattern in IMAGE_PATH_PATTERNS:
        for match in pattern.finditer(text):
            raw = match.group(0)
            path = _resolve(raw)
            if not path.exists():
                logger.debug("Reply mentions missing image path: %s", raw)
                continue
            matched.append(raw)
            if str(path) not in paths:
                paths.append(str(path))

    if not paths:
        return text, []

    cleaned = text
    # Longest first so a path is never clobbered by a shorter overlapping one
    for raw in sorted(set(matched), key=len, reverse=True):
        cleaned = cleaned.replace(raw, IMAGE_MARKER)
    cleaned = cleaned.replace(f"`{IMAGE_MARKER}`", IMAGE_MARKER).strip()
    if cleaned == IMAGE_MARKER:
        cleaned = ""
    return cleaned, paths


def image_attachment(path: Path) -> dict[str, Any]:
    return {"type": "image", "path": str(path)}


def save_inbound_image(media_dir: Path, message_id: int | str, data: bytes) -> Path:
    """Write a downloaded image to ``<media_dir>/<millis>_<message_id>.jpg``."""
    media_dir.mkdir(parents=True, exist_ok=True)
    path = media_dir / f"{int(time.time() * 1000)}_{message_id}.jpg"
    path.write_bytes(data)
    logger.info("Saved inbound image (%d bytes) to %s", len(data), path)
    return path


def resolve_media_dir(config: dict[str, Any]) -> Path:
    """Resolve the inbound media directory from config.

    Defaults to ~/.openclaw/media/wechat.
    """
    raw = config.get("dir", "~/.openclaw/media/wechat")
    return Path(raw).expanduser()
