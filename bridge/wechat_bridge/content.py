"""Classification of raw push-channel content."""

from __future__ import annotations

import re

from .models import ImageMetadata, MessageType

# Numeric msg_type values reported by the account service
_MSG_TYPES: dict[int, MessageType] = {
    1: MessageType.TEXT,
    3: MessageType.IMAGE,
    34: MessageType.VOICE,
    47: MessageType.EMOJI,
    49: MessageType.APP,
}

_IMG_TAG = re.compile(r"<img([^>]+)>")


def classify_message_type(msg_type: int | str | None) -> MessageType:
    """Map the service's numeric message type to a :class:`MessageType`.

    A missing type is treated as plain text.
    """
    if msg_type in (None, "", 0):
        return MessageType.TEXT
    try:
        code = int(msg_type)
    except (TypeError, ValueError):
        return MessageType.UNKNOWN
    return _MSG_TYPES.get(code, MessageType.UNKNOWN)


def _int_attr(attrs: str, name: str) -> int:
    value = _attr(attrs, name)
    try:
        return int(value) if value else 0
    except ValueError:
        return 0


def _attr(attrs: str, name: str) -> str | None:
    match = re.search(rf'\b{name}="([^"]+)"', attrs)
    return match.group(1) if match else None


def parse_image_xml(content: str | None) -> ImageMetadata | None:
    """Extract CDN locators, key and sizes from an image message's ``<img>`` tag."""
    if not content or not isinstance(content, str):
        return None
    match = _IMG_TAG.search(content)
    if not match:
        return None
    attrs = match.group(1)
    return ImageMetadata(
        aes_key=_attr(attrs, "aeskey"),
        thumb_url=_attr(attrs, "cdnthumburl"),
        thumb_length=_int_attr(attrs, "cdnthumblength"),
        mid_url=_attr(attrs, "cdnmidimgurl"),
        big_url=_attr(attrs, "cdnbigimgurl"),
        length=_int_attr(attrs, "length"),
        hd_length=_int_attr(attrs, "hdlength"),
        md5=_attr(attrs, "md5"),
    )
