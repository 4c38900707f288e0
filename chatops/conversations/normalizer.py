"""Map gateway message payload variants onto :class:`NormalizedMessage`.

Each payload variant has exactly one handler in ``_HANDLERS``. Reactions and
protocol messages are classified but never normalized: the pipeline routes
them to the status reconciler instead.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from enum import Enum
from typing import Any

from .models import NormalizedMessage

UNSUPPORTED_PLACEHOLDER = "[Unsupported message]"
GENERIC_PLACEHOLDER = "[Message]"


class PayloadVariant(str, Enum):
    """Payload kinds, in the order they are checked."""

    TEXT = "conversation"
    EXTENDED_TEXT = "extendedTextMessage"
    IMAGE = "imageMessage"
    VIDEO = "videoMessage"
    AUDIO = "audioMessage"
    DOCUMENT = "documentMessage"
    STICKER = "stickerMessage"
    LOCATION = "locationMessage"
    LIVE_LOCATION = "liveLocationMessage"
    CONTACT = "contactMessage"
    CONTACTS = "contactsArrayMessage"
    POLL = "pollCreationMessage"
    POLL_V3 = "pollCreationMessageV3"
    POLL_UPDATE = "pollUpdateMessage"
    BUTTONS = "buttonsMessage"
    BUTTONS_RESPONSE = "buttonsResponseMessage"
    LIST = "listMessage"
    LIST_RESPONSE = "listResponseMessage"
    TEMPLATE = "templateMessage"
    TEMPLATE_REPLY = "templateButtonReplyMessage"
    PROTOCOL = "protocolMessage"
    REACTION = "reactionMessage"
    UNSUPPORTED = "unsupported"


#: Variants handled by the status reconciler rather than stored as messages.
RECONCILER_VARIANTS = frozenset({PayloadVariant.PROTOCOL, PayloadVariant.REACTION})

_MEDIA_VARIANTS = (
    PayloadVariant.IMAGE,
    PayloadVariant.AUDIO,
    PayloadVariant.VIDEO,
    PayloadVariant.DOCUMENT,
    PayloadVariant.STICKER,
)

_QUOTABLE_VARIANTS = (
    PayloadVariant.EXTENDED_TEXT,
    PayloadVariant.IMAGE,
    PayloadVariant.VIDEO,
    PayloadVariant.AUDIO,
    PayloadVariant.DOCUMENT,
    PayloadVariant.STICKER,
)


def classify(message: Any) -> PayloadVariant:
    """Return the declared variant of ``message``."""

    if not isinstance(message, Mapping):
        return PayloadVariant.UNSUPPORTED
    for variant in PayloadVariant:
        if variant is PayloadVariant.UNSUPPORTED:
            continue
        if variant is PayloadVariant.TEXT:
            if message.get(variant.value):
                return variant
            continue
        if message.get(variant.value) is not None:
            return variant
    return PayloadVariant.UNSUPPORTED


def _part(message: Mapping[str, Any], variant: PayloadVariant) -> dict[str, Any]:
    value = message.get(variant.value)
    return value if isinstance(value, dict) else {}


# ---------------------------------------------------------------------------
# Handlers: (message, variant) -> (content, type, default mimetype)
# ---------------------------------------------------------------------------

_Handler = Callable[[Mapping[str, Any], PayloadVariant], tuple[str, str, str | None]]


def _text(message, variant):
    return str(message.get(variant.value)), "text", None


def _extended_text(message, variant):
    return _part(message, variant).get("text") or GENERIC_PLACEHOLDER, "text", None


def _captioned(placeholder: str, message_type: str, mimetype: str) -> _Handler:
    def handler(message, variant):
        return _part(message, variant).get("caption") or placeholder, message_type, mimetype

    return handler


def _fixed(placeholder: str, message_type: str, mimetype: str | None = None) -> _Handler:
    def handler(message, variant):
        return placeholder, message_type, mimetype

    return handler


def _document(message, variant):
    part = _part(message, variant)
    return part.get("fileName") or "[Document]", "document", "application/octet-stream"


def _poll(message, variant):
    return _part(message, variant).get("name") or "[Poll]", "poll", None


def _buttons(message, variant):
    part = _part(message, variant)
    value = part.get("contentText") or part.get("selectedButtonId") or part.get("selectedDisplayText")
    return value or "[Buttons]", "buttons", None


def _list(message, variant):
    part = _part(message, variant)
    value = part.get("title") or (part.get("singleSelectReply") or {}).get("selectedRowId")
    return value or "[List]", "list", None


def _template(message, variant):
    part = _part(message, variant)
    value = (part.get("hydratedTemplate") or {}).get("hydratedContentText") or part.get(
        "selectedDisplayText"
    )
    return value or "[Template]", "template", None


def _routed(message, variant):
    raise ValueError(f"{variant.value} payloads are handled by the status reconciler")


def _unsupported(message, variant):
    if isinstance(message, str):
        if looks_structured(message):
            return UNSUPPORTED_PLACEHOLDER, "unsupported", None
        return message.strip() or GENERIC_PLACEHOLDER, "text", None
    if isinstance(message, Mapping) and message:
        return UNSUPPORTED_PLACEHOLDER, "unsupported", None
    return GENERIC_PLACEHOLDER, "unknown", None


_HANDLERS: dict[PayloadVariant, _Handler] = {
    PayloadVariant.TEXT: _text,
    PayloadVariant.EXTENDED_TEXT: _extended_text,
    PayloadVariant.IMAGE: _captioned("[Image]", "image", "image/jpeg"),
    PayloadVariant.VIDEO: _captioned("[Video]", "video", "video/mp4"),
    PayloadVariant.AUDIO: _fixed("[Audio]", "audio", "audio/ogg"),
    PayloadVariant.DOCUMENT: _document,
    PayloadVariant.STICKER: _fixed("[Sticker]", "sticker", "image/webp"),
    PayloadVariant.LOCATION: _fixed("[Location]", "location"),
    PayloadVariant.LIVE_LOCATION: _fixed("[Live Location]", "liveLocation"),
    PayloadVariant.CONTACT: _fixed("[Contact]", "contact"),
    PayloadVariant.CONTACTS: _fixed("[Contacts]", "contacts"),
    PayloadVariant.POLL: _poll,
    PayloadVariant.POLL_V3: _poll,
    PayloadVariant.POLL_UPDATE: _fixed("[Poll Update]", "pollUpdate"),
    PayloadVariant.BUTTONS: _buttons,
    PayloadVariant.BUTTONS_RESPONSE: _buttons,
    PayloadVariant.LIST: _list,
    PayloadVariant.LIST_RESPONSE: _list,
    PayloadVariant.TEMPLATE: _template,
    PayloadVariant.TEMPLATE_REPLY: _template,
    PayloadVariant.PROTOCOL: _routed,
    PayloadVariant.REACTION: _routed,
    PayloadVariant.UNSUPPORTED: _unsupported,
}

_unhandled = set(PayloadVariant) - set(_HANDLERS)
if _unhandled:  # pragma: no cover - guarded at import time
    raise RuntimeError(f"Payload variants without a handler: {sorted(_unhandled)}")


def looks_structured(value: str) -> bool:
    """Return ``True`` when ``value`` is a serialized JSON object or array."""

    stripped = value.strip()
    if not stripped or stripped[0] not in "{[":
        return False
    try:
        return isinstance(json.loads(stripped), (dict, list))
    except ValueError:
        return False


def extract_media_url(message: Any, data: Mapping[str, Any] | None = None) -> str | None:
    if not isinstance(message, Mapping):
        return None
    if message.get("mediaUrl"):
        return message["mediaUrl"]
    if data and data.get("mediaUrl"):
        return data["mediaUrl"]
    for variant in _MEDIA_VARIANTS:
        url = _part(message, variant).get("url")
        if url:
            return url
    return None


def extract_quoted_id(message: Any) -> str | None:
    if not isinstance(message, Mapping):
        return None
    for variant in _QUOTABLE_VARIANTS:
        context = _part(message, variant).get("contextInfo") or {}
        if context.get("stanzaId"):
            return context["stanzaId"]
    return None


def normalize(message: Any, data: Mapping[str, Any] | None = None) -> NormalizedMessage:
    """Normalize a stored-message payload; never returns empty content."""

    variant = classify(message)
    if variant in RECONCILER_VARIANTS:
        raise ValueError(f"{variant.value} payloads are not stored as messages")
    content, message_type, default_mime = _HANDLERS[variant](message, variant)
    mimetype = None
    file_name = None
    if variant in _MEDIA_VARIANTS:
        part = _part(message, variant)
        mimetype = part.get("mimetype") or default_mime
        file_name = part.get("fileName") if variant is PayloadVariant.DOCUMENT else None
    return NormalizedMessage(
        content=content or GENERIC_PLACEHOLDER,
        message_type=message_type,
        media_url=extract_media_url(message, data),
        media_mimetype=mimetype,
        quoted_message_id=extract_quoted_id(message),
        file_name=file_name,
    )


# ---------------------------------------------------------------------------
# Reconciler-bound variants
# ---------------------------------------------------------------------------

PROTOCOL_REVOKE = "revoke"
PROTOCOL_EDIT = "edit"
PROTOCOL_OTHER = "other"


def protocol_kind(message: Mapping[str, Any]) -> str:
    protocol = _part(message, PayloadVariant.PROTOCOL)
    kind = protocol.get("type")
    if kind in (0, "0", "REVOKE"):
        return PROTOCOL_REVOKE
    if kind in (5, "5", "MESSAGE_EDIT"):
        return PROTOCOL_EDIT
    return PROTOCOL_OTHER


def protocol_target_id(message: Mapping[str, Any]) -> str | None:
    return (_part(message, PayloadVariant.PROTOCOL).get("key") or {}).get("id")


def reaction_parts(message: Mapping[str, Any]) -> tuple[str, str | None]:
    """Return ``(emoji, target message id)``; empty emoji means removal."""

    reaction = _part(message, PayloadVariant.REACTION)
    return reaction.get("text") or "", (reaction.get("key") or {}).get("id")
