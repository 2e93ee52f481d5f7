"""Inbound Missive webhook payload parsing.

The listener accepts either a single JSON object or a one-element array
(automation tools such as n8n wrap items in arrays). The message id may be
nested under any of the shapes in ``_MESSAGE_ID_PATHS``; the first path that
yields a non-empty value wins.
"""

from __future__ import annotations

from typing import Any

from src.errors import InvalidInboundEventError
from src.webhook.models import InboundEvent

_MESSAGE_ID_PATHS: tuple[tuple[str, ...], ...] = (
    ("body", "latest_message", "id"),
    ("latest_message", "id"),
    ("body", "message", "id"),
    ("message", "id"),
    ("messageId",),
    ("message_id",),
)

_CONVERSATION_ID_PATHS: tuple[tuple[str, ...], ...] = (
    ("body", "conversation", "id"),
    ("conversation", "id"),
    ("conversationId",),
    ("conversation_id",),
)


def _dig(data: Any, path: tuple[str, ...]) -> Any:
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _first_str(data: dict[str, Any], paths: tuple[tuple[str, ...], ...]) -> str | None:
    for path in paths:
        value = _dig(data, path)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def parse_inbound_event(payload: Any) -> InboundEvent:
    """Extract message id, conversation id and webhook override from a payload.

    Raises:
        InvalidInboundEventError: payload is not an object (or array of one)
            or carries no message id.
    """
    data = payload[0] if isinstance(payload, list) and payload else payload
    if not isinstance(data, dict) or not data:
        raise InvalidInboundEventError(
            "Invalid request format",
            "Request must contain a JSON object with Missive webhook data",
        )

    message_id = _first_str(data, _MESSAGE_ID_PATHS)
    if not message_id:
        raise InvalidInboundEventError(
            "Missing message ID",
            "Could not find latest_message.id in request body",
        )

    webhook_url = data.get("webhookUrl") or data.get("webhook_url")
    execution_mode = data.get("executionMode")
    return InboundEvent(
        message_id=message_id,
        conversation_id=_first_str(data, _CONVERSATION_ID_PATHS),
        webhook_url=str(webhook_url) if webhook_url else None,
        execution_mode=str(execution_mode) if execution_mode else None,
    )
