"""Export and share adapters: pure functions over a ``Chat``."""

import base64
import binascii
import json
import re
from typing import Any, Dict
from urllib.parse import urlencode

from pydantic import ValidationError

from .models import DEFAULT_CATEGORY, USER_ROLE, Chat, ChatMessage, generate_id, utcnow
from .registry import DEFAULT_MODEL_ID

SHARE_PARAM = "shared"
_SHARED_FIELDS = {"role", "content", "created_at", "model_used"}


def to_json(chat: Chat) -> str:
    """The full chat as an indented JSON transcript document."""
    return chat.model_dump_json(by_alias=True, indent=2)


def to_markdown(chat: Chat) -> str:
    header = (
        f"# {chat.title}\n\n"
        f"Tool: {chat.category}\n"
        f"Model: {chat.model_id}\n"
        f"Date: {chat.updated_at.strftime('%Y-%m-%d %H:%M')}\n\n"
    )
    body = "\n".join(
        f"**{'User' if m.role == USER_ROLE else 'Assistant'}:**\n\n{m.content}\n"
        for m in chat.messages
    )
    return header + body


def export_filename(chat: Chat, extension: str) -> str:
    """A filesystem-safe download name such as ``Code Writer Chat.md``."""
    stem = re.sub(r'[\\/:*?"<>|]+', "_", chat.title or "").strip() or chat.id
    return f"{stem}.{extension.lstrip('.')}"


def encode_share_payload(chat: Chat) -> str:
    """Encodes the shareable part of a chat as URL-safe base64 JSON."""
    data = {
        "title": chat.title,
        "category": chat.category,
        "modelId": chat.model_id,
        "messages": [
            m.model_dump(mode="json", by_alias=True, include=_SHARED_FIELDS)
            for m in chat.messages
        ],
    }
    raw = json.dumps(data, ensure_ascii=False).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def build_share_url(chat: Chat, base_url: str) -> str:
    return f"{base_url}?{urlencode({SHARE_PARAM: encode_share_payload(chat)})}"


def decode_share_payload(payload: str) -> Chat:
    """Rebuilds a shared chat as a new chat owned by the receiver.

    Missing fields fall back to defaults (category ``General Chat``, title
    ``Shared Chat``, the default model).

    Raises
    ------
    ValueError
        If the payload is not valid base64 JSON describing a chat.
    """
    try:
        padded = payload.strip() + "=" * (-len(payload.strip()) % 4)
        data: Dict[str, Any] = json.loads(
            base64.urlsafe_b64decode(padded.replace("+", "-").replace("/", "_"))
        )
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Invalid share payload: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("Invalid share payload: expected an object")

    chat_id = generate_id("chat")
    raw_messages = data.get("messages")
    try:
        messages = [
            ChatMessage.model_validate(m).model_copy(
                update={"chat_id": chat_id, "pending": False}
            )
            for m in (raw_messages if isinstance(raw_messages, list) else [])
        ]
    except ValidationError as e:
        raise ValueError(f"Invalid share payload: {e}") from e

    return Chat(
        id=chat_id,
        title=data.get("title") or "Shared Chat",
        category=data.get("category") or DEFAULT_CATEGORY,
        model_id=data.get("modelId") or DEFAULT_MODEL_ID,
        messages=messages,
        updated_at=utcnow(),
    )
