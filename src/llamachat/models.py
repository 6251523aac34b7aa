"""
Defines the core Pydantic data models for the application.

These models are the data contract between the conversation store, the
streaming engine, persistence and export. They serialise with camelCase
aliases (``chatsById``, ``modelUsed``) so stored and shared documents keep
the same field names as the browser client.
"""

import secrets
import string
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .registry import DEFAULT_MODEL_ID

# --- Constants ---
USER_ROLE = "user"
ASSISTANT_ROLE = "assistant"
SYSTEM_ROLE = "system"
Role = Literal["user", "assistant", "system"]

CATEGORIES = [
    "Job Search",
    "Resume Compatibility",
    "Write for Me",
    "AI Humanizer",
    "Assignment Helper",
    "Code Writer",
    "General Chat",
    "Brainstorm",
    "Research Assistant",
    "Email Writer",
    "SQL Helper",
]
DEFAULT_CATEGORY = "General Chat"

_ID_ALPHABET = string.ascii_lowercase + string.digits


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_id(prefix: str = "id") -> str:
    """Returns a short random identifier such as ``chat-k3x9q1``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return f"{prefix}-{suffix}"


class _Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Models ---
class ChatMessage(_Record):
    """Represents a single message within a chat."""

    role: Role
    content: str = ""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    chat_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    pending: bool = False
    model_used: Optional[str] = None
    user_id: Optional[str] = None

    def to_history(self) -> Dict[str, str]:
        """The role/content pair sent upstream, stripped of metadata."""
        return {"role": self.role, "content": self.content}


class Chat(_Record):
    """Represents a complete chat session."""

    id: str
    title: str
    category: str = DEFAULT_CATEGORY
    model_id: str = DEFAULT_MODEL_ID
    selected_model_ids: List[str] = Field(default_factory=list)
    pinned: bool = False
    room_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)
    messages: List[ChatMessage] = Field(default_factory=list)

    def target_models(self) -> List[str]:
        """Models a new turn runs against.

        The comparison selection, when non-empty, replaces the primary model.
        """
        if self.selected_model_ids:
            return list(dict.fromkeys(self.selected_model_ids))
        return [self.model_id]


class Snapshot(_Record):
    """The persisted conversation set."""

    chats_by_id: Dict[str, Chat] = Field(default_factory=dict)
    sessions_by_category: Dict[str, List[str]] = Field(default_factory=dict)
    active_category: str = CATEGORIES[0]
    active_chat_id: Optional[str] = None


class Settings(_Record):
    """Persisted user settings."""

    model_id: str = DEFAULT_MODEL_ID


class Participant(_Record):
    """A member of a collaborative room."""

    id: str
    name: str = "Guest"
