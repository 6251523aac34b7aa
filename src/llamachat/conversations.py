"""The conversation store: the single owned aggregate of all chats.

Every mutation goes through a named operation. Operations never modify a
``Chat`` in place; they build a fresh copy and swap it into the map, so a
reader holding an older ``Chat`` keeps a consistent view. Listeners (the
persistence flush, UIs) are notified after every mutation.

The store also owns the message reducer primitives the streaming engine
drives. Each in-flight stream holds a :class:`StreamHandle` naming the
placeholder it fills, and writes are only accepted while that placeholder is
still pending, so a superseded stream can never overwrite newer state.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, Iterable, List, Optional

from .models import (
    ASSISTANT_ROLE,
    CATEGORIES,
    Chat,
    ChatMessage,
    Role,
    Settings,
    Snapshot,
    generate_id,
    utcnow,
)
from .registry import DEFAULT_MODEL_ID

logger = logging.getLogger(__name__)

Listener = Callable[["ConversationStore"], None]


@dataclass(frozen=True)
class StreamHandle:
    """Reference from one in-flight stream to the placeholder it fills."""

    chat_id: str
    model_id: str
    message_id: str


class ConversationStore:
    """All chats, indexed by id and by category, plus the active pointers."""

    def __init__(
        self, categories: Optional[List[str]] = None, model_id: str = DEFAULT_MODEL_ID
    ):
        self.categories: List[str] = list(categories or CATEGORIES)
        self.model_id = model_id
        self._chats: Dict[str, Chat] = {}
        self._sessions: Dict[str, List[str]] = {c: [] for c in self.categories}
        self._active_category: str = self.categories[0]
        self._active_chat_id: Optional[str] = None
        self._listeners: List[Listener] = []

    # --- Observation ---

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Registers ``listener`` and returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _commit(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Conversation listener %r failed", listener)

    # --- Queries ---

    @property
    def chats_by_id(self) -> Dict[str, Chat]:
        return dict(self._chats)

    @property
    def sessions_by_category(self) -> Dict[str, List[str]]:
        return {category: list(ids) for category, ids in self._sessions.items()}

    @property
    def active_category(self) -> str:
        return self._active_category

    @property
    def active_chat_id(self) -> Optional[str]:
        return self._active_chat_id

    @property
    def active_chat(self) -> Optional[Chat]:
        return self._chats.get(self._active_chat_id) if self._active_chat_id else None

    def get_chat(self, chat_id: Optional[str]) -> Optional[Chat]:
        return self._chats.get(chat_id) if chat_id else None

    def chats_in_category(self, category: str) -> List[Chat]:
        return [self._chats[i] for i in self._sessions.get(category, [])]

    def list_chats(
        self,
        search: str = "",
        category: Optional[str] = None,
        model_id: Optional[str] = None,
    ) -> List[Chat]:
        """Filters the history and orders it pinned first, then most recent."""
        needle = search.strip().lower()

        def matches(chat: Chat) -> bool:
            if category and chat.category != category:
                return False
            if model_id and chat.model_id != model_id:
                return False
            if not needle:
                return True
            return needle in chat.title.lower() or any(
                needle in m.content.lower() for m in chat.messages
            )

        chats = [c for c in self._chats.values() if matches(c)]
        chats.sort(key=lambda c: c.updated_at, reverse=True)
        chats.sort(key=lambda c: not c.pinned)
        return chats

    def chat_for_room(self, room_id: str) -> Optional[Chat]:
        return next((c for c in self._chats.values() if c.room_id == room_id), None)

    def snapshot(self) -> Snapshot:
        return Snapshot(
            chats_by_id=dict(self._chats),
            sessions_by_category=self.sessions_by_category,
            active_category=self._active_category,
            active_chat_id=self._active_chat_id,
        )

    def settings(self) -> Settings:
        return Settings(model_id=self.model_id)

    # --- Lifecycle ---

    def create_chat(
        self, category: Optional[str] = None, model_id: Optional[str] = None
    ) -> Chat:
        category = category or self._active_category
        chat = Chat(
            id=generate_id("chat"),
            title=f"{category} Chat",
            category=category,
            model_id=model_id or self.model_id,
        )
        self._insert(chat)
        self._commit()
        return chat

    def open_category(self, category: str) -> Chat:
        """Activates ``category`` and its most recent chat, creating one if needed."""
        self._ensure_category(category)
        self._active_category = category
        ids = self._sessions[category]
        if not ids:
            return self.create_chat(category)
        self._active_chat_id = ids[0]
        self._commit()
        return self._chats[ids[0]]

    def set_active_chat(self, chat_id: Optional[str]) -> None:
        chat = self.get_chat(chat_id)
        if chat_id and chat is None:
            return
        self._active_chat_id = chat_id
        if chat is not None:
            self._active_category = chat.category
        self._commit()

    def delete_chat(self, chat_id: str) -> bool:
        if self._chats.pop(chat_id, None) is None:
            return False
        for category, ids in self._sessions.items():
            if chat_id in ids:
                self._sessions[category] = [i for i in ids if i != chat_id]
        if self._active_chat_id == chat_id:
            self._active_chat_id = None
        self._commit()
        return True

    def import_chat(self, chat: Chat) -> Chat:
        """Adds an externally built chat (e.g. a shared one) and activates it."""
        if chat.id in self._chats:
            chat = chat.model_copy(update={"id": generate_id("chat")})
        self._insert(chat)
        self._commit()
        return chat

    def restore(self, snapshot: Snapshot) -> None:
        """Replaces the whole state with a persisted snapshot.

        Category lists are rebuilt so that every chat appears exactly once, in
        its own category. Pending flags and room bindings are cleared because
        no stream or socket survives a reload.
        """
        chats: Dict[str, Chat] = {}
        for chat in snapshot.chats_by_id.values():
            messages = [
                m.model_copy(update={"pending": False}) if m.pending else m
                for m in chat.messages
            ]
            chats[chat.id] = chat.model_copy(
                update={"messages": messages, "room_id": None}
            )

        sessions: Dict[str, List[str]] = {c: [] for c in self.categories}
        placed = set()
        for category, ids in snapshot.sessions_by_category.items():
            for chat_id in ids:
                chat = chats.get(chat_id)
                if chat is None or chat_id in placed or chat.category != category:
                    continue
                sessions.setdefault(category, []).append(chat_id)
                placed.add(chat_id)
        orphans = [c for c in chats.values() if c.id not in placed]
        for chat in sorted(orphans, key=lambda c: c.updated_at, reverse=True):
            sessions.setdefault(chat.category, []).append(chat.id)

        self._chats = chats
        self._sessions = sessions
        for category in sessions:
            if category not in self.categories:
                self.categories.append(category)
        self._active_category = (
            snapshot.active_category
            if snapshot.active_category in sessions
            else self.categories[0]
        )
        self._active_chat_id = (
            snapshot.active_chat_id if snapshot.active_chat_id in chats else None
        )
        self._commit()

    # --- Chat settings ---

    def rename_chat(self, chat_id: str, title: str) -> Optional[Chat]:
        return self._update(chat_id, title=title)

    def pin_chat(self, chat_id: str, pinned: bool = True) -> Optional[Chat]:
        return self._update(chat_id, pinned=pinned)

    def choose_model(self, chat_id: str, model_id: str) -> Optional[Chat]:
        return self._update(chat_id, model_id=model_id)

    def toggle_compare_model(self, chat_id: str, model_id: str) -> Optional[Chat]:
        chat = self.get_chat(chat_id)
        if chat is None:
            return None
        current = list(chat.selected_model_ids)
        if model_id in current:
            current = [m for m in current if m != model_id]
        else:
            current.append(model_id)
        return self._update(chat_id, selected_model_ids=current)

    def set_default_model(self, model_id: str) -> None:
        self.model_id = model_id
        self._commit()

    def bind_room(self, chat_id: str, room_id: Optional[str]) -> Optional[Chat]:
        return self._update(chat_id, room_id=room_id)

    # --- Message reducer ---

    def append_message(
        self,
        chat_id: str,
        role: Role,
        content: str,
        model_used: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Optional[ChatMessage]:
        chat = self.get_chat(chat_id)
        if chat is None:
            return None
        message = ChatMessage(
            role=role,
            content=content,
            chat_id=chat_id,
            model_used=model_used,
            user_id=user_id,
        )
        self._put(chat, messages=chat.messages + [message])
        self._commit()
        return message

    def add_placeholders(
        self, chat_id: str, model_ids: List[str]
    ) -> List[StreamHandle]:
        """Appends one pending assistant message per model, in target order.

        Creation times are offset by a millisecond per model so placeholders
        created together keep a stable relative order.
        """
        chat = self.get_chat(chat_id)
        if chat is None:
            return []
        messages = self._settled(chat.messages, model_ids)
        now = utcnow()
        handles = []
        for offset, model_id in enumerate(model_ids):
            placeholder = self._placeholder(
                chat_id, model_id, now + timedelta(milliseconds=offset)
            )
            messages.append(placeholder)
            handles.append(StreamHandle(chat_id, model_id, placeholder.id))
        self._put(chat, messages=messages)
        self._commit()
        return handles

    def reset_for_regeneration(
        self, chat_id: str, user_index: int, model_ids: List[str]
    ) -> List[StreamHandle]:
        """Prepares one placeholder per model for re-running a user turn.

        The newest assistant message of each target model after
        ``user_index`` is reset in place, keeping its position. Target models
        without such a slot get a new placeholder at the end.
        """
        chat = self.get_chat(chat_id)
        if chat is None:
            return []
        messages = list(chat.messages)
        targets = set(model_ids)
        slots: Dict[str, str] = {}
        now = utcnow()
        for index in range(len(messages) - 1, user_index, -1):
            message = messages[index]
            if message.role != ASSISTANT_ROLE:
                continue
            model_id = message.model_used or chat.model_id
            if model_id not in targets or model_id in slots:
                continue
            messages[index] = message.model_copy(
                update={
                    "content": "",
                    "pending": True,
                    "created_at": now,
                    "model_used": model_id,
                }
            )
            slots[model_id] = message.id

        reused = set(slots.values())
        messages = [
            m.model_copy(update={"pending": False})
            if m.pending and m.model_used in targets and m.id not in reused
            else m
            for m in messages
        ]

        handles = []
        for offset, model_id in enumerate(model_ids):
            if model_id not in slots:
                placeholder = self._placeholder(
                    chat_id, model_id, now + timedelta(milliseconds=offset)
                )
                messages.append(placeholder)
                slots[model_id] = placeholder.id
            handles.append(StreamHandle(chat_id, model_id, slots[model_id]))
        self._put(chat, messages=messages)
        self._commit()
        return handles

    def update_placeholder(
        self, handle: StreamHandle, content: str, final: bool = False
    ) -> bool:
        """Rewrites the handle's placeholder; ``final`` also clears ``pending``.

        Returns False, changing nothing, when the placeholder is gone or no
        longer pending.
        """
        changes = {"content": content}
        if final:
            changes["pending"] = False
        return self._rewrite_pending(handle, changes)

    def settle_placeholder(self, handle: StreamHandle) -> bool:
        """Clears ``pending`` on the handle's placeholder, keeping its content."""
        return self._rewrite_pending(handle, {"pending": False})

    def fail_placeholder(
        self, handle: StreamHandle, error_text: str
    ) -> Optional[ChatMessage]:
        """Surfaces a stream failure in the transcript.

        The pending placeholder is rewritten to ``error_text``; if it is no
        longer pending, a terminal error message is appended instead.
        """
        chat = self.get_chat(handle.chat_id)
        if chat is None:
            logger.warning(
                "Dropping error for deleted chat %s: %s", handle.chat_id, error_text
            )
            return None
        messages = list(chat.messages)
        index = self._index_of(messages, handle.message_id)
        if index is not None and messages[index].pending:
            failed = messages[index].model_copy(
                update={"content": error_text, "pending": False, "created_at": utcnow()}
            )
            messages[index] = failed
        else:
            failed = ChatMessage(
                role=ASSISTANT_ROLE,
                content=error_text,
                chat_id=handle.chat_id,
                model_used=handle.model_id,
            )
            messages.append(failed)
        self._put(chat, messages=messages)
        self._commit()
        return failed

    # --- Internals ---

    def _ensure_category(self, category: str) -> None:
        if category not in self._sessions:
            self._sessions[category] = []
        if category not in self.categories:
            self.categories.append(category)

    def _insert(self, chat: Chat) -> None:
        self._ensure_category(chat.category)
        self._chats[chat.id] = chat
        self._sessions[chat.category] = [chat.id] + self._sessions[chat.category]
        self._active_category = chat.category
        self._active_chat_id = chat.id

    def _put(self, chat: Chat, **changes) -> Chat:
        changes.setdefault("updated_at", utcnow())
        updated = chat.model_copy(update=changes)
        self._chats[chat.id] = updated
        return updated

    def _update(self, chat_id: str, **changes) -> Optional[Chat]:
        chat = self.get_chat(chat_id)
        if chat is None:
            return None
        updated = self._put(chat, **changes)
        self._commit()
        return updated

    def _rewrite_pending(self, handle: StreamHandle, changes: dict) -> bool:
        chat = self.get_chat(handle.chat_id)
        if chat is None:
            return False
        index = self._index_of(chat.messages, handle.message_id)
        if index is None or not chat.messages[index].pending:
            return False
        messages = list(chat.messages)
        messages[index] = messages[index].model_copy(update=changes)
        self._put(chat, messages=messages)
        self._commit()
        return True

    @staticmethod
    def _index_of(messages: List[ChatMessage], message_id: str) -> Optional[int]:
        for index in range(len(messages) - 1, -1, -1):
            if messages[index].id == message_id:
                return index
        return None

    @staticmethod
    def _placeholder(chat_id: str, model_id: str, created_at) -> ChatMessage:
        return ChatMessage(
            role=ASSISTANT_ROLE,
            content="",
            chat_id=chat_id,
            created_at=created_at,
            pending=True,
            model_used=model_id,
        )

    @staticmethod
    def _settled(
        messages: List[ChatMessage], model_ids: Iterable[str]
    ) -> List[ChatMessage]:
        models = set(model_ids)
        return [
            m.model_copy(update={"pending": False})
            if m.pending and m.role == ASSISTANT_ROLE and m.model_used in models
            else m
            for m in messages
        ]
