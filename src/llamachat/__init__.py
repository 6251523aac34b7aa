"""
The main entrypoint for the llamachat package.

This module contains the LlamaChat class, the facade that owns the
conversation store and wires the pluggable pillars (LLM provider, persistence
store, auth, engine and room relay) around it.
"""

from typing import Optional

from . import auth, engine, llm, relay, store
from .conversations import ConversationStore
from .export import build_share_url, decode_share_payload
from .models import Chat

__version__ = "0.1.0"


class LlamaChat:
    """
    The central orchestrator of a chat client session.

    All chat state lives in one :class:`~llamachat.conversations.ConversationStore`
    owned by this object; every mutation of it is flushed to the persistence
    store. The constructor uses concrete default implementations, so the
    common case needs no arguments.
    """

    def __init__(
        self,
        llm: Optional[llm.LLM] = None,
        store: Optional[store.Store] = None,
        auth: Optional[auth.Auth] = None,
        engine: Optional[engine.Engine] = None,
        relay: Optional[relay.RoomBridge] = None,
        conversations: Optional[ConversationStore] = None,
    ) -> None:
        """
        Initialize the app with configurable pillars.

        Parameters
        ----------
        llm : llm.LLM, optional
            Provider the engine streams from. Defaults to llm.Relay(), which
            talks to the relay server at ``config.RELAY_URL``.
        store : store.Store, optional
            Durable storage for the conversation set and settings.
            Defaults to store.InMemory() for session-only storage.
        auth : auth.Auth, optional
            Identity of the current user. Defaults to auth.SingleUser().
        engine : engine.Engine, optional
            Dispatcher for user turns. Defaults to engine.Streaming().
        relay : relay.RoomBridge, optional
            Bridge for collaborative rooms. Without it, every chat streams
            directly.
        conversations : ConversationStore, optional
            Pre-built conversation store, mostly useful in tests.

        Notes
        -----
        The persisted snapshot and settings are loaded during construction.
        Corrupted or missing records leave the store empty.

        Examples
        --------
        >>> app = LlamaChat()
        >>> chat = app.conversations.open_category("Code Writer")

        Custom configuration:

        >>> app = LlamaChat(
        ...     llm=llm.Relay(base_url="http://localhost:3000"),
        ...     store=store.File("./chats"),
        ... )
        """
        llm_module = globals()["llm"]
        store_module = globals()["store"]
        auth_module = globals()["auth"]
        engine_module = globals()["engine"]

        self.llm = llm if llm is not None else llm_module.Relay()
        self.store = store if store is not None else store_module.InMemory()
        self.auth = auth if auth is not None else auth_module.SingleUser()
        self.conversations = (
            conversations if conversations is not None else ConversationStore()
        )

        self.engine = engine if engine is not None else engine_module.Streaming()
        self.engine.app = self
        self.relay = relay
        if self.relay is not None:
            self.relay.app = self

        self._saved_settings = None
        self._load()
        self.conversations.subscribe(self._flush)

    def _load(self) -> None:
        snapshot = self.store.load_chats()
        if snapshot is not None:
            self.conversations.restore(snapshot)
        settings = self.store.load_settings()
        if settings is not None:
            self.conversations.model_id = settings.model_id
            self._saved_settings = settings

    def _flush(self, conversations: ConversationStore) -> None:
        self.store.save_chats(conversations.snapshot())
        # Settings only change with the default model, not per streamed token
        settings = conversations.settings()
        if settings != self._saved_settings:
            self.store.save_settings(settings)
            self._saved_settings = settings

    async def send(self, chat_id: str, text: str) -> None:
        """Sends a user turn; see :meth:`llamachat.engine.Streaming.send`."""
        await self.engine.send(chat_id, text)

    async def regenerate_last(self, chat_id: str) -> None:
        await self.engine.regenerate_last(chat_id)

    def delete_chat(self, chat_id: str) -> bool:
        """Deletes a chat after stopping any stream still writing into it."""
        self.engine.cancel(chat_id)
        return self.conversations.delete_chat(chat_id)

    def share_url(self, chat_id: str, base_url: str) -> Optional[str]:
        chat = self.conversations.get_chat(chat_id)
        return build_share_url(chat, base_url) if chat else None

    def import_shared(self, payload: str) -> Chat:
        """Adds a chat received as a share payload and makes it active.

        Raises
        ------
        ValueError
            If the payload cannot be decoded.
        """
        return self.conversations.import_chat(decode_share_payload(payload))
