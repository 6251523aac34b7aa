"""The streaming engine: dispatches user turns to one or more models.

For every turn the engine appends the user's message, creates one pending
placeholder per target model, and runs one streaming request per model
concurrently. Each stream owns a :class:`~llamachat.conversations.StreamHandle`
to its placeholder and rewrites it with the text received so far, so streams
for different models never touch each other's messages.

Overlapping turns on the same chat are resolved by cancel-and-replace: a new
``send`` or ``regenerate_last`` cancels the chat's open streams first, and
their placeholders keep whatever text had arrived.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from . import config
from .conversations import StreamHandle
from .models import SYSTEM_ROLE, USER_ROLE, ChatMessage
from .registry import resolve_engine

logger = logging.getLogger(__name__)


class Engine(ABC):
    """Interface for turning user input into assistant messages."""

    def __init__(self, app: Optional[Any] = None):
        self.app = app

    @abstractmethod
    async def send(self, chat_id: str, text: str) -> None:
        """Runs one user turn in ``chat_id``."""
        pass

    @abstractmethod
    async def regenerate_last(self, chat_id: str) -> None:
        """Re-runs the most recent user turn in ``chat_id``."""
        pass

    def cancel(self, chat_id: str) -> int:
        """Stops any open streams for ``chat_id``; returns how many."""
        return 0


class Streaming(Engine):
    """Concurrent multi-model streaming against the app's LLM pillar.

    Parameters
    ----------
    app : LlamaChat, optional
        The owning app; bound lazily by ``LlamaChat`` when omitted.
    system_prompt : str
        The leading system instruction of every request history.
    **request_options
        Extra upstream options (``temperature``, ``max_tokens``) sent with
        every streaming request.
    """

    def __init__(
        self,
        app: Optional[Any] = None,
        system_prompt: str = config.SYSTEM_PROMPT,
        **request_options: Any,
    ):
        super().__init__(app)
        self.system_prompt = system_prompt
        self.request_options = request_options
        self._streams: Dict[Tuple[str, str], Tuple[asyncio.Task, StreamHandle]] = {}

    async def send(self, chat_id: str, text: str) -> None:
        conversations = self.app.conversations
        chat = conversations.get_chat(chat_id)
        text = (text or "").strip()
        if chat is None or not text:
            return

        self.cancel(chat_id)
        history = self._build_history(chat.messages)

        relay = getattr(self.app, "relay", None)
        if chat.room_id and relay is not None:
            conversations.append_message(chat_id, USER_ROLE, text)
            await relay.send(chat_id, text, history, resolve_engine(chat.model_id))
            return

        history.append({"role": USER_ROLE, "content": text})
        conversations.append_message(chat_id, USER_ROLE, text)
        handles = conversations.add_placeholders(chat_id, chat.target_models())
        await self._run(handles, history)

    async def regenerate_last(self, chat_id: str) -> None:
        conversations = self.app.conversations
        chat = conversations.get_chat(chat_id)
        if chat is None:
            return
        user_index = next(
            (
                i
                for i in range(len(chat.messages) - 1, -1, -1)
                if chat.messages[i].role == USER_ROLE
            ),
            None,
        )
        if user_index is None:
            return

        self.cancel(chat_id)
        # True regeneration: nothing after the user turn goes upstream
        history = self._build_history(chat.messages[: user_index + 1])
        handles = conversations.reset_for_regeneration(
            chat_id, user_index, chat.target_models()
        )
        await self._run(handles, history)

    def cancel(self, chat_id: str) -> int:
        cancelled = 0
        for key, (task, handle) in list(self._streams.items()):
            if handle.chat_id != chat_id:
                continue
            del self._streams[key]
            task.cancel()
            self.app.conversations.settle_placeholder(handle)
            cancelled += 1
        if cancelled:
            logger.info("Cancelled %d open stream(s) for chat %s", cancelled, chat_id)
        return cancelled

    def open_streams(self, chat_id: Optional[str] = None) -> List[StreamHandle]:
        return [
            handle
            for _, handle in self._streams.values()
            if chat_id is None or handle.chat_id == chat_id
        ]

    def _build_history(self, messages: List[ChatMessage]) -> List[Dict[str, str]]:
        return [{"role": SYSTEM_ROLE, "content": self.system_prompt}] + [
            m.to_history() for m in messages
        ]

    async def _run(
        self, handles: List[StreamHandle], history: List[Dict[str, str]]
    ) -> None:
        tasks = []
        for handle in handles:
            task = asyncio.create_task(self._stream_into(handle, list(history)))
            self._streams[(handle.chat_id, handle.model_id)] = (task, handle)
            tasks.append(task)
        # Cancelled streams end with CancelledError; that is not this turn's failure
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _stream_into(
        self, handle: StreamHandle, history: List[Dict[str, str]]
    ) -> None:
        conversations = self.app.conversations
        engine_id = resolve_engine(handle.model_id)
        accumulated = ""
        try:
            async for fragment in self.app.llm.stream_response(
                history, engine_id, **self.request_options
            ):
                accumulated += fragment
                conversations.update_placeholder(handle, accumulated)
        except Exception as e:
            logger.warning(
                "Stream for %s in chat %s failed: %s",
                handle.model_id,
                handle.chat_id,
                e,
            )
            conversations.fail_placeholder(handle, f"Error: {e}")
        else:
            conversations.update_placeholder(handle, accumulated, final=True)
        finally:
            key = (handle.chat_id, handle.model_id)
            if key in self._streams and self._streams[key][1] == handle:
                del self._streams[key]
