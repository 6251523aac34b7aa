"""Client side of collaborative rooms, over Socket.IO.

A chat bound to a room skips the per-model streaming path. Its turns go once
to the relay server, which performs a single non-streaming completion and
broadcasts both the user's message and the reply to every member of the room.
"""

import logging
import secrets
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import socketio
from pydantic import ValidationError
from socketio.exceptions import SocketIOError

from . import config
from .models import ASSISTANT_ROLE, USER_ROLE, Participant

logger = logging.getLogger(__name__)


class RoomBridge:
    """Joins rooms, relays turns and tracks who else is present.

    Parameters
    ----------
    url : str
        The relay server's base URL.
    app : LlamaChat, optional
        The owning app; bound lazily by ``LlamaChat`` when omitted.
    client : socketio.AsyncClient, optional
        The Socket.IO client to use. A new one is created by default.
    """

    def __init__(
        self,
        url: str = config.RELAY_URL,
        app: Optional[Any] = None,
        client: Optional[socketio.AsyncClient] = None,
    ):
        self.url = url
        self.app = app
        self.client = client if client is not None else socketio.AsyncClient()
        self.room_id: Optional[str] = None
        self.participants: List[Participant] = []
        self.client.on("presence", self.handle_presence)
        self.client.on("message", self.handle_message)

    @property
    def user(self) -> Participant:
        return self.app.auth.get_current_user()

    async def connect(self) -> None:
        if self.client.connected:
            return
        query = urlencode({"userId": self.user.id, "name": self.user.name})
        await self.client.connect(f"{self.url}?{query}", transports=["websocket"])

    async def disconnect(self) -> None:
        await self.client.disconnect()

    async def create_room(self, chat_id: Optional[str] = None) -> str:
        room_id = f"room-{secrets.token_hex(4)}"
        await self.join_room(room_id, chat_id)
        return room_id

    async def join_room(self, room_id: str, chat_id: Optional[str] = None) -> None:
        """Joins ``room_id`` and binds ``chat_id`` (default: the active chat) to it."""
        if not room_id:
            return
        if self.room_id and self.room_id != room_id:
            await self.leave_room()
        self.room_id = room_id
        chat_id = chat_id or self.app.conversations.active_chat_id
        if chat_id:
            self.app.conversations.bind_room(chat_id, room_id)
        await self._emit("join_room", {"roomId": room_id})

    async def leave_room(self) -> None:
        room_id = self.room_id
        if not room_id:
            return
        self.room_id = None
        self.participants = []
        chat = self.app.conversations.chat_for_room(room_id)
        if chat is not None:
            self.app.conversations.bind_room(chat.id, None)
        await self._emit("leave_room", {"roomId": room_id})

    async def send(
        self, chat_id: str, text: str, history: List[Dict[str, str]], model: str
    ) -> bool:
        """Relays one user turn; a failed emit is surfaced in the transcript."""
        chat = self.app.conversations.get_chat(chat_id)
        room_id = (chat.room_id if chat else None) or self.room_id
        payload = {
            "roomId": room_id,
            "content": text,
            "history": history,
            "model": model,
        }
        try:
            await self.client.emit("user_message", payload)
        except SocketIOError as e:
            logger.warning("Could not relay message to room %s: %s", room_id, e)
            self.app.conversations.append_message(
                chat_id, ASSISTANT_ROLE, f"Error: {e}"
            )
            return False
        return True

    def handle_presence(self, payload: Dict[str, Any]) -> None:
        try:
            user = Participant.model_validate((payload or {}).get("user") or {})
        except ValidationError as e:
            logger.warning("Ignoring malformed presence event: %s", e)
            return
        kind = payload.get("type")
        if kind == "join" and all(p.id != user.id for p in self.participants):
            self.participants = self.participants + [user]
        elif kind == "leave":
            self.participants = [p for p in self.participants if p.id != user.id]

    def handle_message(self, payload: Dict[str, Any]) -> None:
        if not self.room_id:
            return
        chat = self.app.conversations.chat_for_room(self.room_id)
        if chat is None:
            return
        role = (payload or {}).get("role")
        if role not in (USER_ROLE, ASSISTANT_ROLE):
            logger.warning("Ignoring room message with role %r", role)
            return
        user_id = payload.get("userId")
        # Our own turn was appended when it was sent
        if role == USER_ROLE and user_id == self.user.id:
            return
        self.app.conversations.append_message(
            chat.id, role, payload.get("content") or "", user_id=user_id
        )

    async def _emit(self, event: str, data: Dict[str, Any]) -> bool:
        try:
            await self.client.emit(event, data)
        except SocketIOError as e:
            logger.warning("Could not emit %s: %s", event, e)
            return False
        return True
