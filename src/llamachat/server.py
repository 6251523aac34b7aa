"""The relay server: an upstream completion proxy plus collaborative rooms.

``POST /api/chat`` forwards a request history to the LLM provider and either
returns the whole reply or re-streams it as server-sent event frames. The
Socket.IO side lets several clients share one chat: each ``user_message``
sent to a room gets a single non-streaming completion broadcast to everyone
in it.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from . import config
from .llm import LLM, OpenRouter, UpstreamError
from .models import ASSISTANT_ROLE, USER_ROLE, Role, generate_id
from .streaming import DONE_FRAME, encode_frame

logger = logging.getLogger(__name__)


class HistoryMessage(BaseModel):
    role: Role
    content: str


class ChatRequest(BaseModel):
    messages: List[HistoryMessage] = Field(default_factory=list)
    temperature: float = config.DEFAULT_TEMPERATURE
    max_tokens: int = config.DEFAULT_MAX_TOKENS
    model: Optional[str] = None
    stream: bool = False


def _error(status_code: int, error: str, detail: Optional[str] = None) -> JSONResponse:
    body = {"error": error}
    if detail is not None:
        body["detail"] = detail
    return JSONResponse(body, status_code=status_code)


def _usage(response: Any) -> Optional[Dict[str, Any]]:
    if isinstance(response, dict):
        return response.get("usage")
    usage = getattr(response, "usage", None)
    return usage.model_dump() if usage is not None else None


async def _stream(llm: LLM, messages, model: str, options: Dict[str, Any]):
    fragments = llm.stream_response(messages, model, **options)
    # Pull the first fragment eagerly so upstream rejections still get a status code
    try:
        first = await fragments.__anext__()
    except StopAsyncIteration:
        first = None
    except UpstreamError as e:
        return _error(e.status_code or 500, "Upstream error", e.detail)
    except Exception as e:
        logger.exception("Proxy failed")
        return _error(500, "Proxy failed", str(e))

    async def frames():
        if first is None:
            yield DONE_FRAME
            return
        yield encode_frame(first)
        try:
            async for fragment in fragments:
                yield encode_frame(fragment)
        except Exception as e:
            # Aborting the response lets the client surface the failure
            logger.warning("Upstream stream broke off: %s", e)
            raise
        yield DONE_FRAME

    return StreamingResponse(
        frames(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


def create_api(llm: LLM, default_model: str = config.OPENROUTER_MODEL) -> FastAPI:
    """Builds the HTTP half of the relay."""
    api = FastAPI(title="Llama Chat relay")
    api.add_middleware(
        CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"]
    )

    @api.get("/health")
    async def health():
        return {"ok": True, "provider": config.OPENROUTER_BASE, "model": default_model}

    @api.post(config.CHAT_PATH)
    async def chat(request: ChatRequest):
        if not request.messages:
            return _error(400, "messages[] required")
        messages = [m.model_dump() for m in request.messages]
        model = request.model or default_model
        options = {"temperature": request.temperature, "max_tokens": request.max_tokens}

        if request.stream:
            return await _stream(llm, messages, model, options)
        try:
            response = await llm.generate_response(messages, model, **options)
        except UpstreamError as e:
            return _error(e.status_code or 500, "Upstream error", e.detail)
        except Exception as e:
            logger.exception("Proxy failed")
            return _error(500, "Proxy failed", str(e))
        return {"content": llm.extract_content(response), "usage": _usage(response)}

    return api


class RoomRelay:
    """Socket.IO handlers for collaborative rooms."""

    def __init__(
        self,
        sio: socketio.AsyncServer,
        llm: LLM,
        default_model: str = config.OPENROUTER_MODEL,
    ):
        self.sio = sio
        self.llm = llm
        self.default_model = default_model
        self.users: Dict[str, Dict[str, str]] = {}
        sio.on("connect", self.connect)
        sio.on("disconnect", self.disconnect)
        sio.on("join_room", self.join_room)
        sio.on("leave_room", self.leave_room)
        sio.on("user_message", self.user_message)

    def _user(self, sid: str) -> Dict[str, str]:
        return self.users.get(sid) or {"id": sid, "name": "Guest"}

    async def connect(self, sid: str, environ: Dict[str, Any], auth: Any = None) -> None:
        query = parse_qs(environ.get("QUERY_STRING", ""))
        self.users[sid] = {
            "id": query.get("userId", [""])[0] or generate_id("user"),
            "name": query.get("name", [""])[0] or "Guest",
        }

    async def disconnect(self, sid: str, *args: Any) -> None:
        self.users.pop(sid, None)

    async def join_room(self, sid: str, data: Dict[str, Any]) -> None:
        room_id = (data or {}).get("roomId")
        if not room_id:
            return
        await self.sio.enter_room(sid, room_id)
        await self.sio.emit(
            "presence", {"type": "join", "user": self._user(sid)}, to=room_id
        )

    async def leave_room(self, sid: str, data: Dict[str, Any]) -> None:
        room_id = (data or {}).get("roomId")
        if not room_id:
            return
        await self.sio.leave_room(sid, room_id)
        await self.sio.emit(
            "presence", {"type": "leave", "user": self._user(sid)}, to=room_id
        )

    async def user_message(self, sid: str, data: Dict[str, Any]) -> None:
        data = data or {}
        room_id = data.get("roomId")
        content = data.get("content")
        if not room_id or not content:
            return
        await self.sio.emit(
            "message",
            {"role": USER_ROLE, "content": content, "userId": self._user(sid)["id"]},
            to=room_id,
        )
        history = list(data.get("history") or [])
        history.append({"role": USER_ROLE, "content": content})
        try:
            response = await self.llm.generate_response(
                history,
                data.get("model") or self.default_model,
                temperature=config.DEFAULT_TEMPERATURE,
                max_tokens=config.DEFAULT_MAX_TOKENS,
            )
            reply = self.llm.extract_content(response)
        except Exception as e:
            logger.warning("Room %s completion failed: %s", room_id, e)
            reply = f"Error: {e}"
        await self.sio.emit(
            "message", {"role": ASSISTANT_ROLE, "content": reply}, to=room_id
        )


def create_app(
    llm: Optional[LLM] = None, default_model: str = config.OPENROUTER_MODEL
) -> socketio.ASGIApp:
    """Builds the complete relay as one ASGI application.

    Raises
    ------
    KeyError
        If no ``llm`` is given and ``OPENROUTER_API_KEY`` is not set.
    """
    llm = llm if llm is not None else OpenRouter(default_model)
    sio = socketio.AsyncServer(
        async_mode="asgi", cors_allowed_origins=config.CORS_ORIGINS
    )
    RoomRelay(sio, llm, default_model)
    return socketio.ASGIApp(sio, other_asgi_app=create_api(llm, default_model))
