"""Integration tests for Engine + LLM interaction.

The Relay provider is wired to the real relay API in-process: the engine
streams through httpx, the FastAPI app re-frames the scripted provider's
fragments as server-sent events, and the decoder reassembles them.
"""

import httpx
import pytest
from llamachat import LlamaChat
from llamachat.llm import Relay
from llamachat.models import ASSISTANT_ROLE, USER_ROLE
from llamachat.registry import resolve_engine
from llamachat.server import create_api

LLAMA = resolve_engine("llama-3")
GEMINI = resolve_engine("gemini")
MISTRAL = resolve_engine("mistral")


@pytest.fixture
def upstream(make_llm):
    """The provider behind the relay server."""
    return make_llm(script={LLAMA: ["Hello", " World"]})


@pytest.fixture
def relay_app(upstream):
    transport = httpx.ASGITransport(app=create_api(upstream, LLAMA))
    client = httpx.AsyncClient(transport=transport, base_url="http://relay.test")
    return LlamaChat(llm=Relay(base_url="http://relay.test", client=client))


class TestEngineLLMIntegration:
    @pytest.mark.asyncio
    async def test_code_writer_hello_world(self, relay_app, upstream):
        """A first turn in a new Code Writer chat streams into one reply."""
        chat = relay_app.conversations.open_category("Code Writer")

        await relay_app.send(chat.id, "Write hello world")

        messages = relay_app.conversations.get_chat(chat.id).messages
        assert [(m.role, m.content, m.pending) for m in messages] == [
            (USER_ROLE, "Write hello world", False),
            (ASSISTANT_ROLE, "Hello World", False),
        ]
        assert messages[1].model_used == "llama-3"
        (call,) = upstream.calls
        assert call["model"] == LLAMA
        assert call["messages"][-1] == {"role": "user", "content": "Write hello world"}

    @pytest.mark.asyncio
    async def test_multi_turn_history(self, relay_app, upstream):
        chat = relay_app.conversations.open_category("General Chat")

        await relay_app.send(chat.id, "First")
        await relay_app.send(chat.id, "Second")

        second_call = upstream.calls[1]["messages"]
        assert [m["role"] for m in second_call] == ["system", "user", "assistant", "user"]
        assert second_call[2]["content"] == "Hello World"
        assert len(relay_app.conversations.get_chat(chat.id).messages) == 4

    @pytest.mark.asyncio
    async def test_compare_mode_through_relay(self, relay_app, upstream):
        upstream.script[GEMINI] = ["G"]
        upstream.script[MISTRAL] = ["M", "M"]
        conversations = relay_app.conversations
        chat = conversations.open_category("Brainstorm")
        conversations.toggle_compare_model(chat.id, "gemini")
        conversations.toggle_compare_model(chat.id, "mistral")

        await relay_app.send(chat.id, "Go")

        replies = conversations.get_chat(chat.id).messages[1:]
        assert [(m.model_used, m.content) for m in replies] == [
            ("gemini", "G"),
            ("mistral", "MM"),
        ]

    @pytest.mark.asyncio
    async def test_upstream_error_lands_in_transcript(self, relay_app, upstream):
        from llamachat.llm import UpstreamError

        upstream.script[LLAMA] = []
        upstream.failures[LLAMA] = UpstreamError("Rate limit exceeded", 429)
        chat = relay_app.conversations.open_category("General Chat")

        await relay_app.send(chat.id, "Hi")

        reply = relay_app.conversations.get_chat(chat.id).messages[-1]
        assert reply.content == "Error: Rate limit exceeded"
        assert reply.pending is False

    @pytest.mark.asyncio
    async def test_regenerate_after_error(self, relay_app, upstream):
        from llamachat.llm import UpstreamError

        upstream.script[LLAMA] = []
        upstream.failures[LLAMA] = UpstreamError("Rate limit exceeded", 429)
        chat = relay_app.conversations.open_category("General Chat")
        await relay_app.send(chat.id, "Hi")

        del upstream.failures[LLAMA]
        upstream.script[LLAMA] = ["Recovered"]
        await relay_app.regenerate_last(chat.id)

        messages = relay_app.conversations.get_chat(chat.id).messages
        assert [m.content for m in messages] == ["Hi", "Recovered"]
        assert upstream.calls[-1]["messages"][-1] == {"role": "user", "content": "Hi"}


class TestEchoIntegration:
    @pytest.mark.asyncio
    async def test_basic_conversation_flow_with_echo(self, test_app):
        chat = test_app.conversations.open_category("General Chat")

        await test_app.send(chat.id, "Hello, Echo!")

        messages = test_app.conversations.get_chat(chat.id).messages
        assert len(messages) == 2
        assert "Echo LLM" in messages[1].content
        assert messages[1].content.endswith("Hello, Echo!")
