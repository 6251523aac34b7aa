"""
Core pytest configuration and fixtures for llamachat testing.

This module provides shared test fixtures, configuration, and utilities
that support the pillar-based testing architecture.
"""

import asyncio
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from llamachat.llm import LLM
from llamachat.models import ASSISTANT_ROLE, USER_ROLE, Chat, ChatMessage

# ===== FAKE PROVIDER =====


class ScriptedLLM(LLM):
    """An LLM whose replies are scripted per engine id.

    ``script`` maps an engine id to the fragments it streams (``["ok"]`` by
    default). An engine listed in ``failures`` raises that exception after its
    fragments; one listed in ``gates`` waits on the event after its fragments,
    which keeps the stream open until the test releases or cancels it.
    """

    def __init__(
        self,
        script: Optional[Dict[str, List[str]]] = None,
        failures: Optional[Dict[str, Exception]] = None,
        gates: Optional[Dict[str, asyncio.Event]] = None,
    ):
        self.script = script or {}
        self.failures = failures or {}
        self.gates = gates or {}
        self.calls = []

    def _fragments(self, model):
        return self.script.get(model, ["ok"])

    async def generate_response(self, messages, model=None, **kwargs):
        self.calls.append({"messages": list(messages), "model": model, **kwargs})
        if model in self.failures:
            raise self.failures[model]
        return {"content": "".join(self._fragments(model)), "usage": None}

    def extract_content(self, response):
        return response["content"]

    async def stream_response(self, messages, model=None, **kwargs):
        self.calls.append({"messages": list(messages), "model": model, **kwargs})
        for fragment in self._fragments(model):
            await asyncio.sleep(0)
            yield fragment
        gate = self.gates.get(model)
        if gate is not None:
            await gate.wait()
        if model in self.failures:
            raise self.failures[model]


async def wait_until(predicate, attempts: int = 200) -> None:
    """Yields to the event loop until ``predicate()`` holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


# ===== TEST DATA FIXTURES =====


@pytest.fixture
def sample_messages() -> List[ChatMessage]:
    """Sample chat messages for testing."""
    return [
        ChatMessage(role=USER_ROLE, content="Hello, how are you?"),
        ChatMessage(
            role=ASSISTANT_ROLE,
            content="I'm doing well, thank you! How can I help you today?",
            model_used="llama-3",
        ),
        ChatMessage(role=USER_ROLE, content="Can you explain quantum computing?"),
        ChatMessage(
            role=ASSISTANT_ROLE,
            content="Quantum computing uses quantum mechanics principles...",
            model_used="llama-3",
        ),
    ]


@pytest.fixture
def sample_chat(sample_messages) -> Chat:
    """Sample chat for testing."""
    return Chat(
        id="chat-abc123",
        title="Code Writer Chat",
        category="Code Writer",
        model_id="llama-3",
        messages=[m.model_copy(update={"chat_id": "chat-abc123"}) for m in sample_messages],
    )


# ===== DIRECTORY FIXTURES =====


@pytest.fixture
def temp_dir():
    """Temporary directory for file-based tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


# ===== PILLAR IMPLEMENTATION FIXTURES =====


@pytest.fixture
def all_store_implementations(temp_dir):
    """All store implementations for contract testing."""
    from llamachat import store

    return [
        ("InMemory", store.InMemory()),
        ("File", store.File(str(temp_dir / "file_store"))),
        ("SQLite", store.SQLite(str(temp_dir / "test.db"))),
    ]


@pytest.fixture
def scripted_llm():
    """A scripted provider with no replies configured."""
    return ScriptedLLM()


@pytest.fixture
def make_llm():
    """Factory for scripted providers."""
    return ScriptedLLM


@pytest.fixture
def settle():
    """The ``wait_until`` helper, for tests that drive streams step by step."""
    return wait_until


# ===== APP FIXTURES =====


@pytest.fixture
def test_app():
    """
    Provides a LlamaChat app instance with simple, predictable pillars.

    This fixture is ideal for integration tests where we need a running app
    but want to avoid external dependencies like a relay server or real
    provider APIs.
    """
    from llamachat import LlamaChat
    from llamachat.auth import SingleUser
    from llamachat.llm import Echo
    from llamachat.store import InMemory

    return LlamaChat(
        llm=Echo(delay=0),
        store=InMemory(),
        auth=SingleUser(user_id="test_user"),
    )


@pytest.fixture
def scripted_app(scripted_llm):
    """A LlamaChat app streaming from ``scripted_llm``."""
    from llamachat import LlamaChat
    from llamachat.store import InMemory

    return LlamaChat(llm=scripted_llm, store=InMemory())


# ===== CONFIGURATION =====


def pytest_configure(config):
    """Pytest configuration."""
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "slow: marks tests as slow-running")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on location."""
    for item in items:
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
