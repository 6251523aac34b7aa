"""Static registry of the logical models a chat can target.

A logical model id (``"llama-3"``) is what chats and messages record; the
engine id (``"meta-llama/llama-3.3-70b-instruct:free"``) is what the upstream
provider is asked for.
"""

from typing import List, Optional

from pydantic import BaseModel


class ModelInfo(BaseModel):
    """Display metadata and upstream engine for one logical model."""

    id: str
    label: str
    speed: str
    reasoning: str
    creativity: str
    engine: str


MODELS: List[ModelInfo] = [
    ModelInfo(
        id="gpt-5",
        label="GPT-5",
        speed="Fast",
        reasoning="Advanced",
        creativity="High",
        engine="anthropic/claude-3.5-sonnet:latest",
    ),
    ModelInfo(
        id="claude-35",
        label="Claude 3.5",
        speed="Fast",
        reasoning="Excellent",
        creativity="Medium",
        engine="anthropic/claude-3.5-sonnet:latest",
    ),
    ModelInfo(
        id="gemini",
        label="Gemini",
        speed="Fast",
        reasoning="Strong",
        creativity="High",
        engine="google/gemini-flash-1.5",
    ),
    ModelInfo(
        id="mistral",
        label="Mistral",
        speed="Medium",
        reasoning="Good",
        creativity="Medium",
        engine="mistralai/mistral-7b-instruct",
    ),
    ModelInfo(
        id="llama-3",
        label="Llama 3",
        speed="Fast",
        reasoning="Good",
        creativity="Medium",
        engine="meta-llama/llama-3.3-70b-instruct:free",
    ),
]

DEFAULT_MODEL_ID = "llama-3"

_BY_ID = {info.id: info for info in MODELS}


def list_models() -> List[ModelInfo]:
    return list(MODELS)


def is_known_model(model_id: Optional[str]) -> bool:
    return model_id in _BY_ID


def get_model_info(model_id: Optional[str]) -> ModelInfo:
    """Returns the metadata for ``model_id``, or the default model's metadata.

    Never raises. The fallback is informational only: use
    :func:`resolve_engine` to decide what to request upstream.
    """
    return _BY_ID.get(model_id) or _BY_ID[DEFAULT_MODEL_ID]


def resolve_engine(model_id: Optional[str]) -> str:
    """Maps a logical model id to the engine id requested upstream.

    Registered ids map to their engine. An empty id means the default model.
    Any other explicit id is taken to already be an engine id and is passed
    through unchanged.
    """
    if not model_id:
        return _BY_ID[DEFAULT_MODEL_ID].engine
    info = _BY_ID.get(model_id)
    return info.engine if info else model_id
