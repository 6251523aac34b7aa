"""Central configuration for paths, endpoints and request defaults."""

import os
from pathlib import Path

# Local data directory for the File store used by the CLI
DATA_DIR = Path(
    os.environ.get("LLAMACHAT_DATA_DIR", str(Path.home() / ".llamachat"))
)

# Relay server the client streams through
RELAY_URL = os.environ.get("LLAMACHAT_RELAY_URL", "http://localhost:3000")
CHAT_PATH = "/api/chat"

# Relay server process
PORT = int(os.environ.get("PORT", "3000"))
CORS_ORIGINS = ["http://localhost:5173", "http://localhost:5174"]

# Upstream provider (OPENROUTER_API_KEY is read by the provider itself)
OPENROUTER_BASE = "https://openrouter.ai/api/v1"
OPENROUTER_MODEL = os.environ.get(
    "OPENROUTER_MODEL", "meta-llama/llama-3.3-70b-instruct:free"
)
OPENROUTER_REFERER = os.environ.get("OPENROUTER_REFERER", f"http://localhost:{PORT}")
OPENROUTER_TITLE = os.environ.get("OPENROUTER_TITLE", "Llama Chat (Local)")

# Completion defaults
DEFAULT_TEMPERATURE = 0.3
DEFAULT_MAX_TOKENS = 1024
SYSTEM_PROMPT = "You are a helpful assistant."
