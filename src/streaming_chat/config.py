"""
Central configuration.

Values are read from environment variables once, at import time, and exposed
as module constants. 'ChatSettings' bundles them into an explicit object that is
handed to 'ChatController' so nothing below the controller reads the
environment itself.
"""

import os
from pathlib import Path

from pydantic import BaseModel

# Upstream used when the model catalog has no dedicated endpoint for a model
DEFAULT_API_URL = os.environ.get("OPEN_AI_URL", "https://api.openai.com/v1")
DEFAULT_API_KEY = os.environ.get("OPEN_AI_API_KEY", "dummy")
DEFAULT_MODEL = os.environ.get("CHAT_DEFAULT_MODEL", "gpt-4o-mini")

SYSTEM_PROMPT = os.environ.get(
    "CHAT_SYSTEM_PROMPT",
    "You are a helpful assistant. Keep your responses concise.",
)
HIDE_SYSTEM_TURN = os.environ.get("CHAT_HIDE_SYSTEM_TURN", "1") == "1"

ATTACHMENTS_DIR = Path(os.environ.get("CHAT_ATTACHMENTS_DIR", str(Path.cwd() / "public")))

# Connect timeout only. Reads are unbounded, a stalled stream stays open until cancelled.
REQUEST_TIMEOUT = float(os.environ.get("CHAT_REQUEST_TIMEOUT", "30"))

DEFAULT_CONVERSATION_TITLE = "New Chat"

RESPONSE_STYLES = {
    "Normal": "Default responses",
    "Concise": "Brief and to-the-point",
    "Explanatory": "Detailed and informative",
    "Formal": "Professional and polite",
}


class ChatSettings(BaseModel):
    """Explicit configuration for one 'ChatController'."""

    default_model: str = DEFAULT_MODEL
    system_prompt: str | None = SYSTEM_PROMPT
    hide_system_turn: bool = HIDE_SYSTEM_TURN
    default_title: str = DEFAULT_CONVERSATION_TITLE

    @classmethod
    def from_env(cls) -> "ChatSettings":
        return cls(
            default_model=DEFAULT_MODEL,
            system_prompt=SYSTEM_PROMPT or None,
            hide_system_turn=HIDE_SYSTEM_TURN,
        )
