"""Model provider clients."""

from .chat import CHAT_PROVIDERS, ChatCall, ChatTurn, chat_turn, extract_commands
from .claude import ClaudeChatClient
from .gemini import GeminiClient, ModelClientCache, convert_schema, make_chat_call, make_model_call

__all__ = [
    "CHAT_PROVIDERS",
    "ChatCall",
    "chat_turn",
    "ChatTurn",
    "ClaudeChatClient",
    "convert_schema",
    "extract_commands",
    "GeminiClient",
    "make_chat_call",
    "make_model_call",
    "ModelClientCache",
]
