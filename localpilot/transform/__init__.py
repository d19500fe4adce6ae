"""
Wire-format converters for provider handlers.
"""

from .ollama_format import convert_to_ollama_messages
from .openai_format import convert_openai_to_chat_messages, convert_to_openai_messages

__all__ = [
    "convert_to_ollama_messages",
    "convert_to_openai_messages",
    "convert_openai_to_chat_messages",
]
