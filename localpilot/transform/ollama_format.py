"""
Conversion from ChatMessage to Ollama /api/chat messages.

Ollama tool calls carry no id; a tool result is linked back to its call
through tool_name, resolved here from the tool_use_id.
"""

import logging
from typing import Any

from localpilot.messages import (
    ChatMessage,
    ImageBlock,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    find_tool_use,
    orphaned_tool_results,
)

logger = logging.getLogger(__name__)


def convert_to_ollama_messages(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    """Convert a conversation to Ollama chat messages (system prompt excluded)."""
    orphans = orphaned_tool_results(messages)
    if orphans:
        logger.warning(f"Tool results without a preceding tool use: {orphans}")

    result: list[dict[str, Any]] = []
    for message in messages:
        if isinstance(message.content, str):
            result.append({"role": message.role, "content": message.content})
            continue

        if message.role == "user":
            tool_results = [b for b in message.content if isinstance(b, ToolResultBlock)]
            for block in tool_results:
                entry: dict[str, Any] = {"role": "tool", "content": block.text()}
                tool_use = find_tool_use(messages, block.tool_use_id)
                if tool_use is not None:
                    entry["tool_name"] = tool_use.name
                images = [image.data for image in block.images()]
                if images:
                    entry["images"] = images
                result.append(entry)

            texts = [b.text for b in message.content if isinstance(b, TextBlock)]
            images = [b.data for b in message.content if isinstance(b, ImageBlock)]
            if texts or images:
                entry = {"role": "user", "content": "\n".join(texts)}
                if images:
                    entry["images"] = images
                result.append(entry)

        elif message.role == "assistant":
            text = "\n".join(b.text for b in message.content if isinstance(b, TextBlock))
            entry = {"role": "assistant", "content": text}
            tool_calls = [
                {"function": {"name": b.name, "arguments": b.input}}
                for b in message.content
                if isinstance(b, ToolUseBlock)
            ]
            if tool_calls:
                entry["tool_calls"] = tool_calls
            result.append(entry)

        else:
            result.append({"role": message.role, "content": message.text()})

    return result
