"""
Conversion between ChatMessage and OpenAI chat-completion messages.

LM Studio speaks this format. Tool results become role="tool" messages
keyed by tool_call_id, and assistant tool uses become tool_calls entries
carrying the same id, so the linkage survives in both directions.
"""

import json
import logging
from typing import Any

from localpilot.messages import (
    ChatMessage,
    ImageBlock,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    orphaned_tool_results,
)

logger = logging.getLogger(__name__)

IMAGE_IN_TOOL_RESULT_PLACEHOLDER = "(see following user message for image)"


def _tool_result_text(block: ToolResultBlock) -> str:
    if isinstance(block.content, list):
        parts = [
            part.text if isinstance(part, TextBlock) else IMAGE_IN_TOOL_RESULT_PLACEHOLDER
            for part in block.content
        ]
        return "\n".join(parts)
    return block.content or ""


def _user_part(block) -> dict:
    if isinstance(block, ImageBlock):
        return {"type": "image_url", "image_url": {"url": block.data_url}}
    return {"type": "text", "text": block.text}


def convert_to_openai_messages(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    """
    Convert a conversation to the OpenAI wire format.

    The system prompt is not part of `messages`; handlers prepend it.
    """
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
            others = [b for b in message.content if isinstance(b, (TextBlock, ImageBlock))]

            # Tool messages must directly follow the assistant turn that requested them
            for block in tool_results:
                result.append({
                    "role": "tool",
                    "tool_call_id": block.tool_use_id,
                    "content": _tool_result_text(block),
                })
            # Images returned by tools ride along in the user message
            for block in tool_results:
                others.extend(block.images())

            if others:
                result.append({"role": "user", "content": [_user_part(b) for b in others]})

        elif message.role == "assistant":
            text = "\n".join(b.text for b in message.content if isinstance(b, TextBlock))
            tool_calls = [
                {
                    "id": b.id,
                    "type": "function",
                    "function": {"name": b.name, "arguments": json.dumps(b.input)},
                }
                for b in message.content
                if isinstance(b, ToolUseBlock)
            ]
            entry: dict[str, Any] = {"role": "assistant", "content": text or None}
            if tool_calls:
                entry["tool_calls"] = tool_calls
            result.append(entry)

        else:
            result.append({"role": message.role, "content": message.text()})

    return result


def _parse_user_content(content) -> list:
    if isinstance(content, str):
        return [TextBlock(text=content)]
    blocks: list = []
    for part in content or []:
        if part.get("type") == "image_url":
            url = part.get("image_url", {}).get("url", "")
            header, _, data = url.partition(",")
            media_type = header.removeprefix("data:").removesuffix(";base64") or "image/png"
            blocks.append(ImageBlock(media_type=media_type, data=data))
        elif part.get("type") == "text":
            blocks.append(TextBlock(text=part.get("text", "")))
    return blocks


def convert_openai_to_chat_messages(wire: list[dict[str, Any]]) -> list[ChatMessage]:
    """
    Convert OpenAI wire messages back to ChatMessage.

    Consecutive tool messages and the user message that follows them fold
    into one user turn, mirroring convert_to_openai_messages.
    """
    result: list[ChatMessage] = []
    pending_results: list = []

    def flush_results(extra: list) -> None:
        if pending_results or extra:
            result.append(ChatMessage(role="user", content=pending_results + extra))
            pending_results.clear()

    for entry in wire:
        role = entry.get("role")
        content = entry.get("content")

        if role == "tool":
            pending_results.append(
                ToolResultBlock(tool_use_id=entry.get("tool_call_id", ""), content=content or "")
            )
            continue

        if role == "user" and pending_results:
            flush_results(_parse_user_content(content))
            continue
        flush_results([])

        if role == "assistant" and entry.get("tool_calls"):
            blocks: list = []
            if content:
                blocks.append(TextBlock(text=content))
            for call in entry["tool_calls"]:
                function = call.get("function", {})
                try:
                    arguments = json.loads(function.get("arguments") or "{}")
                except json.JSONDecodeError:
                    arguments = {"raw": function.get("arguments")}
                blocks.append(ToolUseBlock(id=call.get("id", ""), name=function.get("name", ""), input=arguments))
            result.append(ChatMessage(role="assistant", content=blocks))
        elif role == "user" and isinstance(content, list):
            result.append(ChatMessage(role="user", content=_parse_user_content(content)))
        else:
            result.append(ChatMessage(role=role, content=content or ""))

    flush_results([])
    return result
