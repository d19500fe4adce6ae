"""
Provider-agnostic conversation model.

Handlers receive a list of ChatMessage and convert it to their own wire
format (see localpilot.transform). Messages are immutable once built; the
caller owns the conversation history.
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class TextBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class ImageBlock(BaseModel):
    """Base64 image. Providers without an image slot drop it silently."""
    model_config = ConfigDict(frozen=True)

    type: Literal["image"] = "image"
    media_type: str = "image/png"
    data: str

    @property
    def data_url(self) -> str:
        return f"data:{self.media_type};base64,{self.data}"


class ToolUseBlock(BaseModel):
    """Assistant request to run a tool."""
    model_config = ConfigDict(frozen=True)

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    """Result of a tool run, linked to its ToolUseBlock by tool_use_id."""
    model_config = ConfigDict(frozen=True)

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: Union[str, list[Union[TextBlock, ImageBlock]], None] = None

    def text(self) -> str:
        if self.content is None:
            return ""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(part.text for part in self.content if isinstance(part, TextBlock))

    def images(self) -> list[ImageBlock]:
        if not isinstance(self.content, list):
            return []
        return [part for part in self.content if isinstance(part, ImageBlock)]


ContentBlock = Annotated[
    Union[TextBlock, ImageBlock, ToolUseBlock, ToolResultBlock],
    Field(discriminator="type"),
]


class ChatMessage(BaseModel):
    """A single conversation turn.

    Content can be:
    - str: Plain text message
    - list: Ordered content blocks (text, image, tool_use, tool_result)
    """
    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant", "system", "tool"]
    content: Union[str, list[ContentBlock]]

    def blocks(self) -> list:
        """Content as a block list; plain strings become one TextBlock."""
        if isinstance(self.content, str):
            return [TextBlock(text=self.content)]
        return list(self.content)

    def text(self) -> str:
        """Concatenated text of all text blocks."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock))


def orphaned_tool_results(messages: list[ChatMessage]) -> list[str]:
    """
    Return tool_use_ids of results that reference no earlier tool use.

    A well-formed history never has any; converters log them but still
    emit the result so the id linkage is not dropped.
    """
    seen: set[str] = set()
    orphans: list[str] = []
    for message in messages:
        for block in message.blocks():
            if isinstance(block, ToolUseBlock):
                seen.add(block.id)
            elif isinstance(block, ToolResultBlock) and block.tool_use_id not in seen:
                orphans.append(block.tool_use_id)
    return orphans


def find_tool_use(messages: list[ChatMessage], tool_use_id: str) -> Optional[ToolUseBlock]:
    """Locate the ToolUseBlock with the given id, if any."""
    for message in messages:
        for block in message.blocks():
            if isinstance(block, ToolUseBlock) and block.id == tool_use_id:
                return block
    return None
