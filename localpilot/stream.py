"""
Typed events yielded by a completion stream.

Handlers yield these in exactly the order frames are decoded off the wire.
"""

from typing import Annotated, AsyncGenerator, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class TextChunk(BaseModel):
    """Incremental visible output."""
    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class ReasoningChunk(BaseModel):
    """Incremental hidden "thinking" trace."""
    model_config = ConfigDict(frozen=True)

    type: Literal["reasoning"] = "reasoning"
    text: str


class UsageChunk(BaseModel):
    """Token accounting. The last one seen is the final total."""
    model_config = ConfigDict(frozen=True)

    type: Literal["usage"] = "usage"
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0


StreamChunk = Annotated[
    Union[TextChunk, ReasoningChunk, UsageChunk],
    Field(discriminator="type"),
]

ApiStream = AsyncGenerator[StreamChunk, None]
