"""
Messages API request models.

Message content is either a plain string or a list of typed content parts.
Unknown part types (images, thinking, ...) are accepted and ignored when
the conversation is flattened to text for the upstream.
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class TextContent(BaseModel):
    type: Literal["text"]
    text: str


class OtherContent(BaseModel):
    """Any content part this gateway does not interpret."""

    model_config = ConfigDict(extra="allow")

    type: str


class ToolUseContent(BaseModel):
    type: Literal["tool_use"]
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultContent(BaseModel):
    type: Literal["tool_result"]
    tool_use_id: str
    content: Annotated[
        Union[str, list[Annotated[Union[TextContent, OtherContent], Field(union_mode="left_to_right")]], None],
        Field(union_mode="left_to_right"),
    ] = None
    is_error: bool = False


# Tried in order, so OtherContent only catches types nothing else claims
ContentPart = Annotated[
    Union[TextContent, ToolUseContent, ToolResultContent, OtherContent],
    Field(union_mode="left_to_right"),
]


class Message(BaseModel):
    role: str
    content: Annotated[
        Union[str, list[ContentPart], None], Field(union_mode="left_to_right")
    ] = None


class ToolDefinition(BaseModel):
    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=dict)


class MessagesRequest(BaseModel):
    """Body of POST /v1/messages and /v1/messages/count_tokens."""

    model_config = ConfigDict(extra="ignore")

    model: str = ""
    messages: list[Message]
    max_tokens: int = 4096
    stream: bool = False
    system: Annotated[
        Union[str, list[ContentPart], None], Field(union_mode="left_to_right")
    ] = None
    tools: list[ToolDefinition] = Field(default_factory=list)
