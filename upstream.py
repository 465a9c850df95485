"""
Upstream chat backend: request conversion and transport.

Converts a Messages API request into the upstream chat format (one text part
per message, tool definitions folded into the system prompt) and sends it
with httpx, either streamed as raw text chunks or read in full.
"""

import json
import logging
import uuid
from collections.abc import AsyncIterator
from typing import Any

import httpx

from models import (
    ContentPart,
    Message,
    MessagesRequest,
    OtherContent,
    TextContent,
    ToolDefinition,
    ToolResultContent,
    ToolUseContent,
)

logger = logging.getLogger(__name__)

DEFAULT_UPSTREAM_MODEL = "anthropic/claude-sonnet-4.5"

# Substring of the requested model name -> upstream model
MODEL_FAMILIES: list[tuple[str, str]] = [
    ("claude", "anthropic/claude-sonnet-4.5"),
    ("gpt", "openai/gpt-5-nano"),
    ("gemini", "google/gemini-2.5-flash"),
]

TOOL_PROMPT_HEADER = """

# Tools

You can call the following tools. To call a tool, write a <tool_call> block
containing a single JSON object with the tool name and its input, for example:

<tool_call>{"name": "bash", "input": {"command": "ls -la"}}</tool_call>

Write one <tool_call> block per call. The result will be sent back to you in
the next message. Available tools:
"""


class UpstreamError(Exception):
    """The upstream backend could not be reached or returned an error."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def generate_id() -> str:
    """Short unique identifier for upstream messages and requests."""
    return uuid.uuid4().hex[:16]


def map_model_name(model: str, default: str = DEFAULT_UPSTREAM_MODEL) -> str:
    """Map a client model name onto an upstream model identifier."""
    model = model.lower()

    # Already in provider/model form
    if "/" in model:
        return model

    for family, upstream_model in MODEL_FAMILIES:
        if family in model:
            return upstream_model

    return default


def generate_tool_prompt(tools: list[ToolDefinition]) -> str:
    """Describe the available tools and the inline call syntax."""
    if not tools:
        return ""

    lines = [TOOL_PROMPT_HEADER]
    for tool in tools:
        lines.append(f"## {tool.name}")
        if tool.description:
            lines.append(tool.description)
        if tool.input_schema:
            lines.append(f"Input schema: {json.dumps(tool.input_schema, ensure_ascii=False)}")
        lines.append("")
    return "\n".join(lines)


def _tool_result_text(part: ToolResultContent) -> str:
    content = part.content
    if content is None:
        result_text = ""
    elif isinstance(content, str):
        result_text = content
    else:
        result_text = "".join(item.text for item in content if isinstance(item, TextContent))

    prefix = "Tool error" if part.is_error else "Tool result"
    return f"[{prefix} (ID: {part.tool_use_id})]\n{result_text}"


def _tool_use_text(part: ToolUseContent) -> str:
    call = json.dumps({"name": part.name, "input": part.input}, ensure_ascii=False)
    return f"<tool_call>{call}</tool_call>"


def system_text(system: str | list[ContentPart] | None) -> str:
    """System prompt text; non-text system blocks are skipped."""
    if system is None:
        return ""
    if isinstance(system, str):
        return system
    return "\n".join(block.text for block in system if isinstance(block, TextContent))


def extract_message_text(message: Message) -> str:
    """Flatten a message's content into plain text."""
    content = message.content
    if content is None:
        return ""
    if isinstance(content, str):
        return content

    texts = []
    for part in content:
        if isinstance(part, TextContent):
            texts.append(part.text)
        elif isinstance(part, ToolResultContent):
            texts.append(_tool_result_text(part))
        elif isinstance(part, ToolUseContent):
            texts.append(_tool_use_text(part))
        elif isinstance(part, OtherContent):
            logger.debug(f"Skipping unsupported content part: {part.type}")
    return "\n".join(texts)


def user_texts(request: MessagesRequest) -> list[str]:
    """Text of every user message, in order."""
    texts = []
    for message in request.messages:
        if message.role != "user":
            continue
        text = extract_message_text(message)
        if text:
            texts.append(text)
    return texts


def conversation_text(request: MessagesRequest) -> str:
    """System prompt plus every message, for token estimation."""
    parts = [system_text(request.system)]
    parts.extend(extract_message_text(message) for message in request.messages)
    return "".join(parts)


def _upstream_message(role: str, text: str) -> dict[str, Any]:
    return {
        "parts": [{"type": "text", "text": text}],
        "id": generate_id(),
        "role": role,
    }


def build_upstream_request(
    request: MessagesRequest, default_model: str = DEFAULT_UPSTREAM_MODEL
) -> dict[str, Any]:
    """Convert a Messages API request into an upstream chat request."""
    messages = []

    sys_text = system_text(request.system) + generate_tool_prompt(request.tools)
    if sys_text:
        messages.append(_upstream_message("system", sys_text))

    for message in request.messages:
        text = extract_message_text(message)
        if text:
            messages.append(_upstream_message(message.role, text))

    return {
        "context": [{"type": "file", "content": "", "filePath": "/docs/"}],
        "model": map_model_name(request.model, default_model),
        "id": generate_id(),
        "messages": messages,
        "trigger": "submit-message",
    }


class UpstreamClient:
    """Sends chat requests to the upstream backend."""

    def __init__(
        self,
        base_url: str,
        chat_path: str = "/api/chat",
        timeout: float = 120.0,
        headers: dict[str, str] | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.chat_path = chat_path
        self.timeout = timeout
        self.headers = headers or {}

    @property
    def chat_url(self) -> str:
        return f"{self.base_url}{self.chat_path}"

    async def stream(self, payload: dict[str, Any]) -> AsyncIterator[str]:
        """Yield the raw response text in arrival order."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                async with client.stream(
                    "POST", self.chat_url, json=payload, headers=self.headers
                ) as response:
                    if response.status_code >= 400:
                        error_body = await response.aread()
                        logger.error(
                            f"Upstream returned {response.status_code}: {error_body.decode(errors='replace')}"
                        )
                        raise UpstreamError(
                            f"Upstream error {response.status_code}: {error_body.decode(errors='replace')}",
                            status_code=response.status_code,
                        )

                    async for chunk in response.aiter_text():
                        yield chunk
        except httpx.HTTPError as e:
            logger.error(f"HTTP error from upstream: {e}")
            raise UpstreamError(f"Upstream request failed: {e}") from e

    async def send(self, payload: dict[str, Any]) -> str:
        """Send a request and return the full response body."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.chat_url, json=payload, headers=self.headers)
                response.raise_for_status()
                return response.text
        except httpx.HTTPStatusError as e:
            logger.error(f"Upstream returned {e.response.status_code}: {e.response.text}")
            raise UpstreamError(
                f"Upstream error {e.response.status_code}: {e.response.text}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"HTTP error from upstream: {e}")
            raise UpstreamError(f"Upstream request failed: {e}") from e

    async def is_healthy(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.get(self.base_url)
                return response.status_code < 500
        except httpx.HTTPError:
            return False
