"""
Tool call extraction from plain assistant text.

The upstream backend has no native tool calling, so the tool prompt asks the
model to write calls inline. This module finds them again. Supported forms:

    <tool_call>{"name": "bash", "input": {"command": "ls"}}</tool_call>
    <tool_call><function=bash><parameter=command>ls</parameter></function></tool_call>
    <function=bash><parameter=command>ls</parameter></function>
    {"name": "bash", "input": {"command": "ls"}}
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any
from xml.sax.saxutils import unescape as xml_unescape

logger = logging.getLogger(__name__)


@dataclass
class ToolInvocation:
    """A named tool call with structured input."""

    name: str
    input: dict[str, Any]


@dataclass
class ParsedResponse:
    """Tool calls found in a response plus the text around them."""

    invocations: list[ToolInvocation]
    remaining_text: str


class ToolCallParser:
    """Finds inline tool calls in assistant text."""

    TOOL_CALL_PATTERN = re.compile(
        r"<tool_call>(.*?)</tool_call>", re.DOTALL | re.IGNORECASE
    )

    # - <function=name>...</function>
    # - <function="name">...</function>
    # - <function name="name">...</function>
    FUNCTION_PATTERN = re.compile(
        r'<function(?:\s+name)?\s*[=:]\s*["\']?([^"\'>\s]+)["\']?\s*>(.*?)</function>',
        re.DOTALL | re.IGNORECASE,
    )

    # - <parameter=name>value</parameter>
    # - <parameter name="name">value</parameter>
    PARAMETER_PATTERN = re.compile(
        r'<parameter(?:\s+name)?\s*[=:]\s*["\']?([^"\'>\s]+)["\']?\s*>(.*?)</parameter>',
        re.DOTALL | re.IGNORECASE,
    )

    # Start of a bare JSON tool call; the full object is read with raw_decode
    JSON_TOOL_CALL_START = re.compile(
        r'\{\s*"name"\s*:\s*"[^"]+"\s*,\s*"(?:input|arguments|parameters)"\s*:'
    )

    INPUT_KEYS = ("input", "arguments", "parameters")

    def parse(self, text: str) -> ParsedResponse:
        """Extract tool invocations and the leftover plain text."""
        if not text:
            return ParsedResponse(invocations=[], remaining_text="")

        spans: list[tuple[int, int]] = []
        invocations: list[ToolInvocation] = []

        for match in self.TOOL_CALL_PATTERN.finditer(text):
            found = self._parse_wrapped(match.group(1))
            if found:
                invocations.extend(found)
                spans.append(match.span())

        if not invocations:
            for match in self.FUNCTION_PATTERN.finditer(text):
                invocations.append(self._parse_function(match))
                spans.append(match.span())

        if not invocations:
            for start, end, invocation in self._find_json_calls(text):
                invocations.append(invocation)
                spans.append((start, end))

        if not invocations:
            return ParsedResponse(invocations=[], remaining_text=text)

        logger.debug(f"Parsed {len(invocations)} inline tool call(s)")
        return ParsedResponse(
            invocations=invocations, remaining_text=self._strip_spans(text, spans)
        )

    def _parse_wrapped(self, body: str) -> list[ToolInvocation]:
        function_matches = list(self.FUNCTION_PATTERN.finditer(body))
        if function_matches:
            return [self._parse_function(match) for match in function_matches]

        body = body.strip()
        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            logger.debug(f"Ignoring <tool_call> with unparseable body: {body[:100]}")
            return []

        invocation = self._invocation_from_json(payload)
        return [invocation] if invocation else []

    def _parse_function(self, match: re.Match[str]) -> ToolInvocation:
        arguments: dict[str, Any] = {}
        for param_match in self.PARAMETER_PATTERN.finditer(match.group(2)):
            value = xml_unescape(param_match.group(2))
            arguments[param_match.group(1)] = self._maybe_parse_json(value)
        return ToolInvocation(name=match.group(1), input=arguments)

    def _find_json_calls(self, text: str) -> list[tuple[int, int, ToolInvocation]]:
        decoder = json.JSONDecoder()
        found = []
        position = 0
        while True:
            match = self.JSON_TOOL_CALL_START.search(text, position)
            if not match:
                break
            try:
                payload, end = decoder.raw_decode(text, match.start())
            except json.JSONDecodeError:
                position = match.end()
                continue
            invocation = self._invocation_from_json(payload)
            if invocation:
                found.append((match.start(), end, invocation))
            position = end
        return found

    def _invocation_from_json(self, payload: Any) -> ToolInvocation | None:
        if not isinstance(payload, dict) or not isinstance(payload.get("name"), str):
            return None

        arguments: Any = {}
        for key in self.INPUT_KEYS:
            if key in payload:
                arguments = payload[key]
                break

        # Some models double-encode the arguments as a JSON string
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments)
            except json.JSONDecodeError:
                pass

        if not isinstance(arguments, dict):
            arguments = {"raw": arguments}

        return ToolInvocation(name=payload["name"], input=arguments)

    @staticmethod
    def _strip_spans(text: str, spans: list[tuple[int, int]]) -> str:
        pieces = []
        cursor = 0
        for start, end in sorted(spans):
            pieces.append(text[cursor:start])
            cursor = end
        pieces.append(text[cursor:])
        return "".join(pieces).strip()

    @staticmethod
    def _maybe_parse_json(value: str) -> Any:
        """Try to parse value as JSON, return original if not JSON."""
        value = value.strip()

        if not value:
            return value

        # Check if it looks like JSON
        if value.startswith(("{", "[", '"')) or value in ("true", "false", "null"):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                pass

        # Try to parse as number
        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        return value
