"""Tests for inline tool call parsing."""

from tool_parser import ToolCallParser, ToolInvocation

parser = ToolCallParser()


class TestToolCallWrapper:
    """Tests for <tool_call> wrapped calls."""

    def test_json_body(self) -> None:
        """Test a wrapped JSON tool call."""
        text = 'Listing files.\n<tool_call>{"name": "bash", "input": {"command": "ls"}}</tool_call>'
        parsed = parser.parse(text)
        assert parsed.invocations == [ToolInvocation(name="bash", input={"command": "ls"})]
        assert parsed.remaining_text == "Listing files."

    def test_arguments_key(self) -> None:
        """Test the OpenAI-style 'arguments' key."""
        parsed = parser.parse('<tool_call>{"name": "read", "arguments": {"path": "a.txt"}}</tool_call>')
        assert parsed.invocations == [ToolInvocation(name="read", input={"path": "a.txt"})]
        assert parsed.remaining_text == ""

    def test_double_encoded_arguments(self) -> None:
        """Test arguments given as a JSON string."""
        parsed = parser.parse(
            '<tool_call>{"name": "read", "arguments": "{\\"path\\": \\"a.txt\\"}"}</tool_call>'
        )
        assert parsed.invocations[0].input == {"path": "a.txt"}

    def test_non_object_input_is_wrapped(self) -> None:
        """Test that list inputs become {'raw': ...}."""
        parsed = parser.parse('<tool_call>{"name": "t", "input": [1, 2]}</tool_call>')
        assert parsed.invocations[0].input == {"raw": [1, 2]}

    def test_function_markup_body(self) -> None:
        """Test a wrapper around function/parameter markup."""
        text = (
            "<tool_call><function=write_file>"
            "<parameter=path>src/app.js</parameter>"
            "<parameter=content>&lt;b&gt;hi&lt;/b&gt;</parameter>"
            "</function></tool_call>"
        )
        parsed = parser.parse(text)
        assert parsed.invocations == [
            ToolInvocation(
                name="write_file",
                input={"path": "src/app.js", "content": "<b>hi</b>"},
            )
        ]

    def test_multiple_calls_keep_order(self) -> None:
        """Test that several calls are returned in text order."""
        text = (
            '<tool_call>{"name": "first", "input": {}}</tool_call>\n'
            "between\n"
            '<tool_call>{"name": "second", "input": {}}</tool_call>'
        )
        parsed = parser.parse(text)
        assert [inv.name for inv in parsed.invocations] == ["first", "second"]
        assert parsed.remaining_text == "between"

    def test_unparseable_wrapper_is_left_as_text(self) -> None:
        """Test that a wrapper with junk inside is not a tool call."""
        text = "<tool_call>not json</tool_call>"
        parsed = parser.parse(text)
        assert parsed.invocations == []
        assert parsed.remaining_text == text


class TestBareMarkup:
    """Tests for unwrapped function markup and JSON."""

    def test_function_markup(self) -> None:
        """Test bare <function=...> markup."""
        text = (
            "I'll check.\n<function=bash>\n<parameter=command>ls -la</parameter>\n"
            "<parameter=timeout>30</parameter>\n</function>"
        )
        parsed = parser.parse(text)
        assert parsed.invocations == [
            ToolInvocation(name="bash", input={"command": "ls -la", "timeout": 30})
        ]
        assert parsed.remaining_text == "I'll check."

    def test_function_name_attribute(self) -> None:
        """Test <function name="..."> syntax."""
        parsed = parser.parse('<function name="search"><parameter name="q">cats</parameter></function>')
        assert parsed.invocations == [ToolInvocation(name="search", input={"q": "cats"})]

    def test_bare_json(self) -> None:
        """Test a bare JSON tool call with nested input."""
        text = 'Sure: {"name": "edit", "input": {"path": "a.py", "changes": {"line": 3}}} done'
        parsed = parser.parse(text)
        assert parsed.invocations == [
            ToolInvocation(name="edit", input={"path": "a.py", "changes": {"line": 3}})
        ]
        assert parsed.remaining_text == "Sure:  done"

    def test_truncated_json_is_ignored(self) -> None:
        """Test that a cut-off JSON call is not parsed."""
        text = '{"name": "edit", "input": {"path": "a.py"'
        parsed = parser.parse(text)
        assert parsed.invocations == []


class TestPlainText:
    """Tests for text without tool calls."""

    def test_plain_text(self) -> None:
        """Test that plain text passes through unchanged."""
        text = "Just an answer.\n"
        parsed = parser.parse(text)
        assert parsed.invocations == []
        assert parsed.remaining_text == text

    def test_empty(self) -> None:
        """Test empty input."""
        parsed = parser.parse("")
        assert parsed.invocations == []
        assert parsed.remaining_text == ""

    def test_shell_block_is_not_a_tool_call(self) -> None:
        """Test that a suggested shell command is left for the refusal path."""
        parsed = parser.parse("I cannot execute that. Run: \n```bash\nls -la\n```")
        assert parsed.invocations == []
