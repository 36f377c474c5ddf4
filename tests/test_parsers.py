"""Tests for streamed-response parsing."""

import json

import pytest


def data_line(delta: dict) -> str:
    return "data: " + json.dumps({"choices": [{"index": 0, "delta": delta}]})


# ─────────────────────────────────────────────────────────────────────
# parse_stream_line
# ─────────────────────────────────────────────────────────────────────


class TestParseStreamLine:

    def test_content(self):
        from llm_relay.parsers import parse_stream_line

        chunk = parse_stream_line(data_line({"content": "Hello"}))
        assert chunk.content == "Hello"
        assert chunk.tool_calls == []
        assert chunk.done is False

    def test_done(self):
        from llm_relay.parsers import parse_stream_line

        assert parse_stream_line("data: [DONE]").done is True

    @pytest.mark.parametrize("line", [
        "",
        ": keep-alive",
        "event: ping",
        "data: {not json",
        "data: keep-alive",
        'data: {"choices":[]}',
        'data: {"id":"x"}',
        "data: [1, 2]",
        data_line({"role": "assistant"}),
        data_line({"content": ""}),
    ])
    def test_lines_without_payload_are_skipped(self, line):
        from llm_relay.parsers import parse_stream_line

        assert parse_stream_line(line) is None

    @pytest.mark.parametrize("line", [
        'data: {"choices":[{"delta":"x"}]}',
        'data: {"choices":[{"delta":["x"]}]}',
        'data: {"choices":{"delta":{"content":"x"}}}',
        'data: {"choices":[{"delta":{"tool_calls":["oops"]}}]}',
        'data: {"choices":[{"delta":{"tool_calls":"oops"}}]}',
    ])
    def test_unexpected_shapes_are_skipped(self, line):
        from llm_relay.parsers import parse_stream_line

        assert parse_stream_line(line) is None

    def test_bad_tool_call_entry_keeps_content(self):
        from llm_relay.parsers import parse_stream_line

        line = data_line({
            "content": "ok",
            "tool_calls": [7, {"index": 0, "function": "search"}],
        })
        chunk = parse_stream_line(line)
        assert chunk.content == "ok"
        assert [(f.index, f.name, f.arguments) for f in chunk.tool_calls] == [(0, "", "")]

    def test_tool_call_fragment(self):
        from llm_relay.parsers import parse_stream_line

        line = data_line({"tool_calls": [
            {"index": 1, "function": {"name": "search", "arguments": "{\"q\""}},
        ]})
        chunk = parse_stream_line(line)
        assert len(chunk.tool_calls) == 1
        assert chunk.tool_calls[0].index == 1
        assert chunk.tool_calls[0].name == "search"
        assert chunk.tool_calls[0].arguments == "{\"q\""

    def test_tool_calls_ignored_in_compatible_mode(self):
        from llm_relay.parsers import parse_stream_line

        line = data_line({"tool_calls": [{"index": 0, "function": {"name": "search"}}]})
        assert parse_stream_line(line, include_tool_calls=False) is None

    def test_reassembles_streamed_text(self, streaming_body):
        from llm_relay.parsers import parse_stream_line

        pieces = []
        for line in streaming_body.decode().splitlines():
            chunk = parse_stream_line(line)
            if chunk is None:
                continue
            if chunk.done:
                break
            pieces.append(chunk.content)
        assert "".join(pieces) == "The capital of France is Paris."


# ─────────────────────────────────────────────────────────────────────
# Reasoning rendering
# ─────────────────────────────────────────────────────────────────────


class TestFormatReasoningStep:

    def test_with_arguments(self):
        from llm_relay.parsers import format_reasoning_step

        assert format_reasoning_step("search", '{"q":"x"}') == '> **Reasoning:** `search` `{"q":"x"}`'

    def test_without_arguments(self):
        from llm_relay.parsers import format_reasoning_step

        assert format_reasoning_step("search", "") == "> **Reasoning:** `search`"


class TestSplitThinking:

    def test_no_markers(self):
        from llm_relay.parsers import split_thinking

        assert split_thinking("Paris") == (None, "Paris")

    def test_open_block(self):
        from llm_relay.parsers import split_thinking

        assert split_thinking("<think>still going") == ("still going", None)

    def test_closed_block(self):
        from llm_relay.parsers import split_thinking

        assert split_thinking("<think> hmm </think> Paris") == ("hmm", "Paris")

    def test_closed_block_without_answer(self):
        from llm_relay.parsers import split_thinking

        assert split_thinking("<think>hmm</think>") == ("hmm", None)

    def test_custom_markers(self):
        from llm_relay.parsers import split_thinking

        assert split_thinking("[t]a[/t]b", "[t]", "[/t]") == ("a", "b")
