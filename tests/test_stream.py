"""Tests for the SSE stream parser."""

import json

import pytest

from mcpchat.core.stream import (
    ParserState,
    StreamDone,
    StreamParser,
    TextChunk,
    ToolCallFragment,
    ToolCallsReady,
)


def sse(payload) -> bytes:
    """Encode one SSE data line."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n".encode("utf-8")


def content_delta(text: str, finish_reason=None) -> bytes:
    return sse({"choices": [{"index": 0, "delta": {"content": text}, "finish_reason": finish_reason}]})


def tool_delta(index: int, id=None, name=None, arguments=None, type=None) -> bytes:
    entry = {"index": index, "function": {}}
    if id is not None:
        entry["id"] = id
    if type is not None:
        entry["type"] = type
    if name is not None:
        entry["function"]["name"] = name
    if arguments is not None:
        entry["function"]["arguments"] = arguments
    return sse({"choices": [{"index": 0, "delta": {"tool_calls": [entry]}}]})


FINISH_TOOL_CALLS = sse({"choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]})
DONE = b"data: [DONE]\n"


def feed_all(parser: StreamParser, chunks):
    events = []
    for chunk in chunks:
        events.extend(parser.feed(chunk))
    return events


class TestTextStreaming:
    """Tests for plain text responses."""

    def test_text_deltas_in_order(self):
        parser = StreamParser()

        events = feed_all(parser, [content_delta("Hel"), content_delta("lo"), DONE])

        assert events == [TextChunk("Hel"), TextChunk("lo"), StreamDone("Hello", had_tool_calls=False)]
        assert parser.state == ParserState.DONE

    def test_partial_line_is_buffered(self):
        """A frame split across chunks is parsed once its newline arrives."""
        parser = StreamParser()
        line = content_delta("split")

        assert parser.feed(line[:15]) == []
        assert parser.feed(line[15:]) == [TextChunk("split")]

    def test_multibyte_character_split_across_chunks(self):
        parser = StreamParser()
        line = content_delta("café ☕")
        cut = line.index("☕".encode("utf-8")) + 1

        events = parser.feed(line[:cut]) + parser.feed(line[cut:])

        assert events == [TextChunk("café ☕")]

    def test_several_frames_in_one_chunk(self):
        parser = StreamParser()

        events = parser.feed(content_delta("a") + content_delta("b") + DONE)

        assert [e.text for e in events if isinstance(e, TextChunk)] == ["a", "b"]
        assert isinstance(events[-1], StreamDone)

    def test_empty_content_not_emitted(self):
        parser = StreamParser()

        assert parser.feed(content_delta("")) == []

    def test_non_data_lines_ignored(self):
        parser = StreamParser()

        events = parser.feed(b": keep-alive\nevent: ping\n\n" + content_delta("x"))

        assert events == [TextChunk("x")]

    def test_crlf_line_endings(self):
        parser = StreamParser()

        events = parser.feed(content_delta("x").replace(b"\n", b"\r\n") + b"data: [DONE]\r\n")

        assert events == [TextChunk("x"), StreamDone("x")]

    def test_malformed_json_line_skipped(self):
        """A bad frame is logged and the stream continues."""
        parser = StreamParser()

        events = feed_all(parser, [b"data: {not json\n", content_delta("ok"), DONE])

        assert events == [TextChunk("ok"), StreamDone("ok")]

    def test_reasoning_is_displayed_not_accumulated(self):
        parser = StreamParser()
        reasoning = sse({"choices": [{"delta": {"reasoning_content": "hmm"}}]})

        events = feed_all(parser, [reasoning, content_delta("answer"), DONE])

        assert events[0] == TextChunk("hmm", reasoning=True)
        assert events[-1] == StreamDone("answer")


class TestDone:
    """Tests for stream termination."""

    def test_duplicate_done_is_ignored(self):
        """Only one StreamDone is emitted even if [DONE] repeats."""
        parser = StreamParser()

        first = feed_all(parser, [content_delta("hi"), DONE])
        second = parser.feed(DONE)

        assert [e for e in first if isinstance(e, StreamDone)] == [StreamDone("hi")]
        assert second == []
        assert parser.finish() == []

    def test_lines_after_done_in_same_chunk_ignored(self):
        parser = StreamParser()

        events = parser.feed(DONE + content_delta("late") + DONE)

        assert events == [StreamDone("")]

    def test_finish_without_done(self):
        """Body EOF finalizes like [DONE]."""
        parser = StreamParser()
        parser.feed(content_delta("abc"))

        assert parser.finish() == [StreamDone("abc")]
        assert parser.is_done

    def test_finish_flushes_partial_line(self):
        parser = StreamParser()
        parser.feed(content_delta("abc").rstrip(b"\n"))

        events = parser.finish()

        assert events == [TextChunk("abc"), StreamDone("abc")]

    def test_done_with_pending_fragments_emits_tool_calls(self):
        parser = StreamParser()

        events = feed_all(parser, [tool_delta(0, id="call_1", name="f", arguments="{}"), DONE])

        assert isinstance(events[0], ToolCallsReady)
        assert events[0].calls[0].id == "call_1"
        assert events[1] == StreamDone("", had_tool_calls=True)


class TestToolCallFragments:
    """Tests for tool-call reassembly."""

    def test_arguments_concatenated_first_id_and_name_kept(self):
        """Arguments join in arrival order; id/name are the first non-null values."""
        parser = StreamParser()
        feed_all(parser, [
            tool_delta(0, id="call_1", name="getCurrentWeather", arguments='{"loc', type="function"),
            tool_delta(0, arguments='ation":"Bos'),
            tool_delta(0, id="call_other", name="other", arguments='ton"}'),
        ])

        fragment = parser.fragments[0]
        assert fragment.id == "call_1"
        assert fragment.name == "getCurrentWeather"
        assert fragment.arguments == '{"location":"Boston"}'

    @pytest.mark.parametrize("pieces", [
        ["{", '"a"', ":", "1", "}"],
        ['{"q": "multi', " word ", 'value"}'],
        ["", '{"x":[1,2', ",3]}"],
    ])
    def test_argument_concatenation(self, pieces):
        parser = StreamParser()
        parser.feed(tool_delta(0, id="c", name="n"))
        feed_all(parser, [tool_delta(0, arguments=p) for p in pieces])

        assert parser.fragments[0].arguments == "".join(pieces)

    def test_two_calls_sorted_by_id(self):
        """finish_reason tool_calls yields every complete call, sorted by id."""
        parser = StreamParser()
        events = feed_all(parser, [
            tool_delta(0, id="call_b", name="second", arguments="{}", type="function"),
            tool_delta(1, id="call_a", name="first", arguments="{}", type="function"),
            FINISH_TOOL_CALLS,
        ])

        ready = [e for e in events if isinstance(e, ToolCallsReady)]
        assert len(ready) == 1
        assert [c.id for c in ready[0].calls] == ["call_a", "call_b"]
        assert parser.state == ParserState.TOOL_CALLS_PENDING
        assert parser.fragments == {}

    def test_finish_reason_then_done_emits_once(self):
        parser = StreamParser()
        events = feed_all(parser, [
            tool_delta(0, id="call_1", name="f", arguments="{}"),
            FINISH_TOOL_CALLS,
            DONE,
        ])

        assert sum(isinstance(e, ToolCallsReady) for e in events) == 1
        assert events[-1] == StreamDone("", had_tool_calls=True)

    def test_incomplete_fragment_dropped(self):
        """Fragments missing id or name never become calls."""
        parser = StreamParser()
        events = feed_all(parser, [
            tool_delta(0, name="no_id", arguments="{}"),
            tool_delta(1, id="call_1", name="ok", arguments="{}"),
            FINISH_TOOL_CALLS,
        ])

        ready = [e for e in events if isinstance(e, ToolCallsReady)][0]
        assert [c.name for c in ready.calls] == ["ok"]

    def test_non_function_type_dropped(self):
        fragment = ToolCallFragment(index=0, id="c", name="n", type="code_interpreter")

        assert not fragment.is_complete

    def test_missing_type_defaults_to_function(self):
        fragment = ToolCallFragment(index=0, id="c", name="n")

        assert fragment.is_complete

    def test_invalid_json_arguments_passed_through(self):
        parser = StreamParser()
        events = feed_all(parser, [tool_delta(0, id="c", name="n", arguments='{"broken'), FINISH_TOOL_CALLS])

        assert events[0].calls[0].arguments == '{"broken'

    def test_text_before_tool_calls(self):
        """The Boston stream: text first, then a split tool call."""
        parser = StreamParser()
        events = feed_all(parser, [
            content_delta("Let"),
            content_delta(" me"),
            content_delta(" check"),
            tool_delta(0, id="call_1", name="getCurrentWeather", arguments='{"loc', type="function"),
            tool_delta(0, arguments='ation":"Bos'),
            tool_delta(0, arguments='ton"}'),
            FINISH_TOOL_CALLS,
            DONE,
        ])

        ready = [e for e in events if isinstance(e, ToolCallsReady)][0]
        assert len(ready.calls) == 1
        call = ready.calls[0]
        assert (call.id, call.name, call.arguments) == ("call_1", "getCurrentWeather", '{"location":"Boston"}')
        assert parser.text == "Let me check"


class TestUnexpectedShapes:
    """Valid JSON that does not look like a chat-completions chunk."""

    @pytest.mark.parametrize("payload", [
        {"choices": {"0": {"delta": {"content": "x"}}}},
        {"choices": "nope"},
        {"choices": [{"delta": "text"}]},
        {"choices": [{"delta": {"tool_calls": {"index": 0}}}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": "getCurrentWeather"}]}}]},
        [1, 2, 3],
        "just a string",
    ])
    def test_line_skipped_and_stream_continues(self, payload):
        parser = StreamParser()

        events = feed_all(parser, [sse(payload), content_delta("ok"), DONE])

        assert events == [TextChunk("ok"), StreamDone("ok")]

    def test_non_string_fields_ignored(self):
        """Numeric ids, names or arguments never reach a ToolCall."""
        parser = StreamParser()
        bad = {"index": 0, "id": 123, "function": {"name": 5, "arguments": {"location": "Boston"}}}
        events = feed_all(parser, [
            sse({"choices": [{"delta": {"tool_calls": [bad]}}]}),
            FINISH_TOOL_CALLS,
            DONE,
        ])

        assert events == [StreamDone("", had_tool_calls=False)]

    def test_string_fields_after_bad_ones_still_merge(self):
        fragment = ToolCallFragment(index=0)

        fragment.merge({"id": 7, "function": {"name": ["x"], "arguments": 1}})
        fragment.merge({"id": "call_1", "function": {"name": "getCurrentWeather", "arguments": "{}"}})

        call = fragment.to_call()
        assert (call.id, call.name, call.arguments) == ("call_1", "getCurrentWeather", "{}")
