"""Tests for the stream-json parser."""

import json

from agency.agents.stream_parser import (
    CONTENT,
    ERROR,
    MESSAGE_COMPLETE,
    MESSAGE_START,
    SYSTEM,
    TOOL_RESULT,
    TOOL_USE,
    UNKNOWN,
    StreamParser,
)


def _line(record: dict) -> str:
    return json.dumps(record) + "\n"


ASSISTANT_TEXT = {"type": "assistant", "message": {"content": [{"type": "text", "text": "Hello"}]}}
RESULT = {"type": "result", "result": "Done.", "usage": {"input_tokens": 12, "output_tokens": 34}}


class TestRecordShapes:
    def test_assistant_text(self):
        events = StreamParser().parse(_line(ASSISTANT_TEXT))
        assert len(events) == 1
        assert events[0].type == CONTENT
        assert events[0].content == "Hello"
        assert events[0].role == "assistant"
        assert not events[0].partial

    def test_assistant_with_several_blocks(self):
        record = {
            "type": "assistant",
            "message": {
                "content": [
                    {"type": "text", "text": "Reading the file"},
                    {"type": "tool_use", "id": "toolu_1", "name": "Read", "input": {"path": "a.py"}},
                ]
            },
        }
        events = StreamParser().parse(_line(record))
        assert [e.type for e in events] == [CONTENT, TOOL_USE]
        assert events[1].id == "toolu_1"
        assert events[1].name == "Read"
        assert events[1].input == {"path": "a.py"}

    def test_user_tool_result(self):
        record = {
            "type": "user",
            "message": {
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": "toolu_1",
                        "content": [{"type": "text", "text": "line 1"}, {"type": "text", "text": "line 2"}],
                        "is_error": True,
                    }
                ]
            },
        }
        [event] = StreamParser().parse(_line(record))
        assert event.type == TOOL_RESULT
        assert event.id == "toolu_1"
        assert event.content == "line 1\nline 2"
        assert event.is_error

    def test_result_is_message_complete_with_raw(self):
        [event] = StreamParser().parse(_line(RESULT))
        assert event.type == MESSAGE_COMPLETE
        assert event.content == "Done."
        assert event.raw["usage"]["output_tokens"] == 34

    def test_system_init(self):
        [event] = StreamParser().parse(_line({"type": "system", "subtype": "init"}))
        assert event.type == SYSTEM
        assert event.content == "init"

    def test_streaming_primitives(self):
        parser = StreamParser()
        chunk = "".join([
            _line({"type": "message_start", "message": {}}),
            _line({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"}}),
            _line({"type": "content_block_start",
                   "content_block": {"type": "tool_use", "id": "t1", "name": "Bash"}}),
            _line({"type": "message_delta", "delta": {"stop_reason": "end_turn"}}),
            _line({"type": "message_stop"}),
        ])
        events = parser.parse(chunk)
        assert [e.type for e in events] == [
            MESSAGE_START, CONTENT, TOOL_USE, MESSAGE_COMPLETE, MESSAGE_COMPLETE,
        ]
        assert events[1].content == "Hi"
        assert events[1].partial
        assert events[2].name == "Bash"

    def test_error_record(self):
        [event] = StreamParser().parse(_line({"type": "error", "error": {"message": "Overloaded"}}))
        assert event.type == ERROR
        assert event.content == "Overloaded"

    def test_ping_is_unknown(self):
        [event] = StreamParser().parse(_line({"type": "ping"}))
        assert event.type == UNKNOWN

    def test_non_object_json_is_unknown(self):
        [event] = StreamParser().parse("[1, 2, 3]\n")
        assert event.type == UNKNOWN
        assert event.raw == [1, 2, 3]

    def test_malformed_shape_is_unknown(self):
        [event] = StreamParser().parse(_line({"type": "assistant", "message": "not a dict"}))
        assert event.type == UNKNOWN


class TestRawLines:
    def test_invalid_json_is_content(self):
        [event] = StreamParser().parse("Welcome to Claude\n")
        assert event.type == CONTENT
        assert event.content == "Welcome to Claude"
        assert event.partial

    def test_carriage_returns_stripped(self):
        events = StreamParser().parse(json.dumps(ASSISTANT_TEXT) + "\r\n")
        assert events[0].type == CONTENT
        assert events[0].content == "Hello"

    def test_blank_lines_skipped(self):
        assert StreamParser().parse("\n\r\n   \n") == []

    def test_garbage_never_raises(self):
        parser = StreamParser()
        events = parser.parse('{"type": \n\x00\x01}{\n{"unterminated": "\n')
        assert all(e.type == CONTENT for e in events)
        assert len(events) == 3

    def test_deeply_nested_line_is_content(self):
        nested = "[" * 200_000 + "]" * 200_000
        events = StreamParser().parse(nested + "\nafter\n")
        assert [e.type for e in events] == [CONTENT, CONTENT]
        assert events[1].content == "after"

    def test_non_string_fields_become_strings(self):
        record = {
            "type": "assistant",
            "message": {"content": [
                {"type": "text", "text": 123},
                {"type": "tool_use", "id": 7, "name": ["Bash"], "input": "ls"},
            ]},
        }
        text, tool = StreamParser().parse(_line(record))
        assert text.content == "123"
        assert (tool.id, tool.name, tool.input) == ("7", '["Bash"]', {})


class TestBuffering:
    def test_incomplete_line_is_held(self):
        parser = StreamParser()
        text = json.dumps(ASSISTANT_TEXT)
        assert parser.parse(text[:10]) == []
        assert parser.pending == text[:10]
        events = parser.parse(text[10:] + "\n")
        assert events[0].content == "Hello"
        assert parser.pending == ""

    def test_split_at_any_offset_matches_whole(self):
        whole = _line(ASSISTANT_TEXT) + "plain text line\n" + _line(RESULT)
        expected = StreamParser().parse(whole)

        for offset in range(1, len(whole)):
            parser = StreamParser()
            events = parser.parse(whole[:offset]) + parser.parse(whole[offset:]) + parser.flush()
            assert [(e.type, e.content) for e in events] == [(e.type, e.content) for e in expected]

    def test_flush_emits_tail_as_partial(self):
        parser = StreamParser()
        parser.parse(json.dumps(ASSISTANT_TEXT))
        [event] = parser.flush()
        assert event.type == CONTENT
        assert event.content == "Hello"
        assert event.partial
        assert parser.flush() == []

    def test_flush_raw_tail(self):
        parser = StreamParser()
        parser.parse("no newline at the end")
        [event] = parser.flush()
        assert event.type == CONTENT
        assert event.content == "no newline at the end"

    def test_reset_discards_tail(self):
        parser = StreamParser()
        parser.parse('{"type": "assis')
        parser.reset()
        assert parser.pending == ""
        assert parser.flush() == []


class TestToDict:
    def test_drops_none_fields(self):
        [event] = StreamParser().parse(_line(ASSISTANT_TEXT))
        assert event.to_dict() == {
            "type": CONTENT,
            "content": "Hello",
            "partial": False,
            "is_error": False,
            "role": "assistant",
        }
