"""Tests for incremental SSE decoding and event typing."""

from __future__ import annotations

import json
import unittest

from codex_agent.stream_events import (
    ItemDone,
    ResponseCompleted,
    ResponseFailed,
    SSEParser,
    TextDelta,
    ToolCallArgumentsDelta,
    ToolCallDone,
    ToolCallOpened,
    UnknownEvent,
    aiter_events,
    parse_event,
)


def _frame(payload: dict) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def _text_delta(text: str) -> dict:
    return {"type": "response.output_text.delta", "item_id": "msg_1", "delta": text}


def _parse_all(chunks: list[bytes]) -> list:
    parser = SSEParser()
    events = []
    for chunk in chunks:
        events.extend(parser.feed(chunk))
    events.extend(parser.close())
    return events


class SSEParserTests(unittest.TestCase):
    """Validate framing across arbitrary chunk boundaries."""

    def test_every_split_point_yields_identical_events(self) -> None:
        stream = (
            _frame(_text_delta("héllo 🌍"))
            + _frame(_text_delta(" world"))
            + b"data: [DONE]\n\n"
        )
        expected = _parse_all([stream])
        self.assertEqual(
            expected,
            [TextDelta(delta="héllo 🌍", item_id="msg_1"), TextDelta(delta=" world", item_id="msg_1")],
        )
        for offset in range(1, len(stream)):
            with self.subTest(offset=offset):
                self.assertEqual(_parse_all([stream[:offset], stream[offset:]]), expected)

    def test_byte_at_a_time_feed_reassembles_multibyte_characters(self) -> None:
        stream = _frame(_text_delta("日本語"))
        parser = SSEParser()
        events = []
        for index in range(len(stream)):
            events.extend(parser.feed(stream[index : index + 1]))
        self.assertEqual(events, [TextDelta(delta="日本語", item_id="msg_1")])

    def test_partial_line_is_retained_until_newline(self) -> None:
        parser = SSEParser()
        self.assertEqual(parser.feed(b'data: {"type":"response.output_text.delta",'), [])
        self.assertTrue(parser.buffered.startswith("data:"))
        events = parser.feed(b'"delta":"ok"}\r\n')
        self.assertEqual(events, [TextDelta(delta="ok")])
        self.assertEqual(parser.buffered, "")

    def test_done_sentinel_sets_flag_without_event(self) -> None:
        parser = SSEParser()
        self.assertEqual(parser.feed(b"data: [DONE]\n"), [])
        self.assertTrue(parser.done)

    def test_corrupt_frame_is_skipped_and_counted(self) -> None:
        parser = SSEParser()
        events = parser.feed(
            b"data: {not json}\n" + b"data: [1, 2]\n" + _frame(_text_delta("after"))
        )
        self.assertEqual(events, [TextDelta(delta="after", item_id="msg_1")])
        self.assertEqual(parser.skipped_frames, 2)

    def test_non_data_lines_are_ignored(self) -> None:
        events = _parse_all(
            [b": keep-alive\n", b"event: message\n", b"id: 7\n", b"\n", b"data:" + json.dumps(_text_delta("x")).encode() + b"\n"]
        )
        self.assertEqual(events, [TextDelta(delta="x", item_id="msg_1")])

    def test_unterminated_last_line_is_discarded_on_close(self) -> None:
        parser = SSEParser()
        parser.feed(b'data: {"type":"response.output_text.delta","delta":"lost"}')
        self.assertEqual(parser.close(), [])
        self.assertEqual(parser.buffered, "")


class ParseEventTests(unittest.TestCase):
    """Validate payload to event mapping."""

    def test_function_call_lifecycle_events(self) -> None:
        opened = parse_event(
            {
                "type": "response.output_item.added",
                "item": {"type": "function_call", "id": "fc_1", "call_id": "call_1", "name": "read"},
            }
        )
        self.assertEqual(opened, ToolCallOpened(item_id="fc_1", call_id="call_1", name="read"))

        delta = parse_event(
            {"type": "response.function_call_arguments.delta", "item_id": "fc_1", "delta": '{"a"'}
        )
        self.assertEqual(delta, ToolCallArgumentsDelta(item_id="fc_1", delta='{"a"'))

        done = parse_event(
            {
                "type": "response.output_item.done",
                "item": {
                    "type": "function_call",
                    "id": "fc_1",
                    "call_id": "call_1",
                    "name": "read",
                    "arguments": '{"a": 1}',
                },
            }
        )
        self.assertIsInstance(done, ToolCallDone)
        assert isinstance(done, ToolCallDone)
        self.assertEqual(done.call_id, "call_1")
        self.assertEqual(done.arguments, '{"a": 1}')

    def test_arguments_done_does_not_invent_call_id(self) -> None:
        done = parse_event(
            {"type": "response.function_call_arguments.done", "item_id": "fc_9", "arguments": "{}"}
        )
        assert isinstance(done, ToolCallDone)
        self.assertEqual(done.item_id, "fc_9")
        self.assertEqual(done.call_id, "")

    def test_message_item_done_collects_output_text(self) -> None:
        event = parse_event(
            {
                "type": "response.output_item.done",
                "item": {
                    "type": "message",
                    "id": "msg_2",
                    "content": [
                        {"type": "output_text", "text": "Hello"},
                        {"type": "refusal", "refusal": "no"},
                        {"type": "output_text", "text": " there"},
                    ],
                },
            }
        )
        self.assertEqual(event, ItemDone(texts=("Hello", " there"), item_id="msg_2"))

    def test_completed_and_failure_events(self) -> None:
        self.assertEqual(
            parse_event({"type": "response.completed", "response": {"id": "resp_1"}}),
            ResponseCompleted(response_id="resp_1"),
        )
        failed = parse_event(
            {"type": "response.failed", "response": {"error": {"message": "overloaded"}}}
        )
        self.assertIsInstance(failed, ResponseFailed)
        assert isinstance(failed, ResponseFailed)
        self.assertEqual(failed.message, "overloaded")
        error = parse_event({"type": "error", "message": "bad request"})
        assert isinstance(error, ResponseFailed)
        self.assertEqual(error.message, "bad request")

    def test_minimal_wire_shapes_without_type_or_item_id(self) -> None:
        opened = parse_event(
            {"type": "response.output_item.added", "item": {"id": "call_1", "name": "read_file"}}
        )
        self.assertEqual(opened, ToolCallOpened(item_id="call_1", call_id="call_1", name="read_file"))

        fragment = parse_event(
            {"type": "response.function_call_arguments.delta", "callId": "call_1", "delta": '{"p'}
        )
        self.assertEqual(fragment, ToolCallArgumentsDelta(item_id="call_1", delta='{"p'))

        finalized = parse_event(
            {
                "type": "response.output_item.done",
                "item": {"id": "call_1", "name": "read_file", "arguments": '{"path": "a"}'},
            }
        )
        self.assertIsInstance(finalized, ToolCallDone)
        assert isinstance(finalized, ToolCallDone)
        self.assertEqual(finalized.item_id, "call_1")
        self.assertEqual(finalized.call_id, "call_1")
        self.assertEqual(finalized.arguments, '{"path": "a"}')

        item_done = parse_event(
            {
                "type": "response.output_item.done",
                "item": {"content": [{"type": "output_text", "text": "All set."}]},
            }
        )
        self.assertEqual(item_done, ItemDone(texts=("All set.",), item_id=""))

    def test_unrecognised_payloads_become_unknown_events(self) -> None:
        event = parse_event({"type": "response.reasoning_summary.delta", "delta": "hm"})
        self.assertIsInstance(event, UnknownEvent)
        self.assertEqual(event.type, "response.reasoning_summary.delta")
        self.assertIsInstance(parse_event({"delta": "no type"}), UnknownEvent)
        # Known type, malformed body.
        self.assertIsInstance(
            parse_event({"type": "response.output_text.delta", "delta": 5}), UnknownEvent
        )


class AsyncIterationTests(unittest.IsolatedAsyncioTestCase):
    async def test_aiter_events_over_async_source(self) -> None:
        async def source():
            yield b'data: {"type":"response.output_text.delta","delta":"a"}\n'
            yield b'data: {"type":"response.output_text.delta","delta":"b"}\n'

        events = [event async for event in aiter_events(source())]
        self.assertEqual(events, [TextDelta(delta="a"), TextDelta(delta="b")])

    async def test_aiter_events_stops_at_done_sentinel(self) -> None:
        pulled: list[int] = []

        async def source():
            for index, chunk in enumerate(
                [b'data: {"type":"response.output_text.delta","delta":"a"}\ndata: [DONE]\n', b"data: {bad\n"]
            ):
                pulled.append(index)
                yield chunk

        parser = SSEParser()
        events = [event async for event in aiter_events(source(), parser)]
        self.assertEqual(events, [TextDelta(delta="a")])
        self.assertTrue(parser.done)
        self.assertEqual(parser.skipped_frames, 0)
        self.assertEqual(pulled, [0])


if __name__ == "__main__":
    unittest.main()
