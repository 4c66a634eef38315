"""
Tests for newline-delimited JSON framing:
- frames are split on newlines regardless of chunk boundaries
- a malformed line raises DecodeError for that line only
- request ids are recovered from malformed frames when possible
- oversized frames are skipped without losing the following frames
- writes are whole, single-line frames
"""

import io
import json
import os
import tempfile

import anyio
import pytest
from mcp import types

from src.assistantmcp.errors import DecodeError
from src.assistantmcp.framing import (
    END_OF_STREAM,
    MessageFramer,
    StdinReceiver,
    StdoutSender,
    decode_frame,
    encode_frame,
)


def _framer(max_frame_bytes: int = 4096):
    input_send, input_receive = anyio.create_memory_object_stream(100)
    output_send, output_receive = anyio.create_memory_object_stream(100)
    framer = MessageFramer(input_receive, output_send, max_frame_bytes=max_frame_bytes)
    return framer, input_send, output_receive


PING = b'{"jsonrpc":"2.0","id":1,"method":"ping"}'


# ---------------------------------------------------------------------------
# decode_frame / encode_frame
# ---------------------------------------------------------------------------

class TestDecodeFrame:

    def test_request(self):
        message = decode_frame(PING)
        assert isinstance(message, types.JSONRPCRequest)
        assert message.id == 1
        assert message.method == "ping"

    def test_notification_has_no_id(self):
        message = decode_frame(b'{"jsonrpc":"2.0","method":"notifications/initialized"}')
        assert isinstance(message, types.JSONRPCNotification)

    def test_client_response_and_error(self):
        assert isinstance(
            decode_frame(b'{"jsonrpc":"2.0","id":3,"result":{}}'), types.JSONRPCResponse
        )
        assert isinstance(
            decode_frame(b'{"jsonrpc":"2.0","id":3,"error":{"code":-1,"message":"x"}}'),
            types.JSONRPCError,
        )

    def test_malformed_json_is_parse_error(self):
        with pytest.raises(DecodeError) as exc_info:
            decode_frame(b"{not json")
        assert exc_info.value.code == types.PARSE_ERROR
        assert exc_info.value.request_id is None

    def test_malformed_json_recovers_id(self):
        with pytest.raises(DecodeError) as exc_info:
            decode_frame(b'{"jsonrpc":"2.0","id":5,"method":"tools/call",,}')
        assert exc_info.value.request_id == 5

    def test_malformed_json_recovers_string_id(self):
        with pytest.raises(DecodeError) as exc_info:
            decode_frame(b'{"jsonrpc":"2.0","id":"req-9","method":')
        assert exc_info.value.request_id == "req-9"

    def test_non_object_is_invalid_request(self):
        with pytest.raises(DecodeError) as exc_info:
            decode_frame(b"[1, 2, 3]")
        assert exc_info.value.code == types.INVALID_REQUEST
        assert exc_info.value.request_id is None

    def test_invalid_envelope_keeps_id(self):
        with pytest.raises(DecodeError) as exc_info:
            decode_frame(b'{"id":4,"method":"ping"}')  # missing jsonrpc
        assert exc_info.value.code == types.INVALID_REQUEST
        assert exc_info.value.request_id == 4

    def test_encode_is_one_line(self):
        frame = encode_frame(
            types.JSONRPCResponse(jsonrpc="2.0", id=1, result={"text": "line one\nline two"})
        )
        assert frame.endswith(b"\n")
        assert frame.count(b"\n") == 1
        assert json.loads(frame) == {
            "jsonrpc": "2.0",
            "id": 1,
            "result": {"text": "line one\nline two"},
        }


# ---------------------------------------------------------------------------
# MessageFramer
# ---------------------------------------------------------------------------

class TestMessageFramer:

    @pytest.mark.asyncio
    async def test_reads_frames_in_order_then_end_of_stream(self):
        framer, input_send, _ = _framer()
        await input_send.send(
            PING + b"\n" + b'{"jsonrpc":"2.0","method":"notifications/initialized"}\n'
        )
        await input_send.aclose()

        first = await framer.read_message()
        second = await framer.read_message()
        assert isinstance(first, types.JSONRPCRequest)
        assert isinstance(second, types.JSONRPCNotification)
        assert await framer.read_message() is END_OF_STREAM
        assert await framer.read_message() is END_OF_STREAM

    @pytest.mark.asyncio
    async def test_frame_split_across_chunks(self):
        framer, input_send, _ = _framer()
        await input_send.send(b'{"jsonrpc":"2.0",')
        await input_send.send(b'"id":7,"method":"ping"}\n')

        message = await framer.read_message()
        assert message.id == 7

    @pytest.mark.asyncio
    async def test_blank_lines_are_skipped(self):
        framer, input_send, _ = _framer()
        await input_send.send(b"\n   \r\n" + PING + b"\r\n")

        message = await framer.read_message()
        assert message.id == 1

    @pytest.mark.asyncio
    async def test_malformed_line_does_not_break_stream(self):
        framer, input_send, _ = _framer()
        await input_send.send(b"{garbage\n" + b'{"jsonrpc":"2.0","id":2,"method":"ping"}\n')

        with pytest.raises(DecodeError):
            await framer.read_message()
        message = await framer.read_message()
        assert message.id == 2

    @pytest.mark.asyncio
    async def test_last_frame_without_newline(self):
        framer, input_send, _ = _framer()
        await input_send.send(PING)
        await input_send.aclose()

        message = await framer.read_message()
        assert message.id == 1
        assert await framer.read_message() is END_OF_STREAM

    @pytest.mark.asyncio
    async def test_oversized_frame_is_skipped(self):
        framer, input_send, _ = _framer(max_frame_bytes=64)
        await input_send.send(
            b'{"jsonrpc":"2.0","id":1,"method":"ping","params":{"pad":"' + b"x" * 80
        )
        await input_send.send(b'"}}\n{"jsonrpc":"2.0","id":2,"method":"ping"}\n')

        with pytest.raises(DecodeError, match="exceeds 64 bytes"):
            await framer.read_message()
        message = await framer.read_message()
        assert message.id == 2

    @pytest.mark.asyncio
    async def test_concurrent_writes_never_interleave(self):
        framer, _, output_receive = _framer()

        async def write(i: int) -> None:
            await framer.write_message(
                types.JSONRPCResponse(jsonrpc="2.0", id=i, result={"payload": "y" * 1000})
            )

        async with anyio.create_task_group() as tg:
            for i in range(20):
                tg.start_soon(write, i)

        ids = set()
        for _ in range(20):
            frame = output_receive.receive_nowait()
            assert frame.count(b"\n") == 1
            ids.add(json.loads(frame)["id"])
        assert ids == set(range(20))


# ---------------------------------------------------------------------------
# stdio adapters
# ---------------------------------------------------------------------------

class TestStdinReceiver:

    @pytest.mark.asyncio
    async def test_reads_pipe_until_closed(self):
        read_fd, write_fd = os.pipe()
        receiver = StdinReceiver(open(read_fd, "rb"))
        try:
            os.write(write_fd, PING + b"\n")
            assert await receiver.receive() == PING + b"\n"
            os.close(write_fd)
            write_fd = None
            with pytest.raises(anyio.EndOfStream):
                await receiver.receive()
        finally:
            if write_fd is not None:
                os.close(write_fd)
            await receiver.aclose()

    @pytest.mark.asyncio
    async def test_idle_read_is_cancellable(self):
        read_fd, write_fd = os.pipe()
        receiver = StdinReceiver(open(read_fd, "rb"))
        try:
            with anyio.move_on_after(0.1) as scope:
                await receiver.receive()
            assert scope.cancelled_caught
        finally:
            await receiver.aclose()
            os.close(write_fd)

    @pytest.mark.asyncio
    async def test_regular_file_is_read_to_end(self):
        with tempfile.TemporaryFile() as f:
            f.write(PING + b"\n")
            f.seek(0)
            framer = MessageFramer(StdinReceiver(f), StdoutSender(io.BytesIO()))

            message = await framer.read_message()
            assert message.id == 1
            assert await framer.read_message() is END_OF_STREAM


class TestStdoutSender:

    @pytest.mark.asyncio
    async def test_frames_written_and_flushed(self):
        out = io.BytesIO()
        framer = MessageFramer(StdinReceiver(io.BytesIO()), StdoutSender(out))
        await framer.write_message(types.JSONRPCResponse(jsonrpc="2.0", id=1, result={}))
        assert out.getvalue() == b'{"jsonrpc":"2.0","id":1,"result":{}}\n'
