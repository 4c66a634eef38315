"""
Newline-delimited JSON framing over a duplex byte stream.

Each frame is exactly one JSON-RPC message on one line. Reading never tears
the stream down on a bad line: the failure is raised as a DecodeError for
that line only and the next call continues with the following line.
"""

import asyncio
import json
import re
import sys
from typing import Any, BinaryIO, Optional, Protocol, Union

import anyio
from mcp import types
from pydantic import ValidationError

from src.assistantmcp.errors import DecodeError, RequestId
from src.utils.logger import get_logger

logger = get_logger("framing")

DEFAULT_MAX_FRAME_BYTES = 4 * 1024 * 1024

InboundMessage = Union[
    types.JSONRPCRequest,
    types.JSONRPCNotification,
    types.JSONRPCResponse,
    types.JSONRPCError,
]
OutboundMessage = Union[types.JSONRPCResponse, types.JSONRPCError, types.JSONRPCNotification]

# Best-effort id recovery from a line that is not valid JSON
_ID_PATTERN = re.compile(r'"id"\s*:\s*("(?:[^"\\]|\\.)*"|-?\d+)(?=\s*[,}])')


class EndOfStream:
    """Returned by read_message() once the inbound stream is exhausted."""

    def __repr__(self) -> str:
        return "END_OF_STREAM"


END_OF_STREAM = EndOfStream()


class ByteReceiver(Protocol):
    async def receive(self) -> bytes: ...

    async def aclose(self) -> None: ...


class ByteSender(Protocol):
    async def send(self, item: bytes) -> None: ...


def _recover_id(line: bytes) -> Optional[RequestId]:
    match = _ID_PATTERN.search(line.decode("utf-8", errors="replace"))
    if not match:
        return None
    try:
        value = json.loads(match.group(1))
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, (str, int)) else None


def _valid_id(value: Any) -> Optional[RequestId]:
    if isinstance(value, bool):
        return None
    return value if isinstance(value, (str, int)) else None


def decode_frame(line: bytes) -> InboundMessage:
    """Decode one line into a typed JSON-RPC message or raise DecodeError."""
    try:
        payload = json.loads(line)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecodeError(f"Parse error: {e}", request_id=_recover_id(line)) from e

    if not isinstance(payload, dict):
        raise DecodeError(
            "Invalid request: frame must be a single JSON object",
            code=types.INVALID_REQUEST,
        )

    if "method" in payload:
        model = types.JSONRPCRequest if "id" in payload else types.JSONRPCNotification
    elif "error" in payload:
        model = types.JSONRPCError
    else:
        model = types.JSONRPCResponse

    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise DecodeError(
            f"Invalid request: {e.errors()[0]['msg']}",
            request_id=_valid_id(payload.get("id")),
            code=types.INVALID_REQUEST,
        ) from e


def encode_frame(message: OutboundMessage) -> bytes:
    body = message.model_dump_json(by_alias=True, exclude_none=True)
    return body.encode("utf-8") + b"\n"


class MessageFramer:
    """Reads and writes JSON-RPC frames on a pair of byte streams.

    Writes are serialized by a lock so concurrent writers can never
    interleave partial frames.
    """

    def __init__(
        self,
        receiver: ByteReceiver,
        sender: ByteSender,
        max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES,
    ):
        self._receiver = receiver
        self._sender = sender
        self._max_frame_bytes = max_frame_bytes
        self._buffer = bytearray()
        self._discarding = False  # inside an oversized frame, skipping to its newline
        self._eof = False
        self._write_lock = anyio.Lock()

    async def read_message(self) -> Union[InboundMessage, EndOfStream]:
        """Return the next message, or END_OF_STREAM once input is closed.

        Raises DecodeError for a malformed line; the framer stays usable.
        """
        while True:
            newline = self._buffer.find(b"\n")
            if newline >= 0:
                line = bytes(self._buffer[:newline])
                del self._buffer[: newline + 1]
                if self._discarding:
                    self._discarding = False
                    continue
                if not line.strip():
                    continue
                if len(line) > self._max_frame_bytes:
                    raise DecodeError(f"Frame exceeds {self._max_frame_bytes} bytes")
                return decode_frame(line)

            if self._discarding:
                self._buffer.clear()
            elif len(self._buffer) > self._max_frame_bytes:
                self._buffer.clear()
                self._discarding = True
                raise DecodeError(f"Frame exceeds {self._max_frame_bytes} bytes")

            if self._eof:
                return END_OF_STREAM

            try:
                chunk = await self._receiver.receive()
            except (anyio.EndOfStream, anyio.ClosedResourceError, anyio.BrokenResourceError):
                self._eof = True
                # A final frame without a trailing newline still counts
                line = bytes(self._buffer)
                self._buffer.clear()
                if line.strip() and not self._discarding:
                    return decode_frame(line)
                return END_OF_STREAM
            self._buffer.extend(chunk)

    async def write_message(self, message: OutboundMessage) -> None:
        frame = encode_frame(message)
        async with self._write_lock:
            await self._sender.send(frame)

    async def aclose(self) -> None:
        """Release the inbound stream; later reads drain the buffer, then END_OF_STREAM."""
        self._eof = True
        await self._receiver.aclose()


# ---------------------------------------------------------------------------
# stdio adapters
# ---------------------------------------------------------------------------

class StdinReceiver:
    """Reads raw chunks from stdin through the event loop's pipe transport.

    Nothing blocks in a worker thread, so a shutdown never waits for the next
    line of input. Regular files cannot be watched by the selector; they are
    read in a worker thread instead, which always reaches end of file.
    """

    def __init__(self, file: Optional[BinaryIO] = None, chunk_size: int = 65536):
        self._file = file if file is not None else sys.stdin.buffer
        self._chunk_size = chunk_size
        self._reader: Optional[asyncio.StreamReader] = None
        self._transport: Optional[asyncio.ReadTransport] = None
        self._threaded = False

    async def _connect(self) -> None:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        protocol = asyncio.StreamReaderProtocol(reader)
        try:
            self._transport, _ = await loop.connect_read_pipe(lambda: protocol, self._file)
        except ValueError:
            logger.debug("stdin is not a pipe, reading it in a worker thread")
            self._threaded = True
            return
        self._reader = reader

    def _read(self) -> bytes:
        read1 = getattr(self._file, "read1", None)
        if read1 is not None:
            return read1(self._chunk_size)
        return self._file.readline()

    async def receive(self) -> bytes:
        if self._reader is None and not self._threaded:
            await self._connect()
        if self._threaded:
            chunk = await anyio.to_thread.run_sync(self._read)
        else:
            chunk = await self._reader.read(self._chunk_size)
        if not chunk:
            raise anyio.EndOfStream
        return chunk

    async def aclose(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None


class StdoutSender:
    """Writes whole frames to a binary file and flushes after each one."""

    def __init__(self, file: Optional[BinaryIO] = None):
        self._file = file if file is not None else sys.stdout.buffer

    def _write(self, data: bytes) -> None:
        self._file.write(data)
        self._file.flush()

    async def send(self, item: bytes) -> None:
        await anyio.to_thread.run_sync(self._write, item)


def stdio_framer(max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES) -> MessageFramer:
    return MessageFramer(StdinReceiver(), StdoutSender(), max_frame_bytes=max_frame_bytes)
