"""
Chunk transports.

A ChunkTransport moves byte chunks for many sessions at once, keyed by
session id. The session layer only relies on the contract below:

- ``send`` delivers chunks in order per session, or raises TransportError
  flagged transient (worth retrying) or permanent.
- ``receive`` yields the chunks of one session until the channel is
  closed. It may only be consumed once.
- ``close`` ends a session's channel and is idempotent.

Two adapters are provided: an in-process relay with a bounded window per
session, and a TCP stream adapter with optional AES-GCM per chunk.
"""

import abc
import asyncio
import logging
import struct
from typing import AsyncIterator

from cryptography.exceptions import InvalidTag

from config import RELAY_WINDOW, SEND_TIMEOUT
from security.crypto import (
    decrypt_chunk,
    derive_shared_key,
    encrypt_chunk,
    generate_keypair,
)
from transfer.errors import TransportError

logger = logging.getLogger(__name__)


class ChunkTransport(abc.ABC):
    """Bidirectional chunk channel between two endpoints."""

    @abc.abstractmethod
    async def send(self, session_id: str, chunk: bytes) -> None:
        ...

    @abc.abstractmethod
    def receive(self, session_id: str) -> AsyncIterator[bytes]:
        ...

    @abc.abstractmethod
    async def close(self, session_id: str) -> None:
        ...

    def discard(self, session_id: str) -> None:
        """Drop whatever is still held for a purged session."""


# --- In-process relay ---

_EOF = object()


class _Pipe:
    def __init__(self, window: int) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()
        self.window = asyncio.Semaphore(window)
        self.buffered = 0
        self.closed = False
        self.consumed = False


class MemoryChunkTransport(ChunkTransport):
    """
    Relay that buffers at most ``window`` chunks per session.

    A sender that gets more than ``window`` chunks ahead of its receiver is
    suspended; if no slot frees up within ``send_timeout`` the send fails
    with a transient TransportError so the session can back off and retry.
    """

    def __init__(self, window: int = RELAY_WINDOW, send_timeout: float = SEND_TIMEOUT) -> None:
        if window < 1:
            raise ValueError("window must be at least one chunk")
        self._window = window
        self._send_timeout = send_timeout
        self._pipes: dict[str, _Pipe] = {}

    def _pipe(self, session_id: str) -> _Pipe:
        pipe = self._pipes.get(session_id)
        if pipe is None:
            pipe = self._pipes[session_id] = _Pipe(self._window)
        return pipe

    def pending(self, session_id: str) -> int:
        """Chunks buffered but not yet taken by the receiver."""
        pipe = self._pipes.get(session_id)
        if pipe is None:
            return 0
        return pipe.buffered

    async def send(self, session_id: str, chunk: bytes) -> None:
        pipe = self._pipe(session_id)
        if pipe.closed:
            raise TransportError(f"Channel {session_id} is closed")

        try:
            await asyncio.wait_for(pipe.window.acquire(), timeout=self._send_timeout)
        except asyncio.TimeoutError:
            raise TransportError(
                f"Receiver on {session_id} did not drain within {self._send_timeout}s",
                transient=True,
            ) from None

        if pipe.closed:
            pipe.window.release()
            raise TransportError(f"Channel {session_id} closed while sending")
        pipe.buffered += 1
        pipe.queue.put_nowait(bytes(chunk))

    async def receive(self, session_id: str) -> AsyncIterator[bytes]:
        pipe = self._pipe(session_id)
        if pipe.consumed:
            raise TransportError(f"Channel {session_id} was already consumed")
        pipe.consumed = True

        while True:
            item = await pipe.queue.get()
            if item is _EOF:
                return
            pipe.buffered -= 1
            pipe.window.release()
            yield item

    async def close(self, session_id: str) -> None:
        pipe = self._pipe(session_id)
        if pipe.closed:
            return
        pipe.closed = True
        pipe.queue.put_nowait(_EOF)
        # Wake senders parked on a full window; they see the pipe closed
        for _ in range(self._window):
            pipe.window.release()

    def discard(self, session_id: str) -> None:
        self._pipes.pop(session_id, None)


# --- TCP stream ---

HEADER_FORMAT = "!BI"  # 1-byte type + 4-byte length (big-endian)
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)


class FrameType:
    HANDSHAKE_PUBKEY = 0x01
    DATA_CHUNK = 0x06
    CANCEL = 0x09
    TRANSFER_COMPLETE = 0x0A


async def send_frame(
    writer: asyncio.StreamWriter, frame_type: int, payload: bytes = b""
) -> None:
    """Send a type-length-payload frame."""
    header = struct.pack(HEADER_FORMAT, frame_type, len(payload))
    writer.write(header + payload)
    await writer.drain()


async def recv_frame(reader: asyncio.StreamReader) -> tuple[int, bytes]:
    """Receive a type-length-payload frame. Returns (type, payload)."""
    header = await reader.readexactly(HEADER_SIZE)
    frame_type, length = struct.unpack(HEADER_FORMAT, header)
    payload = b""
    if length > 0:
        payload = await reader.readexactly(length)
    return frame_type, payload


async def handshake(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    initiator: bool,
    context: bytes = b"",
) -> bytes:
    """
    Ephemeral X25519 exchange over an open stream.
    The initiator speaks first. Returns the derived AES key.
    """
    private_key, pub_bytes = generate_keypair()

    if initiator:
        await send_frame(writer, FrameType.HANDSHAKE_PUBKEY, pub_bytes)
    frame_type, peer_pub_bytes = await recv_frame(reader)
    if frame_type != FrameType.HANDSHAKE_PUBKEY:
        raise TransportError(f"Expected HANDSHAKE_PUBKEY, got {frame_type:#x}")
    if not initiator:
        await send_frame(writer, FrameType.HANDSHAKE_PUBKEY, pub_bytes)

    return derive_shared_key(private_key, peer_pub_bytes, context)


class _Stream:
    def __init__(self, reader, writer, key: bytes | None) -> None:
        self.reader = reader
        self.writer = writer
        self.key = key
        self.closed = False
        self.consumed = False


class StreamChunkTransport(ChunkTransport):
    """
    One asyncio TCP stream per session.

    ``send`` writes DATA_CHUNK frames to the attached writer, ``receive``
    reads them from the attached reader until TRANSFER_COMPLETE. When a
    key is attached every chunk is sealed with AES-256-GCM, using the
    session id as associated data.
    """

    def __init__(self, send_timeout: float = SEND_TIMEOUT) -> None:
        self._send_timeout = send_timeout
        self._streams: dict[str, _Stream] = {}

    def attach(
        self,
        session_id: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        key: bytes | None = None,
    ) -> None:
        self._streams[session_id] = _Stream(reader, writer, key)
        logger.debug(f"Stream attached for {session_id} (encrypted={key is not None})")

    async def connect(
        self,
        session_id: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        initiator: bool,
    ) -> None:
        """
        Run the X25519 handshake over the stream, then attach it with the
        derived key. Both ends must pass the same session id.
        """
        try:
            key = await asyncio.wait_for(
                handshake(reader, writer, initiator, session_id.encode("utf-8")),
                timeout=self._send_timeout,
            )
        except asyncio.TimeoutError:
            raise TransportError(
                f"Handshake on {session_id} timed out", transient=True
            ) from None
        except asyncio.IncompleteReadError as e:
            raise TransportError(f"Peer closed {session_id} during the handshake") from e
        except (ConnectionError, OSError) as e:
            raise TransportError(f"Handshake on {session_id} failed: {e}") from e

        self.attach(session_id, reader, writer, key)
        logger.info(f"Secure stream established for {session_id}")

    def _stream(self, session_id: str) -> _Stream:
        stream = self._streams.get(session_id)
        if stream is None:
            raise TransportError(f"No stream attached for {session_id}")
        return stream

    async def send(self, session_id: str, chunk: bytes) -> None:
        stream = self._stream(session_id)
        if stream.closed:
            raise TransportError(f"Stream {session_id} is closed")

        payload = chunk
        if stream.key is not None:
            payload = await asyncio.to_thread(
                encrypt_chunk, stream.key, chunk, session_id.encode("utf-8")
            )

        try:
            await asyncio.wait_for(
                send_frame(stream.writer, FrameType.DATA_CHUNK, payload),
                timeout=self._send_timeout,
            )
        except asyncio.TimeoutError:
            raise TransportError(
                f"Stream {session_id} stalled for {self._send_timeout}s",
                transient=True,
            ) from None
        except (ConnectionError, OSError) as e:
            raise TransportError(f"Stream {session_id} broke: {e}") from e

    async def receive(self, session_id: str) -> AsyncIterator[bytes]:
        stream = self._stream(session_id)
        if stream.consumed:
            raise TransportError(f"Stream {session_id} was already consumed")
        stream.consumed = True

        while True:
            try:
                frame_type, payload = await recv_frame(stream.reader)
            except asyncio.IncompleteReadError as e:
                raise TransportError(
                    f"Stream {session_id} ended without TRANSFER_COMPLETE"
                ) from e
            except (ConnectionError, OSError) as e:
                raise TransportError(f"Stream {session_id} broke: {e}") from e

            if frame_type in (FrameType.TRANSFER_COMPLETE, FrameType.CANCEL):
                return
            if frame_type != FrameType.DATA_CHUNK:
                logger.warning(f"Unexpected frame type on {session_id}: {frame_type:#x}")
                continue

            if stream.key is not None:
                try:
                    payload = await asyncio.to_thread(
                        decrypt_chunk, stream.key, payload, session_id.encode("utf-8")
                    )
                except InvalidTag as e:
                    raise TransportError(f"Chunk on {session_id} failed authentication") from e
            yield payload

    async def close(self, session_id: str) -> None:
        stream = self._streams.get(session_id)
        if stream is None or stream.closed:
            return
        stream.closed = True
        try:
            await send_frame(stream.writer, FrameType.TRANSFER_COMPLETE)
        except (ConnectionError, OSError) as e:
            logger.debug(f"Could not signal close on {session_id}: {e}")

    def discard(self, session_id: str) -> None:
        stream = self._streams.pop(session_id, None)
        if stream is not None:
            stream.writer.close()
