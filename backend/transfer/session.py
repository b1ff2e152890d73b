"""
Transfer Session: lifecycle of one file moving from one sender to one
receiver.

State only changes through ``_transition``, which never awaits, so every
transition is atomic on the event loop. Chunk pushes are serialised by a
per-session lock; transport I/O happens outside of any transition.
"""

import asyncio
import logging
import time
from typing import AsyncIterator, Awaitable, Callable

from security.crypto import new_digest
from transfer.channel import ChunkTransport
from transfer.errors import (
    ChecksumMismatch,
    ChunkOverflow,
    SessionAlreadyJoined,
    SessionNotActive,
    TransportError,
)
from transfer.models import (
    FileDescriptor,
    Role,
    SessionPolicy,
    SessionState,
    SessionStatus,
)

logger = logging.getLogger(__name__)

Observer = Callable[[str, dict], Awaitable[None]]


class SpeedTracker:
    """Rolling average speed calculator."""

    def __init__(self, window: float = 2.0, clock: Callable[[], float] = time.monotonic):
        self._window = window
        self._clock = clock
        self._samples: list[tuple[float, int]] = []

    def record(self, byte_count: int) -> None:
        now = self._clock()
        self._samples.append((now, byte_count))
        # Trim old samples
        cutoff = now - self._window
        self._samples = [(t, b) for t, b in self._samples if t >= cutoff]

    def get_speed(self) -> float:
        """Returns speed in bytes/sec."""
        if len(self._samples) < 2:
            return 0.0
        total_bytes = sum(b for _, b in self._samples[1:])
        elapsed = self._samples[-1][0] - self._samples[0][0]
        if elapsed <= 0:
            return 0.0
        return total_bytes / elapsed


class TransferSession:
    """One sender, at most one receiver, one file."""

    def __init__(
        self,
        session_id: str,
        code: str,
        file: FileDescriptor,
        transport: ChunkTransport,
        policy: SessionPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session_id = session_id
        self.code = code
        self.file = file
        self.state = SessionState.PENDING
        self.bytes_transferred = 0
        self.received_bytes = 0
        self.sender_attached = False
        self.sender_finished = False
        self.receiver_joined = False
        self.error_message: str | None = None
        self.receiver_checksum: str | None = None

        self._transport = transport
        self._policy = policy if policy is not None else SessionPolicy()
        self._clock = clock
        self.created_at = clock()
        self.last_activity_at = self.created_at
        self.ended_at: float | None = None

        self._digest = new_digest()
        self._receiver_digest = new_digest()
        self._receiving = False
        self._push_lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._observers: list[Observer] = []
        self._speed = SpeedTracker(clock=clock)

    def __repr__(self) -> str:
        return f"<TransferSession {self.code} {self.state.value} {self.bytes_transferred}/{self.file.total_size}>"

    # --- Observation ---

    @property
    def progress(self) -> float:
        if self.state is SessionState.COMPLETED:
            return 1.0
        return min(max(self.bytes_transferred / self.file.total_size, 0.0), 1.0)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def status(self) -> SessionStatus:
        speed = 0.0 if self.is_terminal else self._speed.get_speed()
        remaining = self.file.total_size - self.bytes_transferred
        return SessionStatus(
            session_id=self.session_id,
            code=self.code,
            file_name=self.file.name,
            state=self.state,
            progress=self.progress,
            bytes_transferred=self.bytes_transferred,
            total_size=self.file.total_size,
            receiver_joined=self.receiver_joined,
            speed_bps=speed,
            eta_seconds=remaining / speed if speed > 0 else 0.0,
            error_message=self.error_message,
        )

    def subscribe(self, callback: Observer) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._observers.append(callback)

    async def _emit(self, event_type: str) -> None:
        data = self.status().model_dump(mode="json")
        for cb in self._observers:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Observer error on {self.code}: {e}")

    # --- State machine ---

    def _transition(self, state: SessionState, error: str | None = None) -> bool:
        """Apply a state change. Returns False when it is not allowed."""
        if self.state.is_terminal or state is self.state:
            return False
        if state is SessionState.ACTIVE and self.state is not SessionState.PENDING:
            return False

        previous = self.state
        self.state = state
        if state.is_terminal:
            self.ended_at = self._clock()
            self.error_message = error
            self._wakeup.set()

        if error:
            logger.info(f"Session {self.code}: {previous.value} -> {state.value} ({error})")
        else:
            logger.info(f"Session {self.code}: {previous.value} -> {state.value}")
        return True

    async def _finish(self, state: SessionState, error: str | None = None) -> bool:
        """Move to a terminal state, close the channel and notify observers."""
        if not self._transition(state, error):
            return False
        await self._close_transport()
        await self._emit("session_state")
        return True

    async def _close_transport(self) -> None:
        try:
            await self._transport.close(self.session_id)
        except TransportError as e:
            logger.warning(f"Closing channel for {self.code} failed: {e}")

    def _ensure_live(self) -> None:
        if self.state not in (SessionState.PENDING, SessionState.ACTIVE):
            raise SessionNotActive(f"Session {self.code} is {self.state.value}")

    async def join_receiver(self) -> None:
        """Bind the receiver. Only one receiver may ever join."""
        self._ensure_live()
        if self.receiver_joined:
            raise SessionAlreadyJoined(f"Session {self.code} already has a receiver")

        self.receiver_joined = True
        self.last_activity_at = self._clock()
        self._wakeup.set()
        logger.info(f"Receiver joined session {self.code}")
        self._activate()
        await self._emit("session_state")

    def _activate(self) -> None:
        if self.sender_attached and self.receiver_joined:
            self._transition(SessionState.ACTIVE)

    async def wait_for_receiver(self, timeout: float | None = None) -> None:
        """Suspend the sender until a receiver joins or the session ends."""
        if not self.receiver_joined:
            await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
        self._ensure_live()

    async def cancel(self, role: Role | None = None) -> bool:
        """Cooperative cancel; in-flight sends unwind and are not retried."""
        who = f" by {role.value}" if role else ""
        return await self._finish(SessionState.CANCELLED, f"Cancelled{who}")

    async def disconnect(self, role: Role) -> bool:
        """An endpoint went away without closing the transfer."""
        return await self._finish(
            SessionState.FAILED,
            f"{role.value.capitalize()} disconnected before the transfer finished",
        )

    async def expire(self, reason: str) -> bool:
        return await self._finish(SessionState.EXPIRED, reason)

    def timeout_reason(self, now: float) -> str | None:
        """Why the session should expire at ``now``, or None."""
        if self.state is SessionState.PENDING:
            if not self.receiver_joined:
                if now - self.created_at >= self._policy.join_timeout:
                    return f"No receiver joined within {self._policy.join_timeout:g}s"
            elif now - self.last_activity_at >= self._policy.idle_timeout:
                return f"Sender idle for {self._policy.idle_timeout:g}s"
        elif self.state is SessionState.ACTIVE:
            if now - self.last_activity_at >= self._policy.idle_timeout:
                return f"No chunk activity for {self._policy.idle_timeout:g}s"
        return None

    def purgeable(self, now: float) -> bool:
        return (
            self.is_terminal
            and self.ended_at is not None
            and now - self.ended_at >= self._policy.grace_period
        )

    # --- Sender side ---

    async def push_chunk(self, chunk: bytes) -> SessionStatus:
        """
        Forward one chunk to the receiver.

        A chunk is counted once the transport accepted it, except the final
        one, which counts when the receiver has verified the file. The
        checksum is checked before the final chunk leaves, so a corrupt
        file never reaches the receiver in full.
        """
        async with self._push_lock:
            if self.state is SessionState.PENDING:
                if not self.receiver_joined:
                    raise SessionNotActive(f"No receiver has joined {self.code} yet")
                self.sender_attached = True
                self._activate()
                await self._emit("session_state")

            if self.state is not SessionState.ACTIVE:
                raise SessionNotActive(f"Session {self.code} is {self.state.value}")
            if self.sender_finished:
                raise SessionNotActive(f"Every byte of {self.code} was already sent")

            self.last_activity_at = self._clock()
            if not chunk:
                return self.status()

            remaining = self.file.total_size - self.bytes_transferred
            if len(chunk) > remaining:
                reason = f"Chunk of {len(chunk)} bytes exceeds the {remaining} bytes remaining"
                await self._finish(SessionState.FAILED, reason)
                raise ChunkOverflow(reason)

            digest = self._digest.copy()
            digest.update(chunk)
            final = len(chunk) == remaining
            if final and digest.hexdigest() != self.file.checksum:
                reason = "Checksum mismatch: data does not match the declared checksum"
                await self._finish(SessionState.FAILED, reason)
                raise ChecksumMismatch(reason)

            await self._forward(chunk)

            # A fast receiver may already have verified the file
            if final and self.state is SessionState.COMPLETED:
                return self.status()
            if self.state is not SessionState.ACTIVE:
                raise SessionNotActive(f"Session {self.code} is {self.state.value}")

            self._digest = digest
            self.last_activity_at = self._clock()
            self._speed.record(len(chunk))

            if final:
                # The last chunk is counted when the receiver has verified it
                self.sender_finished = True
                await self._close_transport()
                logger.info(
                    f"Session {self.code}: sender finished, waiting for the receiver to drain"
                )
                return self.status()

            self.bytes_transferred += len(chunk)
            logger.debug(
                f"Session {self.code}: {self.bytes_transferred}/{self.file.total_size} bytes"
            )
            await self._emit("session_progress")
            return self.status()

    async def _forward(self, chunk: bytes) -> None:
        """Send with bounded retries on transient errors."""
        attempt = 0
        while True:
            try:
                await self._transport.send(self.session_id, chunk)
                if attempt:
                    logger.info(f"Session {self.code} recovered after {attempt} retries")
                return
            except TransportError as e:
                if self.state is not SessionState.ACTIVE:
                    raise SessionNotActive(
                        f"Session {self.code} is {self.state.value}"
                    ) from e

                if e.transient and attempt < self._policy.max_retries:
                    attempt += 1
                    delay = self._policy.retry_delay * 2 ** (attempt - 1)
                    logger.warning(
                        f"Session {self.code} degraded: {e}; "
                        f"retry {attempt}/{self._policy.max_retries} in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)
                    if self.state is not SessionState.ACTIVE:
                        raise SessionNotActive(
                            f"Session {self.code} is {self.state.value}"
                        ) from e
                    continue

                if e.transient:
                    reason = f"Transport failed after {attempt} retries: {e}"
                else:
                    reason = f"Transport failed: {e}"
                logger.error(f"Session {self.code}: {reason}")
                await self._finish(SessionState.FAILED, reason)
                raise

    # --- Receiver side ---

    async def receive(self) -> AsyncIterator[bytes]:
        """
        Yield the file's chunks in order.

        The session completes here, once ``total_size`` bytes were drained
        and the receiver-side checksum matched. A mismatch, a channel that
        ends short, or a consumer that stops early fails it.
        """
        if self._receiving:
            raise SessionNotActive(f"Session {self.code} is already being received")
        self._receiving = True
        finished = False
        total = self.file.total_size

        try:
            try:
                async for chunk in self._transport.receive(self.session_id):
                    if self.is_terminal:
                        break
                    self._receiver_digest.update(chunk)
                    self.received_bytes += len(chunk)
                    self.last_activity_at = self._clock()
                    yield chunk
                    if self.received_bytes >= total:
                        break
            except TransportError as e:
                await self._finish(SessionState.FAILED, f"Receive failed: {e}")
                raise

            finished = True
            if self.is_terminal:
                raise SessionNotActive(
                    f"Transfer {self.code} ended as {self.state.value}"
                    f" after {self.received_bytes} bytes"
                )
            if self.received_bytes != total:
                reason = f"Channel closed after {self.received_bytes} of {total} bytes"
                await self._finish(SessionState.FAILED, reason)
                raise SessionNotActive(reason)

            checksum = self._receiver_digest.hexdigest()
            if checksum != self.file.checksum:
                reason = "Checksum mismatch: received data failed verification"
                await self._finish(SessionState.FAILED, reason)
                raise ChecksumMismatch(reason)

            self.receiver_checksum = checksum
            self.bytes_transferred = total
            self._transition(SessionState.COMPLETED)
            await self._close_transport()
            await self._emit("session_state")
            logger.info(f"Receiver verified {self.file.name} ({self.received_bytes} bytes)")
        finally:
            if not finished and not self.is_terminal:
                await self.disconnect(Role.RECEIVER)
