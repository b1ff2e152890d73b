"""
Session Manager: the single entry point for code-based transfers.

Owns the session table and the code registry, enforces the capacity cap,
and runs the reaper that expires idle sessions and purges finished ones
once their grace period is over.
"""

import asyncio
import logging
import secrets
import time
import uuid
from typing import AsyncIterator, Callable

from transfer.channel import ChunkTransport, MemoryChunkTransport
from transfer.codes import CodeRegistry, normalize
from transfer.errors import (
    CapacityExhausted,
    CodeExpired,
    CodeNotFound,
    InvalidFile,
    InvalidRole,
    SessionNotFound,
)
from transfer.models import (
    FileDescriptor,
    Role,
    SessionHandle,
    SessionPolicy,
    SessionStatus,
)
from transfer.session import TransferSession

logger = logging.getLogger(__name__)


class SessionManager:
    """Creates, multiplexes and reaps transfer sessions."""

    def __init__(
        self,
        transport: ChunkTransport | None = None,
        policy: SessionPolicy | None = None,
        registry: CodeRegistry | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.policy = policy if policy is not None else SessionPolicy()
        self._transport = transport if transport is not None else MemoryChunkTransport()
        # Uncapped: codes in their grace period stay reserved past the live cap
        if registry is None:
            registry = CodeRegistry(max_attempts=self.policy.code_max_attempts)
        self._registry = registry
        self._clock = clock
        self._sessions: dict[str, TransferSession] = {}
        self._tokens: dict[str, SessionHandle] = {}
        self._lock = asyncio.Lock()
        self._event_callbacks: list = []  # async fn(event_type, data)
        self._reaper_task: asyncio.Task | None = None

    @property
    def transport(self) -> ChunkTransport:
        return self._transport

    @property
    def registry(self) -> CodeRegistry:
        return self._registry

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    # --- Lifecycle ---

    async def start(self) -> None:
        """Start the periodic reaper."""
        if self._reaper_task is None:
            self._reaper_task = asyncio.create_task(self._reaper_loop())
            logger.info(
                f"Session manager started (cap {self.policy.max_active_sessions}, "
                f"reap every {self.policy.reap_interval:g}s)"
            )

    async def stop(self) -> None:
        """Stop the reaper and cancel every live session."""
        if self._reaper_task:
            self._reaper_task.cancel()
            try:
                await self._reaper_task
            except asyncio.CancelledError:
                pass
            self._reaper_task = None

        for session in list(self._sessions.values()):
            await session.cancel()

        async with self._lock:
            for session in self._sessions.values():
                self._registry.release(session.code)
                self._transport.discard(session.session_id)
            self._sessions.clear()
            self._tokens.clear()

        logger.info("Session manager stopped")

    async def _reaper_loop(self) -> None:
        while True:
            await asyncio.sleep(self.policy.reap_interval)
            try:
                await self.reap()
            except Exception as e:
                logger.error(f"Reaper pass failed: {e}", exc_info=True)

    async def reap(self) -> tuple[int, int]:
        """
        One reaper pass. Expires sessions past their join/idle timeout and
        purges terminal sessions past the grace period.
        Returns (expired, purged).
        """
        now = self._clock()
        expired = 0
        for session in list(self._sessions.values()):
            reason = session.timeout_reason(now)
            if reason and await session.expire(reason):
                expired += 1

        purged = 0
        async with self._lock:
            for session_id, session in list(self._sessions.items()):
                if session.purgeable(now):
                    del self._sessions[session_id]
                    self._registry.release(session.code)
                    self._transport.discard(session_id)
                    self._forget(session_id)
                    purged += 1

        if expired or purged:
            logger.info(f"Reaper: {expired} expired, {purged} purged, {self.active_count} live")
        return expired, purged

    # --- Sessions ---

    @property
    def active_count(self) -> int:
        return sum(1 for s in self._sessions.values() if not s.is_terminal)

    async def create_upload_session(
        self, file: FileDescriptor
    ) -> tuple[str, SessionHandle]:
        """Register a file and issue the code the receiver will enter."""
        if file.total_size > self.policy.max_file_size:
            raise InvalidFile(
                f"{file.name} is {file.total_size} bytes; "
                f"the limit is {self.policy.max_file_size}"
            )

        async with self._lock:
            if self.active_count >= self.policy.max_active_sessions:
                logger.warning(
                    f"Rejecting upload of {file.name}: "
                    f"{self.policy.max_active_sessions} sessions live"
                )
                raise CapacityExhausted("Too many active transfers, try again later")

            code = self._registry.allocate()
            session_id = str(uuid.uuid4())
            session = TransferSession(
                session_id=session_id,
                code=code,
                file=file,
                transport=self._transport,
                policy=self.policy,
                clock=self._clock,
            )
            session.subscribe(self._emit)
            self._registry.bind(code, session)
            self._sessions[session_id] = session
            handle = self._issue(session, Role.SENDER)

        logger.info(f"Upload session {code} created for {file.name} ({file.total_size} bytes)")
        await self._emit("session_state", session.status().model_dump(mode="json"))
        return code, handle

    async def join_as_receiver(
        self, code: str
    ) -> tuple[FileDescriptor, SessionHandle]:
        """Match a receiver to the session behind ``code``."""
        code = normalize(code)
        async with self._lock:
            session = self._registry.lookup(code)
            if session is None:
                raise CodeNotFound(f"No transfer uses code {code}")
            if session.is_terminal:
                raise CodeExpired(f"Transfer {code} is {session.state.value}")

        # The single-receiver check happens before join_receiver first awaits
        await session.join_receiver()
        return session.file, self._issue(session, Role.RECEIVER)

    def _issue(self, session: TransferSession, role: Role) -> SessionHandle:
        """Mint the secret token that proves ``role`` on ``session``."""
        handle = SessionHandle(
            session_id=session.session_id,
            code=session.code,
            role=role,
            token=secrets.token_urlsafe(24),
        )
        self._tokens[handle.token] = handle
        return handle

    def _forget(self, session_id: str) -> None:
        for token, handle in list(self._tokens.items()):
            if handle.session_id == session_id:
                del self._tokens[token]

    def resolve(self, token: str) -> SessionHandle:
        """Return the handle a token was issued for."""
        handle = self._tokens.get(token)
        if handle is None or handle.session_id not in self._sessions:
            raise SessionNotFound("Unknown session token")
        return handle

    def _session(self, handle: SessionHandle) -> TransferSession:
        # Only handles this manager issued are honoured
        if self._tokens.get(handle.token) != handle:
            raise SessionNotFound(f"Unknown session {handle.session_id}")
        session = self._sessions.get(handle.session_id)
        if session is None:
            raise SessionNotFound(f"Unknown session {handle.session_id}")
        return session

    def session(self, handle: SessionHandle) -> TransferSession:
        return self._session(handle)

    @staticmethod
    def _require_role(handle: SessionHandle, role: Role) -> None:
        if handle.role is not role:
            raise InvalidRole(f"Only the {role.value} may do this")

    async def push_chunk(self, handle: SessionHandle, chunk: bytes) -> SessionStatus:
        self._require_role(handle, Role.SENDER)
        return await self._session(handle).push_chunk(chunk)

    async def wait_for_receiver(
        self, handle: SessionHandle, timeout: float | None = None
    ) -> None:
        self._require_role(handle, Role.SENDER)
        await self._session(handle).wait_for_receiver(timeout)

    def receive(self, handle: SessionHandle) -> AsyncIterator[bytes]:
        self._require_role(handle, Role.RECEIVER)
        return self._session(handle).receive()

    async def cancel(self, handle: SessionHandle) -> SessionStatus:
        """Cancel from either side. Cancelling a finished session is a no-op."""
        session = self._session(handle)
        await session.cancel(handle.role)
        return session.status()

    async def disconnect(self, handle: SessionHandle) -> SessionStatus:
        session = self._session(handle)
        await session.disconnect(handle.role)
        return session.status()

    def get_status(self, handle: SessionHandle) -> SessionStatus:
        return self._session(handle).status()

    def list_sessions(self) -> list[SessionStatus]:
        """Return all sessions still in the table (live and in grace)."""
        return [s.status() for s in self._sessions.values()]
