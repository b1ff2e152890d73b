"""Pytest configuration and fixtures"""

import hashlib
import os

import pytest

from transfer.channel import MemoryChunkTransport
from transfer.codes import CodeRegistry
from transfer.errors import TransportError
from transfer.manager import SessionManager
from transfer.models import FileDescriptor, SessionPolicy

MiB = 1024 * 1024


class FakeClock:
    """Manually advanced monotonic clock"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FlakyTransport(MemoryChunkTransport):
    """Relay that starts failing once ``fail_after`` chunks went through"""

    def __init__(self, fail_after: int, transient: bool = True, failures: int | None = None, **kwargs):
        super().__init__(**kwargs)
        self.fail_after = fail_after
        self.transient = transient
        self.failures = failures  # None = fail forever
        self.sent = 0
        self.attempts = 0

    async def send(self, session_id: str, chunk: bytes) -> None:
        self.attempts += 1
        if self.sent >= self.fail_after and self.failures != 0:
            if self.failures is not None:
                self.failures -= 1
            raise TransportError("link down", transient=self.transient)
        await super().send(session_id, chunk)
        self.sent += 1


def make_file(size: int, name: str = "document.pdf") -> tuple[FileDescriptor, bytes]:
    data = os.urandom(size)
    return FileDescriptor(name=name, total_size=size, checksum=hashlib.sha256(data).hexdigest()), data


def chunked(data: bytes, size: int):
    for offset in range(0, len(data), size):
        yield data[offset:offset + size]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def policy():
    """Short timeouts so nothing in a test waits on wall time"""
    return SessionPolicy(
        max_active_sessions=4,
        max_file_size=16 * MiB,
        join_timeout=600.0,
        idle_timeout=60.0,
        grace_period=30.0,
        reap_interval=0.05,
        max_retries=3,
        retry_delay=0.001,
    )


@pytest.fixture
def transport():
    return MemoryChunkTransport(window=16, send_timeout=1.0)


@pytest.fixture
def manager(transport, policy, clock):
    return SessionManager(transport=transport, policy=policy, clock=clock)


@pytest.fixture
def fixed_code_manager(transport, policy, clock):
    """Manager whose registry always proposes AB12CD first"""
    codes = iter(["AB12CD"])

    def generator():
        return next(codes, "QRST23")

    registry = CodeRegistry(generator=generator)
    return SessionManager(transport=transport, policy=policy, registry=registry, clock=clock)
