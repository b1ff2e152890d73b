"""Pydantic models for code-based file transfer sessions."""

import os
import re
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from config import (
    CODE_MAX_ATTEMPTS,
    GRACE_PERIOD,
    IDLE_TIMEOUT,
    JOIN_TIMEOUT,
    MAX_ACTIVE_SESSIONS,
    MAX_FILE_SIZE,
    MAX_RETRIES,
    REAP_INTERVAL,
    RETRY_DELAY,
)

_SHA256_HEX = re.compile(r"^[0-9a-f]{64}$")


class SessionState(str, Enum):
    """All possible states for a transfer session."""
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    SessionState.COMPLETED,
    SessionState.CANCELLED,
    SessionState.FAILED,
    SessionState.EXPIRED,
})


class Role(str, Enum):
    SENDER = "sender"
    RECEIVER = "receiver"


class FileDescriptor(BaseModel):
    """Metadata the sender declares before any data moves."""
    model_config = ConfigDict(frozen=True)

    name: str
    total_size: int = Field(gt=0)
    checksum: str  # lowercase hex SHA-256 of the whole file

    @field_validator("name")
    @classmethod
    def _base_name(cls, value: str) -> str:
        # Never trust a client-supplied path
        name = os.path.basename(value.replace("\\", "/")).strip()
        if not name:
            raise ValueError("file name must not be empty")
        return name

    @field_validator("checksum")
    @classmethod
    def _hex_digest(cls, value: str) -> str:
        value = value.strip().lower()
        if not _SHA256_HEX.match(value):
            raise ValueError("checksum must be a hex SHA-256 digest")
        return value


class SessionHandle(BaseModel):
    """
    Reference one endpoint uses for follow-up calls. The token is a
    per-role secret; the session id alone grants nothing.
    """
    model_config = ConfigDict(frozen=True)

    session_id: str
    code: str
    role: Role
    token: str


class SessionStatus(BaseModel):
    """Snapshot of a session, exposed to the presentation layer."""
    session_id: str
    code: str
    file_name: str
    state: SessionState
    progress: float = 0.0
    bytes_transferred: int = 0
    total_size: int
    receiver_joined: bool = False
    speed_bps: float = 0.0
    eta_seconds: float = 0.0
    error_message: str | None = None


class SessionPolicy(BaseModel):
    """Capacity and timeout policy enforced by the session manager."""
    max_active_sessions: int = Field(default=MAX_ACTIVE_SESSIONS, gt=0)
    max_file_size: int = Field(default=MAX_FILE_SIZE, gt=0)
    code_max_attempts: int = Field(default=CODE_MAX_ATTEMPTS, gt=0)
    join_timeout: float = JOIN_TIMEOUT
    idle_timeout: float = IDLE_TIMEOUT
    grace_period: float = GRACE_PERIOD
    reap_interval: float = REAP_INTERVAL
    max_retries: int = Field(default=MAX_RETRIES, ge=0)
    retry_delay: float = RETRY_DELAY
