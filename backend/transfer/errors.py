"""Errors raised by the transfer core."""


class TransferError(Exception):
    """Base class for every error the session layer surfaces."""

    code = "transfer_error"


class CapacityExhausted(TransferError):
    """No room for another session; the caller should retry later."""

    code = "capacity_exhausted"


class CodeNotFound(TransferError):
    code = "code_not_found"


class CodeExpired(TransferError):
    """The code belongs to a session that already ended."""

    code = "code_expired"


class SessionAlreadyJoined(TransferError):
    code = "session_already_joined"


class SessionNotFound(TransferError):
    code = "session_not_found"


class SessionNotActive(TransferError):
    """The operation needs a live session in another state."""

    code = "session_not_active"


class InvalidRole(TransferError):
    """A sender handle was used for a receiver operation, or vice versa."""

    code = "invalid_role"


class InvalidFile(TransferError, ValueError):
    code = "invalid_file"


class ChunkOverflow(TransferError):
    """A chunk would push the transfer past the declared file size."""

    code = "chunk_overflow"


class ChecksumMismatch(TransferError):
    """The bytes moved do not hash to the declared checksum. Never retried."""

    code = "checksum_mismatch"


class TransportError(TransferError):
    """Channel failure. Transient errors are retried, permanent ones are not."""

    code = "transport_error"

    def __init__(self, message: str, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient

    @property
    def permanent(self) -> bool:
        return not self.transient
