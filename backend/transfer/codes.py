"""
Transfer code registry.

Hands out short codes from a restricted alphabet and maps each live code
to exactly one session. Collisions are detected and retried a bounded
number of times so that a saturated code space surfaces as
CapacityExhausted instead of looping forever.
"""

import logging
import secrets
from typing import Callable

from config import CODE_ALPHABET, CODE_LENGTH, CODE_MAX_ATTEMPTS
from transfer.errors import CapacityExhausted

logger = logging.getLogger(__name__)


def random_code(length: int = CODE_LENGTH, alphabet: str = CODE_ALPHABET) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


def normalize(code: str) -> str:
    """Canonical form of user input: no surrounding blanks, upper case."""
    return code.strip().upper()


def is_well_formed(code: str) -> bool:
    return len(code) == CODE_LENGTH and all(c in CODE_ALPHABET for c in code)


class CodeRegistry:
    """Maps live transfer codes to their sessions."""

    def __init__(
        self,
        capacity: int | None = None,
        max_attempts: int = CODE_MAX_ATTEMPTS,
        generator: Callable[[], str] = random_code,
    ) -> None:
        self._entries: dict[str, object | None] = {}
        self._capacity = capacity
        self._max_attempts = max_attempts
        self._generate = generator

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, code: str) -> bool:
        return normalize(code) in self._entries

    def allocate(self) -> str:
        """Reserve an unused code. The code maps to nothing until bind()."""
        if self._capacity is not None and len(self._entries) >= self._capacity:
            raise CapacityExhausted(
                f"Code registry full ({self._capacity} codes in use)"
            )

        for attempt in range(1, self._max_attempts + 1):
            code = normalize(self._generate())
            if code not in self._entries:
                self._entries[code] = None
                if attempt > 1:
                    logger.debug(f"Allocated code after {attempt} attempts")
                return code

        logger.warning(
            f"No free code after {self._max_attempts} attempts "
            f"({len(self._entries)} codes in use)"
        )
        raise CapacityExhausted("Could not allocate a free transfer code")

    def bind(self, code: str, session) -> None:
        code = normalize(code)
        if code not in self._entries:
            raise KeyError(f"Code {code} was not allocated")
        if self._entries[code] is not None and self._entries[code] is not session:
            raise ValueError(f"Code {code} is already bound to another session")
        self._entries[code] = session

    def release(self, code: str) -> None:
        """Return a code to the pool. Releasing an unknown code is a no-op."""
        if self._entries.pop(normalize(code), None) is not None:
            logger.debug(f"Released code {normalize(code)}")

    def lookup(self, code: str):
        """Return the session bound to ``code``, or None."""
        return self._entries.get(normalize(code))
