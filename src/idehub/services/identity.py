"""Instance id allocation.

Ids double as DNS labels (``<id>-vnc.<domain>``) and service-name suffixes,
so they are short, lowercase and alphanumeric. The pool lives in memory and
is seeded from live services at startup; allocation is a synchronous
check-and-insert, so concurrent coroutines never receive the same id.
"""

import logging
import re
import secrets
import string

logger = logging.getLogger(__name__)

_ALPHABET = string.ascii_lowercase + string.digits
_VALID_ID_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{2,30}[a-z0-9])?$")


class IdAllocationError(Exception):
    """Raised when no free id was found within the attempt budget."""


def is_valid_id(instance_id: str) -> bool:
    """Check whether an id is usable as a DNS label fragment."""
    return bool(_VALID_ID_RE.match(instance_id))


class IdentityAllocator:
    """In-memory pool of instance ids in use."""

    def __init__(self) -> None:
        self._used: set[str] = set()

    def generate_unique_id(self, length: int = 8, max_attempts: int = 10) -> str:
        """Allocate a fresh id and register it as used.

        Raises:
            IdAllocationError: every candidate collided with a used id.
        """
        for _ in range(max_attempts):
            candidate = "".join(secrets.choice(_ALPHABET) for _ in range(length))
            if candidate not in self._used:
                self._used.add(candidate)
                return candidate
        raise IdAllocationError(
            f"Failed to generate unique id after {max_attempts} attempts"
        )

    def mark_id_as_used(self, instance_id: str) -> None:
        """Register an id discovered on a live service."""
        self._used.add(instance_id)

    def release_id(self, instance_id: str) -> None:
        """Return an id to the pool once its service is gone."""
        self._used.discard(instance_id)

    def is_id_in_use(self, instance_id: str) -> bool:
        return instance_id in self._used

    @property
    def used_id_count(self) -> int:
        return len(self._used)

    def clear(self) -> None:
        self._used.clear()

    is_valid_id = staticmethod(is_valid_id)
