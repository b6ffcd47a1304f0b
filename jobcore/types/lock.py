"""
Lock-related type definitions.
"""

import json
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class LockGrant:
    """Outcome of a native atomic lock acquisition."""

    acquired: bool
    fencing_token: int | None = None


@dataclass(frozen=True)
class LockInfo:
    """
    Lease record stored under a lock key.

    Serialized as JSON so every store backend and the emulated path share
    the same on-store format.
    """

    owner: str
    fencing_token: int
    acquired_at: float
    expires_at: float

    def is_expired(self, now_ms: float) -> bool:
        """Check whether the lease has passed its expiry time."""
        return now_ms >= self.expires_at

    def to_json(self) -> str:
        return json.dumps(
            {
                "owner": self.owner,
                "fencing_token": self.fencing_token,
                "acquired_at": self.acquired_at,
                "expires_at": self.expires_at,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "LockInfo | None":
        """Parse a stored lease record, returning None if it is malformed."""
        try:
            data: dict[str, Any] = json.loads(raw)
            return cls(
                owner=str(data["owner"]),
                fencing_token=int(data["fencing_token"]),
                acquired_at=float(data["acquired_at"]),
                expires_at=float(data["expires_at"]),
            )
        except (ValueError, KeyError, TypeError):
            return None


@dataclass
class WithLockResult:
    """
    Tagged result of LockManager.with_lock().

    - acquired=False: another holder owns the lock, fn was not called
    - acquired=True, error=None: fn returned result
    - acquired=True, error set: fn raised
    """

    acquired: bool
    result: Any = None
    error: Exception | None = None
    fencing_token: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.acquired and self.error is None
