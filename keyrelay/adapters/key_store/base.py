"""Key store interfaces and lease result types.

The scheduler should depend on this abstraction (not the concrete
implementation) so storage backends stay swappable.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum


@dataclass(frozen=True)
class Credential:
    """One upstream key.

    Attributes:
        id: Primary key, never reused.
        base_url: Upstream origin plus optional path prefix.
        secret: Bearer value presented to the upstream. Kept out of repr.
        pool: Pool tag, or None for keys outside any named pool.
    """

    id: int
    base_url: str
    secret: str = field(repr=False)
    pool: str | None = None


class LeaseStatus(str, Enum):
    GRANTED = "granted"
    RATE_LIMITED = "rate_limited"
    NO_KEY_AVAILABLE = "no_key_available"


@dataclass(frozen=True)
class LeaseResult:
    """Outcome of one select → check → reserve sequence.

    Attributes:
        status: Terminal state of the lease.
        credential: The reserved key when granted; the key that blocked the
            lease when rate limited; None when the pool is empty.
        retry_after_seconds: Whole seconds until the blocking key clears its
            cooldown (rate limited only).
    """

    status: LeaseStatus
    credential: Credential | None = None
    retry_after_seconds: int | None = None

    @property
    def granted(self) -> bool:
        return self.status is LeaseStatus.GRANTED

    @classmethod
    def grant(cls, credential: Credential) -> "LeaseResult":
        return cls(status=LeaseStatus.GRANTED, credential=credential)

    @classmethod
    def rate_limited(cls, credential: Credential, *, elapsed_ms: int, cooldown_ms: int) -> "LeaseResult":
        return cls(
            status=LeaseStatus.RATE_LIMITED,
            credential=credential,
            retry_after_seconds=retry_after_seconds(elapsed_ms, cooldown_ms),
        )

    @classmethod
    def no_key_available(cls) -> "LeaseResult":
        return cls(status=LeaseStatus.NO_KEY_AVAILABLE)


def retry_after_seconds(elapsed_ms: int, cooldown_ms: int) -> int:
    """Whole seconds left until a key used ``elapsed_ms`` ago may be reused."""

    return max(0, int(math.ceil((cooldown_ms - elapsed_ms) / 1000)))


class AbstractKeyStore(ABC):
    """Interface for persistent key stores.

    ``pool=None`` addresses the implicit pool made of every stored key.
    """

    @abstractmethod
    def initialize(self) -> None:
        """Create the schema if absent. Safe to call on every startup."""
        raise NotImplementedError

    @abstractmethod
    def least_recently_used(self, pool: str | None = None) -> Credential | None:
        """Return the key with the oldest last_used (ties: lowest id), or None."""
        raise NotImplementedError

    @abstractmethod
    def last_used(self, credential_id: int) -> int:
        """Return the stored last_used in epoch milliseconds, 0 for unknown ids."""
        raise NotImplementedError

    @abstractmethod
    def mark_used(self, credential_id: int, timestamp: int) -> None:
        """Set last_used unconditionally."""
        raise NotImplementedError

    @abstractmethod
    def lease(self, pool: str | None, *, now: int, cooldown_ms: int) -> LeaseResult:
        """Atomically select, cooldown-check and reserve one key.

        Implementations must serialize this method with respect to itself:
        no two callers may both reserve the same key within one cooldown.

        Args:
            pool: Pool to lease from (None for the implicit pool).
            now: Current time in epoch milliseconds.
            cooldown_ms: Minimum interval between two uses of one key.

        Returns:
            LeaseResult describing the outcome.
        """
        raise NotImplementedError

    @abstractmethod
    def add_credential(self, base_url: str, secret: str, pool: str | None = None) -> Credential:
        """Provision a key with last_used = 0."""
        raise NotImplementedError

    @abstractmethod
    def count(self, pool: str | None = None) -> int:
        """Number of keys in a pool."""
        raise NotImplementedError

    def close(self) -> None:
        """Release underlying resources."""
