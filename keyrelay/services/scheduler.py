"""Least-recently-used key scheduler with per-key cooldown.

Each request leases one key: the least recently used key of its pool is
selected, rejected if it was used less than ``cooldown_ms`` ago, and
otherwise reserved by stamping ``last_used = now``. The three steps run as
one store transaction, so two concurrent requests can never both reserve
the same key inside one cooldown window.

A reservation is never refunded. A request cancelled after its lease, or
whose upstream call fails, still consumes the key's cooldown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from keyrelay.adapters.key_store.base import AbstractKeyStore, LeaseResult, LeaseStatus
from keyrelay.core.logging import fingerprint

logger = logging.getLogger(__name__)

RATE_LIMIT_MS = 6000


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class Scheduler:
    """Lease keys from a store on behalf of inbound requests."""

    def __init__(
        self,
        store: AbstractKeyStore,
        *,
        cooldown_ms: int = RATE_LIMIT_MS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        """Initialize the scheduler.

        Args:
            store: Key store holding the keys and their last_used stamps.
            cooldown_ms: Minimum interval between two uses of one key.
            clock: Time source returning epoch milliseconds.

        Raises:
            ValueError: If cooldown_ms is negative.
        """
        if cooldown_ms < 0:
            raise ValueError("cooldown_ms must be >= 0")

        self._store = store
        self._cooldown_ms = cooldown_ms
        self._clock = clock

    @property
    def cooldown_ms(self) -> int:
        return self._cooldown_ms

    def lease_now(self, pool: str | None = None) -> LeaseResult:
        """Lease a key synchronously. Blocks on store I/O."""

        now = self._clock()
        result = self._store.lease(pool, now=now, cooldown_ms=self._cooldown_ms)
        self._log_result(pool, result)
        return result

    async def lease(self, pool: str | None = None) -> LeaseResult:
        """Lease a key without blocking the event loop.

        The blocking store call runs in a worker thread; the store serializes
        concurrent leases itself.

        Args:
            pool: Pool to lease from, None for the implicit pool.

        Returns:
            LeaseResult describing whether a key was granted.
        """

        return await asyncio.to_thread(self.lease_now, pool)

    def _log_result(self, pool: str | None, result: LeaseResult) -> None:
        credential_id = result.credential.id if result.credential else None

        if result.status is LeaseStatus.GRANTED:
            logger.info(
                "scheduler.granted",
                extra={"pool_hash": fingerprint(pool), "credential_id": credential_id},
            )
        elif result.status is LeaseStatus.RATE_LIMITED:
            logger.warning(
                "scheduler.rate_limited",
                extra={
                    "pool_hash": fingerprint(pool),
                    "credential_id": credential_id,
                    "retry_after_s": result.retry_after_seconds,
                    "cooldown_ms": self._cooldown_ms,
                },
            )
        else:
            logger.warning("scheduler.no_key_available", extra={"pool_hash": fingerprint(pool)})
