"""Per-domain locks serializing holistic updates."""

import asyncio
from collections.abc import Iterable
from contextlib import asynccontextmanager

import structlog

logger = structlog.get_logger()


class DomainLockRegistry:
    """Hands out one ``asyncio.Lock`` per domain name.

    ``hold`` acquires several domains in sorted order so that two updates with
    overlapping domain sets cannot deadlock.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def _get_lock(self, domain: str) -> asyncio.Lock:
        if domain not in self._locks:
            self._locks[domain] = asyncio.Lock()
        return self._locks[domain]

    @asynccontextmanager
    async def hold(self, domains: Iterable[str]):
        ordered = sorted(set(domains))
        acquired = []
        try:
            for domain in ordered:
                lock = self._get_lock(domain)
                if lock.locked():
                    logger.debug("Waiting for domain lock", domain=domain)
                await lock.acquire()
                acquired.append(lock)
            yield ordered
        finally:
            for lock in reversed(acquired):
                lock.release()

    def is_locked(self, domain: str) -> bool:
        lock = self._locks.get(domain)
        return lock is not None and lock.locked()
