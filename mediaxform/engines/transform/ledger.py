"""
Version Ledger

One monotonically increasing integer per owner, embedded in list-cache keys.
Bumping it orphans every cached list page for the owner; the stale pages are
never looked up again and simply age out by TTL.

All writes are single atomic cache operations (INCR, SET NX). There is no
read-modify-write in application code.
"""

from mediaxform.core.cache import ICache
from mediaxform.core.logging import get_logger
from mediaxform.core.retry import with_retries
from mediaxform.engines.transform.keys import version_key

logger = get_logger(__name__)

INITIAL_VERSION = 1


class VersionLedger:
    """Per-owner generation counters backed by the cache."""

    def __init__(self, cache: ICache):
        self.cache = cache

    async def current(self, owner_id: str) -> int:
        """Current generation, initialised to 1 on first read."""
        key = version_key(owner_id)
        value = await with_retries(lambda: self.cache.get(key), "ledger_get")
        if value is not None:
            return int(value)

        # Concurrent first reads race on SET NX; whoever loses reads the winner
        await with_retries(lambda: self.cache.add(key, str(INITIAL_VERSION)), "ledger_init")
        value = await with_retries(lambda: self.cache.get(key), "ledger_get")
        return int(value) if value is not None else INITIAL_VERSION

    async def bump(self, owner_id: str) -> int:
        """
        Advance the owner's generation and return the new value.

        An INCR on an absent counter yields 1, which is also the value
        current() hands out initially. In that case increment once more so a
        post-mutation generation never equals the initial one.
        """
        key = version_key(owner_id)
        version = await with_retries(lambda: self.cache.incr(key), "ledger_incr")
        if version <= INITIAL_VERSION:
            version = await with_retries(lambda: self.cache.incr(key), "ledger_incr")

        logger.debug("owner_version_bumped", owner_id=owner_id, version=version)
        return version
