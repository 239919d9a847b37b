import asyncio
import logging
from typing import Callable, List, Optional

from . import messages
from .common import now
from .registry import Member, Registry

log = logging.getLogger("ftchat.sweeper")

CLIENT_TIMEOUT = 60.0               # no line from a client within this window -> evict
ACTIVITY_CHECK_INTERVAL = 15.0      # how often the sweep runs


class LivenessSweeper:
    """
    Periodic inactivity check.

    Each run snapshots the registry under its lock, then acts on the snapshot
    with the lock released, so members may join or leave during the scan.
    Eviction goes through ``member.close("timeout")``, the same teardown
    path /quit uses.
    """

    def __init__(
        self,
        registry: Registry,
        timeout: float = CLIENT_TIMEOUT,
        interval: float = ACTIVITY_CHECK_INTERVAL,
        clock: Callable[[], float] = now,
    ):
        self.registry = registry
        self.timeout = timeout
        self.interval = interval
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        log.info("Scheduled client activity checker to run every %.1f seconds.", self.interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        await asyncio.wait({task})

    async def _loop(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.interval
        while True:
            await asyncio.sleep(max(0.0, deadline - loop.time()))
            # Next run is due one interval after this one starts, however long it takes.
            deadline = loop.time() + self.interval
            await self.sweep_once()

    async def sweep_once(self) -> List[str]:
        """Evict every member idle for longer than the timeout. Returns their identities."""
        current = self._clock()
        stale = [m for m in await self.registry.snapshot() if current - m.last_activity > self.timeout]
        if not stale:
            log.debug("No inactive clients found.")
            return []

        log.info("Found %d inactive client(s): %s", len(stale), ", ".join(str(m.identity) for m in stale))
        results = await asyncio.gather(*(self._evict(m) for m in stale), return_exceptions=True)

        evicted: List[str] = []
        for member, result in zip(stale, results):
            if isinstance(result, Exception):
                log.error("Failed to evict %s: %r", member.identity, result)
                continue
            evicted.append(member.identity)
        return evicted

    async def _evict(self, member: Member) -> None:
        log.info("Disconnecting client %s due to inactivity (timeout).", member.identity)
        if member.is_active():
            member.send(messages.inactivity_disconnect())
        await member.close("timeout")
