"""Process-wide channel registry.

Shares one transport subscription per channel name between every caller in
the process:

1. acquire() reuses a live entry (ref_count + 1) or subscribes once
2. release() only decrements; teardown is deferred to the sweep so that
   views remounting in quick succession don't thrash the transport
3. sweep() unsubscribes entries unreferenced for longer than the idle
   threshold, on a fixed interval once start() is called

Entry lifecycle: referenced -> idle (ref_count <= 0) -> destroyed. A
destroyed entry is never revived; the next acquire() subscribes again.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from ..config import settings
from ..models import ChannelInfo

if TYPE_CHECKING:
    from ..pubsub import RealtimeChannel, Transport

logger = logging.getLogger(__name__)


class ChannelAcquireError(Exception):
    """Raised when the transport could not subscribe to a channel."""

    def __init__(self, name: str, reason: object) -> None:
        super().__init__(f"Failed to acquire channel '{name}': {reason}")
        self.name = name


@dataclass
class ChannelEntry:
    """Registry bookkeeping for one subscribed channel."""

    name: str
    handle: RealtimeChannel
    ref_count: int
    last_used_at: float


class ChannelLease:
    """Scoped acquisition of a channel.

    Release it exactly once when the owner is torn down, either explicitly
    or by using it as an async context manager. Extra releases are no-ops.
    """

    def __init__(self, registry: ChannelRegistry, name: str, channel: RealtimeChannel) -> None:
        self._registry = registry
        self.name = name
        self.channel = channel
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._registry.release(self.name)

    async def __aenter__(self) -> ChannelLease:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


class ChannelRegistry:
    """Reference-counted map from channel name to a shared subscription."""

    def __init__(
        self,
        transport: Transport,
        *,
        sweep_interval: float | None = None,
        idle_threshold: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._transport = transport
        self.sweep_interval = sweep_interval if sweep_interval is not None else settings.channel_sweep_interval
        self.idle_threshold = idle_threshold if idle_threshold is not None else settings.channel_idle_threshold
        self._clock = clock
        self._entries: dict[str, ChannelEntry] = {}
        # Subscribes still in flight, so concurrent acquires share one handle
        self._pending: dict[str, asyncio.Future] = {}
        self._sweep_task: asyncio.Task | None = None
        self._closed = False

    @property
    def transport(self) -> Transport:
        return self._transport

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    def get(self, name: str) -> ChannelEntry | None:
        return self._entries.get(name)

    async def acquire(self, name: str, config: dict | None = None) -> ChannelLease:
        """Acquire a lease on a channel, subscribing only if no entry exists.

        Raises:
            ChannelAcquireError: the transport subscribe failed. No entry
                is left behind.
        """
        while True:
            entry = self._entries.get(name)
            if entry is not None:
                entry.ref_count += 1
                entry.last_used_at = self._clock()
                return ChannelLease(self, name, entry.handle)

            pending = self._pending.get(name)
            if pending is None:
                break
            try:
                await asyncio.shield(pending)
            except ChannelAcquireError:
                raise
            except Exception as e:
                raise ChannelAcquireError(name, e) from e

        if self._closed:
            raise ChannelAcquireError(name, "registry closed")

        future = asyncio.get_running_loop().create_future()
        self._pending[name] = future
        try:
            handle = await self._transport.subscribe(name, config)
        except asyncio.CancelledError:
            self._pending.pop(name, None)
            self._fail_pending(future, ChannelAcquireError(name, "subscribe cancelled"))
            raise
        except Exception as e:
            self._pending.pop(name, None)
            self._fail_pending(future, e)
            logger.error(f"Subscribe to channel {name} failed: {e}")
            raise ChannelAcquireError(name, e) from e

        if self._closed:
            self._pending.pop(name, None)
            await self._teardown(ChannelEntry(name=name, handle=handle, ref_count=0, last_used_at=self._clock()))
            self._fail_pending(future, ChannelAcquireError(name, "registry closed"))
            raise ChannelAcquireError(name, "registry closed")

        self._pending.pop(name, None)
        self._entries[name] = ChannelEntry(
            name=name,
            handle=handle,
            ref_count=1,
            last_used_at=self._clock(),
        )
        future.set_result(handle)
        logger.info(f"Channel {name} subscribed")
        return ChannelLease(self, name, handle)

    @staticmethod
    def _fail_pending(future: asyncio.Future, error: BaseException) -> None:
        future.set_exception(error)
        # Waiters may not exist; mark the exception retrieved
        future.exception()

    def release(self, name: str) -> None:
        """Drop one reference. The subscription stays until the next sweep."""
        entry = self._entries.get(name)
        if entry is None:
            logger.debug(f"Release of unknown channel {name} ignored")
            return
        if entry.ref_count <= 0:
            logger.warning(f"Channel {name} released more times than acquired")
        entry.ref_count = max(entry.ref_count - 1, 0)
        entry.last_used_at = self._clock()

    async def sweep(self) -> list[str]:
        """Tear down unreferenced channels idle longer than the threshold.

        Returns:
            Names of evicted channels
        """
        now = self._clock()
        evicted = [
            name
            for name, entry in self._entries.items()
            if entry.ref_count <= 0 and now - entry.last_used_at > self.idle_threshold
        ]
        # Detach all candidates before the first await
        entries = [self._entries.pop(name) for name in evicted]
        for entry in entries:
            await self._teardown(entry)

        if evicted:
            logger.info(f"Evicted {len(evicted)} idle channel(s): {', '.join(evicted)}")
        return evicted

    async def _teardown(self, entry: ChannelEntry) -> None:
        try:
            await self._transport.unsubscribe(entry.handle)
        except Exception as e:
            logger.error(f"Unsubscribe from channel {entry.name} failed: {e}")

    def snapshot(self) -> list[ChannelInfo]:
        now = self._clock()
        return [
            ChannelInfo(
                name=entry.name,
                ref_count=entry.ref_count,
                idle_seconds=round(max(now - entry.last_used_at, 0.0), 3),
            )
            for entry in self._entries.values()
        ]

    # ============ SWEEP TIMER ============

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def start(self) -> None:
        """Start the periodic sweep loop."""
        if self.running:
            logger.warning("Channel sweep already running")
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(
            f"Channel sweep started (interval={self.sweep_interval}s, idle_threshold={self.idle_threshold}s)"
        )

    async def stop(self) -> None:
        """Stop the periodic sweep loop."""
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
            logger.info("Channel sweep stopped")

    async def close(self) -> None:
        """Stop sweeping and tear down every remaining channel.

        Subscribes still in flight are awaited; they tear their own handle
        down once they see the registry is closed.
        """
        self._closed = True
        await self.stop()
        pending = list(self._pending.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        entries = list(self._entries.values())
        self._entries.clear()
        for entry in entries:
            await self._teardown(entry)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Error in channel sweep loop: {e}")
