"""Per-run broadcast channel for live review progress updates.

Single producer (the run's pipeline task), any number of subscribers. Each
subscriber owns a queue, so all of them observe the same updates in the same
order. The terminal update (completed/error) is the explicit end marker:
subscriptions finish right after yielding it and the channel is dropped.

Usage:
    streamer = UpdateStreamer()
    streamer.open("run-123")

    # Subscriber (e.g. SSE endpoint):
    async for update in streamer.subscribe("run-123"):
        ...

    # Producer (pipeline):
    streamer.publish("run-123", update)
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass, field

from mcp_review_engine.models import ReviewUpdate


class Subscription:
    """Forward-only, finite, non-restartable view of one run's updates."""

    def __init__(
        self,
        run_id: str,
        queue: asyncio.Queue[ReviewUpdate] | None,
        streamer: UpdateStreamer | None,
    ) -> None:
        self.run_id = run_id
        self._queue = queue
        self._streamer = streamer
        self._done = queue is None

    @property
    def done(self) -> bool:
        return self._done

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> ReviewUpdate:
        if self._done or self._queue is None:
            raise StopAsyncIteration
        update = await self._queue.get()
        if update.is_terminal:
            self.close()
        return update

    def close(self) -> None:
        """Stop receiving updates. Safe to call more than once."""
        if self._done:
            return
        self._done = True
        if self._streamer is not None and self._queue is not None:
            self._streamer._unsubscribe(self.run_id, self._queue)


@dataclass
class _Channel:
    subscribers: list[asyncio.Queue[ReviewUpdate]] = field(default_factory=list)
    last_sequence: int = -1


@dataclass
class UpdateStreamer:
    """Run-id keyed broadcast of ReviewUpdates."""

    _channels: dict[str, _Channel] = field(default_factory=dict)

    def open(self, run_id: str) -> None:
        """Create the channel for a run before its first publish."""
        if run_id not in self._channels:
            self._channels[run_id] = _Channel()

    def subscriber_count(self, run_id: str) -> int:
        channel = self._channels.get(run_id)
        return len(channel.subscribers) if channel is not None else 0

    def subscribe(self, run_id: str) -> Subscription:
        """Join a run's stream from this point forward.

        Registration happens immediately, not on first iteration. A channel
        that is finished (or never existed) yields an exhausted subscription.
        """
        channel = self._channels.get(run_id)
        if channel is None:
            return Subscription(run_id, None, None)
        queue: asyncio.Queue[ReviewUpdate] = asyncio.Queue()
        channel.subscribers.append(queue)
        return Subscription(run_id, queue, self)

    def publish(self, run_id: str, update: ReviewUpdate) -> int:
        """Deliver an update to every current subscriber.

        Returns the number of subscribers reached. Raises ValueError when the
        channel is not open or the update would be out of order.
        """
        channel = self._channels.get(run_id)
        if channel is None:
            raise ValueError(f"No open update channel for run {run_id}")
        if update.sequence <= channel.last_sequence:
            raise ValueError(
                f"Out-of-order update for run {run_id}: "
                f"sequence {update.sequence} after {channel.last_sequence}"
            )
        channel.last_sequence = update.sequence
        for queue in channel.subscribers:
            queue.put_nowait(update)
        delivered = len(channel.subscribers)
        if update.is_terminal:
            self._channels.pop(run_id, None)
        return delivered

    def _unsubscribe(self, run_id: str, queue: asyncio.Queue[ReviewUpdate]) -> None:
        channel = self._channels.get(run_id)
        if channel is None:
            return
        with suppress(ValueError):
            channel.subscribers.remove(queue)
