"""Tests for the per-run UpdateStreamer broadcast."""

from __future__ import annotations

import asyncio

import pytest

from mcp_review_engine.models import ReviewUpdate, RunStatus
from mcp_review_engine.streamer import UpdateStreamer


def _update(sequence: int, status: RunStatus = RunStatus.ANALYZING) -> ReviewUpdate:
    return ReviewUpdate(run_id="run-1", sequence=sequence, status=status)


async def _drain(subscription) -> list[ReviewUpdate]:
    return [update async for update in subscription]


class TestUpdateStreamer:
    async def test_subscribers_see_same_order(self) -> None:
        streamer = UpdateStreamer()
        streamer.open("run-1")
        first = streamer.subscribe("run-1")
        second = streamer.subscribe("run-1")
        assert streamer.subscriber_count("run-1") == 2

        streamer.publish("run-1", _update(0, RunStatus.STARTED))
        streamer.publish("run-1", _update(1, RunStatus.GENERATING))
        delivered = streamer.publish("run-1", _update(2, RunStatus.COMPLETED))
        assert delivered == 2

        a, b = await asyncio.gather(_drain(first), _drain(second))
        assert [u.sequence for u in a] == [0, 1, 2]
        assert a == b
        assert first.done and second.done

    async def test_terminal_update_drops_channel(self) -> None:
        streamer = UpdateStreamer()
        streamer.open("run-1")
        streamer.publish("run-1", _update(0, RunStatus.ERROR))
        late = streamer.subscribe("run-1")
        assert late.done
        assert await _drain(late) == []

    async def test_late_subscriber_gets_only_future_updates(self) -> None:
        streamer = UpdateStreamer()
        streamer.open("run-1")
        streamer.publish("run-1", _update(0, RunStatus.STARTED))
        late = streamer.subscribe("run-1")
        streamer.publish("run-1", _update(1))
        streamer.publish("run-1", _update(2, RunStatus.COMPLETED))
        assert [u.sequence for u in await _drain(late)] == [1, 2]

    async def test_publish_without_subscribers(self) -> None:
        streamer = UpdateStreamer()
        streamer.open("run-1")
        assert streamer.publish("run-1", _update(0)) == 0

    def test_publish_on_unknown_channel(self) -> None:
        with pytest.raises(ValueError, match="No open update channel"):
            UpdateStreamer().publish("run-1", _update(0))

    def test_out_of_order_rejected(self) -> None:
        streamer = UpdateStreamer()
        streamer.open("run-1")
        streamer.publish("run-1", _update(3))
        with pytest.raises(ValueError, match="Out-of-order"):
            streamer.publish("run-1", _update(3))

    async def test_close_subscription_unregisters(self) -> None:
        streamer = UpdateStreamer()
        streamer.open("run-1")
        subscription = streamer.subscribe("run-1")
        subscription.close()
        subscription.close()
        assert streamer.subscriber_count("run-1") == 0
        assert await _drain(subscription) == []
