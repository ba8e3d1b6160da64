"""Tests for the per-user change feed."""
import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

from core.realtime import (
    SUBSCRIPTION_QUEUE_SIZE,
    ChangeFeed,
    FeedMessage,
    auth_channel,
    bookmarks_channel,
    get_change_feed,
    set_change_feed,
)
from core.redis import RedisClient


class FakePubSub:
    """Stand-in for a redis PubSub that replays canned messages."""

    def __init__(self, messages: list[dict[str, Any]]) -> None:
        self._messages = messages

    async def listen(self) -> AsyncIterator[dict[str, Any]]:
        for message in self._messages:
            yield message


class TestChannels:
    """Tests for channel naming."""

    def test__channels_are_scoped_per_user(self) -> None:
        assert bookmarks_channel("user-1") == "bookmarks:user-1"
        assert auth_channel("user-1") == "auth:user-1"
        assert bookmarks_channel("user-1") != bookmarks_channel("user-2")


class TestInProcessDelivery:
    """Tests for delivery without Redis."""

    async def test__publish__reaches_subscriber(self, feed: ChangeFeed) -> None:
        """A subscriber receives messages on its channel."""
        with feed.subscribe(bookmarks_channel("user-1")) as subscription:
            await feed.publish(bookmarks_channel("user-1"), {"event_type": "INSERT"})
            message = await subscription.get(timeout=1)

        assert message == FeedMessage("bookmarks:user-1", {"event_type": "INSERT"})

    async def test__publish__other_users_channel_not_delivered(self, feed: ChangeFeed) -> None:
        """Messages for one user never reach another user's subscription."""
        with feed.subscribe(bookmarks_channel("user-2")) as subscription:
            await feed.publish(bookmarks_channel("user-1"), {"event_type": "INSERT"})
            assert await subscription.get(timeout=0.05) is None

    async def test__subscribe__multiple_channels(self, feed: ChangeFeed) -> None:
        """One subscription can listen on several channels."""
        channels = (bookmarks_channel("user-1"), auth_channel("user-1"))
        with feed.subscribe(*channels) as subscription:
            await feed.publish(auth_channel("user-1"), {"event": "SIGNED_OUT"})
            await feed.publish(bookmarks_channel("user-1"), {"event_type": "DELETE"})
            first = await subscription.get(timeout=1)
            second = await subscription.get(timeout=1)

        assert first is not None
        assert first.channel == "auth:user-1"
        assert second is not None
        assert second.channel == "bookmarks:user-1"

    async def test__fan_out__every_subscriber_receives(self, feed: ChangeFeed) -> None:
        """Every open view of the same user receives each change."""
        channel = bookmarks_channel("user-1")
        with feed.subscribe(channel) as first, feed.subscribe(channel) as second:
            await feed.publish(channel, {"n": 1})
            assert (await first.get(timeout=1)).payload == {"n": 1}
            assert (await second.get(timeout=1)).payload == {"n": 1}

    async def test__publish__no_subscribers_is_noop(self, feed: ChangeFeed) -> None:
        """Publishing to an empty channel does nothing."""
        await feed.publish(bookmarks_channel("nobody"), {"n": 1})
        assert feed.subscriber_count(bookmarks_channel("nobody")) == 0

    async def test__full_queue__drops_new_messages(self, feed: ChangeFeed) -> None:
        """A slow subscriber loses new messages rather than blocking publishers."""
        channel = bookmarks_channel("user-1")
        with feed.subscribe(channel) as subscription:
            for n in range(SUBSCRIPTION_QUEUE_SIZE + 5):
                await feed.publish(channel, {"n": n})
            first = await subscription.get(timeout=1)

        assert first is not None
        assert first.payload == {"n": 0}


class TestSubscriptionLifecycle:
    """Tests for subscribing and unsubscribing."""

    async def test__context_manager__unsubscribes(self, feed: ChangeFeed) -> None:
        """Leaving the context removes the subscription from the feed."""
        channel = bookmarks_channel("user-1")
        with feed.subscribe(channel) as subscription:
            assert feed.subscriber_count(channel) == 1
        assert feed.subscriber_count(channel) == 0
        assert subscription.active is False

    async def test__unsubscribe__is_idempotent(self, feed: ChangeFeed) -> None:
        """Unsubscribing twice is safe."""
        subscription = feed.subscribe(bookmarks_channel("user-1"))
        subscription.unsubscribe()
        subscription.unsubscribe()
        assert feed.subscriber_count(bookmarks_channel("user-1")) == 0

    async def test__get__times_out(self, feed: ChangeFeed) -> None:
        """`get` returns None when nothing arrives in time."""
        with feed.subscribe(bookmarks_channel("user-1")) as subscription:
            assert await subscription.get(timeout=0.01) is None

    async def test__async_iteration(self, feed: ChangeFeed) -> None:
        """Subscriptions can be consumed with `async for`."""
        channel = bookmarks_channel("user-1")
        received: list[dict[str, Any]] = []
        with feed.subscribe(channel) as subscription:
            await feed.publish(channel, {"n": 1})
            await feed.publish(channel, {"n": 2})
            async for message in subscription:
                received.append(message.payload)
                if len(received) == 2:
                    break
        assert received == [{"n": 1}, {"n": 2}]

    async def test__stop__detaches_all_subscribers(self, feed: ChangeFeed) -> None:
        """Stopping the feed closes every open subscription."""
        subscription = feed.subscribe(bookmarks_channel("user-1"), auth_channel("user-1"))
        await feed.stop()
        assert subscription.active is False
        assert feed.subscriber_count(bookmarks_channel("user-1")) == 0


class TestRedisRelay:
    """Tests for the Redis relay and its fallback."""

    async def test__start__without_redis_stays_in_process(self) -> None:
        """A feed with a disabled Redis client delivers in-process."""
        redis_client = RedisClient("redis://localhost:6379", enabled=False)
        await redis_client.connect()
        feed = ChangeFeed(redis_client)
        await feed.start()

        assert feed.is_relayed is False
        with feed.subscribe(bookmarks_channel("user-1")) as subscription:
            await feed.publish(bookmarks_channel("user-1"), {"n": 1})
            assert (await subscription.get(timeout=1)).payload == {"n": 1}

        await feed.stop()

    async def test__listen__delivers_relayed_messages(self, feed: ChangeFeed) -> None:
        """Pattern messages from Redis are decoded and fanned out locally."""
        pubsub = FakePubSub([
            {"type": "psubscribe", "channel": b"bookmarks:*", "data": 1},
            {"type": "pmessage", "channel": b"bookmarks:user-1", "data": b"not json"},
            {
                "type": "pmessage",
                "channel": b"bookmarks:user-1",
                "data": json.dumps({"event_type": "INSERT"}).encode(),
            },
        ])
        with feed.subscribe(bookmarks_channel("user-1")) as subscription:
            await asyncio.wait_for(feed._listen(pubsub), timeout=1)  # type: ignore[arg-type]
            message = await subscription.get(timeout=1)
            assert await subscription.get(timeout=0.01) is None

        assert message == FeedMessage("bookmarks:user-1", {"event_type": "INSERT"})


class TestFeedState:
    """Tests for the global feed holder."""

    def test__set_and_get_change_feed(self) -> None:
        original = get_change_feed()
        replacement = ChangeFeed()
        set_change_feed(replacement)
        try:
            assert get_change_feed() is replacement
        finally:
            set_change_feed(original)
