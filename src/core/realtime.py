"""
Per-user change feed for live bookmark and auth-state updates.

Publishers (the bookmark service, the session client) push JSON-able payloads to a
channel; every open subscription on that channel receives them. Delivery to
subscribers always happens in-process. When Redis is connected, publishes go through
Redis pub/sub instead and a single listener task fans them back out locally, so
every worker process sees every event. If Redis is unavailable or fails, the feed
falls back to in-process delivery (events then only reach views served by the
publishing worker).
"""
import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from core.redis import RedisClient

logger = logging.getLogger(__name__)

BOOKMARKS_CHANNEL_PREFIX = "bookmarks:"
AUTH_CHANNEL_PREFIX = "auth:"

# Max undelivered messages per subscription before new ones are dropped
SUBSCRIPTION_QUEUE_SIZE = 100


def bookmarks_channel(user_id: str) -> str:
    """Channel carrying row changes for one user's bookmarks."""
    return f"{BOOKMARKS_CHANNEL_PREFIX}{user_id}"


def auth_channel(user_id: str) -> str:
    """Channel carrying auth state changes for one user."""
    return f"{AUTH_CHANNEL_PREFIX}{user_id}"


@dataclass(frozen=True)
class FeedMessage:
    """A payload delivered on a channel."""

    channel: str
    payload: dict[str, Any]


class Subscription:
    """
    Receives messages published to a fixed set of channels.

    Use as a context manager (or call `unsubscribe`) so the subscription is removed
    from the feed when the consumer goes away.
    """

    def __init__(self, feed: "ChangeFeed", channels: tuple[str, ...]) -> None:
        self._feed = feed
        self.channels = channels
        self._queue: asyncio.Queue[FeedMessage] = asyncio.Queue(
            maxsize=SUBSCRIPTION_QUEUE_SIZE,
        )
        self.active = True

    def _put(self, message: FeedMessage) -> None:
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(
                "Dropping feed message on %s: subscriber queue full", message.channel,
            )

    async def get(self, timeout: float | None = None) -> FeedMessage | None:
        """Wait for the next message; returns None if `timeout` elapses first."""
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except TimeoutError:
            return None

    def unsubscribe(self) -> None:
        """Stop receiving messages. Safe to call more than once."""
        if self.active:
            self.active = False
            self._feed._remove(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.unsubscribe()

    def __aiter__(self) -> AsyncIterator[FeedMessage]:
        return self

    async def __anext__(self) -> FeedMessage:
        if not self.active:
            raise StopAsyncIteration
        return await self._queue.get()


class ChangeFeed:
    """Channel-based publish/subscribe broker with optional Redis relay."""

    def __init__(self, redis_client: RedisClient | None = None) -> None:
        self._redis = redis_client
        self._subscribers: dict[str, set[Subscription]] = {}
        self._pubsub: PubSub | None = None
        self._listener: asyncio.Task | None = None

    @property
    def is_relayed(self) -> bool:
        """True while events are relayed through Redis."""
        return self._listener is not None and not self._listener.done()

    async def start(self) -> None:
        """Start relaying through Redis if a connected client was provided."""
        if self._redis is None or not self._redis.is_connected:
            logger.info("Change feed using in-process delivery")
            return
        pubsub = self._redis.pubsub()
        if pubsub is None:
            return
        try:
            await pubsub.psubscribe(f"{BOOKMARKS_CHANNEL_PREFIX}*", f"{AUTH_CHANNEL_PREFIX}*")
        except RedisError as e:
            logger.warning("Change feed relay unavailable: %s", e)
            return
        self._pubsub = pubsub
        self._listener = asyncio.create_task(self._listen(pubsub))
        logger.info("Change feed relaying through Redis")

    async def stop(self) -> None:
        """Stop the relay and detach all subscribers."""
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub is not None:
            try:
                await self._pubsub.aclose()
            except RedisError as e:
                logger.warning("Error closing change feed relay: %s", e)
            self._pubsub = None
        for subscriptions in list(self._subscribers.values()):
            for subscription in list(subscriptions):
                subscription.unsubscribe()

    def subscribe(self, *channels: str) -> Subscription:
        """Open a subscription to one or more channels."""
        subscription = Subscription(self, channels)
        for channel in channels:
            self._subscribers.setdefault(channel, set()).add(subscription)
        return subscription

    def subscriber_count(self, channel: str) -> int:
        """Number of open subscriptions on a channel."""
        return len(self._subscribers.get(channel, ()))

    def _remove(self, subscription: Subscription) -> None:
        for channel in subscription.channels:
            subscribers = self._subscribers.get(channel)
            if subscribers is None:
                continue
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscribers[channel]

    async def publish(self, channel: str, payload: dict[str, Any]) -> None:
        """Publish a payload to every subscriber of `channel`."""
        if self.is_relayed and self._redis is not None:
            if await self._redis.publish(channel, json.dumps(payload)):
                return
        self._deliver(channel, payload)

    def _deliver(self, channel: str, payload: dict[str, Any]) -> None:
        message = FeedMessage(channel=channel, payload=payload)
        for subscription in list(self._subscribers.get(channel, ())):
            subscription._put(message)

    async def _listen(self, pubsub: PubSub) -> None:
        try:
            async for message in pubsub.listen():
                if message.get("type") != "pmessage":
                    continue
                channel = message["channel"]
                if isinstance(channel, bytes):
                    channel = channel.decode()
                try:
                    payload = json.loads(message["data"])
                except ValueError:
                    logger.warning("Ignoring malformed feed message on %s", channel)
                    continue
                self._deliver(channel, payload)
        except RedisError as e:
            logger.warning("Change feed relay lost, falling back to in-process: %s", e)


class _FeedState:
    """Container for the global change feed."""

    feed: ChangeFeed = ChangeFeed()


_state = _FeedState()


def get_change_feed() -> ChangeFeed:
    """Get the global change feed instance."""
    return _state.feed


def set_change_feed(feed: ChangeFeed) -> None:
    """Set the global change feed instance."""
    _state.feed = feed
