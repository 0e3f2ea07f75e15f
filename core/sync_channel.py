"""
Cross-instance sync channel.

Concurrently running copies of the same logical session (browser tabs,
worker processes) broadcast refresh and timeout state to each other over
named topics. Messages are ``{"type": ..., "data": {...}}`` plus the id of
the publishing instance, which never receives its own messages back.

Two backends:
- InMemorySyncBus: in-process fan-out, synchronous delivery
- RedisSyncChannel: Redis pub/sub with a listener thread per subscription,
  exponential backoff with jitter on disconnect

Usage:
    from core.sync_channel import InMemorySyncBus, SyncMessage, TOKEN_REFRESH_TOPIC

    bus = InMemorySyncBus()
    sub = bus.subscribe(TOKEN_REFRESH_TOPIC, handler, instance_id="tab-2")
    bus.publish(TOKEN_REFRESH_TOPIC, SyncMessage("refresh-started", source="tab-1"))
    sub.close()
"""

import asyncio
import json
import logging
import random
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

logger = logging.getLogger(__name__)

TOKEN_REFRESH_TOPIC = "token-refresh-sync"
SESSION_TIMEOUT_TOPIC = "session-timeout-sync"

# Reconnection parameters
_RECONNECT_BASE = 1.0  # 1 second
_RECONNECT_MAX = 30.0  # 30 seconds
_RECONNECT_JITTER = 0.25  # ±25%


@dataclass(frozen=True)
class SyncMessage:
    """A broadcast between instances."""
    type: str
    data: dict = field(default_factory=dict)
    source: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps({"type": self.type, "data": self.data, "source": self.source})

    @classmethod
    def from_json(cls, raw) -> "SyncMessage":
        if isinstance(raw, bytes):
            raw = raw.decode()
        payload = json.loads(raw)
        if not isinstance(payload, dict) or "type" not in payload:
            raise ValueError("sync message must be an object with a 'type' field")
        return cls(
            type=str(payload["type"]),
            data=payload.get("data") or {},
            source=payload.get("source"),
        )


SyncHandler = Callable[[SyncMessage], Any]


class Subscription:
    """Handle returned by ``subscribe``; ``close()`` stops delivery."""

    def __init__(self, topic: str, handler: SyncHandler, instance_id: Optional[str],
                 on_close: Optional[Callable[["Subscription"], None]] = None):
        self.topic = topic
        self.handler = handler
        self.instance_id = instance_id
        self._on_close = on_close
        self.closed = False

    def accepts(self, message: SyncMessage) -> bool:
        if self.closed:
            return False
        return self.instance_id is None or message.source != self.instance_id

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._on_close is not None:
            self._on_close(self)


class SyncChannel(Protocol):
    def publish(self, topic: str, message: SyncMessage) -> None:
        ...

    def subscribe(self, topic: str, handler: SyncHandler,
                  instance_id: Optional[str] = None) -> Subscription:
        ...


def _deliver(subscription: Subscription, message: SyncMessage) -> None:
    try:
        subscription.handler(message)
    except Exception:
        logger.exception(
            f"Sync handler for {subscription.topic} failed on '{message.type}'",
            extra={"topic": subscription.topic, "instance_id": subscription.instance_id},
        )


# =============================================================================
# In-process backend
# =============================================================================

class InMemorySyncBus:
    """Synchronous in-process fan-out."""

    def __init__(self):
        self._subscriptions: dict[str, list[Subscription]] = defaultdict(list)
        self.published: list[tuple[str, SyncMessage]] = []

    def publish(self, topic: str, message: SyncMessage) -> None:
        self.published.append((topic, message))
        for subscription in list(self._subscriptions.get(topic, ())):
            if subscription.accepts(message):
                _deliver(subscription, message)

    def subscribe(self, topic: str, handler: SyncHandler,
                  instance_id: Optional[str] = None) -> Subscription:
        subscription = Subscription(topic, handler, instance_id, on_close=self._remove)
        self._subscriptions[topic].append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        subscribers = self._subscriptions.get(subscription.topic, [])
        if subscription in subscribers:
            subscribers.remove(subscription)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscriptions.get(topic, ()))


# =============================================================================
# Redis backend
# =============================================================================

def _backoff_with_jitter(attempt: int) -> float:
    """Calculate exponential backoff with jitter."""
    delay = min(_RECONNECT_BASE * (2 ** attempt), _RECONNECT_MAX)
    jitter = delay * _RECONNECT_JITTER * (2 * random.random() - 1)
    return delay + jitter


class RedisSyncChannel:
    """
    Redis pub/sub channel.

    Each subscription runs a daemon listener thread. When ``loop`` is given,
    handlers are called on that event loop via ``call_soon_threadsafe`` so
    manager state is only touched from the loop thread.
    """

    def __init__(self, client=None, channel_prefix: str = "credlife:",
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        if client is None:
            from config.redis_client import get_redis
            client = get_redis()
        self._client = client
        self._prefix = channel_prefix
        self._loop = loop
        self._stops: dict[int, threading.Event] = {}

    def _channel(self, topic: str) -> str:
        return f"{self._prefix}{topic}"

    def publish(self, topic: str, message: SyncMessage) -> None:
        try:
            self._client.publish(self._channel(topic), message.to_json())
        except Exception as e:
            # best effort
            logger.warning(f"Failed to publish {message.type} on {topic}: {e}",
                           extra={"topic": topic})

    def subscribe(self, topic: str, handler: SyncHandler,
                  instance_id: Optional[str] = None) -> Subscription:
        stop = threading.Event()
        subscription = Subscription(topic, handler, instance_id, on_close=lambda s: stop.set())
        self._stops[id(subscription)] = stop

        thread = threading.Thread(
            target=self._listen,
            args=(subscription, stop),
            daemon=True,
            name=f"SyncListener-{topic}",
        )
        thread.start()
        logger.info(f"Sync listener started for {self._channel(topic)}")
        return subscription

    def dispatch(self, subscription: Subscription, raw) -> None:
        """Decode one raw pub/sub payload and hand it to the subscriber."""
        try:
            message = SyncMessage.from_json(raw)
        except (ValueError, TypeError) as e:
            logger.warning(f"Invalid sync message on {subscription.topic}: {e}")
            return

        if not subscription.accepts(message):
            return

        if self._loop is not None:
            self._loop.call_soon_threadsafe(_deliver, subscription, message)
        else:
            _deliver(subscription, message)

    def _listen(self, subscription: Subscription, stop: threading.Event) -> None:
        attempt = 0
        channel = self._channel(subscription.topic)

        while not stop.is_set():
            pubsub = None
            try:
                pubsub = self._client.pubsub(ignore_subscribe_messages=True)
                pubsub.subscribe(channel)
                attempt = 0  # Reset on successful connection

                while not stop.is_set():
                    message = pubsub.get_message(timeout=1.0)
                    if message and message.get("type") == "message":
                        self.dispatch(subscription, message["data"])

            except Exception as e:
                delay = _backoff_with_jitter(attempt)
                logger.warning(
                    f"Sync listener for {channel} disconnected: {e}. "
                    f"Reconnecting in {delay:.1f}s (attempt {attempt + 1})"
                )
                stop.wait(delay)
                attempt += 1

            finally:
                if pubsub is not None:
                    pubsub.close()

        logger.info(f"Sync listener stopped for {channel}")
        self._stops.pop(id(subscription), None)

    def close(self) -> None:
        for stop in list(self._stops.values()):
            stop.set()


def build_sync_channel(settings=None, loop: Optional[asyncio.AbstractEventLoop] = None) -> SyncChannel:
    """
    Create the sync backend selected by ``SYNC_BACKEND`` (memory or redis).

    The redis backend uses the shared client from ``config.redis_client``.
    When Redis does not answer, instances in this process still sync over an
    in-memory bus.
    """
    if settings is None:
        from config.settings import get_settings
        settings = get_settings()

    backend = settings.sync_backend.lower()
    if backend == "redis":
        from config.redis_client import get_redis, redis_available
        if not redis_available():
            logger.warning("Redis unavailable, sync limited to this process")
            return InMemorySyncBus()
        return RedisSyncChannel(get_redis(), channel_prefix=settings.redis.channel_prefix, loop=loop)
    if backend == "memory":
        return InMemorySyncBus()
    raise ValueError(f"Unknown sync backend: {settings.sync_backend}")
