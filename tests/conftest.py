"""
Pytest configuration and in-memory doubles for the transport and Redis clients.
"""
import asyncio
import os
from fnmatch import fnmatchcase
from typing import Any, Dict, List, Optional, Set, Tuple
from unittest.mock import AsyncMock

import pytest

from redis_pubsub.registry import SubscriptionRegistry
from redis_pubsub.transport import PatternTransport

os.environ.setdefault("LOG_LEVEL", "WARNING")


async def settle(rounds: int = 5) -> None:
    """Let background tasks (transport unsubscribes, iterator setup) run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeTransport(PatternTransport):
    """Pattern transport that delivers synchronously to glob-matching subscriptions."""

    def __init__(self) -> None:
        super().__init__()
        self.patterns: List[str] = []
        self.published: List[Tuple[str, Any]] = []
        self.subscribe_calls: List[str] = []
        self.unsubscribe_calls: List[str] = []
        self.fail_subscribe: Optional[BaseException] = None
        self.fail_patterns: Set[str] = set()
        self.fail_unsubscribe: Optional[BaseException] = None
        self.subscribe_gate: Optional[asyncio.Event] = None

    async def pattern_publish(self, channel: str, message: Any) -> int:
        self.published.append((channel, message))
        matched = [p for p in self.patterns if fnmatchcase(channel, p)]
        for pattern in matched:
            self.dispatch(pattern, channel, message)
        return len(matched)

    async def pattern_subscribe(self, pattern: str) -> None:
        self.subscribe_calls.append(pattern)
        if self.subscribe_gate is not None:
            await self.subscribe_gate.wait()
        if self.fail_subscribe is not None:
            raise self.fail_subscribe
        if pattern in self.fail_patterns:
            raise ConnectionError(f"refused {pattern}")
        self.patterns.append(pattern)

    async def pattern_unsubscribe(self, pattern: str) -> None:
        self.unsubscribe_calls.append(pattern)
        if self.fail_unsubscribe is not None:
            raise self.fail_unsubscribe
        if pattern in self.patterns:
            self.patterns.remove(pattern)


class FakeRedisPubSub:
    """
    Stand-in for redis.asyncio.client.PubSub. Like the real one, psubscribe() only sends
    the command: the server's confirmation (or error reply) is queued as a frame that
    get_message() returns, or raises, later.
    """

    def __init__(self) -> None:
        self.patterns: List[str] = []
        self.frames: "asyncio.Queue[Any]" = asyncio.Queue()
        self.psubscribe_error: Optional[BaseException] = None
        self.reply_error: Optional[BaseException] = None
        self.confirm = True
        self.unconfirmed: List[str] = []
        self.punsubscribed: List[str] = []
        self.closed = False

    async def psubscribe(self, *patterns: str) -> None:
        if self.psubscribe_error is not None:
            raise self.psubscribe_error
        for pattern in patterns:
            if self.reply_error is not None:
                self.frames.put_nowait(self.reply_error)
                continue
            self.patterns.append(pattern)
            if self.confirm:
                self._queue_confirmation(pattern)
            else:
                self.unconfirmed.append(pattern)

    def release_confirmations(self) -> None:
        for pattern in self.unconfirmed:
            self._queue_confirmation(pattern)
        self.unconfirmed.clear()

    def _queue_confirmation(self, pattern: str) -> None:
        self.frames.put_nowait({
            "type": "psubscribe",
            "pattern": None,
            "channel": pattern,
            "data": len(self.patterns),
        })

    async def punsubscribe(self, *patterns: str) -> None:
        for pattern in patterns:
            self.punsubscribed.append(pattern)
            if pattern in self.patterns:
                self.patterns.remove(pattern)
            self.frames.put_nowait({
                "type": "punsubscribe",
                "pattern": None,
                "channel": pattern,
                "data": len(self.patterns),
            })

    async def get_message(self, ignore_subscribe_messages: bool = False, timeout: float = 0.0):
        try:
            frame = await asyncio.wait_for(self.frames.get(), timeout)
        except asyncio.TimeoutError:
            return None
        if isinstance(frame, BaseException):
            raise frame
        if ignore_subscribe_messages and frame["type"] in ("psubscribe", "punsubscribe"):
            return None
        return frame

    async def aclose(self) -> None:
        self.closed = True


class FakeRedis:
    """Stand-in for redis.asyncio.Redis sharing one FakeRedisPubSub between clients."""

    def __init__(self, pubsub: FakeRedisPubSub) -> None:
        self._pubsub = pubsub
        self.ping = AsyncMock(return_value=True)
        self.aclose = AsyncMock()

    def pubsub(self) -> FakeRedisPubSub:
        return self._pubsub

    async def publish(self, channel: str, message: Any) -> int:
        matched = [p for p in self._pubsub.patterns if fnmatchcase(channel, p)]
        for pattern in matched:
            self._pubsub.frames.put_nowait({
                "type": "pmessage",
                "pattern": pattern,
                "channel": channel,
                "data": message,
            })
        return len(matched)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def registry(transport) -> SubscriptionRegistry:
    return SubscriptionRegistry(transport)


@pytest.fixture
def fake_pubsub() -> FakeRedisPubSub:
    return FakeRedisPubSub()


@pytest.fixture
def redis_clients(fake_pubsub) -> Tuple[FakeRedis, FakeRedis]:
    return FakeRedis(fake_pubsub), FakeRedis(fake_pubsub)
