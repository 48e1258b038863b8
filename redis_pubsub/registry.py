"""Subscription registry: reference-counted pattern subscriptions with in-process fan-out."""

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Set,
    Tuple,
    Union,
)

from redis_pubsub.codec import decode_message, encode_payload
from redis_pubsub.errors import SubscriptionError, UnknownSubscriptionError
from redis_pubsub.iterator import PubSubAsyncIterator
from redis_pubsub.observability import Metrics, get_logger
from redis_pubsub.transport import PatternTransport

OnMessage = Callable[[Any], Optional[Awaitable[None]]]
TriggerTransform = Callable[[str, Optional[Dict[str, Any]]], str]

REGISTRY_COUNTERS = (
    "messages_published",
    "messages_received",
    "messages_delivered",
    "messages_dropped",
    "delivery_failures",
    "transport_subscribes",
    "transport_unsubscribes",
)
REGISTRY_GAUGES = ("subscriptions", "channels")


def identity_transform(trigger: str, options: Optional[Dict[str, Any]] = None) -> str:
    """Default trigger transform: the trigger is the channel."""
    return trigger


@dataclass
class SubscriptionRecord:
    """One logical subscriber: the physical channel it listens on and its callback."""

    channel: str
    on_message: OnMessage


@dataclass
class _PendingChannel:
    """A first subscribe to a channel still waiting for the transport, plus everyone queued behind it."""

    task: Optional["asyncio.Task[None]"] = None
    waiting: List[Tuple[int, OnMessage]] = field(default_factory=list)


class SubscriptionRegistry:
    """
    Multiplexes logical subscribers onto shared pattern subscriptions of a transport.

    Every subscribe() call gets its own id and record; subscribers whose triggers map
    to the same channel share a single transport-level subscription, created with the
    first of them and dropped with the last. All delivery goes through the transport,
    including for publishers and subscribers living in the same process.
    """

    def __init__(
        self,
        transport: PatternTransport,
        trigger_transform: Optional[TriggerTransform] = None,
    ) -> None:
        self._transport = transport
        self._trigger_transform: TriggerTransform = trigger_transform or identity_transform
        self._subscriptions: Dict[int, SubscriptionRecord] = {}
        self._subs_refs: Dict[str, List[int]] = {}
        self._pending: Dict[str, _PendingChannel] = {}
        self._current_subscription_id = 0
        self._background: Set["asyncio.Task[Any]"] = set()
        self._logger = get_logger("redis_pubsub.registry")
        self.metrics = Metrics(counters=REGISTRY_COUNTERS, gauges=REGISTRY_GAUGES)
        self._transport.set_message_handler(self.handle_message)

    @property
    def transport(self) -> PatternTransport:
        return self._transport

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    @property
    def channel_count(self) -> int:
        return len(self._subs_refs)

    def channels(self) -> Dict[str, List[int]]:
        """Return a copy of channel -> subscription ids, in attach order."""
        return {channel: list(refs) for channel, refs in self._subs_refs.items()}

    def stats(self) -> Dict[str, Any]:
        """Metrics snapshot plus current subscription/channel counts."""
        return {
            "subscriptions": self.subscription_count,
            "channels": self.channel_count,
            **self.metrics.snapshot(),
        }

    async def publish(self, trigger: str, payload: Any) -> int:
        """Encode payload and publish it on the trigger's channel through the transport."""
        message = encode_payload(payload)
        receivers = await self._transport.pattern_publish(trigger, message)
        self.metrics.increment("messages_published")
        self._logger.debug(
            "published",
            extra={"trigger": trigger, "receivers": receivers},
        )
        return receivers

    async def subscribe(
        self,
        trigger: str,
        on_message: OnMessage,
        options: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Register on_message for payloads published on the trigger's channel.
        Returns a new subscription id. Only the first subscriber of a channel waits for
        the transport; on transport failure SubscriptionError is raised and nothing is kept.
        """
        channel = self._trigger_transform(trigger, options)
        sub_id = self._next_subscription_id()

        refs = self._subs_refs.get(channel)
        if refs:
            self._subscriptions[sub_id] = SubscriptionRecord(channel, on_message)
            refs.append(sub_id)
            self._on_attached(sub_id, channel)
            return sub_id

        pending = self._pending.get(channel)
        if pending is None:
            pending = _PendingChannel()
            self._pending[channel] = pending
            pending.task = asyncio.ensure_future(self._attach_channel(channel, pending))
        pending.waiting.append((sub_id, on_message))

        try:
            await asyncio.shield(pending.task)
        except asyncio.CancelledError:
            if sub_id in self._subscriptions:
                self.unsubscribe(sub_id)
            else:
                pending.waiting[:] = [w for w in pending.waiting if w[0] != sub_id]
            raise
        except Exception as exc:
            raise SubscriptionError(channel, exc) from exc
        return sub_id

    def unsubscribe(self, sub_id: int) -> None:
        """
        Remove a subscription. The channel's transport subscription is dropped in the
        background when this was its last subscriber; transport failures are only logged.
        """
        record = self._subscriptions.get(sub_id)
        refs = self._subs_refs.get(record.channel) if record is not None else None
        if record is None or not refs:
            raise UnknownSubscriptionError(sub_id)

        channel = record.channel
        if len(refs) == 1:
            del self._subs_refs[channel]
            self._release_channel(channel)
        elif sub_id in refs:
            refs.remove(sub_id)
        del self._subscriptions[sub_id]
        self._update_gauges()
        self._logger.info(
            "unsubscribed",
            extra={"channel": channel, "subscription_id": sub_id},
        )

    def async_iterator(self, triggers: Union[str, Iterable[str]]) -> PubSubAsyncIterator:
        """Pull-based view over the given trigger(s). Must be called inside a running loop."""
        return PubSubAsyncIterator(self, triggers)

    def handle_message(self, pattern: str, channel: str, message: Union[str, bytes]) -> None:
        """
        Transport callback: fan a message out to every subscriber of the matched pattern,
        synchronously and in attach order. Messages for unknown patterns are dropped.
        """
        self.metrics.increment("messages_received")
        refs = self._subs_refs.get(pattern)
        if not refs:
            self.metrics.increment("messages_dropped")
            self._logger.debug(
                "message_dropped",
                extra={"pattern": pattern, "channel": channel},
            )
            return

        payload = decode_message(message)
        for sub_id in list(refs):
            record = self._subscriptions.get(sub_id)
            if record is None:
                # removed by an earlier callback in this loop
                continue
            try:
                result = record.on_message(payload)
                if inspect.isawaitable(result):
                    # counted by _spawn once the callback finishes
                    self._spawn(result, "callback", pattern)
                else:
                    self.metrics.increment("messages_delivered", channel=pattern)
            except Exception as e:
                self.metrics.increment("delivery_failures", channel=pattern)
                self._logger.exception(
                    "delivery_failed",
                    extra={
                        "pattern": pattern,
                        "channel": channel,
                        "subscription_id": sub_id,
                        "error": str(e),
                    },
                )

    async def close(self) -> None:
        """Drop every subscription and wait for outstanding transport unsubscribes."""
        for sub_id in list(self._subscriptions):
            if sub_id in self._subscriptions:
                self.unsubscribe(sub_id)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def _attach_channel(self, channel: str, pending: _PendingChannel) -> None:
        try:
            await self._transport.pattern_subscribe(channel)
        finally:
            if self._pending.get(channel) is pending:
                del self._pending[channel]
        self.metrics.increment("transport_subscribes")

        if not pending.waiting:
            # every caller was cancelled while we waited on the transport
            self._release_channel(channel)
            return
        refs = self._subs_refs.setdefault(channel, [])
        for sub_id, on_message in pending.waiting:
            self._subscriptions[sub_id] = SubscriptionRecord(channel, on_message)
            refs.append(sub_id)
            self._on_attached(sub_id, channel)

    def _release_channel(self, channel: str) -> None:
        self.metrics.increment("transport_unsubscribes")
        self.metrics.forget_channel(channel)
        self._spawn(self._transport.pattern_unsubscribe(channel), "unsubscribe", channel)

    def _spawn(self, awaitable: Awaitable[Any], label: str, channel: Optional[str] = None) -> None:
        try:
            task = asyncio.ensure_future(awaitable, loop=asyncio.get_running_loop())
        except RuntimeError:
            # no running loop to drive the transport
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            self._logger.warning(
                "no_event_loop",
                extra={"operation": label, "channel": channel},
            )
            return
        self._background.add(task)

        def _done(t: "asyncio.Task[Any]") -> None:
            self._background.discard(t)
            # a released channel keeps no per-channel counters
            tracked = channel if channel in self._subs_refs else None
            if t.cancelled():
                return
            if t.exception() is None:
                if label == "callback":
                    self.metrics.increment("messages_delivered", channel=tracked)
                return
            if label == "unsubscribe":
                self._logger.warning(
                    "unsubscribe_failed",
                    extra={"channel": channel, "error": str(t.exception())},
                )
            else:
                self.metrics.increment("delivery_failures", channel=tracked)
                self._logger.error(
                    "delivery_failed",
                    extra={"channel": channel},
                    exc_info=t.exception(),
                )

        task.add_done_callback(_done)

    def _next_subscription_id(self) -> int:
        sub_id = self._current_subscription_id
        self._current_subscription_id += 1
        return sub_id

    def _on_attached(self, sub_id: int, channel: str) -> None:
        self._update_gauges()
        self._logger.info(
            "subscribed",
            extra={"channel": channel, "subscription_id": sub_id},
        )

    def _update_gauges(self) -> None:
        self.metrics.set_gauge("subscriptions", len(self._subscriptions))
        self.metrics.set_gauge("channels", len(self._subs_refs))

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(transport={self._transport.name}, "
            f"subscriptions={len(self._subscriptions)}, channels={len(self._subs_refs)})"
        )
