"""Pull-based async iterator over push-delivered payloads of one or more triggers."""

import asyncio
from collections import deque
from typing import TYPE_CHECKING, Any, Deque, Iterable, List, NamedTuple, Optional, Union

from redis_pubsub.errors import UnknownSubscriptionError
from redis_pubsub.observability import get_logger

if TYPE_CHECKING:
    from redis_pubsub.registry import SubscriptionRegistry


class IteratorResult(NamedTuple):
    """One step of the sequence: a payload, or done=True once the iterator is closed."""

    value: Any
    done: bool


DONE = IteratorResult(None, True)


class PubSubAsyncIterator:
    """
    Buffers payloads pushed by the registry until a consumer pulls them.

    Subscriptions for all triggers are started on construction (a running event loop
    is required) and the first pull waits for them. Pushed payloads are queued while
    nobody is waiting; waiting pulls are served oldest first. aclose() is the only way
    a pending pull completes without a value.
    """

    def __init__(
        self,
        registry: "SubscriptionRegistry",
        triggers: Union[str, Iterable[str]],
    ) -> None:
        self._registry = registry
        self._triggers: List[str] = [triggers] if isinstance(triggers, str) else list(triggers)
        self._push_queue: Deque[Any] = deque()
        self._pull_queue: Deque["asyncio.Future[IteratorResult]"] = deque()
        self._running = True
        self._closed = False
        self._setup_error_raised = False
        self._logger = get_logger("redis_pubsub.iterator")
        loop = asyncio.get_running_loop()
        self._all_subscribed: "asyncio.Future[List[int]]" = loop.create_task(self._subscribe_all())

    @property
    def triggers(self) -> List[str]:
        return list(self._triggers)

    @property
    def running(self) -> bool:
        return self._running

    @property
    def buffered(self) -> int:
        """Number of pushed payloads not yet pulled."""
        return len(self._push_queue)

    async def wait_ready(self) -> None:
        """Wait until every trigger is subscribed; raises the setup error if one failed."""
        await asyncio.shield(self._all_subscribed)

    async def next(self) -> IteratorResult:
        """
        Return the next payload, waiting for a publish if none is buffered.
        A failed setup is raised to the first pull made before aclose(); every
        other pull on a terminated iterator returns DONE.
        """
        if self._closed:
            return DONE
        try:
            await asyncio.shield(self._all_subscribed)
        except Exception:
            if self._closed or self._setup_error_raised:
                return DONE
            self._setup_error_raised = True
            raise
        if not self._running:
            return DONE
        return await self._pull_value()

    async def aclose(self) -> IteratorResult:
        """Stop the iterator: release waiting pulls, drop the buffer, unsubscribe. Idempotent."""
        await self._empty_queue()
        return DONE

    async def athrow(self, error: BaseException) -> IteratorResult:
        """Close the iterator, then raise error to the caller."""
        await self._empty_queue()
        raise error

    def __aiter__(self) -> "PubSubAsyncIterator":
        return self

    async def __anext__(self) -> Any:
        result = await self.next()
        if result.done:
            raise StopAsyncIteration
        return result.value

    def _push_value(self, payload: Any) -> None:
        if not self._running:
            return
        while self._pull_queue:
            waiter = self._pull_queue.popleft()
            if not waiter.done():
                waiter.set_result(IteratorResult(payload, False))
                return
        self._push_queue.append(payload)

    async def _pull_value(self) -> IteratorResult:
        if self._push_queue:
            return IteratorResult(self._push_queue.popleft(), False)
        waiter: "asyncio.Future[IteratorResult]" = asyncio.get_running_loop().create_future()
        self._pull_queue.append(waiter)
        return await waiter

    async def _empty_queue(self) -> None:
        self._closed = True
        if not self._running:
            return
        self._running = False
        while self._pull_queue:
            waiter = self._pull_queue.popleft()
            if not waiter.done():
                waiter.set_result(DONE)
        self._push_queue.clear()
        try:
            subscription_ids = await asyncio.shield(self._all_subscribed)
        except Exception:
            # setup already rolled back whatever it had subscribed
            return
        self._unsubscribe_all(subscription_ids)

    async def _subscribe_all(self) -> List[int]:
        results = await asyncio.gather(
            *(self._registry.subscribe(trigger, self._push_value) for trigger in self._triggers),
            return_exceptions=True,
        )
        subscription_ids = [r for r in results if isinstance(r, int)]
        failure: Optional[BaseException] = next(
            (r for r in results if isinstance(r, BaseException)), None
        )
        if failure is not None:
            self._unsubscribe_all(subscription_ids)
            self._running = False
            self._logger.error(
                "iterator_setup_failed",
                extra={"triggers": self._triggers, "error": str(failure)},
            )
            raise failure
        return subscription_ids

    def _unsubscribe_all(self, subscription_ids: List[int]) -> None:
        for sub_id in subscription_ids:
            try:
                self._registry.unsubscribe(sub_id)
            except UnknownSubscriptionError:
                # already released, e.g. by SubscriptionRegistry.close()
                self._logger.debug("already_unsubscribed", extra={"subscription_id": sub_id})

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(triggers={self._triggers!r}, "
            f"running={self._running}, buffered={len(self._push_queue)})"
        )
