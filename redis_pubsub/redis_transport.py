"""Pattern transport backed by redis.asyncio (PUBLISH / PSUBSCRIBE / PUNSUBSCRIBE)."""

import asyncio
from typing import Any, Callable, Dict, Optional, Union

import redis.asyncio as redis_async
from redis.exceptions import RedisError, ResponseError

from redis_pubsub.config import RedisConnectionConfig
from redis_pubsub.errors import TransportError
from redis_pubsub.observability import get_logger
from redis_pubsub.transport import PatternTransport

# Called with None when a client connects and with the exception when it errors
ConnectionListener = Callable[[Optional[BaseException]], None]

DEFAULT_POLL_TIMEOUT = 1.0
DEFAULT_ERROR_BACKOFF = 1.0
DEFAULT_SUBSCRIBE_TIMEOUT = 10.0


def _text(value: Union[str, bytes]) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class RedisTransport(PatternTransport):
    """
    Publishes with one Redis client and pattern-subscribes with another.

    A single PubSub object carries every pattern subscription; a reader task started
    with the first subscription forwards pmessage frames to the message handler and
    resolves psubscribe confirmations, which pattern_subscribe() waits for.
    """

    def __init__(
        self,
        publisher: "redis_async.Redis",
        subscriber: "redis_async.Redis",
        connection_listener: Optional[ConnectionListener] = None,
        owns_clients: bool = False,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT,
        error_backoff: float = DEFAULT_ERROR_BACKOFF,
        subscribe_timeout: float = DEFAULT_SUBSCRIBE_TIMEOUT,
    ) -> None:
        super().__init__()
        self._publisher = publisher
        self._subscriber = subscriber
        self._connection_listener = connection_listener
        self._owns_clients = owns_clients
        self._poll_timeout = poll_timeout
        self._error_backoff = error_backoff
        self._subscribe_timeout = subscribe_timeout
        self._pubsub: Any = None
        self._reader_task: Optional["asyncio.Task[None]"] = None
        # pattern -> future resolved by the reader on the server's psubscribe reply
        self._pending_acks: Dict[str, "asyncio.Future[None]"] = {}
        self._logger = get_logger("redis_pubsub.redis_transport")

    @classmethod
    def from_config(
        cls,
        config: RedisConnectionConfig,
        connection_listener: Optional[ConnectionListener] = None,
    ) -> "RedisTransport":
        """Create publisher and subscriber clients for config; the transport closes them."""
        return cls(
            _client_from_config(config),
            _client_from_config(config),
            connection_listener=connection_listener,
            owns_clients=True,
        )

    @property
    def publisher(self) -> "redis_async.Redis":
        return self._publisher

    @property
    def subscriber(self) -> "redis_async.Redis":
        return self._subscriber

    async def connect(self) -> None:
        """Ping both clients, reporting each outcome to the connection listener."""
        for client in (self._publisher, self._subscriber):
            try:
                await client.ping()
            except RedisError as e:
                self._report(e)
                raise TransportError(f"Failed to connect to Redis: {e}") from e
            self._report(None)

    async def pattern_publish(self, channel: str, message: Union[str, bytes]) -> int:
        try:
            return await self._publisher.publish(channel, message)
        except RedisError as e:
            self._report(e)
            raise TransportError(f"Failed to publish to {channel!r}: {e}") from e

    async def pattern_subscribe(self, pattern: str) -> None:
        """Send PSUBSCRIBE and return once the server has confirmed it."""
        if self._pubsub is None:
            self._pubsub = self._subscriber.pubsub()
        ack = self._pending_acks.get(pattern)
        if ack is None:
            ack = asyncio.get_running_loop().create_future()
            self._pending_acks[pattern] = ack
            try:
                await self._pubsub.psubscribe(pattern)
            except RedisError as e:
                self._drop_ack(pattern, ack)
                self._report(e)
                raise TransportError(f"Failed to psubscribe to {pattern!r}: {e}") from e
            # the PubSub connection exists only once a subscribe command was sent
            self._ensure_reader()

        try:
            await asyncio.wait_for(asyncio.shield(ack), self._subscribe_timeout)
        except asyncio.TimeoutError as e:
            await self._abandon_pattern(pattern)
            raise TransportError(
                f"No psubscribe confirmation for {pattern!r} "
                f"within {self._subscribe_timeout}s"
            ) from e
        except RedisError as e:
            await self._abandon_pattern(pattern)
            raise TransportError(f"Failed to psubscribe to {pattern!r}: {e}") from e
        finally:
            self._drop_ack(pattern, ack)
        self._logger.debug("psubscribed", extra={"pattern": pattern})

    async def pattern_unsubscribe(self, pattern: str) -> None:
        if self._pubsub is None:
            return
        await self._pubsub.punsubscribe(pattern)
        self._logger.debug("punsubscribed", extra={"pattern": pattern})

    async def close(self) -> None:
        """Stop the reader, close the PubSub connection and any clients this transport created."""
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None
        if self._owns_clients:
            await self._publisher.aclose()
            await self._subscriber.aclose()

    def _ensure_reader(self) -> None:
        if self._reader_task is not None and not self._reader_task.done():
            return
        self._reader_task = asyncio.get_running_loop().create_task(self._read_loop())

    def _drop_ack(self, pattern: str, ack: "asyncio.Future[None]") -> None:
        if self._pending_acks.get(pattern) is ack:
            del self._pending_acks[pattern]

    async def _abandon_pattern(self, pattern: str) -> None:
        if self._pubsub is None:
            return
        # redis-py would otherwise re-issue the pattern after a reconnect
        try:
            await self._pubsub.punsubscribe(pattern)
        except RedisError as e:
            self._logger.warning(
                "punsubscribe_failed",
                extra={"pattern": pattern, "error": str(e)},
            )

    def _fail_pending(self, error: BaseException) -> None:
        for ack in self._pending_acks.values():
            if not ack.done():
                ack.set_exception(error)

    async def _read_loop(self) -> None:
        """Forward pattern messages to the handler until cancelled."""
        while True:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=False,
                    timeout=self._poll_timeout,
                )
            except asyncio.CancelledError:
                raise
            except ResponseError as e:
                # error reply to a (p)subscribe, e.g. NOPERM
                self._report(e)
                self._fail_pending(e)
                continue
            except RedisError as e:
                # redis-py reconnects and re-subscribes on the next read
                self._report(e)
                self._fail_pending(e)
                await asyncio.sleep(self._error_backoff)
                continue
            if not message:
                continue
            if message.get("type") == "psubscribe":
                ack = self._pending_acks.get(_text(message["channel"]))
                if ack is not None and not ack.done():
                    ack.set_result(None)
                continue
            if message.get("type") != "pmessage":
                continue
            try:
                self.dispatch(
                    _text(message["pattern"]),
                    _text(message["channel"]),
                    message["data"],
                )
            except Exception as e:
                self._logger.exception("dispatch_error", extra={"error": str(e)})

    def _report(self, error: Optional[BaseException]) -> None:
        if self._connection_listener is not None:
            self._connection_listener(error)
        elif error is not None:
            self._logger.error("redis_error", extra={"error": str(error)})

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(owns_clients={self._owns_clients})"


def _client_from_config(config: RedisConnectionConfig) -> "redis_async.Redis":
    if config.url:
        kwargs: Dict[str, Any] = {"decode_responses": config.decode_responses}
        if config.socket_timeout is not None:
            kwargs["socket_timeout"] = config.socket_timeout
        return redis_async.Redis.from_url(config.url, **kwargs)
    return redis_async.Redis(**config.client_kwargs())
