"""RedisPubSub: a subscription registry wired to Redis clients."""

from typing import Any, Mapping, Optional, Union

import redis.asyncio as redis_async

from redis_pubsub.config import RedisConnectionConfig
from redis_pubsub.redis_transport import ConnectionListener, RedisTransport
from redis_pubsub.registry import SubscriptionRegistry, TriggerTransform


class RedisPubSub(SubscriptionRegistry):
    """
    Trigger-based publish/subscribe over Redis pattern subscriptions.

    Pass both publisher and subscriber to reuse existing redis.asyncio clients (they are
    left open on close()). Otherwise two clients are created from connection, which may
    be a RedisConnectionConfig, a mapping of its fields, or None to read the environment.
    """

    def __init__(
        self,
        trigger_transform: Optional[TriggerTransform] = None,
        publisher: Optional["redis_async.Redis"] = None,
        subscriber: Optional["redis_async.Redis"] = None,
        connection: Union[RedisConnectionConfig, Mapping[str, Any], None] = None,
        connection_listener: Optional[ConnectionListener] = None,
    ) -> None:
        if publisher is not None and subscriber is not None:
            transport = RedisTransport(
                publisher,
                subscriber,
                connection_listener=connection_listener,
            )
        else:
            transport = RedisTransport.from_config(
                _resolve_config(connection),
                connection_listener=connection_listener,
            )
        super().__init__(transport, trigger_transform=trigger_transform)
        self._redis_transport = transport

    def get_publisher(self) -> "redis_async.Redis":
        return self._redis_transport.publisher

    def get_subscriber(self) -> "redis_async.Redis":
        return self._redis_transport.subscriber

    async def connect(self) -> None:
        """Check both connections up front (clients otherwise connect lazily)."""
        await self._redis_transport.connect()

    async def close(self) -> None:
        """Unsubscribe everything, then shut the transport down."""
        await super().close()
        await self._redis_transport.close()

    async def __aenter__(self) -> "RedisPubSub":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


def _resolve_config(
    connection: Union[RedisConnectionConfig, Mapping[str, Any], None],
) -> RedisConnectionConfig:
    if connection is None:
        return RedisConnectionConfig.from_env()
    if isinstance(connection, RedisConnectionConfig):
        return connection
    return RedisConnectionConfig(**connection)
