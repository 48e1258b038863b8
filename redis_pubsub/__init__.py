"""Trigger-based publish/subscribe over Redis pattern subscriptions."""

from redis_pubsub.codec import decode_message, encode_payload
from redis_pubsub.config import RedisConnectionConfig
from redis_pubsub.errors import (
    PubSubError,
    SubscriptionError,
    TransportError,
    UnknownSubscriptionError,
)
from redis_pubsub.iterator import IteratorResult, PubSubAsyncIterator
from redis_pubsub.redis_pubsub import RedisPubSub
from redis_pubsub.redis_transport import RedisTransport
from redis_pubsub.registry import SubscriptionRegistry
from redis_pubsub.transport import PatternTransport

__all__ = [
    "IteratorResult",
    "PatternTransport",
    "PubSubAsyncIterator",
    "PubSubError",
    "RedisConnectionConfig",
    "RedisPubSub",
    "RedisTransport",
    "SubscriptionError",
    "SubscriptionRegistry",
    "TransportError",
    "UnknownSubscriptionError",
    "decode_message",
    "encode_payload",
]
