"""Exceptions raised by the subscription registry and its transports."""

from typing import Optional


class PubSubError(Exception):
    """Base class for redis-pubsub errors."""


class UnknownSubscriptionError(PubSubError, KeyError):
    """Raised by unsubscribe() for an id that was never issued or is already gone."""

    def __init__(self, subscription_id: object) -> None:
        self.subscription_id = subscription_id
        super().__init__(f'There is no subscription of id "{subscription_id}"')

    def __str__(self) -> str:
        # KeyError would repr() the message otherwise
        return self.args[0]


class TransportError(PubSubError):
    """A transport operation (publish, pattern subscribe) failed."""


class SubscriptionError(PubSubError):
    """The transport refused or failed the pattern subscribe for a channel."""

    def __init__(self, channel: str, cause: Optional[BaseException] = None) -> None:
        self.channel = channel
        message = f"Failed to subscribe to channel {channel!r}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
