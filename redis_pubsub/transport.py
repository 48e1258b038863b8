"""Abstract pattern-matching transport the registry publishes and subscribes through."""

from abc import ABC, abstractmethod
from typing import Callable, Optional, Union

# handler(matched_pattern, concrete_channel, raw_message)
MessageHandler = Callable[[str, str, Union[str, bytes]], None]


class PatternTransport(ABC):
    """Capability interface over a pub/sub backend with glob-style pattern subscriptions."""

    def __init__(self) -> None:
        self._message_handler: Optional[MessageHandler] = None

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        """Install the callback invoked for every message matching a subscribed pattern."""
        self._message_handler = handler

    def dispatch(self, pattern: str, channel: str, message: Union[str, bytes]) -> None:
        """Hand a received message to the installed handler (no-op when none is set)."""
        if self._message_handler is not None:
            self._message_handler(pattern, channel, message)

    @abstractmethod
    async def pattern_publish(self, channel: str, message: Union[str, bytes]) -> int:
        """
        Publish a message on a concrete channel.
        Returns the backend's outcome (for Redis, the number of receiving clients).
        """
        pass

    @abstractmethod
    async def pattern_subscribe(self, pattern: str) -> None:
        """Subscribe to a pattern. Returns once acknowledged; raises if the backend refuses."""
        pass

    @abstractmethod
    async def pattern_unsubscribe(self, pattern: str) -> None:
        """Drop a pattern subscription."""
        pass

    async def close(self) -> None:
        """Release backend resources. Default: nothing to release."""
        return None

    @property
    def name(self) -> str:
        return self.__class__.__name__

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"
