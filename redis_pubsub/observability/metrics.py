"""Registry metrics: message/transport counters, subscription gauges and per-channel traffic."""

from typing import Dict, Iterable, Optional


class Metrics:
    """
    In-memory metrics collector owned by one registry.

    Declared counters and gauges start at zero so a snapshot always lists them.
    Per-channel counters live only while the channel has a transport subscription;
    forget_channel() drops them when it is released.
    """

    def __init__(self, counters: Iterable[str] = (), gauges: Iterable[str] = ()) -> None:
        self._counters: Dict[str, int] = {name: 0 for name in counters}
        self._gauges: Dict[str, int] = {name: 0 for name in gauges}
        self._channels: Dict[str, Dict[str, int]] = {}

    def increment(self, name: str, value: int = 1, channel: Optional[str] = None) -> None:
        """Increment a counter, and the channel's own copy of it when channel is given."""
        self._counters[name] = self._counters.get(name, 0) + value
        if channel is not None:
            per_channel = self._channels.setdefault(channel, {})
            per_channel[name] = per_channel.get(name, 0) + value

    def forget_channel(self, channel: str) -> None:
        self._channels.pop(channel, None)

    def set_gauge(self, name: str, value: int) -> None:
        self._gauges[name] = value

    def get_counter(self, name: str, channel: Optional[str] = None) -> int:
        if channel is not None:
            return self._channels.get(channel, {}).get(name, 0)
        return self._counters.get(name, 0)

    def get_gauge(self, name: str) -> int:
        return self._gauges.get(name, 0)

    def snapshot(self) -> Dict[str, Dict]:
        """Return a copy of all counters, gauges and per-channel counters."""
        return {
            "counters": dict(self._counters),
            "gauges": dict(self._gauges),
            "per_channel": {channel: dict(c) for channel, c in self._channels.items()},
        }
