# Channel adapter registry
from typing import Dict, Iterable, List, Optional

from .base import ChannelAdapter, ParsedResponse, RateLimitProfile
from .booking_com import BookingComAdapter
from .expedia import ExpediaAdapter
from .airbnb import AirbnbAdapter
from .agoda import AgodaAdapter


class AdapterRegistry:
    """Channel name -> adapter"""

    def __init__(self, adapters: Optional[Iterable[ChannelAdapter]] = None):
        self._adapters: Dict[str, ChannelAdapter] = {}
        for adapter in adapters or ():
            self.register(adapter)

    def register(self, adapter: ChannelAdapter):
        if not adapter.name:
            raise ValueError(f"{type(adapter).__name__} has no channel name")
        self._adapters[adapter.name] = adapter

    def get(self, channel: str) -> Optional[ChannelAdapter]:
        return self._adapters.get(channel)

    def all(self) -> List[ChannelAdapter]:
        return list(self._adapters.values())

    def select(self, event) -> List[ChannelAdapter]:
        return [adapter for adapter in self._adapters.values() if adapter.applies_to(event)]

    def __contains__(self, channel: str) -> bool:
        return channel in self._adapters


def default_registry() -> AdapterRegistry:
    return AdapterRegistry([BookingComAdapter(), ExpediaAdapter(), AirbnbAdapter(), AgodaAdapter()])


__all__ = [
    "AdapterRegistry",
    "ChannelAdapter",
    "ParsedResponse",
    "RateLimitProfile",
    "BookingComAdapter",
    "ExpediaAdapter",
    "AirbnbAdapter",
    "AgodaAdapter",
    "default_registry",
]
