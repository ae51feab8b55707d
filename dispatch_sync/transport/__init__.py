from dispatch_sync.transport.channel import ChannelError, ChannelState, EventChannel
from dispatch_sync.transport.loopback import LoopbackBackend
from dispatch_sync.transport.rest_client import (
    BookingApiClient,
    BookingApiError,
    RaceLostError,
    TransportError,
)

__all__ = [
    "BookingApiClient",
    "BookingApiError",
    "RaceLostError",
    "TransportError",
    "EventChannel",
    "ChannelError",
    "ChannelState",
    "LoopbackBackend",
]
