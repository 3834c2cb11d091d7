#Marks realtime as a package: change events, channels, and the websocket transport.
#No business logic.

from .channel import ChannelState, RealtimeChannel, RealtimeTransport
from .events import ChangeEvent, EventType, row_matches_filter
from .socket import RealtimeError, RealtimeSocket

__all__ = [
    "ChannelState",
    "RealtimeChannel",
    "RealtimeTransport",
    "ChangeEvent",
    "EventType",
    "row_matches_filter",
    "RealtimeError",
    "RealtimeSocket",
]
