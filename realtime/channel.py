"""
Purpose: A named realtime channel bundling one or more table subscriptions.
What it does:

- Registers bindings: (table, event filter, row filter, callback)
- subscribe(): joins the channel on the transport with all bindings at once
- dispatch(): routes an incoming change payload to every matching binding
- unsubscribe(): leaves the channel; later events are ignored

The transport is injected (anything with join/leave): production uses
realtime.socket.RealtimeSocket, tests use an in-memory fake.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from .events import ChangeEvent, EventType, row_matches_filter

logger = logging.getLogger(__name__)

EventCallback = Callable[[ChangeEvent], None]


class ChannelState(str, Enum):
    CLOSED = "closed"
    JOINED = "joined"
    ERRORED = "errored"


class RealtimeTransport(Protocol):
    def join(self, topic: str, postgres_changes: List[Dict[str, Any]],
             on_message: Callable[[Mapping[str, Any]], None]) -> None: ...

    def leave(self, topic: str) -> None: ...


@dataclass(frozen=True)
class Binding:
    table: str
    callback: EventCallback
    event: str = "*"
    filter: Optional[str] = None
    schema: str = "public"

    def as_config(self) -> Dict[str, Any]:
        config = {"event": self.event, "schema": self.schema, "table": self.table}
        if self.filter:
            config["filter"] = self.filter
        return config

    def accepts(self, event: ChangeEvent) -> bool:
        if event.table != self.table:
            return False
        if self.event != "*" and event.event_type.value != self.event:
            return False
        # deletes carry only the primary key, so the server does not filter them either
        if event.event_type is EventType.DELETE:
            return True
        return row_matches_filter(event.new, self.filter)


class RealtimeChannel:
    """
    One subscription unit. Owned by exactly one controller.
    """

    def __init__(self, name: str, transport: RealtimeTransport):
        self.name = name
        self.transport = transport
        self.bindings: List[Binding] = []
        self.state = ChannelState.CLOSED

    @property
    def topic(self) -> str:
        return f"realtime:{self.name}"

    def on(self, table: str, callback: EventCallback, *, event: str = "*",
           filter: Optional[str] = None) -> RealtimeChannel:
        if self.state is ChannelState.JOINED:
            raise RuntimeError(f"Channel {self.name} is already subscribed")
        self.bindings.append(Binding(table=table, callback=callback, event=event, filter=filter))
        return self

    def subscribe(self) -> RealtimeChannel:
        """
        Join on the transport. Transport failures propagate to the caller.
        """
        try:
            self.transport.join(
                self.topic,
                [binding.as_config() for binding in self.bindings],
                self.dispatch,
            )
        except Exception:
            self.state = ChannelState.ERRORED
            raise
        self.state = ChannelState.JOINED
        logger.info("Subscribed to %s (%d bindings)", self.topic, len(self.bindings))
        return self

    def unsubscribe(self) -> None:
        if self.state is ChannelState.CLOSED:
            return
        self.state = ChannelState.CLOSED
        try:
            self.transport.leave(self.topic)
        finally:
            logger.info("Unsubscribed from %s", self.topic)

    def dispatch(self, payload: Mapping[str, Any]) -> None:
        if self.state is not ChannelState.JOINED:
            return
        event = payload if isinstance(payload, ChangeEvent) else ChangeEvent.from_payload(payload)
        for binding in self.bindings:
            if binding.accepts(event):
                logger.debug("%s %s on %s", self.topic, event.event_type.value, event.table)
                binding.callback(event)
