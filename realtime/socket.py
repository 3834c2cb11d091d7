"""
Purpose: Websocket transport for realtime channels (Phoenix channel protocol).
What it does:

- Opens one websocket per process to <backend>/realtime/v1/websocket
- join(topic, bindings, handler): sends phx_join with the postgres_changes config
- leave(topic): sends phx_leave and forgets the handler
- poll(): reads one frame, routes postgres_changes to the topic handler, and
  sends the heartbeat when it is due
- close(): leaves every topic, drops the pending heartbeat and closes the socket

Cooperative and single-threaded: nothing happens unless the owner calls poll()
or run_forever(). Heartbeats are scheduled against a monotonic clock rather than
a background timer, so there is nothing left running after close().
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, List, Mapping, Optional

import websocket

from backend.settings import BackendSettings, settings_from_env

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Mapping[str, Any]], None]


class RealtimeError(Exception):
    """Raised for realtime transport / protocol failures."""
    pass


def build_message(topic: str, event: str, payload: Dict[str, Any], ref: Optional[str]) -> str:
    return json.dumps({"topic": topic, "event": event, "payload": payload, "ref": ref})


def build_join_payload(postgres_changes: List[Dict[str, Any]], access_token: Optional[str]) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "config": {
            "broadcast": {"ack": False, "self": False},
            "presence": {"key": ""},
            "postgres_changes": postgres_changes,
        }
    }
    if access_token:
        payload["access_token"] = access_token
    return payload


def decode_message(raw: Any) -> Optional[Dict[str, Any]]:
    """
    Parse one frame. Malformed frames are logged and dropped.
    """
    try:
        message = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Dropping malformed realtime frame: %r", raw)
        return None
    if not isinstance(message, dict):
        return None
    return message


class RealtimeSocket:
    """
    Transport used by realtime.channel.RealtimeChannel in production.
    """

    HEARTBEAT_TOPIC = "phoenix"

    def __init__(self, settings: Optional[BackendSettings] = None,
                 connection_factory: Callable[..., Any] = websocket.create_connection,
                 clock: Callable[[], float] = time.monotonic):
        self.settings = settings or settings_from_env()
        self.connection_factory = connection_factory
        self.clock = clock
        self._ws = None
        self._handlers: Dict[str, MessageHandler] = {}
        self._join_refs: Dict[str, str] = {}
        self._ref = 0
        self._next_heartbeat_at: Optional[float] = None
        self._pending_heartbeat_ref: Optional[str] = None

    # ---------------- connection ----------------

    @property
    def url(self) -> str:
        return f"{self.settings.realtime_url}?apikey={self.settings.anon_key}&vsn=1.0.0"

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def connect(self) -> None:
        if self._ws is not None:
            return
        try:
            self._ws = self.connection_factory(self.url, timeout=self.settings.timeout)
        except (websocket.WebSocketException, OSError) as exc:
            raise RealtimeError(f"Realtime connection failed: {exc}") from exc
        self._next_heartbeat_at = self.clock() + self.settings.heartbeat_seconds
        logger.info("Realtime socket connected")

    def close(self) -> None:
        for topic in list(self._handlers):
            self.leave(topic)
        self._next_heartbeat_at = None
        self._pending_heartbeat_ref = None
        if self._ws is not None:
            try:
                self._ws.close()
            finally:
                self._ws = None
                logger.info("Realtime socket closed")

    # ---------------- transport API ----------------

    def join(self, topic: str, postgres_changes: List[Dict[str, Any]],
             on_message: MessageHandler) -> None:
        self.connect()
        ref = self._make_ref()
        token = self.settings.access_token or self.settings.anon_key
        self._send(topic, "phx_join", build_join_payload(postgres_changes, token), ref)
        self._handlers[topic] = on_message
        self._join_refs[topic] = ref

    def leave(self, topic: str) -> None:
        self._handlers.pop(topic, None)
        self._join_refs.pop(topic, None)
        if self._ws is None:
            return
        try:
            self._send(topic, "phx_leave", {}, self._make_ref())
        except RealtimeError:
            logger.warning("Could not send leave for %s; socket already gone", topic)

    # ---------------- event loop ----------------

    def poll(self, timeout: Optional[float] = None) -> bool:
        """
        Handle at most one inbound frame. Returns False once the socket is closed.
        """
        if self._ws is None:
            return False

        try:
            self._heartbeat_if_due()
        except RealtimeError as exc:
            logger.error("Realtime heartbeat failed: %s", exc)
            self._drop()
            return False
        if self._ws is None:
            return False

        wait = timeout
        if self._next_heartbeat_at is not None:
            until_heartbeat = max(0.0, self._next_heartbeat_at - self.clock())
            wait = until_heartbeat if wait is None else min(wait, until_heartbeat)
        self._ws.settimeout(wait)

        try:
            raw = self._ws.recv()
        except websocket.WebSocketTimeoutException:
            return True
        except (websocket.WebSocketConnectionClosedException, OSError):
            logger.error("Realtime socket dropped")
            self._drop()
            return False

        message = decode_message(raw)
        if message is not None:
            self._route(message)
        return True

    def run_forever(self, should_stop: Callable[[], bool] = lambda: False) -> None:
        while not should_stop() and self.poll(timeout=1.0):
            pass

    # ---------------- internals ----------------

    def _make_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    def _drop(self) -> None:
        ws, self._ws = self._ws, None
        self._next_heartbeat_at = None
        self._pending_heartbeat_ref = None
        if ws is not None:
            try:
                ws.close()
            except (websocket.WebSocketException, OSError) as exc:
                logger.debug("Ignoring close error on dropped socket: %s", exc)

    def _send(self, topic: str, event: str, payload: Dict[str, Any], ref: Optional[str]) -> None:
        if self._ws is None:
            raise RealtimeError("Realtime socket is not connected")
        try:
            self._ws.send(build_message(topic, event, payload, ref))
        except (websocket.WebSocketException, OSError) as exc:
            raise RealtimeError(f"Realtime send failed: {exc}") from exc

    def _heartbeat_if_due(self) -> None:
        if self._next_heartbeat_at is None or self.clock() < self._next_heartbeat_at:
            return
        if self._pending_heartbeat_ref is not None:
            # the previous heartbeat never got a reply
            logger.warning("Realtime heartbeat timed out; closing socket")
            self.close()
            return
        ref = self._make_ref()
        self._pending_heartbeat_ref = ref
        self._send(self.HEARTBEAT_TOPIC, "heartbeat", {}, ref)
        self._next_heartbeat_at = self.clock() + self.settings.heartbeat_seconds

    def _route(self, message: Dict[str, Any]) -> None:
        topic = message.get("topic")
        event = message.get("event")
        payload = message.get("payload") or {}

        if event == "phx_reply":
            ref = message.get("ref")
            if topic == self.HEARTBEAT_TOPIC and ref == self._pending_heartbeat_ref:
                self._pending_heartbeat_ref = None
                return
            if ref is not None and self._join_refs.get(topic) == ref and payload.get("status") != "ok":
                logger.error("Realtime join refused for %s: %s", topic, payload.get("response"))
            return

        if event in ("phx_error", "phx_close"):
            logger.warning("Realtime %s on %s", event, topic)
            return

        if event == "postgres_changes":
            handler = self._handlers.get(topic)
            if handler is not None:
                handler(payload)
