"""
Purpose: Durable side-records of the trusted-arrival workflow.
What it does:
- WriteQueue: FIFO of write tasks retried with exponential backoff
  (min(base * 2^attempt, max), up to max_attempts), head-of-line ordered
- EventLog.create_delivery_event(): one delivery_events row per idempotency key
- EventLog.log_audit(): one audit_logs row per idempotency key

Writes are check-then-insert: when an idempotency key is given, an existing row
with the same key short-circuits the insert, so retries never duplicate.

The queue never sleeps on its own. run_due() does whatever is due now and
returns; drain() blocks until empty (scripts, tests). EventLog.flush() is the
hook callers pump; the delay coordinator flushes on every evaluation.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional

from backend.client import BackendClient, BackendError

from .policy import DelayPolicy, default_delay_policy

logger = logging.getLogger(__name__)

WriteTask = Callable[[], bool]


@dataclass
class _QueuedTask:
    fn: WriteTask
    description: str
    attempts: int = 0
    not_before: float = 0.0


class WriteQueue:

    def __init__(self, policy: Optional[DelayPolicy] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.policy = policy or default_delay_policy()
        self.clock = clock
        self._tasks: Deque[_QueuedTask] = deque()
        self.failed: List[str] = []

    def __len__(self) -> int:
        return len(self._tasks)

    def backoff_seconds(self, attempts: int) -> float:
        delay_ms = min(self.policy.retry_base_ms * 2 ** attempts, self.policy.retry_max_ms)
        return delay_ms / 1000.0

    def enqueue(self, fn: WriteTask, description: str = "write") -> None:
        self._tasks.append(_QueuedTask(fn, description))
        self.run_due()

    def run_due(self) -> int:
        """
        Run tasks from the head while they are due. Returns how many completed.
        """
        completed = 0
        while self._tasks:
            task = self._tasks[0]
            if task.not_before > self.clock():
                break
            self._tasks.popleft()
            try:
                ok = task.fn()
                error: Any = None if ok else "task returned False"
            except BackendError as exc:
                ok, error = False, exc

            if ok:
                completed += 1
                continue

            task.attempts += 1
            if task.attempts < self.policy.retry_max_attempts:
                task.not_before = self.clock() + self.backoff_seconds(task.attempts)
                logger.warning("%s failed (attempt %d), retrying: %s", task.description, task.attempts, error)
                self._tasks.appendleft(task)
                break
            logger.error("%s failed after %d attempts: %s", task.description, task.attempts, error)
            self.failed.append(task.description)
        return completed

    def seconds_until_due(self) -> Optional[float]:
        if not self._tasks:
            return None
        return max(0.0, self._tasks[0].not_before - self.clock())

    def drain(self, sleep: Callable[[float], None] = time.sleep) -> None:
        while self._tasks:
            wait = self.seconds_until_due()
            if wait:
                sleep(wait)
            self.run_due()


class EventLog:
    """
    delivery_events + audit_logs writer. Returns immediately; the queue persists.
    """

    def __init__(self, client: BackendClient, queue: Optional[WriteQueue] = None):
        self.client = client
        self.queue = queue or WriteQueue()

    def flush(self) -> int:
        """
        Retry whatever parked writes are due. Callers pump this from their own loop.
        """
        return self.queue.run_due()

    def create_delivery_event(self, order_id: Optional[str], event_type: str, *,
                              payload: Optional[Dict[str, Any]] = None,
                              driver_id: Optional[str] = None,
                              idempotency_key: Optional[str] = None) -> bool:
        def run() -> bool:
            if idempotency_key and order_id:
                existing = (
                    self.client.table("delivery_events")
                    .select("id")
                    .eq("order_id", order_id)
                    .eq("event_type", event_type)
                    .eq("payload->>idempotency_key", idempotency_key)
                    .maybe_single()
                )
                if existing:
                    return True

            body = dict(payload) if payload else None
            if idempotency_key:
                body = {**(body or {}), "idempotency_key": idempotency_key}

            self.client.table("delivery_events").insert({
                "order_id": order_id,
                "driver_id": driver_id,
                "event_type": event_type,
                "payload": body,
            })
            return True

        self.queue.enqueue(run, f"delivery_event {event_type} for {order_id}")
        return True

    def log_audit(self, action: str, table_name: str, record_id: Optional[str] = None,
                  detail: Optional[Dict[str, Any]] = None, actor: Optional[str] = None) -> bool:
        def run() -> bool:
            key = (detail or {}).get("idempotency_key")
            if key:
                existing = (
                    self.client.table("audit_logs")
                    .select("id")
                    .eq("action", action)
                    .eq("table_name", table_name)
                    .eq("record_id", record_id)
                    .eq("detail->>idempotency_key", str(key))
                    .maybe_single()
                )
                if existing:
                    return True

            self.client.table("audit_logs").insert({
                "action": action,
                "table_name": table_name,
                "record_id": record_id,
                "detail": detail,
                "actor": actor,
            })
            return True

        self.queue.enqueue(run, f"audit {action} on {table_name}")
        return True

    def events_for_order(self, order_id: str) -> List[Dict[str, Any]]:
        try:
            return (
                self.client.table("delivery_events")
                .select("*")
                .eq("order_id", order_id)
                .order("created_at", ascending=False)
                .fetch()
            )
        except BackendError as exc:
            logger.error("Error fetching delivery events for %s: %s", order_id, exc)
            return []
