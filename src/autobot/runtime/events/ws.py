"""Topic pub/sub hub for streaming run events to in-process and websocket subscribers."""

from __future__ import annotations

import asyncio
import fnmatch
import itertools
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256


@dataclass
class Subscription:
    """One subscriber: topic patterns plus a bounded delivery queue.

    Patterns use shell-style wildcards, e.g. ``run.*.log`` or ``job.job-1.status``.
    """
    id: int
    queue: asyncio.Queue
    patterns: set[str] = field(default_factory=set)
    dropped: int = 0

    def matches(self, topic: str) -> bool:
        return any(fnmatch.fnmatchcase(topic, pattern) for pattern in self.patterns)

    async def get(self, timeout: Optional[float] = None) -> dict[str, Any]:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)


class EventHub:
    """Fan published events out to subscribers whose patterns match the topic.

    Delivery is at-most-once: a full subscriber queue drops the event for that
    subscriber only, and nothing is replayed after a subscriber goes away.
    """
    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._subscriptions: dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._seq = 0
        self._queue_size = queue_size
        self._loop: asyncio.AbstractEventLoop | None = None
        self._lock = threading.Lock()

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Register the event loop used for cross-thread publish scheduling."""
        with self._lock:
            self._loop = loop

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, patterns: Iterable[str] = (), *, queue_size: Optional[int] = None) -> Subscription:
        sub = Subscription(
            id=next(self._ids),
            queue=asyncio.Queue(maxsize=queue_size or self._queue_size),
            patterns={str(p) for p in patterns if str(p).strip()},
        )
        with self._lock:
            self._subscriptions[sub.id] = sub
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            self._subscriptions.pop(sub.id, None)

    def _deliver(self, event: dict[str, Any]) -> None:
        topic = str(event.get("topic") or "")
        with self._lock:
            self._seq += 1
            envelope = {**event, "seq": self._seq}
            targets = [sub for sub in self._subscriptions.values() if sub.matches(topic)]
        for sub in targets:
            try:
                sub.queue.put_nowait(envelope)
            except asyncio.QueueFull:
                sub.dropped += 1
                logger.debug("Dropped event %s for subscriber %s (queue full)", topic, sub.id)

    def publish(self, event: dict[str, Any]) -> None:
        """Deliver an event from any thread without blocking the caller.

        Args:
            event (dict[str, Any]): Event envelope carrying at least a ``topic`` key.
        """
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        with self._lock:
            loop = self._loop
        if running is not None:
            if loop is None:
                self.attach_loop(running)
            self._deliver(event)
            return
        if loop and loop.is_running():
            loop.call_soon_threadsafe(self._deliver, event)
            return
        # No loop is serving subscribers, so nothing can be awaiting the queues.
        self._deliver(event)

    async def handle_connection(self, websocket: WebSocket) -> None:
        """Serve one websocket client: subscribe/unsubscribe/ping traffic in, matching events out."""
        self.attach_loop(asyncio.get_running_loop())
        await websocket.accept()
        sub = self.subscribe()

        async def _forward() -> None:
            while True:
                event = await sub.queue.get()
                await websocket.send_text(json.dumps(event, default=str))

        forwarder = asyncio.create_task(_forward())
        try:
            await websocket.send_text(json.dumps({"topic": "system", "type": "connected", "payload": {}}))
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    await websocket.send_text(json.dumps({"topic": "system", "type": "error", "payload": {"error": "invalid json"}}))
                    continue
                if not isinstance(message, dict):
                    continue
                action = message.get("action")
                topics = {str(t) for t in message.get("topics", []) if str(t).strip()}
                if action == "subscribe":
                    sub.patterns |= topics
                    reply = {"topic": "system", "type": "subscribed", "payload": {"topics": sorted(sub.patterns)}}
                elif action == "unsubscribe":
                    sub.patterns -= topics
                    reply = {"topic": "system", "type": "unsubscribed", "payload": {"topics": sorted(sub.patterns)}}
                elif action == "ping":
                    reply = {"topic": "system", "type": "pong", "payload": {}}
                else:
                    reply = {"topic": "system", "type": "error", "payload": {"error": f"unknown action: {action}"}}
                await websocket.send_text(json.dumps(reply))
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.debug("WebSocket client loop terminated with exception", exc_info=True)
        finally:
            forwarder.cancel()
            self.unsubscribe(sub)
