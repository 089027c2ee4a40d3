"""Event bus wrapper that persists and broadcasts runtime events."""

from __future__ import annotations

import logging
from typing import Any

from ..storage.interfaces import EventRepository
from .ws import EventHub

logger = logging.getLogger(__name__)


def run_log_topic(run_id: str) -> str:
    return f"run.{run_id}.log"


def run_status_topic(run_id: str) -> str:
    return f"run.{run_id}.status"


def job_status_topic(job_id: str) -> str:
    return f"job.{job_id}.status"


class EventBus:
    """Persist runtime events and fan them out to live subscribers."""
    def __init__(self, repo: EventRepository, hub: EventHub) -> None:
        """Initialize the EventBus.

        Args:
            repo (EventRepository): Append-only event storage.
            hub (EventHub): Hub that delivers events to subscribers.
        """
        self._repo = repo
        self.hub = hub

    def emit(self, *, topic: str, event_type: str, entity_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Append an event to storage and publish it to subscribers.

        A storage failure is logged and the event is still published; events
        are best-effort and never fail the caller.

        Args:
            topic (str): Topic to publish on.
            event_type (str): Event type, e.g. ``run.log`` or ``run.status``.
            entity_id (str): Identifier for the related entity.
            payload (dict[str, Any]): JSON-serializable body.

        Returns:
            dict[str, Any]: The event envelope that was published.
        """
        try:
            event = self._repo.append(topic=topic, event_type=event_type, entity_id=entity_id, payload=payload)
        except OSError:
            logger.exception("Failed to persist event on %s", topic)
            event = {"topic": topic, "type": event_type, "entity_id": entity_id, "payload": payload}
        self.hub.publish(event)
        return event
