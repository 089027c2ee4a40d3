"""Event bus and subscriber hub exports."""

from .bus import EventBus, job_status_topic, run_log_topic, run_status_topic
from .ws import EventHub, Subscription

__all__ = ["EventBus", "EventHub", "Subscription", "job_status_topic", "run_log_topic", "run_status_topic"]
