"""File-backed persistence for projects, jobs, runs and events."""

from .bootstrap import DEFAULT_CONFIG, ensure_state_root
from .container import Container

__all__ = ["Container", "DEFAULT_CONFIG", "ensure_state_root"]
