"""AutoBot: run orchestrator for repository maintenance bots."""

__version__ = "0.1.0"
