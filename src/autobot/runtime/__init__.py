"""Runtime: domain models, storage, events, strategies and the orchestrator."""
