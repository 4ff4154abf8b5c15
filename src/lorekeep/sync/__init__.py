"""Source synchronization: adapters, orchestrator and file watcher."""
