"""Infrastructure adapters: database, Redis and the session orchestrator."""
