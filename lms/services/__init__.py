"""Domain services, persistence and adapters."""
