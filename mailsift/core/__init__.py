"""Core configuration, errors, resilience and model transport."""
