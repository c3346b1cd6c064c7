"""Adapters to external collaborators (the shared key-value store)."""
