"""Factory pattern for creating key-value store instances."""

from keyguard.adapters.store.base import AbstractKeyValueStore
from keyguard.adapters.store.in_memory import InMemoryKeyValueStore
from keyguard.adapters.store.redis_store import RedisKeyValueStore
from keyguard.core.config import StoreSettings, settings
from keyguard.core.errors import ValidationAppError

_store: AbstractKeyValueStore | None = None


def create_store(store_settings: StoreSettings | None = None) -> AbstractKeyValueStore:
    """Instantiate the configured store backend.

    Args:
        store_settings: Optional settings; defaults to global settings if omitted.

    Returns:
        AbstractKeyValueStore: Configured store instance.

    Raises:
        ValidationAppError: If the backend name is unknown.
    """
    cfg = store_settings or settings.store
    backend = cfg.backend.lower()

    if backend == "memory":
        return InMemoryKeyValueStore()

    if backend == "redis":
        return RedisKeyValueStore.from_url(
            cfg.redis_url,
            socket_timeout=cfg.socket_timeout_seconds,
        )

    raise ValidationAppError(
        code="store_unknown_backend",
        message=f"Unknown store backend: '{backend}'. Supported backends: memory, redis",
    )


def get_store() -> AbstractKeyValueStore:
    """Return the process-wide store instance, creating it on first use."""

    global _store

    if _store is None:
        _store = create_store()
    return _store


def set_store(store: AbstractKeyValueStore | None) -> None:
    """Replace the process-wide store (None resets to lazy creation)."""

    global _store
    _store = store
