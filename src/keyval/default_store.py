"""
Lazily created default store shared by the module-level operations.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

from . import config
from .async_store import Store, create_store

logger = logging.getLogger(__name__)


class DefaultStoreCell:
    """
    Holds at most one Store, created on first request.

    Creation is single-flight: callers arriving while the factory is still
    running wait on the same pending task instead of creating a second
    store. A failed creation clears the pending task so the next call can
    try again.
    """

    def __init__(self, database_name: Optional[str] = None, collection_name: Optional[str] = None,
                 factory: Callable[[str, str], Any] = create_store) -> None:
        self._database_name = database_name
        self._collection_name = collection_name
        self._factory = factory
        self._store: Optional[Store] = None
        self._pending: Optional[asyncio.Future] = None

    @property
    def database_name(self) -> str:
        return self._database_name or config.default_database_name()

    @property
    def collection_name(self) -> str:
        return self._collection_name or config.default_collection_name()

    async def _create(self) -> Store:
        logger.debug("Creating default store %s/%s", self.database_name, self.collection_name)
        store = self._factory(self.database_name, self.collection_name)
        if inspect.isawaitable(store):
            store = await store
        return store

    async def get(self) -> Store:
        if self._store is not None:
            return self._store
        if self._pending is None:
            self._pending = asyncio.ensure_future(self._create())
        pending = self._pending
        try:
            # A cancelled caller must not cancel the creation other callers share.
            store = await asyncio.shield(pending)
        except asyncio.CancelledError:
            if pending.cancelled() and self._pending is pending:
                self._pending = None
            raise
        except Exception:
            if self._pending is pending:
                self._pending = None
            raise
        self._store = store
        return store

    def reset(self) -> None:
        """Forget the cached store (the store itself is left open)."""
        self._store = None
        self._pending = None


# Global default store cell
default_store_cell = DefaultStoreCell()


async def get_default_store() -> Store:
    """Return the process-wide default store, creating it on first use."""
    return await default_store_cell.get()
