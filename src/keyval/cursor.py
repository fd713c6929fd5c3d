"""
Ordered enumeration of a store's records using the engine cursor.
"""

import inspect
from typing import Any, AsyncIterator, Callable, List, Optional, Tuple

from .async_storage import Collection, TransactionMode
from .async_store import Store
from .default_store import get_default_store
from .request import promisify_request


async def _walk(collection: Collection) -> AsyncIterator[Tuple[Any, Any]]:
    cursor = await promisify_request(collection.open_cursor())
    while cursor is not None:
        yield cursor.key, cursor.value
        cursor = await promisify_request(cursor.continue_())


async def each_cursor(store: Store, visit: Callable[[Any, Any], Any]) -> None:
    """
    Call ``visit(key, value)`` for every record in ascending key order.

    Runs in one read-only transaction and returns once the cursor is
    exhausted and the transaction has committed. If ``visit`` raises, the
    walk stops and the error propagates. ``visit`` may be a coroutine
    function, but must not wait on another call to the same store.
    """
    async def work(collection: Collection) -> None:
        async for key, value in _walk(collection):
            outcome = visit(key, value)
            if inspect.isawaitable(outcome):
                await outcome

    await store(TransactionMode.READONLY, work)


async def iterate(store: Optional[Store] = None) -> AsyncIterator[Tuple[Any, Any]]:
    """
    Lazily yield ``(key, value)`` pairs in ascending key order.

    Each call starts a new traversal in its own read-only transaction, which
    stays open until the iterator is exhausted or closed. To stop early, wrap
    it in ``contextlib.aclosing`` so the transaction is released promptly.
    """
    if store is None:
        store = await get_default_store()
    async with store.transaction(TransactionMode.READONLY) as collection:
        async for item in _walk(collection):
            yield item


async def keys(store: Optional[Store] = None) -> List[Any]:
    """Return every key in ascending order."""
    if store is None:
        store = await get_default_store()
    items: List[Any] = []
    await each_cursor(store, lambda key, value: items.append(key))
    return items


async def values(store: Optional[Store] = None) -> List[Any]:
    """Return every value, ordered by key."""
    if store is None:
        store = await get_default_store()
    items: List[Any] = []
    await each_cursor(store, lambda key, value: items.append(value))
    return items


async def entries(store: Optional[Store] = None) -> List[Tuple[Any, Any]]:
    """Return every ``(key, value)`` pair, ordered by key."""
    if store is None:
        store = await get_default_store()
    items: List[Tuple[Any, Any]] = []
    await each_cursor(store, lambda key, value: items.append((key, value)))
    return items


async def count(store: Optional[Store] = None) -> int:
    if store is None:
        store = await get_default_store()
    return await store(TransactionMode.READONLY, lambda collection: promisify_request(collection.count()))
