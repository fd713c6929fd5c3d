"""
Key-value operations. Each one runs in its own transaction against the given
store, or the default store when none is passed.
"""

import asyncio
from typing import Any, Callable, Iterable, List, Optional, Tuple

from .async_storage import Collection, TransactionMode
from .async_store import Store
from .default_store import get_default_store
from .request import promisify_request


async def _resolve(store: Optional[Store]) -> Store:
    if store is None:
        return await get_default_store()
    return store


async def get(key: Any, *, store: Optional[Store] = None) -> Any:
    """
    Get the value for a key.

    Args:
        key: The key to retrieve
        store: Store to read from, defaults to the default store

    Returns:
        The stored value, or None if the key is absent
    """
    store = await _resolve(store)
    return await store(TransactionMode.READONLY, lambda collection: promisify_request(collection.get(key)))


async def get_many(keys: Iterable[Any], *, store: Optional[Store] = None) -> List[Any]:
    """
    Get the values for several keys in one transaction.

    The result has one entry per key in the order given; missing keys map
    to None.
    """
    store = await _resolve(store)
    keys = list(keys)

    def work(collection: Collection):
        if not keys:
            return []
        return asyncio.gather(*(promisify_request(collection.get(key)) for key in keys))

    return list(await store(TransactionMode.READONLY, work))


async def set(key: Any, value: Any, *, store: Optional[Store] = None) -> Any:
    """
    Set the value for a key, overwriting any existing value.

    Returns:
        The key that was written
    """
    store = await _resolve(store)
    return await store(TransactionMode.READWRITE, lambda collection: promisify_request(collection.put(key, value)))


async def set_many(entries: Iterable[Tuple[Any, Any]], *, store: Optional[Store] = None) -> None:
    """
    Set several key-value pairs in one transaction.

    Entries are written in order. Returns after the transaction commits;
    either every entry is stored or, if any write fails, none is.

    Raises:
        TransactionAbortedError: If any write failed
    """
    store = await _resolve(store)
    entries = list(entries)

    def work(collection: Collection) -> None:
        for key, value in entries:
            collection.put(key, value)

    await store(TransactionMode.READWRITE, work)


async def update(key: Any, updater: Callable[[Any], Any], *, store: Optional[Store] = None) -> Any:
    """
    Replace the value for a key with ``updater(old_value)`` atomically.

    ``old_value`` is None when the key is absent.

    Returns:
        The new value
    """
    store = await _resolve(store)

    async def work(collection: Collection) -> Any:
        old_value = await promisify_request(collection.get(key))
        new_value = updater(old_value)
        await promisify_request(collection.put(key, new_value))
        return new_value

    return await store(TransactionMode.READWRITE, work)


async def delete(key: Any, *, store: Optional[Store] = None) -> None:
    """Delete a key. Deleting a missing key is not an error."""
    store = await _resolve(store)
    await store(TransactionMode.READWRITE, lambda collection: promisify_request(collection.delete(key)))


async def delete_many(keys: Iterable[Any], *, store: Optional[Store] = None) -> None:
    """Delete several keys in one transaction."""
    store = await _resolve(store)
    keys = list(keys)

    def work(collection: Collection) -> None:
        for key in keys:
            collection.delete(key)

    await store(TransactionMode.READWRITE, work)


async def clear(*, store: Optional[Store] = None) -> None:
    """Delete every record in the store."""
    store = await _resolve(store)
    await store(TransactionMode.READWRITE, lambda collection: promisify_request(collection.clear()))
