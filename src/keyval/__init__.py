"""
keyval

An awaitable key-value store over an asynchronous, transactional SQLite
engine. Every operation runs in its own transaction, and engine completion
signals surface as asyncio futures.
"""

from .request import CompletionSource, promisify_request
from .async_storage import (
    Collection,
    Cursor,
    Database,
    Request,
    Transaction,
    TransactionMode,
    TransactionState,
    open_database,
)
from .async_store import Store, create_store
from .default_store import DefaultStoreCell, default_store_cell, get_default_store
from .operations import clear, delete, delete_many, get, get_many, set, set_many, update
from .cursor import count, each_cursor, entries, iterate, keys, values
from .exceptions import (
    StoreError,
    OpenError,
    TransactionError,
    TransactionAbortedError,
    TransactionInactiveError,
    ReadOnlyError,
    RequestError,
    DataError,
    NotFoundError,
    InvalidStateError,
)

__version__ = "0.1.0"
__all__ = [
    "CompletionSource",
    "promisify_request",
    "Collection",
    "Cursor",
    "Database",
    "Request",
    "Transaction",
    "TransactionMode",
    "TransactionState",
    "open_database",
    "Store",
    "create_store",
    "DefaultStoreCell",
    "default_store_cell",
    "get_default_store",
    "get",
    "get_many",
    "set",
    "set_many",
    "update",
    "delete",
    "delete_many",
    "clear",
    "each_cursor",
    "iterate",
    "keys",
    "values",
    "entries",
    "count",
    "StoreError",
    "OpenError",
    "TransactionError",
    "TransactionAbortedError",
    "TransactionInactiveError",
    "ReadOnlyError",
    "RequestError",
    "DataError",
    "NotFoundError",
    "InvalidStateError",
]
