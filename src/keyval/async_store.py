"""
Store handles for the keyval key-value store.
"""

import asyncio
import inspect
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar, Union

from .async_storage import Collection, Database, TransactionMode, open_database
from .exceptions import OpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")

UnitOfWork = Callable[[Collection], Union[T, Awaitable[T]]]


class Store:
    """
    An async handle bound to one collection of one database.

    Calling the store runs a unit of work inside a transaction of the given
    mode and returns its result once the transaction has committed. The
    database is opened once per handle; every call waits behind that open
    and re-raises its failure if it did not succeed.

    Example usage:
        store = create_store("my-db", "my-collection")

        await store("readwrite", lambda collection: promisify_request(collection.put("key", "value")))

        async def read(collection):
            return await promisify_request(collection.get("key"))

        value = await store("readonly", read)
    """

    def __init__(self, database_name: str, collection_name: str, data_dir: Optional[str] = None) -> None:
        """
        Initialize the store.

        Args:
            database_name: Name of the database to open or create
            collection_name: Collection created with the database and used by every call
            data_dir: Directory for database files, defaults to the configured one
        """
        self._database_name = database_name
        self._collection_name = collection_name
        self._data_dir = data_dir
        self._opening: Optional[asyncio.Future] = None

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            pass  # opened on first use
        else:
            self._start_open()

    @property
    def database_name(self) -> str:
        return self._database_name

    @property
    def collection_name(self) -> str:
        return self._collection_name

    def _start_open(self) -> "asyncio.Future[Database]":
        if self._opening is None:
            self._opening = asyncio.ensure_future(self._open())
        return self._opening

    async def _open(self) -> Database:
        def on_upgrade_needed(database: Database) -> None:
            database.create_collection(self._collection_name)

        logger.debug("Opening store %s/%s", self._database_name, self._collection_name)
        return await open_database(self._database_name, on_upgrade_needed, data_dir=self._data_dir)

    async def database(self) -> Database:
        """
        Wait for the shared database connection.

        Raises:
            OpenError: If the database failed to open
        """
        opening = self._start_open()
        try:
            return await asyncio.shield(opening)
        except asyncio.CancelledError:
            # Only a cancelled open is forgotten; a cancelled caller leaves it running.
            if opening.cancelled() and self._opening is opening:
                self._opening = None
            raise

    @asynccontextmanager
    async def transaction(self, mode: Union[TransactionMode, str]) -> AsyncIterator[Collection]:
        """
        Open a transaction on the bound collection and yield its handle.

        The transaction commits when the block exits normally and aborts if
        it raises.
        """
        database = await self.database()
        async with database.transaction(self._collection_name, mode) as tx:
            yield tx.collection(self._collection_name)

    async def __call__(self, mode: Union[TransactionMode, str], unit_of_work: UnitOfWork) -> Any:
        """
        Run a unit of work in a transaction.

        ``unit_of_work`` is called synchronously with the collection handle
        and may return a value or an awaitable. The result is returned only
        after the transaction has committed.

        Raises:
            OpenError: If the database failed to open
            TransactionAbortedError: If the transaction rolled back
        """
        async with self.transaction(mode) as collection:
            result = unit_of_work(collection)
            if inspect.isawaitable(result):
                result = await result
        return result

    async def close(self) -> None:
        """
        Close the shared database connection.

        Not required: the connection otherwise lives for the rest of the
        process.
        """
        opening = self._opening
        if opening is None or opening.cancelled():
            self._opening = None
            return
        try:
            database = await asyncio.shield(opening)
        except OpenError:
            return
        await database.close()

    def __repr__(self) -> str:
        return f"Store({self._database_name!r}, {self._collection_name!r})"


def create_store(database_name: str, collection_name: str, *, data_dir: Optional[str] = None) -> Store:
    """
    Open (or create) a database holding one collection and return a Store.

    Returns immediately; the open runs in the background when an event loop
    is running, otherwise on first use.
    """
    return Store(database_name, collection_name, data_dir=data_dir)
