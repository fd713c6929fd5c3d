"""
Async transactional storage engine for the keyval store.

A database is a SQLite file opened through aiosqlite; each collection is a
table of (key, value) rows. Every operation is issued as a Request against a
Transaction and signals success or error once it has run.
"""

import asyncio
import inspect
import json
import logging
import math
import os
import sqlite3
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Union

import aiosqlite

from . import config
from .exceptions import (
    DataError,
    InvalidStateError,
    NotFoundError,
    OpenError,
    ReadOnlyError,
    RequestError,
    TransactionAbortedError,
    TransactionError,
    TransactionInactiveError,
)
from .request import CompletionSource

logger = logging.getLogger(__name__)

MEMORY_DATABASE = ":memory:"

_INT64_MIN = -(2 ** 63)
_INT64_MAX = 2 ** 63 - 1

Key = Union[int, float, str, bytes]
Operation = Callable[[aiosqlite.Connection], Awaitable[Any]]


class TransactionMode(str, Enum):
    """Transaction modes."""
    READONLY = "readonly"
    READWRITE = "readwrite"


class TransactionState(Enum):
    """Transaction state enumeration."""
    ACTIVE = "active"
    COMMITTING = "committing"
    COMMITTED = "committed"
    ABORTING = "aborting"
    ABORTED = "aborted"


def validate_key(key: Any) -> Key:
    """
    Check that a key can be stored and ordered.

    Valid keys are ints in the signed 64-bit range, non-NaN floats, strings
    and bytes. Bools are rejected even though they are ints.

    Raises:
        DataError: If the key is not valid
    """
    if key is None or isinstance(key, bool):
        raise DataError(f"Invalid key: {key!r}")
    if isinstance(key, int):
        if not _INT64_MIN <= key <= _INT64_MAX:
            raise DataError(f"Integer key out of range: {key}")
        return key
    if isinstance(key, float):
        if math.isnan(key):
            raise DataError("NaN is not a valid key")
        return key
    if isinstance(key, (str, bytes)):
        return key
    if isinstance(key, (bytearray, memoryview)):
        return bytes(key)
    raise DataError(f"Unsupported key type: {type(key).__name__}")


def _encode_value(value: Any) -> str:
    try:
        return json.dumps(value)
    except (TypeError, ValueError) as e:
        raise DataError(f"Value is not serializable: {e}") from e


def _decode_value(value_json: str) -> Any:
    return json.loads(value_json)


def _quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


async def _fetchone(connection: aiosqlite.Connection, sql: str, parameters: tuple = ()) -> Optional[tuple]:
    cursor = await connection.execute(sql, parameters)
    row = await cursor.fetchone()
    await cursor.close()
    return row


class Request(CompletionSource):
    """A single queued operation against a collection or cursor."""

    def __init__(self, source: Any, transaction: "Transaction", operation: Operation) -> None:
        super().__init__()
        self.source = source
        self.transaction = transaction
        self._operation = operation


class Cursor:
    """Forward-only position on one record of a collection."""

    def __init__(self, source: "Collection", key: Key, value: Any) -> None:
        self.source = source
        self.key = key
        self.value = value

    def continue_(self) -> Request:
        """Issue a request for the next record in ascending key order."""
        sql = f"SELECT key, value FROM {self.source._table} WHERE key > ? ORDER BY key LIMIT 1"
        collection = self.source
        key = self.key

        async def operation(connection: aiosqlite.Connection) -> Optional["Cursor"]:
            row = await _fetchone(connection, sql, (key,))
            if row is None:
                return None
            return Cursor(collection, row[0], _decode_value(row[1]))

        return collection.transaction._issue(self, operation)


class Collection:
    """Handle on one collection, valid for the lifetime of its transaction."""

    def __init__(self, transaction: "Transaction", name: str) -> None:
        self.transaction = transaction
        self.name = name
        self._table = _quote_identifier(name)

    def get(self, key: Any) -> Request:
        """Look up a value; resolves to None when the key is absent."""
        key = validate_key(key)
        sql = f"SELECT value FROM {self._table} WHERE key = ?"

        async def operation(connection: aiosqlite.Connection) -> Any:
            row = await _fetchone(connection, sql, (key,))
            return None if row is None else _decode_value(row[0])

        return self.transaction._issue(self, operation)

    def put(self, key: Any, value: Any) -> Request:
        """Insert or overwrite a record; resolves to the key."""
        self.transaction._check_writable()
        key = validate_key(key)
        value_json = _encode_value(value)
        sql = f"INSERT OR REPLACE INTO {self._table} (key, value) VALUES (?, ?)"

        async def operation(connection: aiosqlite.Connection) -> Key:
            await connection.execute(sql, (key, value_json))
            return key

        return self.transaction._issue(self, operation)

    def delete(self, key: Any) -> Request:
        """Delete a record if it exists."""
        self.transaction._check_writable()
        key = validate_key(key)
        sql = f"DELETE FROM {self._table} WHERE key = ?"

        async def operation(connection: aiosqlite.Connection) -> None:
            await connection.execute(sql, (key,))

        return self.transaction._issue(self, operation)

    def clear(self) -> Request:
        """Delete every record."""
        self.transaction._check_writable()
        sql = f"DELETE FROM {self._table}"

        async def operation(connection: aiosqlite.Connection) -> None:
            await connection.execute(sql)

        return self.transaction._issue(self, operation)

    def count(self) -> Request:
        sql = f"SELECT COUNT(*) FROM {self._table}"

        async def operation(connection: aiosqlite.Connection) -> int:
            row = await _fetchone(connection, sql)
            return row[0]

        return self.transaction._issue(self, operation)

    def open_cursor(self) -> Request:
        """Issue a request for a cursor on the lowest key, or None if empty."""
        sql = f"SELECT key, value FROM {self._table} ORDER BY key LIMIT 1"

        async def operation(connection: aiosqlite.Connection) -> Optional[Cursor]:
            row = await _fetchone(connection, sql)
            if row is None:
                return None
            return Cursor(self, row[0], _decode_value(row[1]))

        return self.transaction._issue(self, operation)


class Transaction(CompletionSource):
    """
    Atomic, mode-scoped unit of work against one or more collections.

    Used as an async context manager. Entering begins the SQLite transaction
    while holding the database lock; leaving waits for every queued request,
    then commits, or rolls back if a request failed, the body raised, or
    abort() was called. Listeners receive ``complete`` or ``abort``.

    Example usage:
        async with database.transaction("keyval", TransactionMode.READWRITE) as tx:
            tx.collection("keyval").put("key", "value")
        # committed here
    """

    success_event = "complete"
    error_event = "abort"

    def __init__(self, database: "Database", collection_names: Iterable[str],
                 mode: Union[TransactionMode, str] = TransactionMode.READONLY) -> None:
        super().__init__()
        self.db = database
        self.mode = TransactionMode(mode)
        self.collection_names = tuple(collection_names)
        self.state: Optional[TransactionState] = None
        self._collections: Dict[str, Collection] = {}
        self._pending: Deque[Request] = deque()
        self._driver: Optional[asyncio.Future] = None
        self._abort_cause: Optional[BaseException] = None

    def collection(self, name: str) -> Collection:
        if name not in self.collection_names:
            raise NotFoundError(f"Collection '{name}' is not in this transaction's scope")
        if self.state is not TransactionState.ACTIVE:
            raise TransactionInactiveError("Transaction is not active")
        if name not in self._collections:
            self._collections[name] = Collection(self, name)
        return self._collections[name]

    def abort(self, cause: Optional[BaseException] = None) -> None:
        """Mark the transaction to roll back; queued requests will fail."""
        if self.state is not TransactionState.ACTIVE:
            raise TransactionInactiveError("Transaction is not active")
        if self._abort_cause is None:
            self._abort_cause = cause or TransactionAbortedError("Transaction was aborted")

    def _check_writable(self) -> None:
        if self.mode is TransactionMode.READONLY:
            raise ReadOnlyError("Cannot write in a read-only transaction")

    def _issue(self, source: Any, operation: Operation) -> Request:
        if self.state is not TransactionState.ACTIVE:
            raise TransactionInactiveError("Transaction is not active")
        request = Request(source, self, operation)
        self._pending.append(request)
        if self._driver is None:
            self._driver = asyncio.ensure_future(self._drive())
        return request

    async def _drive(self) -> None:
        """Run queued requests one at a time in submission order."""
        connection = self.db._connection
        try:
            while self._pending:
                request = self._pending.popleft()
                if self._abort_cause is not None:
                    self._notify(request._fail, TransactionAbortedError("Transaction was aborted"))
                    continue
                try:
                    result = await request._operation(connection)
                except Exception as e:
                    error = RequestError(f"Request failed: {e}")
                    error.__cause__ = e
                    self._abort_cause = error
                    self._notify(request._fail, error)
                else:
                    self._notify(request._succeed, result)
        finally:
            self._driver = None

    def _notify(self, signal: Callable[[Any], None], value: Any) -> None:
        try:
            signal(value)
        except Exception as e:
            # A listener that raises aborts the transaction
            if self._abort_cause is None:
                self._abort_cause = e

    async def _settle(self) -> None:
        # Listeners may queue more requests, restarting the driver
        while self._driver is not None:
            await self._driver

    async def __aenter__(self) -> "Transaction":
        connection = self.db._require_open()
        await self.db._lock.acquire()
        try:
            if self.mode is TransactionMode.READWRITE:
                await connection.execute("BEGIN IMMEDIATE")
            else:
                await connection.execute("BEGIN")
        except sqlite3.Error as e:
            self.db._lock.release()
            raise TransactionError(f"Failed to begin transaction: {e}") from e
        except BaseException:
            self.db._lock.release()
            raise
        self.state = TransactionState.ACTIVE
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        connection = self.db._connection
        if exc_val is not None and self._abort_cause is None:
            self._abort_cause = exc_val
        try:
            try:
                await self._settle()
            except Exception as e:
                if self._abort_cause is None:
                    self._abort_cause = e
            if self._abort_cause is None:
                self.state = TransactionState.COMMITTING
                try:
                    await connection.execute("COMMIT")
                except sqlite3.Error as e:
                    self._abort_cause = e
            if self._abort_cause is not None:
                self.state = TransactionState.ABORTING
                if connection.in_transaction:
                    await connection.execute("ROLLBACK")
        finally:
            self.db._lock.release()

        if self._abort_cause is None:
            self.state = TransactionState.COMMITTED
            logger.debug("Committed %s transaction on %s", self.mode.value, self.collection_names)
            self._succeed()
            return False

        self.state = TransactionState.ABORTED
        cause = self._abort_cause
        if isinstance(cause, TransactionAbortedError):
            error = cause
        else:
            error = TransactionAbortedError(f"Transaction aborted: {cause}")
            error.__cause__ = cause
        logger.debug("Aborted %s transaction on %s: %s", self.mode.value, self.collection_names, cause)
        self._fail(error)
        if exc_val is None:
            raise error
        return False


class Database:
    """An open, versioned SQLite database holding named collections."""

    def __init__(self, name: str, path: str, connection: aiosqlite.Connection,
                 version: int, collection_names: Iterable[str]) -> None:
        self.name = name
        self.path = path
        self.version = version
        self._connection: Optional[aiosqlite.Connection] = connection
        self._collections = set(collection_names)
        self._lock = asyncio.Lock()
        self._upgrading = False
        self._pending_ddl: List[str] = []

    @property
    def closed(self) -> bool:
        return self._connection is None

    def collection_names(self) -> List[str]:
        return sorted(self._collections)

    def create_collection(self, name: str) -> None:
        """
        Create a collection. Only valid from an upgrade callback; the table is
        created in the same transaction that records the new version.
        """
        if not self._upgrading:
            raise InvalidStateError("Collections can only be created during an upgrade")
        if not isinstance(name, str) or not name:
            raise DataError(f"Invalid collection name: {name!r}")
        if name in self._collections:
            raise InvalidStateError(f"Collection '{name}' already exists")
        self._collections.add(name)
        self._pending_ddl.append(
            f"CREATE TABLE {_quote_identifier(name)} (key PRIMARY KEY, value TEXT NOT NULL)"
        )

    def transaction(self, collection_names: Union[str, Iterable[str]],
                    mode: Union[TransactionMode, str] = TransactionMode.READONLY) -> Transaction:
        self._require_open()
        if isinstance(collection_names, str):
            collection_names = [collection_names]
        names = list(collection_names)
        for name in names:
            if name not in self._collections:
                raise NotFoundError(f"Collection '{name}' not found in database '{self.name}'")
        return Transaction(self, names, mode)

    def _require_open(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise InvalidStateError(f"Database '{self.name}' is closed")
        return self._connection

    async def _upgrade(self, on_upgrade_needed: Optional[Callable]) -> None:
        connection = self._require_open()
        await connection.execute("BEGIN IMMEDIATE")
        # Re-read under the write lock: another connection may have upgraded first
        old_version = await _user_version(connection)
        self._collections = set(await _table_names(connection))
        if old_version >= self.version:
            await connection.execute("COMMIT")
            if old_version > self.version:
                raise OpenError(
                    f"Database '{self.name}' is at version {old_version}, cannot open at {self.version}"
                )
            return
        logger.debug("Upgrading database '%s' from version %d to %d", self.name, old_version, self.version)
        previous = set(self._collections)
        self._upgrading = True
        try:
            if on_upgrade_needed is not None:
                outcome = on_upgrade_needed(self)
                if inspect.isawaitable(outcome):
                    await outcome
            for statement in self._pending_ddl:
                await connection.execute(statement)
            await connection.execute(f"PRAGMA user_version = {int(self.version)}")
            await connection.execute("COMMIT")
        except BaseException:
            self._collections = previous
            if connection.in_transaction:
                await connection.execute("ROLLBACK")
            raise
        finally:
            self._upgrading = False
            self._pending_ddl.clear()

    async def close(self) -> None:
        """Close the database connection."""
        async with self._lock:
            if self._connection is not None:
                await self._connection.close()
                self._connection = None


def _database_path(name: str, data_dir: Optional[str]) -> str:
    if name == MEMORY_DATABASE:
        return name
    directory = data_dir if data_dir is not None else config.data_dir()
    os.makedirs(directory, exist_ok=True)
    return os.path.join(directory, f"{name}.sqlite3")


async def _user_version(connection: aiosqlite.Connection) -> int:
    row = await _fetchone(connection, "PRAGMA user_version")
    return row[0]


async def _table_names(connection: aiosqlite.Connection) -> List[str]:
    cursor = await connection.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'"
    )
    rows = await cursor.fetchall()
    await cursor.close()
    return [row[0] for row in rows]


async def open_database(name: str, on_upgrade_needed: Optional[Callable[[Database], Any]] = None,
                        *, version: int = 1, data_dir: Optional[str] = None) -> Database:
    """
    Open a database by name, creating it if it does not exist.

    If the stored version is lower than ``version`` (a new database is at
    version 0), ``on_upgrade_needed(database)`` runs once inside the upgrade
    transaction; it may create collections and may be a coroutine function.

    Args:
        name: Database name, or ":memory:" for a private in-memory database
        on_upgrade_needed: Optional upgrade callback
        version: Schema version to open at
        data_dir: Directory for database files, defaults to the configured one

    Returns:
        The open Database

    Raises:
        OpenError: If the database cannot be opened or upgraded
    """
    if not name:
        raise OpenError("Database name must not be empty")
    if version < 1:
        raise OpenError(f"Invalid database version: {version}")

    try:
        path = _database_path(name, data_dir)
        connection = await aiosqlite.connect(path, isolation_level=None)
    except (OSError, sqlite3.Error) as e:
        raise OpenError(f"Failed to open database '{name}': {e}") from e

    try:
        await connection.execute("PRAGMA journal_mode=WAL")
        current_version = await _user_version(connection)
        if current_version > version:
            raise OpenError(
                f"Database '{name}' is at version {current_version}, cannot open at {version}"
            )
        database = Database(name, path, connection, version, await _table_names(connection))
        if current_version < version:
            await database._upgrade(on_upgrade_needed)
    except OpenError:
        await connection.close()
        raise
    except Exception as e:
        await connection.close()
        raise OpenError(f"Failed to open database '{name}': {e}") from e

    logger.debug("Opened database '%s' at %s (version %d)", name, path, version)
    return database
