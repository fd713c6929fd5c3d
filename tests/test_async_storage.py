"""
Tests for the async storage engine.
"""

import os
import tempfile

import pytest

from keyval.async_storage import (
    Collection,
    TransactionMode,
    TransactionState,
    open_database,
)
from keyval.exceptions import (
    DataError,
    InvalidStateError,
    NotFoundError,
    OpenError,
    ReadOnlyError,
    RequestError,
    TransactionAbortedError,
    TransactionInactiveError,
)
from keyval.request import promisify_request


def create_items(database):
    database.create_collection("items")


class TestOpenDatabase:
    """Test opening and upgrading databases."""

    @pytest.mark.asyncio
    async def test_upgrade_runs_once(self, data_dir):
        """The upgrade callback fires only when the database is created."""
        calls = []

        def on_upgrade(database):
            calls.append(database.name)
            database.create_collection("items")

        db = await open_database("engine", on_upgrade, data_dir=data_dir)
        assert db.collection_names() == ["items"]
        assert os.path.exists(os.path.join(data_dir, "engine.sqlite3"))
        await db.close()

        db = await open_database("engine", on_upgrade, data_dir=data_dir)
        assert db.collection_names() == ["items"]
        await db.close()

        assert calls == ["engine"]

    @pytest.mark.asyncio
    async def test_async_upgrade_callback(self):
        """Coroutine upgrade callbacks are awaited."""
        async def on_upgrade(database):
            database.create_collection("first")
            database.create_collection("second")

        db = await open_database(":memory:", on_upgrade)
        try:
            assert db.collection_names() == ["first", "second"]
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_version_bump_runs_upgrade_again(self, data_dir):
        """Opening at a higher version runs the upgrade callback."""
        db = await open_database("versions", create_items, data_dir=data_dir)
        await db.close()

        db = await open_database(
            "versions", lambda database: database.create_collection("more"),
            version=2, data_dir=data_dir,
        )
        assert db.collection_names() == ["items", "more"]
        await db.close()

        with pytest.raises(OpenError):
            await open_database("versions", create_items, version=1, data_dir=data_dir)

    @pytest.mark.asyncio
    async def test_failed_upgrade_is_rolled_back(self, data_dir):
        """An upgrade that raises leaves the database unversioned."""
        def broken(database):
            database.create_collection("items")
            raise RuntimeError("upgrade failed")

        with pytest.raises(OpenError, match="upgrade failed"):
            await open_database("broken", broken, data_dir=data_dir)

        db = await open_database("broken", create_items, data_dir=data_dir)
        assert db.collection_names() == ["items"]
        await db.close()

    @pytest.mark.asyncio
    async def test_unusable_data_dir_raises_open_error(self):
        """A data directory that is a file cannot be opened."""
        temp_file = tempfile.NamedTemporaryFile(delete=False)
        temp_file.close()
        try:
            with pytest.raises(OpenError):
                await open_database("nowhere", create_items, data_dir=temp_file.name)
        finally:
            os.unlink(temp_file.name)

    @pytest.mark.asyncio
    async def test_create_collection_outside_upgrade(self):
        """Collections can only be created while upgrading."""
        db = await open_database(":memory:", create_items)
        try:
            with pytest.raises(InvalidStateError):
                db.create_collection("late")
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_transaction_on_unknown_collection(self):
        """Transactions are scoped to existing collections."""
        db = await open_database(":memory:", create_items)
        try:
            with pytest.raises(NotFoundError):
                db.transaction("missing")
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_transaction_on_closed_database(self):
        """A closed database refuses new transactions."""
        db = await open_database(":memory:", create_items)
        await db.close()

        assert db.closed
        with pytest.raises(InvalidStateError):
            db.transaction("items")


class TestTransactions:
    """Test transaction lifecycle and requests."""

    @pytest.mark.asyncio
    async def test_commit_makes_writes_visible(self):
        """Writes are visible to later transactions after commit."""
        db = await open_database(":memory:", create_items)
        try:
            async with db.transaction("items", TransactionMode.READWRITE) as tx:
                items = tx.collection("items")
                put = items.put("key", {"nested": [1, 2]})
                assert tx.state is TransactionState.ACTIVE

            assert tx.state is TransactionState.COMMITTED
            assert put.result == "key"

            async with db.transaction("items") as tx:
                value = await promisify_request(tx.collection("items").get("key"))
            assert value == {"nested": [1, 2]}
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_requests_complete_in_submission_order(self):
        """Requests in one transaction run in the order issued."""
        db = await open_database(":memory:", create_items)
        try:
            order = []
            async with db.transaction("items", "readwrite") as tx:
                items = tx.collection("items")
                for i in range(5):
                    request = items.put("key", i)
                    request.add_listener("success", lambda r, i=i: order.append(i))
                last = items.get("key")

            assert order == [0, 1, 2, 3, 4]
            assert last.result == 4
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_read_only_rejects_writes(self):
        """Write requests fail synchronously in read-only transactions."""
        db = await open_database(":memory:", create_items)
        try:
            async with db.transaction("items", "readonly") as tx:
                items = tx.collection("items")
                with pytest.raises(ReadOnlyError):
                    items.put("key", 1)
                with pytest.raises(ReadOnlyError):
                    items.delete("key")
                with pytest.raises(ReadOnlyError):
                    items.clear()
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_invalid_keys_and_values(self):
        """Bad keys and unserializable values raise DataError."""
        db = await open_database(":memory:", create_items)
        try:
            async with db.transaction("items", "readwrite") as tx:
                items = tx.collection("items")
                for key in (None, True, float("nan"), 2 ** 64, ["list"], {"a": 1}):
                    with pytest.raises(DataError):
                        items.get(key)
                with pytest.raises(DataError):
                    items.put("key", object())
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_abort_discards_writes(self):
        """An aborted transaction rolls back and raises."""
        db = await open_database(":memory:", create_items)
        try:
            with pytest.raises(TransactionAbortedError):
                async with db.transaction("items", "readwrite") as tx:
                    request = tx.collection("items").put("key", 1)
                    tx.abort()

            assert tx.state is TransactionState.ABORTED
            assert isinstance(request.error, TransactionAbortedError)
            assert isinstance(tx.error, TransactionAbortedError)

            async with db.transaction("items") as tx:
                assert await promisify_request(tx.collection("items").count()) == 0
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_failed_request_aborts_transaction(self):
        """A failing request rolls back every other write."""
        db = await open_database(":memory:", create_items)
        try:
            with pytest.raises(TransactionAbortedError) as exc_info:
                async with db.transaction("items", "readwrite") as tx:
                    tx.collection("items").put("kept", 1)
                    Collection(tx, "ghost").put("lost", 2)
                    after = tx.collection("items").put("after", 3)

            assert isinstance(exc_info.value.__cause__, RequestError)
            assert isinstance(after.error, TransactionAbortedError)

            async with db.transaction("items") as tx:
                assert await promisify_request(tx.collection("items").get("kept")) is None
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_unexpected_operation_error_rolls_back(self):
        """An operation raising a non-SQLite error still rolls the transaction back."""
        db = await open_database(":memory:", create_items)

        async def broken(connection):
            raise RuntimeError("engine bug")

        try:
            with pytest.raises(TransactionAbortedError) as exc_info:
                async with db.transaction("items", "readwrite") as tx:
                    items = tx.collection("items")
                    items.put("lost", 1)
                    failed = tx._issue(items, broken)

            assert isinstance(exc_info.value.__cause__, RequestError)
            assert isinstance(failed.error.__cause__, RuntimeError)
            assert not db._connection.in_transaction

            async with db.transaction("items", "readwrite") as tx:
                tx.collection("items").put("kept", 2)
            async with db.transaction("items") as tx:
                items = tx.collection("items")
                assert await promisify_request(items.get("lost")) is None
                assert await promisify_request(items.get("kept")) == 2
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_awaited_request_failure_raises_request_error(self):
        """An observed request failure surfaces as RequestError."""
        db = await open_database(":memory:", create_items)
        try:
            with pytest.raises(RequestError):
                async with db.transaction("items") as tx:
                    await promisify_request(Collection(tx, "ghost").get("key"))

            assert tx.state is TransactionState.ABORTED
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_finished_transaction_is_inactive(self):
        """Requests cannot be issued after the transaction finished."""
        db = await open_database(":memory:", create_items)
        try:
            async with db.transaction("items") as tx:
                items = tx.collection("items")

            with pytest.raises(TransactionInactiveError):
                items.get("key")
            with pytest.raises(TransactionInactiveError):
                tx.collection("items")
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_cursor_walks_in_key_order(self):
        """Cursors advance through records in ascending key order."""
        db = await open_database(":memory:", create_items)
        try:
            async with db.transaction("items", "readwrite") as tx:
                items = tx.collection("items")
                for key in ("c", "a", "b"):
                    items.put(key, key.upper())

            seen = []
            async with db.transaction("items") as tx:
                cursor = await promisify_request(tx.collection("items").open_cursor())
                while cursor is not None:
                    seen.append((cursor.key, cursor.value))
                    cursor = await promisify_request(cursor.continue_())

            assert seen == [("a", "A"), ("b", "B"), ("c", "C")]
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_cursor_on_empty_collection(self):
        """Opening a cursor on an empty collection yields None."""
        db = await open_database(":memory:", create_items)
        try:
            async with db.transaction("items") as tx:
                cursor = await promisify_request(tx.collection("items").open_cursor())
            assert cursor is None
        finally:
            await db.close()
