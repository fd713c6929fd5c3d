"""
Custom exceptions for the keyval store.
"""


class StoreError(Exception):
    """Base exception for all store-related errors."""
    pass


class OpenError(StoreError):
    """Exception raised when a database could not be opened or upgraded."""
    pass


class TransactionError(StoreError):
    """Exception raised for transaction-related errors."""
    pass


class TransactionAbortedError(TransactionError):
    """Exception raised when a transaction rolled back instead of committing."""
    pass


class TransactionInactiveError(TransactionError):
    """Exception raised when a request is issued on a finished transaction."""
    pass


class ReadOnlyError(TransactionError):
    """Exception raised when writing through a read-only transaction."""
    pass


class RequestError(StoreError):
    """Exception raised when a single engine request fails."""
    pass


class DataError(StoreError):
    """Exception raised for keys that cannot be stored or ordered."""
    pass


class NotFoundError(StoreError):
    """Exception raised when a collection does not exist in the database."""
    pass


class InvalidStateError(StoreError):
    """Exception raised when an object is used in the wrong lifecycle state."""
    pass
