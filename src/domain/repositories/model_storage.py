from abc import ABC, abstractmethod
from enum import Enum
from typing import Generic, Optional, TypeVar

V = TypeVar("V")


class StorageError(Exception):
    """Base exception for model storage operations"""
    pass


class StoreOpenError(StorageError):
    """Raised when a backing table cannot be opened"""
    pass


class StoreReadError(StorageError):
    """Raised when a record cannot be read from the backing table"""
    pass


class RecordNotFoundError(StoreReadError):
    """Raised when no record exists for the requested key"""

    def __init__(self, table: str, key: int):
        super().__init__(f"No record for key {key} in table '{table}'")
        self.table = table
        self.key = key


class CorruptRecordError(StoreReadError):
    """Raised when stored bytes cannot be decoded into the table's value type"""

    def __init__(self, table: str, key: int, reason: str):
        super().__init__(f"Corrupt record for key {key} in table '{table}': {reason}")
        self.table = table
        self.key = key
        self.reason = reason


class StoreWriteError(StorageError):
    """Raised when a record cannot be durably written"""
    pass


class StoreClosedError(StorageError):
    """Raised when a closed store is used"""
    pass


class StorageTable(Enum):
    """Logical tables of an online model"""
    USER_WEIGHTS = "user_weights"
    OBSERVATIONS = "observations"
    ITEM_FEATURES = "item_features"

    @property
    def filename(self) -> str:
        return f"{self.value}.db"


class ModelStorage(ABC, Generic[V]):
    """Key/value table holding one kind of model state, keyed by a 64-bit id.

    Implementations must give read-your-writes: once ``put`` returns, a
    following ``get`` for the same key returns the new value.
    """

    @abstractmethod
    def get(self, key: int) -> V:
        """Return the value stored for key.

        Raises RecordNotFoundError when the key is absent and
        CorruptRecordError when the stored bytes cannot be decoded.
        """
        pass

    @abstractmethod
    def put(self, key: int, value: V) -> None:
        """Atomically store value for key, replacing any previous value"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release the underlying resources. Safe to call more than once."""
        pass

    @property
    @abstractmethod
    def closed(self) -> bool:
        pass

    def get_or_default(self, key: int, default: Optional[V] = None) -> Optional[V]:
        """Return the stored value, or default when the key is absent"""
        try:
            return self.get(key)
        except RecordNotFoundError:
            return default

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
