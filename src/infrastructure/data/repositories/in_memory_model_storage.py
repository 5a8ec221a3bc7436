import logging
import threading
from typing import Dict, Generic, TypeVar

from ....domain.repositories.model_storage import (
    CorruptRecordError, ModelStorage, RecordNotFoundError, StoreClosedError, StoreWriteError
)
from ..serialization import RecordSerializer, SerializationError

V = TypeVar("V")


class InMemoryModelStorage(ModelStorage[V], Generic[V]):
    """Process-local table for tests and ephemeral deployments.

    Values still go through the serializer so callers never share mutable
    state with the table and decode failures surface exactly as they do on disk.
    """

    def __init__(self, serializer: RecordSerializer[V], table_name: str = "memory"):
        self.serializer = serializer
        self.table_name = table_name
        self.logger = logging.getLogger(__name__)

        self._records: Dict[int, bytes] = {}
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self):
        if self._closed:
            raise StoreClosedError(f"Model table '{self.table_name}' is closed")

    def get(self, key: int) -> V:
        self._ensure_open()
        with self._lock:
            payload = self._records.get(key)

        if payload is None:
            raise RecordNotFoundError(self.table_name, key)

        try:
            return self.serializer.deserialize(payload)
        except SerializationError as e:
            raise CorruptRecordError(self.table_name, key, str(e)) from e

    def put(self, key: int, value: V) -> None:
        self._ensure_open()
        try:
            payload = self.serializer.serialize(value)
        except SerializationError as e:
            raise StoreWriteError(f"Cannot encode value for key {key} in '{self.table_name}': {e}") from e

        with self._lock:
            self._records[key] = payload

    def put_raw(self, key: int, payload: bytes) -> None:
        """Store already-encoded bytes as they are, bypassing the serializer"""
        self._ensure_open()
        with self._lock:
            self._records[key] = bytes(payload)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._records.clear()
        self.logger.debug(f"Closed in-memory table '{self.table_name}'")
