import logging
import os
import sqlite3
import struct
import threading
import time
from datetime import datetime
from typing import Generic, Optional, TypeVar

from prometheus_client import Counter, Histogram
from sqlalchemy import Column, DateTime, LargeBinary, create_engine, event, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base

from ....domain.repositories.model_storage import (
    CorruptRecordError, ModelStorage, RecordNotFoundError, StoreClosedError,
    StoreOpenError, StoreReadError, StoreWriteError
)
from ..serialization import RecordSerializer, SerializationError

logger = logging.getLogger(__name__)

V = TypeVar("V")

# Storage metrics
STORAGE_OPERATION_TIME = Histogram(
    'model_storage_operation_duration_seconds', 'Model storage operation time', ['table', 'operation']
)
STORAGE_ERRORS = Counter(
    'model_storage_errors_total', 'Model storage failures', ['table', 'kind']
)

SQLITE_BUSY_TIMEOUT_MS = 5000

_KEY_FORMAT = struct.Struct(">Q")
_SIGN_BIT = 1 << 63

Base = declarative_base()


class ModelRecord(Base):
    __tablename__ = "model_records"

    record_key = Column(LargeBinary(8), primary_key=True)
    payload = Column(LargeBinary, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


_engine_init_lock = threading.Lock()
_engine_initialized = False


def _set_sqlite_pragmas(dbapi_connection, connection_record):
    """Apply durability and concurrency settings to every new SQLite connection"""
    if not isinstance(dbapi_connection, sqlite3.Connection):
        return
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    finally:
        cursor.close()


def initialize_storage_engine() -> bool:
    """One-time, process-wide setup of the embedded storage engine.

    Returns True on the call that performed the setup and False afterwards.
    """
    global _engine_initialized
    with _engine_init_lock:
        if _engine_initialized:
            return False
        event.listen(Engine, "connect", _set_sqlite_pragmas)
        _engine_initialized = True
        logger.info("Embedded storage engine initialized")
        return True


def encode_key(key: int) -> bytes:
    """Encode a signed 64-bit id as 8 bytes whose byte order matches numeric order"""
    if not -_SIGN_BIT <= key < _SIGN_BIT:
        raise ValueError(f"Key {key} does not fit in a signed 64-bit integer")
    return _KEY_FORMAT.pack((key & 0xFFFFFFFFFFFFFFFF) ^ _SIGN_BIT)


def decode_key(raw: bytes) -> int:
    value = _KEY_FORMAT.unpack(raw)[0] ^ _SIGN_BIT
    return value - (1 << 64) if value & _SIGN_BIT else value


class SQLiteModelStorage(ModelStorage[V], Generic[V]):
    """Durable on-disk table backed by its own SQLite database file"""

    def __init__(self, path: str, serializer: RecordSerializer[V], table_name: Optional[str] = None):
        self.path = str(path)
        self.serializer = serializer
        self.table_name = table_name or os.path.splitext(os.path.basename(self.path))[0]
        self.logger = logging.getLogger(__name__)

        self._closed = False
        self._close_lock = threading.Lock()

        initialize_storage_engine()
        self.engine = self._open()

    def _open(self) -> Engine:
        try:
            parent = os.path.dirname(os.path.abspath(self.path))
            os.makedirs(parent, exist_ok=True)

            engine = create_engine(
                f"sqlite:///{self.path}",
                echo=False,
                connect_args={"check_same_thread": False}
            )
            Base.metadata.create_all(engine)

            self.logger.info(f"Opened model table '{self.table_name}' at {self.path}")
            return engine

        except (SQLAlchemyError, sqlite3.Error, OSError) as e:
            STORAGE_ERRORS.labels(table=self.table_name, kind='open').inc()
            self.logger.error(f"Failed to open model table '{self.table_name}' at {self.path}: {e}")
            raise StoreOpenError(f"Couldn't open database {self.path}: {e}") from e

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self):
        if self._closed:
            raise StoreClosedError(f"Model table '{self.table_name}' is closed")

    def get(self, key: int) -> V:
        self._ensure_open()
        start_time = time.time()
        record_key = encode_key(key)

        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(ModelRecord.payload).where(ModelRecord.record_key == record_key)
                ).first()
        except SQLAlchemyError as e:
            STORAGE_ERRORS.labels(table=self.table_name, kind='read').inc()
            self.logger.error(f"Failed to read key {key} from '{self.table_name}': {e}")
            raise StoreReadError(f"Read failed for key {key} in '{self.table_name}': {e}") from e
        finally:
            STORAGE_OPERATION_TIME.labels(table=self.table_name, operation='get').observe(
                time.time() - start_time
            )

        if row is None:
            raise RecordNotFoundError(self.table_name, key)

        try:
            return self.serializer.deserialize(row[0])
        except SerializationError as e:
            STORAGE_ERRORS.labels(table=self.table_name, kind='corrupt').inc()
            raise CorruptRecordError(self.table_name, key, str(e)) from e

    def put(self, key: int, value: V) -> None:
        self._ensure_open()
        try:
            payload = self.serializer.serialize(value)
        except SerializationError as e:
            STORAGE_ERRORS.labels(table=self.table_name, kind='write').inc()
            raise StoreWriteError(f"Cannot encode value for key {key} in '{self.table_name}': {e}") from e

        self._write(key, payload)

    def put_raw(self, key: int, payload: bytes) -> None:
        """Store already-encoded bytes as they are, bypassing the serializer"""
        self._ensure_open()
        self._write(key, payload)

    def _write(self, key: int, payload: bytes) -> None:
        start_time = time.time()
        stmt = sqlite_insert(ModelRecord).values(
            record_key=encode_key(key),
            payload=payload,
            updated_at=datetime.utcnow()
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[ModelRecord.record_key],
            set_={'payload': stmt.excluded.payload, 'updated_at': stmt.excluded.updated_at}
        )

        try:
            with self.engine.begin() as conn:
                conn.execute(stmt)
        except SQLAlchemyError as e:
            STORAGE_ERRORS.labels(table=self.table_name, kind='write').inc()
            self.logger.error(f"Failed to write key {key} to '{self.table_name}': {e}")
            raise StoreWriteError(f"Write failed for key {key} in '{self.table_name}': {e}") from e
        finally:
            STORAGE_OPERATION_TIME.labels(table=self.table_name, operation='put').observe(
                time.time() - start_time
            )

    def close(self) -> None:
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
            self.engine.dispose()
            self.logger.info(f"Closed model table '{self.table_name}'")
