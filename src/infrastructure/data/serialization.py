"""
Record serialization for online model storage.

Every stored value is wrapped in a small self-describing envelope so that a
reader can tell a damaged record apart from a missing one:

    magic (4) | format version (1) | value tag (1) | payload length (4) | crc32 (4) | payload

Payloads are msgpack documents. Serializers hold no mutable codec state, so a
single instance can be shared by every thread of a store.
"""

import struct
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

import msgpack
import msgpack.exceptions
import numpy as np

T = TypeVar("T")
V = TypeVar("V")

RECORD_MAGIC = b"OMSR"
FORMAT_VERSION = 1
_HEADER = struct.Struct(">4sBBII")

# Value tags
TAG_VECTOR = 1
TAG_OBSERVATIONS = 2

# Vectors are stored as big-endian float64 regardless of host byte order
_VECTOR_DTYPE = np.dtype(">f8")


class SerializationError(Exception):
    """Raised when a record cannot be encoded or decoded"""
    pass


@dataclass(frozen=True)
class ItemCodec(Generic[T]):
    """Model-supplied conversion between items and msgpack-compatible primitives.

    ``decode`` receives exactly what msgpack returns for the encoded form, so
    sequences come back as lists.
    """
    encode: Callable[[T], Any]
    decode: Callable[[Any], T]


IntItemCodec: ItemCodec[int] = ItemCodec(encode=int, decode=int)


class RecordSerializer(ABC, Generic[V]):
    """Base serializer: subclasses provide the payload, this class the envelope"""

    tag: int = 0

    @abstractmethod
    def encode_payload(self, value: V) -> Any:
        """Convert value into a msgpack-compatible document"""
        pass

    @abstractmethod
    def decode_payload(self, document: Any) -> V:
        """Rebuild a value from its msgpack document"""
        pass

    def serialize(self, value: V) -> bytes:
        try:
            payload = msgpack.packb(self.encode_payload(value), use_bin_type=True)
        except SerializationError:
            raise
        except Exception as e:
            # Item codecs are model-supplied and may raise anything
            raise SerializationError(f"Failed to encode value: {e}") from e

        header = _HEADER.pack(
            RECORD_MAGIC,
            FORMAT_VERSION,
            self.tag,
            len(payload),
            zlib.crc32(payload) & 0xFFFFFFFF
        )
        return header + payload

    def deserialize(self, data: bytes) -> V:
        if data is None or len(data) < _HEADER.size:
            raise SerializationError("Record shorter than envelope header")

        magic, version, tag, length, checksum = _HEADER.unpack_from(data)
        if magic != RECORD_MAGIC:
            raise SerializationError(f"Bad magic {magic!r}")
        if version != FORMAT_VERSION:
            raise SerializationError(f"Unsupported format version {version}")
        if tag != self.tag:
            raise SerializationError(f"Expected value tag {self.tag}, found {tag}")

        payload = bytes(data[_HEADER.size:])
        if len(payload) != length:
            raise SerializationError(
                f"Payload length mismatch: header says {length}, found {len(payload)}"
            )
        if zlib.crc32(payload) & 0xFFFFFFFF != checksum:
            raise SerializationError("Payload checksum mismatch")

        try:
            document = msgpack.unpackb(payload, raw=False)
        except (msgpack.exceptions.UnpackException, ValueError, TypeError) as e:
            raise SerializationError(f"Invalid msgpack payload: {e}") from e

        try:
            return self.decode_payload(document)
        except SerializationError:
            raise
        except Exception as e:
            raise SerializationError(f"Payload does not match schema: {e}") from e


class VectorSerializer(RecordSerializer[np.ndarray]):
    """Serializer for feature and weight vectors"""

    tag = TAG_VECTOR

    def __init__(self, dimension: Optional[int] = None):
        self.dimension = dimension

    def encode_payload(self, value: np.ndarray) -> Any:
        vector = np.asarray(value, dtype=np.float64)
        if vector.ndim != 1:
            raise SerializationError(f"Expected a 1-D vector, got shape {vector.shape}")
        if self.dimension is not None and vector.shape[0] != self.dimension:
            raise SerializationError(
                f"Expected {self.dimension} entries, got {vector.shape[0]}"
            )
        return [int(vector.shape[0]), vector.astype(_VECTOR_DTYPE).tobytes()]

    def decode_payload(self, document: Any) -> np.ndarray:
        dimension, raw = document
        if not isinstance(raw, bytes):
            raise SerializationError("Vector payload is not binary")
        if len(raw) != dimension * _VECTOR_DTYPE.itemsize:
            raise SerializationError(
                f"Vector of {dimension} entries cannot hold {len(raw)} bytes"
            )
        if self.dimension is not None and dimension != self.dimension:
            raise SerializationError(
                f"Stored vector has {dimension} entries, expected {self.dimension}"
            )
        return np.frombuffer(raw, dtype=_VECTOR_DTYPE).astype(np.float64)


class ObservationSetSerializer(RecordSerializer[Dict[T, float]]):
    """Serializer for a user's item -> score observations"""

    tag = TAG_OBSERVATIONS

    def __init__(self, item_codec: ItemCodec[T]):
        self.item_codec = item_codec

    def encode_payload(self, value: Dict[T, float]) -> Any:
        return [[self.item_codec.encode(item), float(score)] for item, score in value.items()]

    def decode_payload(self, document: Any) -> Dict[T, float]:
        if not isinstance(document, list):
            raise SerializationError("Observation payload is not a list")
        observations = {}
        for encoded_item, score in document:
            observations[self.item_codec.decode(encoded_item)] = float(score)
        return observations
