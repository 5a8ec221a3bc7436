"""
Unit tests for the record envelope and value serializers.
"""

import struct
import zlib

import msgpack
import numpy as np
import pytest

from src.infrastructure.data.serialization import (
    FORMAT_VERSION, RECORD_MAGIC, TAG_OBSERVATIONS, TAG_VECTOR, IntItemCodec, ItemCodec,
    ObservationSetSerializer, SerializationError, VectorSerializer
)
from tests.utils.test_helpers import PRODUCT_CODEC, Product


class TestVectorSerializer:

    def setup_method(self):
        self.serializer = VectorSerializer(3)

    def test_vector_round_trip(self):
        data = self.serializer.serialize(np.array([1.5, -2.0, 1e-12]))

        restored = self.serializer.deserialize(data)

        assert restored.dtype == np.float64
        np.testing.assert_array_equal(restored, [1.5, -2.0, 1e-12])

    def test_envelope_header(self):
        data = self.serializer.serialize(np.zeros(3))

        magic, version, tag, length, _ = struct.unpack(">4sBBII", data[:14])

        assert magic == RECORD_MAGIC
        assert version == FORMAT_VERSION
        assert tag == TAG_VECTOR
        assert length == len(data) - 14

    def test_wrong_dimension_rejected_on_encode(self):
        with pytest.raises(SerializationError):
            self.serializer.serialize(np.zeros(2))

    def test_wrong_dimension_rejected_on_decode(self):
        data = VectorSerializer().serialize(np.zeros(4))

        with pytest.raises(SerializationError, match="expected 3"):
            self.serializer.deserialize(data)

    @pytest.mark.parametrize("damage", [
        lambda data: data[:-3],
        lambda data: data[:5],
        lambda data: b"XXXX" + data[4:],
        lambda data: data[:-1] + bytes([data[-1] ^ 0xFF]),
        lambda data: data + b"\x00",
        lambda data: b"",
    ])
    def test_damaged_records_raise(self, damage):
        data = self.serializer.serialize(np.array([1.0, 2.0, 3.0]))

        with pytest.raises(SerializationError):
            self.serializer.deserialize(damage(data))

    def test_wrong_value_tag_raises(self):
        data = ObservationSetSerializer(IntItemCodec).serialize({1: 2.0})

        with pytest.raises(SerializationError, match="value tag"):
            self.serializer.deserialize(data)

    def test_schema_mismatch_with_valid_checksum_raises(self):
        payload = msgpack.packb({"not": "a vector"})
        header = struct.pack(">4sBBII", RECORD_MAGIC, FORMAT_VERSION, TAG_VECTOR,
                             len(payload), zlib.crc32(payload))

        with pytest.raises(SerializationError):
            self.serializer.deserialize(header + payload)


class TestObservationSetSerializer:

    def test_int_items_round_trip(self):
        serializer = ObservationSetSerializer(IntItemCodec)

        restored = serializer.deserialize(serializer.serialize({3: 4.5, -7: 1.0}))

        assert restored == {3: 4.5, -7: 1.0}

    def test_custom_items_round_trip(self):
        serializer = ObservationSetSerializer(PRODUCT_CODEC)
        observations = {Product("sku-1", "books"): 5.0, Product("sku-2"): 2.5}

        data = serializer.serialize(observations)

        assert serializer.tag == TAG_OBSERVATIONS
        assert serializer.deserialize(data) == observations

    def test_failing_item_decoder_raises_serialization_error(self):
        data = ObservationSetSerializer(ItemCodec(encode=str, decode=str)).serialize({"x": 1.0})
        serializer = ObservationSetSerializer(ItemCodec(encode=str, decode=lambda data: data.sku))

        with pytest.raises(SerializationError) as exc_info:
            serializer.deserialize(data)

        assert isinstance(exc_info.value.__cause__, AttributeError)

    def test_failing_item_encoder_raises_serialization_error(self):
        serializer = ObservationSetSerializer(ItemCodec(encode=lambda item: item.sku, decode=str))

        with pytest.raises(SerializationError):
            serializer.serialize({"x": 1.0})

    def test_unencodable_item_raises(self):
        serializer = ObservationSetSerializer(
            type(PRODUCT_CODEC)(encode=lambda item: object(), decode=lambda data: data)
        )

        with pytest.raises(SerializationError):
            serializer.serialize({Product("sku-1"): 1.0})
