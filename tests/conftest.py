"""
Global pytest configuration and fixtures for the online serving test suite.

This module provides test configuration, storage fixtures and shared model
fixtures for all test modules.
"""

import os
import sys
from pathlib import Path

import numpy as np
import pytest

# Test environment setup
os.environ["TESTING"] = "1"
np.random.seed(42)

sys.path.insert(0, str(Path(__file__).parent.parent))

from src.infrastructure.data.config import FeatureCacheConfig, ModelConfig, ServingConfig, StorageConfig
from src.infrastructure.data.repositories.in_memory_model_storage import InMemoryModelStorage
from src.infrastructure.data.repositories.sqlite_model_storage import SQLiteModelStorage
from src.infrastructure.data.serialization import IntItemCodec, ObservationSetSerializer, VectorSerializer
from tests.utils.test_helpers import Product, build_static_model


# =======================
# Test Configuration
# =======================

def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers automatically."""
    for item in items:
        if "storage" in str(item.fspath):
            item.add_marker(pytest.mark.db)
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)


# =======================
# Storage Fixtures
# =======================

@pytest.fixture
def vector_serializer():
    return VectorSerializer(2)


@pytest.fixture
def memory_weight_storage(vector_serializer):
    storage = InMemoryModelStorage(vector_serializer, "user_weights")
    yield storage
    storage.close()


@pytest.fixture
def sqlite_weight_storage(tmp_path, vector_serializer):
    storage = SQLiteModelStorage(str(tmp_path / "user_weights.db"), vector_serializer)
    yield storage
    storage.close()


@pytest.fixture
def sqlite_observation_storage(tmp_path):
    storage = SQLiteModelStorage(
        str(tmp_path / "observations.db"), ObservationSetSerializer(IntItemCodec)
    )
    yield storage
    storage.close()


@pytest.fixture
def serving_config(tmp_path) -> ServingConfig:
    """Serving configuration rooted in a per-test storage directory."""
    return ServingConfig(
        storage=StorageConfig(storage_dir=str(tmp_path / "model_data")),
        feature_cache=FeatureCacheConfig(max_entries=100, num_stripes=4),
        model=ModelConfig(name="mf_test", num_features=2, regularization=0.1)
    )


# =======================
# Model Fixtures
# =======================

@pytest.fixture
def sample_products():
    return {
        Product("sku-1", "books"): [1.0, 0.0],
        Product("sku-2", "books"): [0.0, 1.0],
        Product("sku-3", "games"): [1.0, 1.0],
        Product("sku-4", "games"): [0.5, -0.5],
    }


@pytest.fixture
def static_model(sample_products):
    model = build_static_model(sample_products)
    yield model
    model.close()
