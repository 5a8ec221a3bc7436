# Data infrastructure layer
from .config import ServingConfig, StorageConfig, FeatureCacheConfig, ModelConfig
from .serialization import (
    ItemCodec,
    IntItemCodec,
    RecordSerializer,
    VectorSerializer,
    ObservationSetSerializer,
    SerializationError
)
from .repositories import (
    SQLiteModelStorage,
    InMemoryModelStorage,
    initialize_storage_engine
)

__all__ = [
    # Configuration
    'ServingConfig',
    'StorageConfig',
    'FeatureCacheConfig',
    'ModelConfig',

    # Serialization
    'ItemCodec',
    'IntItemCodec',
    'RecordSerializer',
    'VectorSerializer',
    'ObservationSetSerializer',
    'SerializationError',

    # Storage implementations
    'SQLiteModelStorage',
    'InMemoryModelStorage',
    'initialize_storage_engine'
]
