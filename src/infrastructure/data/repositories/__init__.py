# Model storage implementations
from .sqlite_model_storage import SQLiteModelStorage, initialize_storage_engine
from .in_memory_model_storage import InMemoryModelStorage

__all__ = [
    'SQLiteModelStorage',
    'InMemoryModelStorage',
    'initialize_storage_engine'
]
