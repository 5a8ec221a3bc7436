import os
import logging
from typing import Optional
from dataclasses import dataclass, field

from dotenv import load_dotenv

from ...domain.repositories.model_storage import StorageTable

logger = logging.getLogger(__name__)


@dataclass
class StorageConfig:
    """Embedded storage settings"""
    storage_dir: str = "./model_data"
    user_weights_file: str = StorageTable.USER_WEIGHTS.filename
    observations_file: str = StorageTable.OBSERVATIONS.filename
    item_features_file: str = StorageTable.ITEM_FEATURES.filename

    def path_for(self, table: StorageTable) -> str:
        """Get the database file path of a logical table"""
        filenames = {
            StorageTable.USER_WEIGHTS: self.user_weights_file,
            StorageTable.OBSERVATIONS: self.observations_file,
            StorageTable.ITEM_FEATURES: self.item_features_file
        }
        return os.path.join(self.storage_dir, filenames[table])


@dataclass
class FeatureCacheConfig:
    """Feature cache budget settings"""
    max_entries: int = 100_000
    max_bytes: Optional[int] = None
    num_stripes: int = 16


@dataclass
class ModelConfig:
    """Model shape and update settings"""
    name: str = "matrix_factorization"
    num_features: int = 50
    # Must match the lambda used by the offline training job
    regularization: float = 0.1


@dataclass
class ServingConfig:
    """Main online serving configuration"""
    storage: StorageConfig = field(default_factory=StorageConfig)
    feature_cache: FeatureCacheConfig = field(default_factory=FeatureCacheConfig)
    model: ModelConfig = field(default_factory=ModelConfig)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "ServingConfig":
        """Load configuration from environment variables, optionally seeded from a .env file"""
        if env_file:
            loaded = load_dotenv(env_file)
            logger.info(f"Loaded environment from {env_file}" if loaded else f"No environment file at {env_file}")

        return cls(
            storage=cls._load_storage_config(),
            feature_cache=cls._load_feature_cache_config(),
            model=cls._load_model_config()
        )

    @staticmethod
    def _load_storage_config() -> StorageConfig:
        return StorageConfig(
            storage_dir=os.getenv("MODEL_STORAGE_DIR", "./model_data"),
            user_weights_file=os.getenv("MODEL_USER_WEIGHTS_FILE", StorageTable.USER_WEIGHTS.filename),
            observations_file=os.getenv("MODEL_OBSERVATIONS_FILE", StorageTable.OBSERVATIONS.filename),
            item_features_file=os.getenv("MODEL_ITEM_FEATURES_FILE", StorageTable.ITEM_FEATURES.filename)
        )

    @staticmethod
    def _load_feature_cache_config() -> FeatureCacheConfig:
        max_bytes = os.getenv("FEATURE_CACHE_MAX_BYTES")
        return FeatureCacheConfig(
            max_entries=int(os.getenv("FEATURE_CACHE_MAX_ENTRIES", "100000")),
            max_bytes=int(max_bytes) if max_bytes else None,
            num_stripes=int(os.getenv("FEATURE_CACHE_NUM_STRIPES", "16"))
        )

    @staticmethod
    def _load_model_config() -> ModelConfig:
        return ModelConfig(
            name=os.getenv("MODEL_NAME", "matrix_factorization"),
            num_features=int(os.getenv("MODEL_NUM_FEATURES", "50")),
            regularization=float(os.getenv("MODEL_REGULARIZATION", "0.1"))
        )
