import logging
from typing import Callable, Dict, List, Optional

import numpy as np

from ....domain.repositories.model_storage import ModelStorage, StorageTable
from ....ml.serving.feature_cache import FeatureCache
from ...data.config import ServingConfig
from ...data.repositories.sqlite_model_storage import SQLiteModelStorage
from ...data.serialization import IntItemCodec, ObservationSetSerializer, VectorSerializer
from .online_model import OnlineModel

logger = logging.getLogger(__name__)

# Regularization used by the offline ALS job that produces the item features
DEFAULT_LAMBDA = 0.1

RetrainTrigger = Callable[[str], None]


class RetrainUnavailableError(Exception):
    """Raised when retraining is requested but no trigger is configured"""
    pass


class MatrixFactorizationModel(OnlineModel[int]):
    """
    Online matrix factorization over integer item ids.

    Item features are the item factors computed by the offline ALS job and
    persisted in the item feature table; user weights are refined online.
    """

    def __init__(self,
                 num_features: int,
                 user_storage: ModelStorage[np.ndarray],
                 observation_storage: ModelStorage[Dict[int, float]],
                 item_storage: ModelStorage[np.ndarray],
                 average_user=None,
                 default_item=None,
                 regularization: float = DEFAULT_LAMBDA,
                 feature_cache: Optional[FeatureCache[int]] = None,
                 retrain_trigger: Optional[RetrainTrigger] = None,
                 name: str = "matrix_factorization"):
        super().__init__(
            num_features=num_features,
            default_item=np.zeros(num_features) if default_item is None else default_item,
            average_user=np.zeros(num_features) if average_user is None else average_user,
            user_storage=user_storage,
            observation_storage=observation_storage,
            item_codec=IntItemCodec,
            regularization=regularization,
            feature_cache=feature_cache,
            name=name
        )
        self.item_storage = item_storage
        self.retrain_trigger = retrain_trigger
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_config(cls,
                    config: ServingConfig,
                    average_user=None,
                    default_item=None,
                    retrain_trigger: Optional[RetrainTrigger] = None) -> "MatrixFactorizationModel":
        """Open the model's on-disk tables and build the model"""
        num_features = config.model.num_features
        vector_serializer = VectorSerializer(num_features)

        serializers = {
            StorageTable.USER_WEIGHTS: vector_serializer,
            StorageTable.OBSERVATIONS: ObservationSetSerializer(IntItemCodec),
            StorageTable.ITEM_FEATURES: vector_serializer
        }

        opened = {}
        try:
            for table, serializer in serializers.items():
                opened[table] = SQLiteModelStorage(
                    config.storage.path_for(table), serializer, table_name=table.value
                )

            feature_cache = FeatureCache(
                max_entries=config.feature_cache.max_entries,
                max_bytes=config.feature_cache.max_bytes,
                num_stripes=config.feature_cache.num_stripes,
                name=config.model.name
            )

            return cls(
                num_features=num_features,
                user_storage=opened[StorageTable.USER_WEIGHTS],
                observation_storage=opened[StorageTable.OBSERVATIONS],
                item_storage=opened[StorageTable.ITEM_FEATURES],
                average_user=average_user,
                default_item=default_item,
                regularization=config.model.regularization,
                feature_cache=feature_cache,
                retrain_trigger=retrain_trigger,
                name=config.model.name
            )
        except Exception as e:
            logger.error(f"Failed to build model '{config.model.name}' from config: {e}")
            for storage in opened.values():
                storage.close()
            raise

    def compute_features(self, item: int) -> np.ndarray:
        return self.item_storage.get(item)

    def retrain(self, cluster_endpoint: str) -> None:
        if self.retrain_trigger is None:
            raise RetrainUnavailableError(f"No retrain trigger configured for model '{self.name}'")

        self.logger.info(f"Triggering retraining of '{self.name}' on {cluster_endpoint}")
        self.retrain_trigger(cluster_endpoint)

    def _storages(self) -> List[ModelStorage]:
        return super()._storages() + [self.item_storage]
