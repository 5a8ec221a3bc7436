"""
Test helper classes and utilities for the online serving test suite.
"""

import threading
from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np

from src.infrastructure.data.repositories.in_memory_model_storage import InMemoryModelStorage
from src.infrastructure.data.serialization import ItemCodec, ObservationSetSerializer, VectorSerializer
from src.infrastructure.ml.models.online_model import OnlineModel
from src.ml.serving.feature_cache import FeatureCache


@dataclass(frozen=True)
class Product:
    """Item type used by the test model"""
    sku: str
    category: str = "general"


PRODUCT_CODEC = ItemCodec(
    encode=lambda product: [product.sku, product.category],
    decode=lambda data: Product(sku=data[0], category=data[1])
)


class StaticFeatureModel(OnlineModel[Product]):
    """Online model whose features come from a fixed lookup table"""

    def __init__(self,
                 features: Dict[Product, Sequence[float]],
                 failing: Iterable[Product] = (),
                 **kwargs):
        self.features = dict(features)
        self.failing = set(failing)
        self.compute_calls: Counter = Counter()
        self.retrain_requests: List[str] = []
        self._calls_lock = threading.Lock()
        super().__init__(**kwargs)

    def compute_features(self, item: Product) -> np.ndarray:
        with self._calls_lock:
            self.compute_calls[item] += 1
        if item in self.failing:
            raise RuntimeError(f"feature service unavailable for {item.sku}")
        return np.array(self.features[item], dtype=np.float64)

    def retrain(self, cluster_endpoint: str) -> None:
        self.retrain_requests.append(cluster_endpoint)


def build_static_model(features: Dict[Product, Sequence[float]],
                       num_features: int = 2,
                       regularization: float = 0.1,
                       average_user: Optional[Sequence[float]] = None,
                       default_item: Optional[Sequence[float]] = None,
                       failing: Iterable[Product] = (),
                       user_storage=None,
                       observation_storage=None,
                       feature_cache: Optional[FeatureCache] = None) -> StaticFeatureModel:
    """Build a StaticFeatureModel over in-memory tables unless tables are given"""
    return StaticFeatureModel(
        features=features,
        failing=failing,
        num_features=num_features,
        default_item=np.zeros(num_features) if default_item is None else default_item,
        average_user=np.ones(num_features) if average_user is None else average_user,
        user_storage=user_storage if user_storage is not None else InMemoryModelStorage(
            VectorSerializer(num_features), "user_weights"
        ),
        observation_storage=observation_storage if observation_storage is not None else InMemoryModelStorage(
            ObservationSetSerializer(PRODUCT_CODEC), "observations"
        ),
        item_codec=PRODUCT_CODEC,
        regularization=regularization,
        feature_cache=feature_cache,
        name="static_test_model"
    )


def expected_weights(features: Dict[Product, Sequence[float]],
                     scores: Dict[Product, float],
                     regularization: float) -> np.ndarray:
    """Reference solution of the regularized normal equations"""
    k = len(next(iter(features.values())))
    gram = regularization * k * np.eye(k)
    rhs = np.zeros(k)
    for item, score in scores.items():
        f = np.asarray(features[item], dtype=np.float64)
        gram += np.outer(f, f)
        rhs += f * score
    return np.linalg.solve(gram, rhs)
