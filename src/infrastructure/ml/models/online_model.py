"""
Online model serving and incremental personalization.

An OnlineModel scores (user, item) pairs as the dot product of the item's
feature vector and the user's weight vector, and folds new feedback into the
user's weights by re-solving that user's regularized least squares problem
over everything they have scored. Model implementers subclass it and supply
the feature extraction for their item type.

Read path (predict): feature cache, falling back to extraction; user weights
from storage, falling back to the average user. Never writes and never takes
a user lock.

Write path (add_observation): serialized per user. The observation set is
persisted before the weights are solved, so an observation that was
acknowledged survives even if the weight update is lost.
"""

import logging
import threading
import time
from abc import abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Generic, Hashable, Iterator, List, Optional, TypeVar

import numpy as np
from prometheus_client import Counter, Histogram

from ....domain.repositories.model_storage import (
    CorruptRecordError, ModelStorage, RecordNotFoundError, StoreReadError
)
from ....domain.services.model_registry import ServedModel
from ....ml.serving.feature_cache import FeatureCache
from ....ml.serving.keyed_lock import KeyedLockTable
from ...data.serialization import ItemCodec
from .least_squares import solve_user_weights

T = TypeVar("T", bound=Hashable)

# Prometheus metrics
PREDICTIONS = Counter('online_model_predictions_total', 'Total predictions served', ['model'])
OBSERVATIONS = Counter('online_model_observations_total', 'Total observations processed', ['model', 'outcome'])
FALLBACKS = Counter('online_model_fallbacks_total', 'Fallbacks to default or average vectors', ['model', 'kind'])
UPDATE_LATENCY = Histogram('online_model_update_duration_seconds', 'Online weight update latency', ['model'])


class ModelClosedError(Exception):
    """Raised when a closed model receives a request"""
    pass


class FeatureSource(Enum):
    CACHE = "cache"
    COMPUTED = "computed"
    DEFAULT = "default"


class WeightSource(Enum):
    STORED = "stored"
    AVERAGE_NOT_FOUND = "average_not_found"
    AVERAGE_CORRUPT = "average_corrupt"
    AVERAGE_READ_ERROR = "average_read_error"


@dataclass
class FeatureResolution:
    """Feature vector of an item and where it came from"""
    vector: np.ndarray
    source: FeatureSource
    error: Optional[BaseException] = None

    @property
    def is_fallback(self) -> bool:
        return self.source is FeatureSource.DEFAULT


@dataclass
class WeightResolution:
    """Weight vector of a user and where it came from"""
    vector: np.ndarray
    source: WeightSource
    error: Optional[BaseException] = None

    @property
    def is_fallback(self) -> bool:
        return self.source is not WeightSource.STORED


def _frozen_vector(values, num_features: int, label: str) -> np.ndarray:
    vector = np.array(values, dtype=np.float64, copy=True)
    if vector.shape != (num_features,):
        raise ValueError(f"{label} must have shape ({num_features},), got {vector.shape}")
    vector.setflags(write=False)
    return vector


class OnlineModel(ServedModel, Generic[T]):
    """
    Base class for online-updatable bilinear models.

    Args:
        num_features: length of every feature and weight vector
        default_item: features used for an item whose extraction fails
        average_user: weights used for a user with no usable stored weights
        user_storage: table of user id -> weight vector
        observation_storage: table of user id -> {item: score}
        item_codec: model-supplied conversion of items to storable primitives
        regularization: lambda of the least squares update, shared with the
            offline training job
        feature_cache: cache of computed item features; one is created when omitted
        name: model name used in logs and metrics
    """

    def __init__(self,
                 num_features: int,
                 default_item,
                 average_user,
                 user_storage: ModelStorage[np.ndarray],
                 observation_storage: ModelStorage[Dict[T, float]],
                 item_codec: ItemCodec[T],
                 regularization: float,
                 feature_cache: Optional[FeatureCache[T]] = None,
                 name: Optional[str] = None):
        if num_features < 1:
            raise ValueError("num_features must be positive")
        if regularization <= 0:
            raise ValueError("regularization must be positive")

        self.num_features = num_features
        self.default_item = _frozen_vector(default_item, num_features, "default_item")
        self.average_user = _frozen_vector(average_user, num_features, "average_user")
        self.user_storage = user_storage
        self.observation_storage = observation_storage
        self.item_codec = item_codec
        self.regularization = regularization
        self.name = name or type(self).__name__
        self.feature_cache = feature_cache if feature_cache is not None else FeatureCache(name=self.name)

        self.logger = logging.getLogger(__name__)

        self._user_locks = KeyedLockTable()
        self._state = threading.Condition()
        self._inflight = 0
        self._closed = False

    @abstractmethod
    def compute_features(self, item: T) -> np.ndarray:
        """Compute the feature vector of item. Called on feature cache miss; may raise."""
        pass

    @abstractmethod
    def retrain(self, cluster_endpoint: str) -> None:
        """Trigger the offline job that rebuilds the global model parameters"""
        pass

    def decode_item(self, payload: Any) -> T:
        """Turn a wire payload into the model's item type"""
        return self.item_codec.decode(payload)

    @contextmanager
    def _request(self) -> Iterator[None]:
        with self._state:
            if self._closed:
                raise ModelClosedError(f"Model '{self.name}' is closed")
            self._inflight += 1
        try:
            yield
        finally:
            with self._state:
                self._inflight -= 1
                if self._inflight == 0:
                    self._state.notify_all()

    def get_features(self, item: T) -> FeatureResolution:
        """Resolve the features of item; the returned vector is a private copy"""
        cached = self.feature_cache.get_item(item)
        if cached is not None:
            return FeatureResolution(cached.copy(), FeatureSource.CACHE)

        try:
            features = np.asarray(self.compute_features(item), dtype=np.float64)
            if features.shape != (self.num_features,):
                raise ValueError(
                    f"computed features have shape {features.shape}, expected ({self.num_features},)"
                )
            if not np.all(np.isfinite(features)):
                raise ValueError("computed features contain non-finite values")
        except Exception as e:
            FALLBACKS.labels(model=self.name, kind='extraction_failure').inc()
            self.logger.warning(f"Couldn't compute features for item {item!r}, using default: {e}")
            return FeatureResolution(self.default_item.copy(), FeatureSource.DEFAULT, e)

        self.feature_cache.add_item(item, features)
        return FeatureResolution(features.copy(), FeatureSource.COMPUTED)

    def get_weights(self, user_id: int) -> WeightResolution:
        """Resolve the weights of a user, falling back to the average user"""
        try:
            weights = np.asarray(self.user_storage.get(user_id), dtype=np.float64)
        except RecordNotFoundError:
            FALLBACKS.labels(model=self.name, kind='weights_not_found').inc()
            self.logger.debug(f"User weight not found for user {user_id}, using average")
            return WeightResolution(self.average_user.copy(), WeightSource.AVERAGE_NOT_FOUND)
        except CorruptRecordError as e:
            FALLBACKS.labels(model=self.name, kind='weights_corrupt').inc()
            self.logger.error(f"Corrupt weights for user {user_id}, using average: {e}")
            return WeightResolution(self.average_user.copy(), WeightSource.AVERAGE_CORRUPT, e)
        except StoreReadError as e:
            FALLBACKS.labels(model=self.name, kind='weights_read_error').inc()
            self.logger.error(f"Failed to read weights for user {user_id}, using average: {e}")
            return WeightResolution(self.average_user.copy(), WeightSource.AVERAGE_READ_ERROR, e)

        if weights.shape != (self.num_features,):
            FALLBACKS.labels(model=self.name, kind='weights_corrupt').inc()
            self.logger.error(
                f"Stored weights for user {user_id} have shape {weights.shape}, using average"
            )
            return WeightResolution(self.average_user.copy(), WeightSource.AVERAGE_CORRUPT)

        return WeightResolution(weights.copy(), WeightSource.STORED)

    def get_observations(self, user_id: int) -> Dict[T, float]:
        """Load a user's observations; absent or corrupt sets read as empty.

        Backend read failures propagate: treating them as empty would let the
        next write replace the user's history.
        """
        try:
            return dict(self.observation_storage.get(user_id))
        except RecordNotFoundError:
            return {}
        except CorruptRecordError as e:
            FALLBACKS.labels(model=self.name, kind='observations_corrupt').inc()
            self.logger.error(f"Corrupt observations for user {user_id}, starting from empty: {e}")
            return {}

    def predict(self, user_id: int, item: T) -> float:
        """Score item for user"""
        with self._request():
            features = self.get_features(item).vector
            weights = self.get_weights(user_id).vector
            PREDICTIONS.labels(model=self.name).inc()
            return float(np.dot(features, weights))

    def add_observation(self, user_id: int, item: T, score: float) -> None:
        """Record that user scored item and recompute the user's weights.

        Raises:
            StoreWriteError: the observation set or the new weights could not be persisted
            StoreReadError: the stored observation set could not be read
            SolverError: the weights could not be solved; stored weights are unchanged
            ContractViolationError: features and scores disagree
        """
        score = float(score)
        if not np.isfinite(score):
            raise ValueError(f"Observed score must be finite, got {score}")

        with self._request(), self._user_locks.hold(user_id):
            start_time = time.time()
            try:
                observations = self.get_observations(user_id)
                observations[item] = score
                self.observation_storage.put(user_id, observations)

                item_features = {
                    observed: self.get_features(observed).vector for observed in observations
                }
                old_weights = self.get_weights(user_id)
                new_weights = solve_user_weights(
                    item_features, observations, self.num_features, self.regularization
                )

                self.logger.debug(f"Old weight for user {user_id}: ({', '.join(map(str, old_weights.vector))})")
                self.logger.debug(f"New weight for user {user_id}: ({', '.join(map(str, new_weights))})")

                self.user_storage.put(user_id, new_weights)
            except Exception:
                OBSERVATIONS.labels(model=self.name, outcome='failed').inc()
                raise

            OBSERVATIONS.labels(model=self.name, outcome='applied').inc()
            UPDATE_LATENCY.labels(model=self.name).observe(time.time() - start_time)

    def _storages(self) -> List[ModelStorage]:
        return [self.user_storage, self.observation_storage]

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self, timeout: Optional[float] = None) -> None:
        """Stop accepting requests, wait for in-flight ones, then close every table once"""
        with self._state:
            if self._closed:
                return
            self._closed = True
            drained = self._state.wait_for(lambda: self._inflight == 0, timeout)

        if not drained:
            self.logger.warning(f"Closing model '{self.name}' with requests still in flight")

        for storage in self._storages():
            storage.close()
        self.logger.info(f"Model '{self.name}' closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
