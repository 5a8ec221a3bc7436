import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class ServedModel(ABC):
    """What the registry needs from a model it serves"""

    num_features: int

    @property
    @abstractmethod
    def closed(self) -> bool:
        pass

    @abstractmethod
    def close(self, timeout: Optional[float] = None) -> None:
        """Stop serving and release the model's tables"""
        pass


class ModelRegistry:
    """Named online models served by this process.

    The request transport looks models up here; shutdown goes through
    ``close_all`` so that every model's tables are closed exactly once.
    """

    def __init__(self):
        self._models: Dict[str, ServedModel] = {}
        self._lock = threading.Lock()
        self._closed = False

    def register(self, name: str, model: ServedModel) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError("Model registry is closed")
            if name in self._models:
                raise ValueError(f"Model '{name}' is already registered")
            self._models[name] = model
        logger.info(f"Registered model '{name}' ({type(model).__name__}, {model.num_features} features)")

    def get(self, name: str) -> ServedModel:
        with self._lock:
            try:
                return self._models[name]
            except KeyError:
                raise KeyError(f"Unknown model '{name}'") from None

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._models)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._models

    def close_all(self) -> None:
        """Close every registered model. Safe to call more than once."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            models = list(self._models.items())

        errors = []
        for name, model in models:
            try:
                model.close()
            except Exception as e:
                logger.error(f"Failed to close model '{name}': {e}")
                errors.append(e)

        if errors:
            raise errors[0]
        logger.info(f"Closed {len(models)} models")
