"""
Online serving primitives for the model engine.

This package provides the in-process building blocks of the serving path:
- Striped LRU feature cache for computed item features
- Per-key lock table for serializing per-user updates
"""

from .feature_cache import FeatureCache
from .keyed_lock import KeyedLockTable

__all__ = [
    'FeatureCache',
    'KeyedLockTable'
]
