"""
Closed-form user weight update for bilinear (matrix factorization) models.

Holding the item feature vectors fixed, a user's weights are the solution of
the regularized normal equations

    (sum_i f_i f_i^T + lambda * k * I) w = sum_i f_i * score_i

which is the per-user step of alternating least squares. The left-hand side
is symmetric positive definite once the regularization term is added, so it is
solved with a Cholesky factorization.
"""

import logging
from typing import Hashable, List, Mapping, TypeVar

import numpy as np
from scipy.linalg import LinAlgError, cho_factor, cho_solve

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Hashable)


class ContractViolationError(Exception):
    """Raised when a caller breaks the solver's input contract"""
    pass


class SolverError(Exception):
    """Raised when the normal equations cannot be solved"""
    pass


def _ordered_items(items: Mapping[T, object]) -> List[T]:
    # Sorted order keeps the floating point accumulation reproducible across calls
    keys = list(items.keys())
    try:
        return sorted(keys)
    except TypeError:
        return keys


def solve_user_weights(item_features: Mapping[T, np.ndarray],
                       observation_scores: Mapping[T, float],
                       num_features: int,
                       regularization: float) -> np.ndarray:
    """Solve for a user's weight vector from the items they have scored.

    Args:
        item_features: feature vector of every scored item
        observation_scores: observed score of every scored item
        num_features: dimension k of feature and weight vectors
        regularization: lambda, shared with the offline training job

    Raises:
        ContractViolationError: when the two mappings do not cover the same
            items or a feature vector has the wrong length
        SolverError: when the system cannot be solved
    """
    if num_features < 1:
        raise ContractViolationError(f"num_features must be positive, got {num_features}")
    if regularization <= 0:
        raise ContractViolationError(f"regularization must be positive, got {regularization}")

    missing_scores = [item for item in item_features if item not in observation_scores]
    if missing_scores:
        raise ContractViolationError(f"Missing rating in online update -- item: {missing_scores[0]!r}")

    missing_features = [item for item in observation_scores if item not in item_features]
    if missing_features:
        raise ContractViolationError(f"Missing features in online update -- item: {missing_features[0]!r}")

    gram = np.zeros((num_features, num_features), dtype=np.float64)
    rhs = np.zeros(num_features, dtype=np.float64)

    for item in _ordered_items(item_features):
        features = np.asarray(item_features[item], dtype=np.float64)
        if features.shape != (num_features,):
            raise ContractViolationError(
                f"Feature vector for item {item!r} has shape {features.shape}, expected ({num_features},)"
            )
        gram += np.outer(features, features)
        rhs += features * float(observation_scores[item])

    gram += np.eye(num_features) * (regularization * num_features)

    try:
        factor = cho_factor(gram, lower=True, check_finite=True)
        weights = cho_solve(factor, rhs, check_finite=True)
    except (LinAlgError, ValueError) as e:
        logger.error(f"Normal equations could not be solved over {len(item_features)} items: {e}")
        raise SolverError(f"Failed to solve for user weights: {e}") from e

    if not np.all(np.isfinite(weights)):
        raise SolverError("Solved user weights contain non-finite values")

    return weights
