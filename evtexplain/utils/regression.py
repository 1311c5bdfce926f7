"""
This module implements the regression side of local surrogate explanations: weighted least squares fits through `statsmodels`, their weighted coefficient of determination, and weighted feature selection strategies used to keep explanations sparse.
"""
from __future__ import annotations

import logging
import typing as t

import numpy as np
import statsmodels.api as sm

from pydantic import BaseModel

from evtexplain.errors import InvalidInputError, NumericalError

logger = logging.getLogger(__name__)

# weights below this value are treated as zero when counting effective samples
_weight_tol = 1e-12
_error_tol = 1e-10


def _with_intercept(x: np.ndarray) -> np.ndarray:
    return np.column_stack([np.ones(x.shape[0]), x])


class WeightedFit(BaseModel):

    """Result of a weighted least squares fit with intercept

    Args:
        features (t.Tuple[int, ...]): column indices of the regressors, in fitted order
        coefficients (np.ndarray): fitted coefficients, aligned with features
        intercept (float): fitted intercept
        score (float): weighted coefficient of determination
    """

    features: t.Tuple[int, ...]
    coefficients: np.ndarray
    intercept: float
    score: float

    class Config:
        arbitrary_types_allowed = True
        frozen = True

    def predict(self, x: np.ndarray) -> np.ndarray:
        x = np.atleast_2d(x)
        return self.intercept + x[:, list(self.features)].dot(self.coefficients)


def effective_sample_size(weights: np.ndarray) -> int:
    """Number of samples with a non-negligible weight"""
    return int(np.sum(weights > _weight_tol))


def check_design(weights: np.ndarray, n_params: int) -> None:
    """Checks that a weighted regression with n_params parameters (intercept included) is identifiable

    Args:
        weights (np.ndarray): sample weights
        n_params (int): number of fitted parameters

    Raises:
        NumericalError: if weights are invalid or there are fewer effective samples than parameters
    """
    if not np.all(np.isfinite(weights)) or np.any(weights < 0):
        raise NumericalError("Sample weights must be finite and non-negative")

    n_eff = effective_sample_size(weights)
    if n_eff < n_params:
        raise NumericalError(
            f"Weighted regression is underdetermined: {n_eff} effective samples for {n_params} parameters; try a larger kernel width or more samples"
        )


def weighted_r2(y: np.ndarray, fitted: np.ndarray, weights: np.ndarray) -> float:
    """Weighted coefficient of determination. A constant target that is fitted exactly has a score of 1.

    Args:
        y (np.ndarray): target values
        fitted (np.ndarray): fitted values
        weights (np.ndarray): sample weights

    Returns:
        float
    """
    ybar = np.average(y, weights=weights)
    ssr = np.sum(weights * (y - fitted) ** 2)
    tss = np.sum(weights * (y - ybar) ** 2)
    # tolerance relative to the size of the outputs
    scale = np.sum(weights * y ** 2)
    if tss <= _error_tol * scale:
        return 1.0 if ssr <= _error_tol * scale else 0.0
    return float(1 - ssr / tss)


def wls(
    x: np.ndarray, y: np.ndarray, weights: np.ndarray, features: t.Sequence[int]
) -> WeightedFit:
    """Fits a weighted least squares model with intercept on a subset of columns

    Args:
        x (np.ndarray): regressor matrix
        y (np.ndarray): target vector
        weights (np.ndarray): sample weights
        features (t.Sequence[int]): columns of x to use

    Returns:
        WeightedFit

    Raises:
        NumericalError: if the weighted design is underdetermined or rank deficient
    """
    features = tuple(int(j) for j in features)
    check_design(weights, len(features) + 1)

    design = _with_intercept(x[:, list(features)])
    mask = weights > _weight_tol
    whitened = design[mask] * np.sqrt(weights[mask]).reshape((-1, 1))
    if np.linalg.matrix_rank(whitened) < design.shape[1]:
        raise NumericalError(
            f"Weighted design matrix is rank deficient for features {features}"
        )

    results = sm.WLS(y[mask], design[mask], weights=weights[mask]).fit()
    params = np.asarray(results.params)

    return WeightedFit(
        features=features,
        coefficients=params[1:],
        intercept=float(params[0]),
        score=weighted_r2(y[mask], np.asarray(results.fittedvalues), weights[mask]),
    )


def _weighted_ssr(x: np.ndarray, y: np.ndarray, sqrt_w: np.ndarray, features: t.List[int]) -> float:
    design = _with_intercept(x[:, features])
    wx, wy = design * sqrt_w.reshape((-1, 1)), y * sqrt_w
    coef, _, rank, _ = np.linalg.lstsq(wx, wy, rcond=None)
    if rank < design.shape[1]:
        return np.inf
    return float(np.sum((wy - wx.dot(coef)) ** 2))


def forward_selection(
    x: np.ndarray, y: np.ndarray, weights: np.ndarray, n_features: int
) -> t.List[int]:
    """Greedily adds the feature that minimises the weighted residual sum of squares, until n_features are selected

    Args:
        x (np.ndarray): regressor matrix
        y (np.ndarray): target vector
        weights (np.ndarray): sample weights
        n_features (int): number of features to select

    Returns:
        t.List[int]: selected column indices, in order of inclusion
    """
    sqrt_w = np.sqrt(weights)
    selected = []
    candidates = list(range(x.shape[1]))
    while len(selected) < n_features and candidates:
        ssr = [_weighted_ssr(x, y, sqrt_w, selected + [j]) for j in candidates]
        best = int(np.argmin(ssr))
        if not np.isfinite(ssr[best]):
            break
        selected.append(candidates.pop(best))
    return selected


def highest_weights(
    x: np.ndarray, y: np.ndarray, weights: np.ndarray, n_features: int
) -> t.List[int]:
    """Fits a weighted regression on all features and keeps the n_features with the largest absolute standardised coefficients

    Args:
        x (np.ndarray): regressor matrix
        y (np.ndarray): target vector
        weights (np.ndarray): sample weights
        n_features (int): number of features to select

    Returns:
        t.List[int]: selected column indices, by decreasing relevance
    """
    sqrt_w = np.sqrt(weights)
    design = _with_intercept(x)
    coef, *_ = np.linalg.lstsq(design * sqrt_w.reshape((-1, 1)), y * sqrt_w, rcond=None)
    # relevance in target units
    mu = np.average(x, axis=0, weights=weights)
    spread = np.sqrt(np.average((x - mu) ** 2, axis=0, weights=weights))
    relevance = np.abs(coef[1:] * spread)
    order = np.argsort(-relevance, kind="stable")
    return [int(j) for j in order[:n_features]]


def lasso_path(
    x: np.ndarray,
    y: np.ndarray,
    weights: np.ndarray,
    n_features: int,
    n_alphas: int = 50,
) -> t.List[int]:
    """Weighted Lasso path through `statsmodels` elastic net fits with an unpenalised intercept; returns the support of the least regularised fit with at most n_features non-zero coefficients

    Args:
        x (np.ndarray): regressor matrix
        y (np.ndarray): target vector
        weights (np.ndarray): sample weights
        n_features (int): maximum number of features to select
        n_alphas (int, optional): number of penalty levels in the path

    Returns:
        t.List[int]: selected column indices
    """
    mask = weights > _weight_tol
    x, y, w = x[mask], y[mask], weights[mask]

    # standardise so that a single penalty level is meaningful across features
    mu = np.average(x, axis=0, weights=w)
    sd = np.sqrt(np.average((x - mu) ** 2, axis=0, weights=w))
    sd[sd <= 0] = 1.0
    z = (x - mu) / sd
    yc = y - np.average(y, weights=w)

    alpha_max = np.max(np.abs((w.reshape((-1, 1)) * z).T.dot(yc))) / np.sum(w)
    if alpha_max <= 0:
        return []

    model = sm.WLS(y, _with_intercept(z), weights=w)
    selected = []
    for alpha in np.geomspace(alpha_max, alpha_max * 1e-4, n_alphas):
        penalty = np.concatenate([[0.0], np.full(z.shape[1], alpha)])
        params = np.asarray(
            model.fit_regularized(method="elastic_net", alpha=penalty, L1_wt=1.0).params
        )
        support = [int(j) for j in np.flatnonzero(np.abs(params[1:]) > _error_tol)]
        if len(support) > n_features:
            break
        selected = support
    return selected


_selectors = {
    "forward_selection": forward_selection,
    "highest_weights": highest_weights,
    "lasso_path": lasso_path,
}

feature_selection_methods = tuple(_selectors) + ("auto",)


def select_features(
    x: np.ndarray,
    y: np.ndarray,
    weights: np.ndarray,
    n_features: int,
    method: str = "auto",
) -> t.List[int]:
    """Selects at most n_features columns of x that are most relevant to the weighted regression of y on x

    Args:
        x (np.ndarray): regressor matrix
        y (np.ndarray): target vector
        weights (np.ndarray): sample weights
        n_features (int): maximum number of features to select
        method (str, optional): one of 'forward_selection', 'highest_weights', 'lasso_path' or 'auto'; 'auto' uses forward selection for up to 6 features and highest weights otherwise

    Returns:
        t.List[int]: selected column indices

    Raises:
        InvalidInputError: if the method is not recognised
    """
    if method == "auto":
        method = "forward_selection" if n_features <= 6 else "highest_weights"

    if method not in _selectors:
        raise InvalidInputError(
            f"feature selection must be one of {feature_selection_methods}, got '{method}'"
        )

    n_features = min(n_features, x.shape[1])
    selected = _selectors[method](x, y, weights, n_features)[:n_features]
    logger.debug(f"Selected features {selected} using {method}")
    return selected
