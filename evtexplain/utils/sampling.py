"""
This module contains the sampling side of local surrogate explanations: per-feature reference statistics computed from training data, Gaussian perturbations around a query point, distances from perturbed samples to the query point and the exponential kernel that turns distances into similarity weights.
"""
from __future__ import annotations

import logging
import typing as t
import warnings

import numpy as np
import pandas as pd

from scipy.spatial.distance import cdist
from scipy.stats import norm

from pydantic import BaseModel, validator

from evtexplain.errors import ConfigurationError, InvalidInputError

logger = logging.getLogger(__name__)

SeedLike = t.Optional[t.Union[int, np.random.Generator]]


class ReferenceStatistics(BaseModel):

    """Per-feature summary statistics of a training reference set. Instances are immutable and are usually created through `from_data`.

    Args:
        feature_names (t.Tuple[str, ...]): ordered feature names
        mean (np.ndarray): per-feature means
        std (np.ndarray): per-feature (population) standard deviations
        n_rows (int): number of rows in the reference set
    """

    feature_names: t.Tuple[str, ...]
    mean: np.ndarray
    std: np.ndarray
    n_rows: int

    class Config:
        arbitrary_types_allowed = True
        frozen = True

    def __repr__(self):
        return f"Reference statistics for {self.n_features} features computed from {self.n_rows} rows"

    @validator("std", allow_reuse=True)
    def check_std(cls, std):
        if np.any(std < 0):
            raise ValueError("Negative standard deviations are present")
        return std

    @property
    def n_features(self) -> int:
        return len(self.feature_names)

    @property
    def zero_variance(self) -> np.ndarray:
        """Boolean mask of features with no variation in the reference set"""
        return self.std <= 0

    @property
    def perturbation_scale(self) -> np.ndarray:
        """Standard deviations used for perturbations; zero variance features get unit scale"""
        return np.where(self.zero_variance, 1.0, self.std)

    @classmethod
    def from_data(
        cls,
        data: t.Union[np.ndarray, pd.DataFrame],
        feature_names: t.Optional[t.Sequence[str]] = None,
        standardize: bool = True,
    ) -> ReferenceStatistics:
        """Computes reference statistics from a collection of feature vectors

        Args:
            data (t.Union[np.ndarray, pd.DataFrame]): reference rows; if a data frame is passed and no feature names are given, column names are used
            feature_names (t.Optional[t.Sequence[str]], optional): unique feature names matching the row length; defaults to x0, x1, ...
            standardize (bool, optional): whether variance-normalised distances will be used; if True, zero variance features are rejected

        Returns:
            ReferenceStatistics

        Raises:
            ConfigurationError: if the data is empty, malformed or inconsistent with the feature names
        """
        if isinstance(data, pd.DataFrame):
            if feature_names is None:
                feature_names = [str(col) for col in data.columns]
            data = data.to_numpy()

        try:
            data = np.asarray(data, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Reference data must be numeric: {e}") from e

        if data.ndim != 2:
            raise ConfigurationError(
                f"Reference data must be a 2-dimensional array, got {data.ndim} dimensions"
            )

        n_rows, n_features = data.shape
        if n_rows == 0 or n_features == 0:
            raise ConfigurationError("Reference data is empty")

        if not np.all(np.isfinite(data)):
            raise ConfigurationError("Reference data contains non-finite values")

        if feature_names is None:
            feature_names = [f"x{k}" for k in range(n_features)]

        feature_names = tuple(str(name) for name in feature_names)
        if len(feature_names) != n_features:
            raise ConfigurationError(
                f"Got {len(feature_names)} feature names for {n_features} features"
            )
        if len(set(feature_names)) != n_features:
            raise ConfigurationError("Feature names must be unique")

        mean = data.mean(axis=0)
        std = data.std(axis=0)

        zero_var = [name for name, s in zip(feature_names, std) if s <= 0]
        if zero_var:
            if standardize:
                raise ConfigurationError(
                    f"Features with zero variance can't be standardised: {zero_var}"
                )
            warnings.warn(
                f"Features with zero variance in reference data will be perturbed with unit scale: {zero_var}"
            )

        logger.debug(f"Computed reference statistics from {n_rows} rows and {n_features} features")

        return cls(feature_names=feature_names, mean=mean, std=std, n_rows=n_rows)

    def check_query(self, query_point: t.Union[np.ndarray, t.Sequence[float]]) -> np.ndarray:
        """Validates a query point against the reference features

        Args:
            query_point (t.Union[np.ndarray, t.Sequence[float]]): query vector

        Returns:
            np.ndarray: query point as a float array

        Raises:
            InvalidInputError: if the query point is malformed
        """
        if isinstance(query_point, pd.Series):
            query_point = query_point.to_numpy()

        try:
            x = np.asarray(query_point, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise InvalidInputError(f"Query point must be numeric: {e}") from e

        if x.ndim != 1 or len(x) != self.n_features:
            raise InvalidInputError(
                f"Query point must be a vector of length {self.n_features}, got shape {x.shape}"
            )
        if not np.all(np.isfinite(x)):
            raise InvalidInputError("Query point contains non-finite values")

        return x

    def standardize(self, x: np.ndarray) -> np.ndarray:
        """z-score normalises rows of x using reference means and standard deviations"""
        return (x - self.mean) / self.perturbation_scale


def perturb(
    query_point: np.ndarray,
    scale: np.ndarray,
    size: int,
    seed: SeedLike = None,
) -> np.ndarray:
    """Samples Gaussian perturbations around a query point, independently per feature. The first row is the unperturbed query point, so `size - 1` rows are random.

    Args:
        query_point (np.ndarray): centre of the perturbations
        scale (np.ndarray): per-feature standard deviations
        size (int): total number of rows, including the query point
        seed (SeedLike, optional): integer seed or numpy Generator

    Returns:
        np.ndarray: array of shape (size, n_features)
    """
    rng = np.random.default_rng(seed)
    samples = np.empty((size, len(query_point)), dtype=np.float64)
    samples[0] = query_point
    if size > 1:
        samples[1:] = norm.rvs(
            loc=query_point,
            scale=scale,
            size=(size - 1, len(query_point)),
            random_state=rng,
        )
    return samples


def distances(
    samples: np.ndarray,
    query_point: np.ndarray,
    metric: str = "euclidean",
    reference: t.Optional[ReferenceStatistics] = None,
) -> np.ndarray:
    """Computes distances from each sample to the query point. If reference statistics are passed, both are z-score normalised first, so that no feature dominates because of its numeric scale.

    Args:
        samples (np.ndarray): sample rows
        query_point (np.ndarray): query vector
        metric (str, optional): any metric accepted by `scipy.spatial.distance.cdist`
        reference (t.Optional[ReferenceStatistics], optional): statistics used for normalisation

    Returns:
        np.ndarray: distance vector

    Raises:
        InvalidInputError: if the metric is not recognised
    """
    if reference is not None:
        samples = reference.standardize(samples)
        query_point = reference.standardize(query_point)

    try:
        return cdist(samples, query_point.reshape((1, -1)), metric=metric).ravel()
    except ValueError as e:
        raise InvalidInputError(f"Invalid distance metric '{metric}': {e}") from e


def exponential_kernel(d: np.ndarray, kernel_width: float) -> np.ndarray:
    """Similarity weights given by exp(-d^2 / w^2); they equal 1 at distance 0 and decay monotonically.

    Args:
        d (np.ndarray): distances
        kernel_width (float): kernel width w

    Returns:
        np.ndarray: weights
    """
    return np.exp(-(d ** 2) / kernel_width ** 2)


def default_kernel_width(n_features: int) -> float:
    return 0.75 * np.sqrt(n_features)
