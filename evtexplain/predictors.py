"""
This module contains reference black-box predictors from extreme value analysis that can be explained with `evtexplain.explainer`. `GPRegression` maps covariates to the scale and shape parameters of a generalised Pareto (GP) model for exceedances above a threshold, with a log link for the scale and an identity link for the shape; its return level head maps covariates to conditional quantiles of the fitted tail, as a quantile regression would.
"""
from __future__ import annotations

import logging
import typing as t
import warnings
from functools import partial

import numpy as np

from scipy.stats import genpareto as gpdist
from scipy.optimize import minimize

from pydantic import BaseModel, validator

logger = logging.getLogger(__name__)


class GPRegression(BaseModel):

    """Generalised Pareto regression model for exceedances above a fixed threshold. Given covariates x, exceedances follow a GP distribution with scale exp(x·scale_coef + scale_intercept) and shape x·shape_coef + shape_intercept.

    Args:
        threshold (float): modeling threshold
        scale_coef (np.ndarray): covariate coefficients of the log-scale
        scale_intercept (float): intercept of the log-scale
        shape_coef (np.ndarray): covariate coefficients of the shape
        shape_intercept (float): intercept of the shape
    """

    threshold: float
    scale_coef: np.ndarray
    scale_intercept: float
    shape_coef: np.ndarray
    shape_intercept: float

    class Config:
        arbitrary_types_allowed = True
        frozen = True

    def __repr__(self):
        return f"GP regression with {self.n_features} covariates above threshold {self.threshold}"

    @validator("shape_coef", allow_reuse=True)
    def check_coef_lengths(cls, shape_coef, values):
        scale_coef = values.get("scale_coef")
        if scale_coef is not None and len(scale_coef) != len(shape_coef):
            raise ValueError("Scale and shape coefficient vectors must have the same length")
        return shape_coef

    @property
    def n_features(self) -> int:
        return len(self.scale_coef)

    def params(self, x: np.ndarray) -> t.Tuple[np.ndarray, np.ndarray]:
        """Returns GP scale and shape parameters for each row of x

        Args:
            x (np.ndarray): covariate rows, or a single covariate vector

        Returns:
            t.Tuple[np.ndarray, np.ndarray]: scale and shape arrays
        """
        x = np.atleast_2d(x)
        scale = np.exp(x.dot(self.scale_coef) + self.scale_intercept)
        shape = x.dot(self.shape_coef) + self.shape_intercept
        return scale, shape

    def __call__(self, x: np.ndarray) -> np.ndarray:
        """Returns an (n, 2) array with columns for scale and shape parameters, or a vector of length 2 for a single covariate vector"""
        scale, shape = self.params(x)
        out = np.column_stack([scale, shape])
        return out[0] if np.ndim(x) == 1 else out

    def return_level(self, x: np.ndarray, p: float) -> np.ndarray:
        """Returns the conditional p-quantile of the exceedance distribution for each row of x

        Args:
            x (np.ndarray): covariate rows
            p (float): probability level in (0,1)

        Returns:
            np.ndarray
        """
        if p <= 0 or p >= 1:
            raise ValueError("p must be in the open interval (0,1)")

        scale, shape = self.params(x)
        level = gpdist.ppf(p, loc=self.threshold, c=shape, scale=scale)
        return level[0] if np.ndim(x) == 1 else level

    def return_level_predictor(self, p: float) -> t.Callable:
        """Returns a picklable batched predictor for the conditional p-quantile, suitable as an explainer's black box"""
        if p <= 0 or p >= 1:
            raise ValueError("p must be in the open interval (0,1)")
        return partial(self.return_level, p=p)

    def loglik(self, x: np.ndarray, y: np.ndarray) -> float:
        """Returns the log-likelihood of exceedances y given covariates x"""
        scale, shape = self.params(x)
        return float(np.sum(gpdist.logpdf(y, loc=self.threshold, c=shape, scale=scale)))

    @classmethod
    def from_vector(cls, params: np.ndarray, threshold: float) -> GPRegression:
        """Builds a model from a flat parameter vector laid out as [scale intercept, scale coefficients, shape intercept, shape coefficients]"""
        params = np.asarray(params, dtype=np.float64)
        p = len(params) // 2 - 1
        return cls(
            threshold=threshold,
            scale_intercept=params[0],
            scale_coef=params[1 : p + 1],
            shape_intercept=params[p + 1],
            shape_coef=params[p + 2 :],
        )

    def to_vector(self) -> np.ndarray:
        return np.concatenate(
            [[self.scale_intercept], self.scale_coef, [self.shape_intercept], self.shape_coef]
        )

    @classmethod
    def fit(
        cls,
        x: np.ndarray,
        y: np.ndarray,
        threshold: float,
        x0: t.Optional[np.ndarray] = None,
        maxiter: int = 20000,
    ) -> GPRegression:
        """Fits a GP regression by maximum likelihood on the observations above the threshold

        Args:
            x (np.ndarray): covariate rows
            y (np.ndarray): responses
            threshold (float): modeling threshold
            x0 (t.Optional[np.ndarray], optional): initial parameter vector; if None, an intercept-only fit from scipy.stats.genpareto.fit is used
            maxiter (int, optional): maximum number of optimiser iterations

        Returns:
            GPRegression
        """
        x, y = np.atleast_2d(np.asarray(x, dtype=np.float64)), np.asarray(y, dtype=np.float64)
        if len(x) != len(y):
            raise ValueError("x and y must have the same number of rows")

        idx = y > threshold
        if np.sum(idx) == 0:
            raise ValueError("There are no observations above the threshold")
        x, y = x[idx], y[idx]
        p = x.shape[1]

        if x0 is None:
            # use default scipy fitter to get an intercept-only starting point
            shape, _, scale = gpdist.fit(y, floc=threshold)
            x0 = np.concatenate([[np.log(scale)], np.zeros(p), [shape], np.zeros(p)])

        def loss(params):
            value = cls.from_vector(params, threshold).loglik(x, y)
            # parameters that put observations outside the support have zero likelihood
            return -value / len(y) if np.isfinite(value) else np.inf

        res = minimize(
            fun=loss,
            x0=x0,
            method="Nelder-Mead",
            options={"maxiter": maxiter, "maxfev": maxiter, "xatol": 1e-6, "fatol": 1e-9},
        )

        if not res.success:
            warnings.warn(f"GP regression fit did not converge: {res.message}")

        logger.debug(f"GP regression fit finished after {res.nit} iterations")

        return cls.from_vector(res.x, threshold)
