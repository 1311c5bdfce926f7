"""
This module implements model-agnostic local surrogate explanations. An `Explainer` is bound to a black-box prediction function and to summary statistics of a training reference set; for a given query point it samples Gaussian perturbations around it, evaluates the black box on them, weights them by their similarity to the query point and fits a sparse weighted linear model that approximates the black box locally. The weighted coefficient of determination of that fit is reported alongside the coefficients, as a low value indicates that the black box is not close to linear around the query point.

Vector-valued predictors, such as generalised Pareto parameter regressions returning scale and shape, are explained one output at a time through the `label` argument.
"""
from __future__ import annotations

import logging
import typing as t
import warnings

import numpy as np
import pandas as pd

from pydantic import (
    BaseModel,
    ValidationError,
    validator,
    PositiveFloat,
    PositiveInt,
)

from evtexplain.errors import ConfigurationError, InvalidInputError
from evtexplain.utils import evaluation, regression, sampling
from evtexplain.utils.evaluation import CancelToken
from evtexplain.utils.sampling import ReferenceStatistics, SeedLike

logger = logging.getLogger(__name__)


class ExplanationSettings(BaseModel):

    """Options of a single explanation request

    Args:
        n_features (PositiveInt): maximum number of features in the explanation
        n_samples (PositiveInt): number of samples, including the query point itself
        kernel_width (t.Optional[PositiveFloat]): kernel width; if None, 0.75 times the square root of the number of features is used
        sample_scale (PositiveFloat): multiplier of the reference standard deviations used for perturbations
        distance_metric (str): metric passed to `scipy.spatial.distance.cdist`
        feature_selection (str): feature selection method; see `evtexplain.utils.regression.select_features`
        label (t.Optional[int]): output column for vector-valued predictors
        batch_size (t.Optional[PositiveInt]): rows per batched predictor call
        n_cores (PositiveInt): worker processes for row by row evaluation
        min_score (float): explanations with a lower score trigger a warning
    """

    n_features: PositiveInt = 10
    n_samples: PositiveInt = 5000
    kernel_width: t.Optional[PositiveFloat] = None
    sample_scale: PositiveFloat = 1.0
    distance_metric: str = "euclidean"
    feature_selection: str = "auto"
    label: t.Optional[int] = None
    batch_size: t.Optional[PositiveInt] = None
    n_cores: PositiveInt = 1
    min_score: float = 0.5

    class Config:
        extra = "forbid"

    @validator("feature_selection", allow_reuse=True)
    def check_feature_selection(cls, feature_selection):
        if feature_selection not in regression.feature_selection_methods:
            raise ValueError(
                f"feature_selection must be one of {regression.feature_selection_methods}"
            )
        return feature_selection

    @validator("label", allow_reuse=True)
    def check_label(cls, label):
        if label is not None and label < 0:
            raise ValueError("label must be non-negative")
        return label


class Explanation(BaseModel):

    """Sparse local linear explanation of a black-box prediction. The fitted surrogate is `intercept + sum(coefficients[name] * x[name])` over the selected features.

    Args:
        feature_names (t.Tuple[str, ...]): selected features, in selection order
        coefficients (np.ndarray): surrogate coefficients aligned with feature_names
        intercept (float): surrogate intercept
        score (float): weighted coefficient of determination of the local fit
        query_point (np.ndarray): explained point
        values (np.ndarray): query point values of the selected features
        query_prediction (float): black-box prediction at the query point
        local_prediction (float): surrogate prediction at the query point
        kernel_width (float): kernel width used for sample weights
        n_samples (int): number of samples used, including the query point
        feature_selection (str): feature selection method used
        label (t.Optional[int]): explained output column, if any
    """

    feature_names: t.Tuple[str, ...]
    coefficients: np.ndarray
    intercept: float
    score: float
    query_point: np.ndarray
    values: np.ndarray
    query_prediction: float
    local_prediction: float
    kernel_width: float
    n_samples: int
    feature_selection: str
    label: t.Optional[int] = None

    class Config:
        arbitrary_types_allowed = True
        frozen = True

    def __repr__(self):
        terms = ", ".join(f"{name}: {coef:.4g}" for name, coef in self.as_list())
        return f"Local explanation ({terms}; intercept: {self.intercept:.4g}, score: {self.score:.3f})"

    def __str__(self):
        return self.__repr__()

    def as_map(self) -> t.Dict[str, float]:
        """Returns a feature name to coefficient mapping"""
        return {name: float(coef) for name, coef in zip(self.feature_names, self.coefficients)}

    def as_list(self) -> t.List[t.Tuple[str, float]]:
        """Returns (feature name, coefficient) pairs sorted by decreasing absolute coefficient"""
        return sorted(self.as_map().items(), key=lambda item: -abs(item[1]))

    def as_dataframe(self) -> pd.DataFrame:
        """Returns a data frame with one row per selected feature, with the feature's value at the query point, its coefficient and its contribution to the local prediction relative to the intercept

        Returns:
            pd.DataFrame
        """
        df = pd.DataFrame(self.as_list(), columns=["feature", "coefficient"])
        values = dict(zip(self.feature_names, self.values))
        df["value"] = df["feature"].map(values)
        df["contribution"] = df["coefficient"] * df["value"]
        return df


class Explainer(BaseModel):

    """Local surrogate explainer for a black-box predictor. Instances are immutable and are created through `build`.

    Args:
        reference (ReferenceStatistics): per-feature statistics of the reference data
        predict_fn (t.Callable): black-box prediction function
        standardize (bool): whether distances are computed on z-scored features
        batch_predict (bool): whether predict_fn takes batches of rows
    """

    reference: ReferenceStatistics
    predict_fn: t.Callable
    standardize: bool = True
    batch_predict: bool = True

    class Config:
        arbitrary_types_allowed = True
        frozen = True

    def __repr__(self):
        return f"Local surrogate explainer over {self.reference.n_features} features"

    @property
    def feature_names(self) -> t.Tuple[str, ...]:
        return self.reference.feature_names

    @classmethod
    def build(
        cls,
        reference_data: t.Union[np.ndarray, pd.DataFrame],
        predict_fn: t.Callable,
        feature_names: t.Optional[t.Sequence[str]] = None,
        standardize: bool = True,
        batch_predict: bool = True,
    ) -> Explainer:
        """Creates an explainer from reference data and a prediction function

        Args:
            reference_data (t.Union[np.ndarray, pd.DataFrame]): non-empty reference rows, used only for per-feature means and standard deviations
            predict_fn (t.Callable): black-box predictor; see `batch_predict`
            feature_names (t.Optional[t.Sequence[str]], optional): unique feature names; defaults to data frame columns or x0, x1, ...
            standardize (bool, optional): whether distances are computed on z-scored features; zero variance features are rejected if True
            batch_predict (bool, optional): if True, predict_fn maps an (n, p) array to n outputs; otherwise it maps a single row to its output

        Returns:
            Explainer

        Raises:
            ConfigurationError: if the reference data, feature names or predictor are invalid
        """
        if not callable(predict_fn):
            raise ConfigurationError("predict_fn must be callable")

        reference = ReferenceStatistics.from_data(
            reference_data, feature_names=feature_names, standardize=standardize
        )

        return cls(
            reference=reference,
            predict_fn=predict_fn,
            standardize=standardize,
            batch_predict=batch_predict,
        )

    def explain(
        self,
        query_point: t.Union[np.ndarray, t.Sequence[float], pd.Series],
        n_features: int = 10,
        n_samples: int = 5000,
        kernel_width: t.Optional[float] = None,
        seed: SeedLike = None,
        cancel: t.Optional[CancelToken] = None,
        progress: bool = False,
        **kwargs,
    ) -> Explanation:
        """Explains the black-box prediction at a query point with a sparse weighted linear surrogate

        Args:
            query_point (t.Union[np.ndarray, t.Sequence[float], pd.Series]): point to explain
            n_features (int, optional): maximum number of features in the explanation
            n_samples (int, optional): number of samples, including the query point itself
            kernel_width (t.Optional[float], optional): kernel width; if None, 0.75 times the square root of the number of features is used
            seed (SeedLike, optional): integer seed or numpy Generator for the perturbations
            cancel (t.Optional[CancelToken], optional): object with an `is_set` method; if set before predictor evaluation finishes, the request is aborted
            progress (bool, optional): whether to show a progress bar during predictor evaluation
            **kwargs: other fields of `ExplanationSettings`

        Returns:
            Explanation

        Raises:
            InvalidInputError: if the query point or the options are invalid
            NumericalError: if the local regression is degenerate
            ExplanationCancelled: if the request is cancelled
        """
        try:
            settings = ExplanationSettings(
                n_features=n_features,
                n_samples=n_samples,
                kernel_width=kernel_width,
                **kwargs,
            )
        except ValidationError as e:
            raise InvalidInputError(f"Invalid explanation options: {e}") from e

        x = self.reference.check_query(query_point)
        k = min(settings.n_features, self.reference.n_features)
        width = (
            settings.kernel_width
            if settings.kernel_width is not None
            else sampling.default_kernel_width(self.reference.n_features)
        )

        samples = sampling.perturb(
            x,
            scale=settings.sample_scale * self.reference.perturbation_scale,
            size=settings.n_samples,
            seed=seed,
        )

        y = evaluation.evaluate(
            self.predict_fn,
            samples,
            batch_predict=self.batch_predict,
            batch_size=settings.batch_size,
            n_cores=settings.n_cores,
            label=settings.label,
            cancel=cancel,
            progress=progress,
        )

        d = sampling.distances(
            samples,
            x,
            metric=settings.distance_metric,
            reference=self.reference if self.standardize else None,
        )
        weights = sampling.exponential_kernel(d, width)

        regression.check_design(weights, k + 1)
        logger.debug(
            f"{regression.effective_sample_size(weights)} effective samples out of {len(weights)}"
        )

        selected = regression.select_features(
            samples, y, weights, k, method=settings.feature_selection
        )
        fit = regression.wls(samples, y, weights, selected)

        if fit.score < settings.min_score:
            warnings.warn(
                f"Local surrogate fit has a low score ({fit.score:.3f}); it might be a poor approximation of the predictor around the query point. Consider a smaller kernel width.",
                stacklevel=2,
            )

        explanation = Explanation(
            feature_names=tuple(self.feature_names[j] for j in fit.features),
            coefficients=fit.coefficients,
            intercept=fit.intercept,
            score=fit.score,
            query_point=x,
            values=x[list(fit.features)],
            query_prediction=float(y[0]),
            local_prediction=float(fit.predict(x)[0]),
            kernel_width=float(width),
            n_samples=settings.n_samples,
            feature_selection=settings.feature_selection,
            label=settings.label,
        )
        return explanation


def build(
    reference_data: t.Union[np.ndarray, pd.DataFrame],
    predict_fn: t.Callable,
    feature_names: t.Optional[t.Sequence[str]] = None,
    standardize: bool = True,
    batch_predict: bool = True,
) -> Explainer:
    """Creates an explainer; see `Explainer.build`"""
    return Explainer.build(
        reference_data,
        predict_fn,
        feature_names=feature_names,
        standardize=standardize,
        batch_predict=batch_predict,
    )


def explain(explainer: Explainer, query_point: t.Union[np.ndarray, t.Sequence[float]], **kwargs) -> Explanation:
    """Explains a prediction; see `Explainer.explain`"""
    return explainer.explain(query_point, **kwargs)
