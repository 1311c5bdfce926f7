"""
This package implements local surrogate explanations for black-box estimators used in extreme value analysis, such as neural posterior-mean estimators of dependence parameters, quantile regressions or generalised Pareto parameter regressions. Explanations are weighted linear approximations of the black-box prediction function around a query point, fitted on Gaussian perturbations of that point; see the `evtexplain.explainer` module. Reference generalised Pareto regression predictors are available in `evtexplain.predictors`.
"""
__version__ = "1.0.0-dev"

from evtexplain.errors import (
    EvtExplainError,
    ConfigurationError,
    InvalidInputError,
    NumericalError,
    ExplanationCancelled,
)
from evtexplain.explainer import (
    Explainer,
    Explanation,
    ExplanationSettings,
    ReferenceStatistics,
    build,
    explain,
)
