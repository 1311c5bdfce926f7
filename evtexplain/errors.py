"""
This module defines the exceptions raised by explainers. All of them are raised synchronously to the caller of `build` or `explain`; no partial explanation is ever returned.
"""


class EvtExplainError(Exception):

    """Base class for errors raised by this package"""


class ConfigurationError(EvtExplainError, ValueError):

    """Bad explainer setup: empty or malformed reference data, mismatched feature names, zero variance features when standardised distances are requested."""


class InvalidInputError(EvtExplainError, ValueError):

    """Malformed query point, out of range explanation options or predictor outputs of unexpected shape."""


class NumericalError(EvtExplainError, ArithmeticError):

    """Degenerate local regression, e.g. fewer effective samples than fitted parameters or a rank deficient weighted design. Retrying with a larger kernel width or more samples usually helps."""


class ExplanationCancelled(EvtExplainError):

    """The explanation request was cancelled before it completed."""
