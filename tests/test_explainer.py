import threading

import pytest as pt
import numpy as np
import pandas as pd

from evtexplain import (
  build,
  explain,
  Explainer,
  Explanation,
  ConfigurationError,
  InvalidInputError,
  NumericalError,
  ExplanationCancelled,
)
from evtexplain.utils.sampling import perturb

tol = 1e-6
rng = np.random.default_rng(1)
reference = rng.normal(size=(1000, 3))


def linear(x):
  return 2 * x[:, 0] - 1 * x[:, 1] + 0 * x[:, 2] + 5


def test_linear_scenario():
  """Three independent standard normal features explained at the origin with two features"""
  explainer = build(reference, linear, ["a", "b", "c"])
  exp = explain(explainer, [0, 0, 0], n_features=2, n_samples=2000, seed=1)

  assert isinstance(exp, Explanation)
  assert set(exp.feature_names) == {"a", "b"}
  coefs = exp.as_map()
  assert np.isclose(coefs["a"], 2, atol=tol)
  assert np.isclose(coefs["b"], -1, atol=tol)
  assert np.isclose(exp.intercept, 5, atol=tol)
  assert np.isclose(exp.score, 1, atol=tol)
  assert np.isclose(exp.query_prediction, 5)
  assert np.isclose(exp.local_prediction, 5, atol=tol)
  assert exp.as_list()[0][0] == "a"


def test_linear_recovery_all_features():
  w = np.array([0.5, -3.0, 1.5])
  explainer = Explainer.build(reference, lambda x: x.dot(w) - 2)
  query = np.array([1.0, -0.5, 2.0])
  exp = explainer.explain(query, n_features=3, n_samples=1000, seed=3)

  assert exp.feature_names == ("x1", "x2", "x0")
  coefs = exp.as_map()
  assert np.allclose([coefs["x0"], coefs["x1"], coefs["x2"]], w, atol=tol)
  assert np.isclose(exp.intercept, -2, atol=tol)
  assert np.isclose(exp.score, 1, atol=tol)
  assert np.isclose(exp.local_prediction, exp.query_prediction, atol=tol)


def test_constant_predictor():
  explainer = build(reference, lambda x: np.full(len(x), 3.5))
  for query in ([0, 0, 0], [10, -4, 2]):
    exp = explain(explainer, query, n_features=2, n_samples=500, seed=2)
    assert np.allclose(exp.coefficients, 0, atol=tol)
    assert np.isclose(exp.intercept, 3.5, atol=tol)
    assert exp.score == 1.0


def test_feature_count_bound():
  explainer = build(reference, linear)
  for n_features in (1, 2, 3, 10):
    for method in ("forward_selection", "highest_weights", "lasso_path", "auto"):
      exp = explain(
        explainer,
        [0.1, 0.2, 0.3],
        n_features=n_features,
        n_samples=500,
        seed=4,
        feature_selection=method,
      )
      assert len(exp.feature_names) <= min(n_features, 3)
      assert len(exp.coefficients) == len(exp.feature_names)


def test_determinism():
  def nonlinear(x):
    return np.exp(0.3 * x[:, 0]) + np.sin(x[:, 1]) * x[:, 2]

  explainer = build(reference, nonlinear)
  exp1 = explain(explainer, [0.5, 1.0, -1.0], n_features=2, n_samples=800, seed=11)
  exp2 = explain(explainer, [0.5, 1.0, -1.0], n_features=2, n_samples=800, seed=11)

  assert exp1.feature_names == exp2.feature_names
  assert np.array_equal(exp1.coefficients, exp2.coefficients)
  assert exp1.intercept == exp2.intercept
  assert exp1.score == exp2.score


def test_seed_generator_injection():
  explainer = build(reference, linear)
  exp1 = explain(explainer, [0, 0, 0], n_features=2, n_samples=300, seed=np.random.default_rng(5))
  exp2 = explain(explainer, [0, 0, 0], n_features=2, n_samples=300, seed=5)
  assert np.array_equal(exp1.coefficients, exp2.coefficients)


def test_wide_kernel_matches_global_fit():
  def quadratic(x):
    return x[:, 0] ** 2 + x[:, 1]

  explainer = build(reference, quadratic)
  query = np.array([0.5, 0.0, 0.0])
  exp = explain(explainer, query, n_features=3, n_samples=1000, kernel_width=1e8, seed=7)

  # same perturbations, unweighted least squares on all features
  samples = perturb(query, reference.std(axis=0), size=1000, seed=7)
  design = np.column_stack([np.ones(len(samples)), samples])
  coef, *_ = np.linalg.lstsq(design, quadratic(samples), rcond=None)

  coefs = exp.as_map()
  assert np.isclose(exp.intercept, coef[0], atol=1e-5)
  assert np.allclose([coefs["x0"], coefs["x1"], coefs["x2"]], coef[1:], atol=1e-5)


def test_single_sample_fails():
  explainer = build(reference, linear)
  with pt.raises(NumericalError):
    explain(explainer, [0, 0, 0], n_features=2, n_samples=1, seed=1)


def test_narrow_kernel_fails():
  explainer = build(reference, linear)
  with pt.raises(NumericalError):
    explain(explainer, [0, 0, 0], n_features=2, n_samples=50, kernel_width=1e-6, seed=1)


def test_non_finite_predictions_fail():
  explainer = build(reference, lambda x: np.where(x[:, 0] > 0, x[:, 0], np.nan))
  with pt.raises(NumericalError):
    explain(explainer, [0.1, 0, 0], n_samples=100, seed=1)


def test_build_errors():
  with pt.raises(ConfigurationError):
    build(np.empty((0, 3)), linear)

  with pt.raises(ConfigurationError):
    build(reference, linear, ["a", "b"])

  with pt.raises(ConfigurationError):
    build(reference, linear, ["a", "a", "b"])

  with pt.raises(ConfigurationError):
    build(reference, "not a function")

  with pt.raises(ConfigurationError):
    build(np.ones(10), linear)

  constant_column = reference.copy()
  constant_column[:, 2] = 1.0
  with pt.raises(ConfigurationError):
    build(constant_column, linear)

  with pt.warns(UserWarning):
    explainer = build(constant_column, linear, standardize=False)
  assert np.isclose(explainer.reference.perturbation_scale[2], 1.0)


def test_explain_errors():
  explainer = build(reference, linear)

  with pt.raises(InvalidInputError):
    explain(explainer, [0, 0])

  with pt.raises(InvalidInputError):
    explain(explainer, [0, np.nan, 0])

  with pt.raises(InvalidInputError):
    explain(explainer, [0, 0, 0], n_features=0)

  with pt.raises(InvalidInputError):
    explain(explainer, [0, 0, 0], n_samples=0)

  with pt.raises(InvalidInputError):
    explain(explainer, [0, 0, 0], kernel_width=-1.0)

  with pt.raises(InvalidInputError):
    explain(explainer, [0, 0, 0], feature_selection="backward")

  with pt.raises(InvalidInputError):
    explain(explainer, [0, 0, 0], n_samples=100, distance_metric="not a metric")

  with pt.raises(InvalidInputError):
    explain(explainer, [0, 0, 0], unknown_option=1)

  bad_shape = build(reference, lambda x: np.zeros(len(x) + 1))
  with pt.raises(InvalidInputError):
    explain(bad_shape, [0, 0, 0], n_samples=100)


def test_vector_predictor_labels():
  def two_outputs(x):
    return np.column_stack([linear(x), -3 * x[:, 2]])

  explainer = build(reference, two_outputs)

  with pt.raises(InvalidInputError):
    explain(explainer, [0, 0, 0], n_samples=200)

  with pt.raises(InvalidInputError):
    explain(explainer, [0, 0, 0], n_samples=200, label=2)

  exp = explain(explainer, [0, 0, 0], n_features=1, n_samples=200, label=1, seed=1)
  assert exp.feature_names == ("x2",)
  assert np.isclose(exp.coefficients[0], -3, atol=tol)
  assert exp.label == 1


def test_row_by_row_and_batches():
  batched = build(reference, linear)
  row_by_row = build(reference, lambda row: 2 * row[0] - row[1] + 5, batch_predict=False)

  exp1 = explain(batched, [1, 1, 1], n_features=2, n_samples=300, seed=8, batch_size=64)
  exp2 = explain(row_by_row, [1, 1, 1], n_features=2, n_samples=300, seed=8)

  assert exp1.feature_names == exp2.feature_names
  assert np.allclose(exp1.coefficients, exp2.coefficients, atol=tol)


def test_cancellation():
  event = threading.Event()
  event.set()
  calls = []

  def predictor(x):
    calls.append(len(x))
    return linear(x)

  explainer = build(reference, predictor)
  with pt.raises(ExplanationCancelled):
    explain(explainer, [0, 0, 0], n_samples=100, cancel=event)
  assert calls == []

  # cancelled halfway through evaluation
  event = threading.Event()

  def cancelling_predictor(x):
    event.set()
    return linear(x)

  explainer = build(reference, cancelling_predictor)
  with pt.raises(ExplanationCancelled):
    explain(explainer, [0, 0, 0], n_samples=100, batch_size=10, cancel=event)


def test_low_score_warning():
  def wiggly(x):
    return np.sin(5 * x[:, 0])

  explainer = build(reference, wiggly)
  with pt.warns(UserWarning):
    exp = explain(explainer, [0, 0, 0], n_features=1, n_samples=1000, kernel_width=100.0, seed=1)
  assert exp.score < 0.5


def test_dataframe_inputs_and_outputs():
  df = pd.DataFrame(reference, columns=["temperature", "pressure", "wind"])
  explainer = build(df, linear)
  assert explainer.feature_names == ("temperature", "pressure", "wind")

  query = df.iloc[0]
  exp = explain(explainer, query, n_features=2, n_samples=500, seed=1)
  out = exp.as_dataframe()

  assert list(out.columns) == ["feature", "coefficient", "value", "contribution"]
  assert list(out["feature"]) == ["temperature", "pressure"]
  assert np.isclose(out["value"].iloc[0], query["temperature"])
  assert np.isclose(
    exp.intercept + out["contribution"].sum(), exp.local_prediction, atol=tol
  )
  assert "temperature" in repr(exp)


def test_score_invariant_to_output_scale():
  def quadratic(x):
    return x[:, 0] + 0.5 * x[:, 0] ** 2

  base = explain(build(reference, quadratic), [0, 0, 0], n_features=1, n_samples=2000, seed=1)
  assert 0.5 < base.score < 1 - 1e-3

  for factor in (1e-7, 1e7):
    explainer = build(reference, lambda x: factor * quadratic(x))
    exp = explain(explainer, [0, 0, 0], n_features=1, n_samples=2000, seed=1)
    assert exp.feature_names == base.feature_names
    assert np.isclose(exp.score, base.score)
    assert np.isclose(exp.coefficients[0], factor * base.coefficients[0])


def test_small_outputs_keep_low_score_warning():
  def wiggly(x):
    return 1e-7 * np.sin(5 * x[:, 0])

  explainer = build(reference, wiggly)
  with pt.warns(UserWarning):
    exp = explain(explainer, [0, 0, 0], n_features=1, n_samples=1000, kernel_width=100.0, seed=1)
  assert exp.score < 0.5
