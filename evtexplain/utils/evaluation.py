"""
This module evaluates black-box predictors on perturbed samples. Predictors can be evaluated in batches, one call per chunk of rows, or row by row, optionally on multiple cores. Evaluation can be cancelled cooperatively between chunks; a cancelled evaluation never returns partial results.
"""
from __future__ import annotations

import logging
import time
import typing as t
from multiprocessing import Pool

import numpy as np
from tqdm import tqdm

from evtexplain.errors import ExplanationCancelled, InvalidInputError, NumericalError

logger = logging.getLogger(__name__)


class CancelToken(t.Protocol):
    def is_set(self) -> bool:
        ...


def _check_cancelled(cancel: t.Optional[CancelToken]) -> None:
    if cancel is not None and cancel.is_set():
        raise ExplanationCancelled("Explanation request was cancelled")


def _chunks(n: int, size: t.Optional[int]) -> t.List[slice]:
    size = n if size is None else size
    return [slice(start, min(start + size, n)) for start in range(0, n, size)]


def select_output(outputs: np.ndarray, n: int, label: t.Optional[int] = None) -> np.ndarray:
    """Reduces predictor outputs to one scalar per sample

    Args:
        outputs (np.ndarray): raw outputs, of shape (n,) or (n, m)
        n (int): expected number of outputs
        label (t.Optional[int], optional): output column for vector-valued predictors

    Returns:
        np.ndarray: vector of length n

    Raises:
        InvalidInputError: if outputs have the wrong shape or the label is missing or out of range
        NumericalError: if there are non-finite outputs
    """
    outputs = np.asarray(outputs, dtype=np.float64)
    if outputs.ndim == 0 or len(outputs) != n:
        raise InvalidInputError(
            f"Predictor returned outputs of shape {outputs.shape} for {n} samples"
        )

    if outputs.ndim == 2:
        n_outputs = outputs.shape[1]
        if label is None:
            if n_outputs != 1:
                raise InvalidInputError(
                    f"Predictor returns {n_outputs} outputs per sample; a label must be passed to choose one"
                )
            label = 0
        if not 0 <= label < n_outputs:
            raise InvalidInputError(
                f"label must be between 0 and {n_outputs - 1}, got {label}"
            )
        outputs = outputs[:, label]
    elif outputs.ndim != 1:
        raise InvalidInputError(
            f"Predictor outputs must be 1 or 2-dimensional, got shape {outputs.shape}"
        )
    elif label not in (None, 0):
        raise InvalidInputError(
            f"Predictor returns scalar outputs; label {label} is out of range"
        )

    if not np.all(np.isfinite(outputs)):
        raise NumericalError("Predictor returned non-finite values")

    return outputs


def evaluate(
    predict_fn: t.Callable,
    samples: np.ndarray,
    batch_predict: bool = True,
    batch_size: t.Optional[int] = None,
    n_cores: int = 1,
    label: t.Optional[int] = None,
    cancel: t.Optional[CancelToken] = None,
    progress: bool = False,
) -> np.ndarray:
    """Evaluates a predictor on every sample row, preserving row order

    Args:
        predict_fn (t.Callable): if batch_predict is True, a function mapping an (n, p) array to n outputs; otherwise a function mapping a single row to its output
        samples (np.ndarray): sample rows
        batch_predict (bool, optional): whether predict_fn takes batches of rows
        batch_size (t.Optional[int], optional): rows per batched call; if None, all rows are passed in a single call
        n_cores (int, optional): number of worker processes for row by row evaluation; predict_fn must be picklable if larger than 1
        label (t.Optional[int], optional): output column for vector-valued predictors
        cancel (t.Optional[CancelToken], optional): object with an `is_set` method, checked before and between chunks
        progress (bool, optional): whether to show a progress bar

    Returns:
        np.ndarray: one scalar output per sample

    Raises:
        ExplanationCancelled: if cancellation is observed before all rows are evaluated
    """
    n = len(samples)
    start = time.time()
    _check_cancelled(cancel)

    if batch_predict:
        outputs = []
        for chunk in tqdm(_chunks(n, batch_size), disable=not progress):
            _check_cancelled(cancel)
            values = np.asarray(predict_fn(samples[chunk]), dtype=np.float64)
            expected = chunk.stop - chunk.start
            if values.ndim == 0 or len(values) != expected:
                raise InvalidInputError(
                    f"Predictor returned outputs of shape {values.shape} for a batch of {expected} samples"
                )
            outputs.append(values)
        outputs = np.concatenate(outputs, axis=0)
    elif n_cores > 1:
        with Pool(n_cores) as executor:
            outputs = []
            for value in tqdm(executor.imap(predict_fn, samples, chunksize=max(1, n // (4 * n_cores))), total=n, disable=not progress):
                _check_cancelled(cancel)
                outputs.append(np.asarray(value, dtype=np.float64))
    else:
        outputs = []
        for row in tqdm(samples, disable=not progress):
            _check_cancelled(cancel)
            outputs.append(np.asarray(predict_fn(row), dtype=np.float64))

    _check_cancelled(cancel)

    if not batch_predict:
        shapes = {value.shape for value in outputs}
        if len(shapes) != 1 or len(shapes.pop()) > 1:
            raise InvalidInputError(
                "Row by row predictors must return a scalar or a fixed length vector for every row"
            )
        outputs = np.stack(outputs)

    logger.debug(f"Evaluated predictor on {n} samples in {time.time() - start:.3f} seconds")

    return select_output(outputs, n, label)
