"""Turning classifier logits into probabilities."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import ArrayLike, NDArray


def softmax(logits: ArrayLike) -> NDArray[np.float64]:
    """Numerically stable softmax over a 1-D vector of logits.

    The maximum logit is subtracted before exponentiating, which leaves the
    result unchanged but keeps ``exp`` from overflowing. An empty input gives
    an empty output. If the exponentials sum to exactly zero the unnormalized
    vector is returned as is.
    """
    values = np.asarray(logits, dtype=np.float64).ravel()
    if values.size == 0:
        return np.zeros(0, dtype=np.float64)

    exps = np.exp(values - values.max())
    total = exps.sum()
    if total == 0:
        return exps
    return exps / total


def argmax(probs: Sequence[float] | NDArray[np.float64]) -> int:
    """Index of the largest value; ties go to the lowest index.

    Raises:
        ValueError: If ``probs`` is empty.
    """
    values = np.asarray(probs)
    if values.size == 0:
        raise ValueError("argmax of an empty vector")
    # np.argmax returns the first occurrence of the maximum.
    return int(np.argmax(values))
