"""
knotfit/spline.py

Piecewise-linear curve evaluation in hinge-basis form.

A curve through control points (k[j], v[j]) is written as

    mu(t) = v[0] + sum_j (t - k[j])_+ * (grad[j] - grad[j-1])

with grad[j] the slope of segment j and grad[-1] := 0. Each term is a ramp
that switches on at its knot, so the whole curve is one matrix product and
needs no per-knot branching. Before the first knot the curve is flat at v[0];
after the last knot it continues with the final segment's slope.
"""

import numpy as np
from typing import Optional

N_DAYS = 28
DEFAULT_DAYS = np.arange(1, N_DAYS + 1, dtype=float)


def hinge_basis(times: np.ndarray, knots: np.ndarray) -> np.ndarray:
    """
    Ramp basis matrix of shape (n_times, n_knots): entry (i, j) = (t_i - k_j)_+.
    """
    times = np.asarray(times, dtype=float)
    knots = np.asarray(knots, dtype=float)
    return np.maximum(times[:, None] - knots[None, :], 0.0)


def evaluate_spline(
    knot_times,
    knot_values,
    times: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Evaluate a piecewise-linear curve at the requested times.

    Parameters
    ----------
    knot_times : array-like
        Strictly increasing knot times k[0..n-1] (n >= 2).
    knot_values : array-like
        Curve values v[0..n-1] at the knots.
    times : array-like, optional
        Evaluation grid. Defaults to days 1..28.

    Returns
    -------
    np.ndarray
        Curve values, same length as ``times``.

    Raises
    ------
    ValueError
        If the knot arrays differ in length, have fewer than two entries,
        or the knot times are not strictly increasing.

    Examples
    --------
    >>> mu = evaluate_spline([0, 5, 14, 28], [1.0, 1.0, 3.0, 2.0])
    >>> mu.shape
    (28,)
    """
    k = np.asarray(knot_times, dtype=float)
    v = np.asarray(knot_values, dtype=float)
    if k.shape != v.shape or k.ndim != 1 or k.size < 2:
        raise ValueError(
            f"knot_times and knot_values must be 1D arrays of equal length >= 2, "
            f"got shapes {k.shape} and {v.shape}."
        )
    steps = np.diff(k)
    if not np.all(steps > 0):
        raise ValueError(f"knot_times must be strictly increasing, got {k.tolist()}.")

    t = DEFAULT_DAYS if times is None else np.asarray(times, dtype=float)

    grad = np.diff(v) / steps
    slope_change = np.diff(np.concatenate(([0.0], grad)))
    return v[0] + hinge_basis(np.atleast_1d(t), k[:-1]) @ slope_change
