"""Replicate statistics and the power-law mean-variance model.

Immunoassay responses are heteroscedastic: the replicate variance grows
with the mean roughly as ``var = c * mean^theta``.  ``theta`` is estimated
by ordinary least squares on ``log(var) ~ log(mean)`` and later drives the
IRLS weights and the measurement term of the inverse prediction.
"""

from __future__ import annotations

import logging

import numpy as np
from numpy.typing import NDArray
from scipy.stats import linregress
from scipy.stats import t as t_dist

from pyassaycal.calibration._common import (
    InvalidInputError,
    ReplicateSummary,
    VarianceFit,
    _as_xy,
)

logger = logging.getLogger(__name__)


def summarize_replicates(
    concentration: NDArray[np.floating],
    response: NDArray[np.floating],
) -> ReplicateSummary:
    """Count, mean and sample variance of the response per concentration.

    Rows are ordered by increasing concentration.  Levels with a single
    replicate get ``variance = NaN``.
    """
    conc, resp = _as_xy(concentration, response)
    levels, inverse, counts = np.unique(conc, return_inverse=True, return_counts=True)

    means = np.bincount(inverse, weights=resp) / counts
    sq_dev = np.bincount(inverse, weights=(resp - means[inverse]) ** 2)
    with np.errstate(divide="ignore", invalid="ignore"):
        variances = np.where(counts > 1, sq_dev / (counts - 1), np.nan)

    return ReplicateSummary(
        concentration=levels,
        n=counts,
        mean=means,
        variance=variances,
    )


def fit_variance_model(
    summary: ReplicateSummary | None = None,
    *,
    mean: NDArray[np.floating] | None = None,
    variance: NDArray[np.floating] | None = None,
    conf_level: float = 0.95,
) -> VarianceFit:
    """Fit ``log(variance) = log(c) + theta * log(mean)``.

    Pass either a :class:`ReplicateSummary` or explicit *mean* and
    *variance* arrays.  Rows with a non-positive mean or variance (or a
    non-positive concentration, when a summary is given) cannot be log
    transformed and are dropped.

    Parameters
    ----------
    summary : ReplicateSummary or None
        Output of :func:`summarize_replicates`.
    mean, variance : array or None
        Alternative to *summary*.
    conf_level : float
        Confidence level for the interval on ``theta``.

    Returns
    -------
    VarianceFit

    Raises
    ------
    InvalidInputError
        If fewer than two usable rows remain.
    """
    if not (0.0 < conf_level < 1.0):
        raise InvalidInputError(f"conf_level must be in (0, 1), got {conf_level}")

    if summary is not None:
        if mean is not None or variance is not None:
            raise InvalidInputError("pass either summary or mean/variance, not both")
        m = np.asarray(summary.mean, dtype=np.float64)
        v = np.asarray(summary.variance, dtype=np.float64)
        usable = np.asarray(summary.concentration) > 0
    else:
        if mean is None or variance is None:
            raise InvalidInputError("mean and variance are both required")
        m, v = _as_xy(mean, variance)
        usable = np.ones(len(m), dtype=bool)

    usable &= np.isfinite(m) & np.isfinite(v) & (m > 0) & (v > 0)
    n_dropped = int(len(m) - np.sum(usable))
    if n_dropped:
        logger.warning("Dropped %d rows unusable for log-log variance regression", n_dropped)

    k = int(np.sum(usable))
    if k < 2:
        raise InvalidInputError(
            f"Need at least 2 rows with positive mean and variance, got {k}"
        )

    log_m = np.log(m[usable])
    log_v = np.log(v[usable])
    if np.ptp(log_m) == 0:
        raise InvalidInputError("mean responses are all identical; theta is not identifiable")

    reg = linregress(log_m, log_v)
    theta = float(reg.slope)

    df = k - 2
    if df > 0:
        q = t_dist.ppf(1.0 - (1.0 - conf_level) / 2.0, df)
        half = q * float(reg.stderr)
        theta_ci = (theta - half, theta + half)
    else:
        theta_ci = (float("nan"), float("nan"))

    return VarianceFit(
        theta=theta,
        intercept=float(reg.intercept),
        theta_ci=theta_ci,
        conf_level=conf_level,
        r_squared=float(reg.rvalue**2),
        n_points=k,
    )
