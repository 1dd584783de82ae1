"""Iteratively reweighted least squares for heteroscedastic 4PL curves.

The first fit is unweighted.  Each subsequent cycle derives weights from
the fitted values of the previous cycle using the variance exponent
``theta`` and refits *from the original starting values*, never from the
previous cycle's estimate.

The loop stops when the weighted sum of squares changes by less than
``tol`` (relative) between consecutive cycles, or fails after
``max_cycles``.
"""

from __future__ import annotations

import logging

import numpy as np
from numpy.typing import NDArray

from pyassaycal.calibration._common import (
    DEFAULT_MAX_CYCLES,
    DEFAULT_MAX_NFEV,
    DEFAULT_TOL,
    VALID_WEIGHTINGS,
    CurveParams,
    FitResult,
    InvalidInputError,
    IRLSNonConvergenceError,
    IRLSResult,
    _as_xy,
)
from pyassaycal.calibration._fit import fit_ll4

logger = logging.getLogger(__name__)


def variance_exponent(theta: float, weighting: str) -> float:
    """Power of ``|y|`` to which the response variance is proportional.

    ``'power'``
        ``w = 1 / (y^2)^(theta/2)``: variance ~ ``|y|^theta``.
    ``'power_squared'``
        ``w = 1 / (y^2)^theta``: variance ~ ``|y|^(2 theta)``.
    """
    if weighting == "power":
        return theta
    if weighting == "power_squared":
        return 2.0 * theta
    raise InvalidInputError(f"weighting must be one of {VALID_WEIGHTINGS}, got {weighting!r}")


def irls_weights(
    fitted: NDArray[np.floating],
    theta: float,
    weighting: str = "power",
) -> NDArray[np.floating]:
    """Observation weights from fitted responses."""
    power = variance_exponent(theta, weighting)
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        w = 1.0 / (np.asarray(fitted, dtype=np.float64) ** 2) ** (power / 2.0)
    if not np.all(np.isfinite(w)):
        raise InvalidInputError(
            "non-finite IRLS weights: fitted responses of zero cannot be "
            f"weighted with theta = {theta}"
        )
    return w


def _relative_change(previous: float, current: float) -> float:
    if previous == 0.0:
        return 0.0 if current == 0.0 else float("inf")
    return abs(previous - current) / previous


def _reweight_fit(
    conc: NDArray,
    resp: NDArray,
    previous: FitResult,
    theta: float,
    start: CurveParams,
    weighting: str,
    max_nfev: int,
) -> FitResult:
    """One reweighting cycle: weights from *previous*, refit from *start*."""
    w = irls_weights(previous.predict(conc), theta, weighting)
    return fit_ll4(conc, resp, start, weights=w, max_nfev=max_nfev)


def fit_irls(
    concentration: NDArray[np.floating],
    response: NDArray[np.floating],
    theta: float,
    start: CurveParams | dict[str, float],
    *,
    max_cycles: int = DEFAULT_MAX_CYCLES,
    tol: float = DEFAULT_TOL,
    weighting: str = "power",
    max_nfev: int = DEFAULT_MAX_NFEV,
) -> IRLSResult:
    """Fit a 4PL curve with variance-function weights by IRLS.

    Parameters
    ----------
    concentration, response : array
        Calibration standards.  Blank rows (concentration <= 0) are
        excluded with a warning and counted in ``IRLSResult.n_excluded``;
        the result holds only the rows that were fitted.
    theta : float
        Exponent of the power-law variance model
        (see :func:`fit_variance_model`).
    start : CurveParams or dict
        Starting values, reused unchanged for every cycle.
    max_cycles : int
        Hard cap on reweighting cycles.
    tol : float
        Relative change in weighted SS regarded as converged.
    weighting : str
        ``'power'`` (default) or ``'power_squared'``; see
        :func:`variance_exponent`.
    max_nfev : int
        Cap on model evaluations of each inner solve.

    Returns
    -------
    IRLSResult

    Raises
    ------
    IRLSNonConvergenceError
        If the weighted SS has not stabilised after *max_cycles* cycles.
    """
    conc, resp = _as_xy(concentration, response)
    keep = conc > 0
    n_excluded = int(np.sum(~keep))
    if n_excluded:
        logger.warning("Excluding %d rows with non-positive concentration", n_excluded)
        conc, resp = conc[keep], resp[keep]
    if not np.isfinite(theta):
        raise InvalidInputError(f"theta must be finite, got {theta}")
    if max_cycles < 1:
        raise InvalidInputError(f"max_cycles must be >= 1, got {max_cycles}")
    if tol <= 0:
        raise InvalidInputError(f"tol must be > 0, got {tol}")
    variance_exponent(theta, weighting)
    start = CurveParams.coerce(start)

    initial = fit_ll4(conc, resp, start, max_nfev=max_nfev)
    history = [initial.wss]
    previous = initial
    change = float("inf")

    for cycle in range(1, max_cycles + 1):
        current = _reweight_fit(conc, resp, previous, theta, start, weighting, max_nfev)
        if not current.converged:
            logger.warning("IRLS cycle %d: inner solve did not converge, continuing", cycle)
        change = _relative_change(history[-1], current.wss)
        history.append(current.wss)
        logger.debug("IRLS cycle %d: wss=%.6g relative change=%.3g", cycle, current.wss, change)

        if change <= tol:
            logger.info("IRLS converged after %d cycles (wss=%.6g)", cycle, current.wss)
            return IRLSResult(
                initial=initial,
                final=current,
                cycles=cycle,
                concentration=conc,
                response=resp,
                theta=float(theta),
                weighting=weighting,
                wss_history=tuple(history),
                n_excluded=n_excluded,
            )
        previous = current

    raise IRLSNonConvergenceError(max_cycles, change, previous)
