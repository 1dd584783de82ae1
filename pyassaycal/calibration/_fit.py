"""Single 4PL curve fit via weighted nonlinear least squares.

Wraps :func:`nonlinear_least_squares` with the analytic 4PL Jacobian, derives
the unscaled parameter covariance ``(J'WJ)^-1`` and residual standard
error, and provides data-driven starting values.
"""

from __future__ import annotations

import logging

import numpy as np
from numpy.typing import NDArray

from pyassaycal.calibration._common import (
    DEFAULT_MAX_NFEV,
    PARAM_NAMES,
    CurveParams,
    FitResult,
    InvalidInputError,
    _as_xy,
)
from pyassaycal.calibration._models import ll4, ll4_gradient
from pyassaycal.calibration._solver import nonlinear_least_squares

logger = logging.getLogger(__name__)

_N_PARAMS = len(PARAM_NAMES)

# top, bottom and slope are free; ic50 is kept strictly positive
_LOWER = np.array([-np.inf, -np.inf, 1e-20, -np.inf])
_UPPER = np.full(_N_PARAMS, np.inf)


def _model(x: NDArray, p: NDArray) -> NDArray:
    return ll4(x, *p)


def _model_jac(x: NDArray, p: NDArray) -> NDArray:
    return ll4_gradient(x, *p)


# ---------------------------------------------------------------------------
# Self-starting parameter estimation
# ---------------------------------------------------------------------------

def _midpoint_crossing(levels: NDArray, means: NDArray, midpoint: float) -> float:
    """First concentration where the level means cross *midpoint*.

    Interpolates on log concentration between the two bracketing levels;
    falls back to the geometric mean of *levels* when the means never
    reach the midpoint.
    """
    log_c = np.log(levels)
    side = np.sign(means - midpoint)
    brackets = np.flatnonzero(side[:-1] * side[1:] <= 0)
    if len(brackets) == 0:
        return float(np.exp(log_c.mean()))
    i = brackets[0]
    rise = means[i + 1] - means[i]
    frac = 0.5 if abs(rise) < 1e-12 else (midpoint - means[i]) / rise
    return float(np.exp(log_c[i] + frac * (log_c[i + 1] - log_c[i])))


def _initial_params(
    concentration: NDArray,
    response: NDArray,
) -> CurveParams:
    """Data-driven starting values.

    Algorithm
    ---------
    1.  Group means per distinct concentration (> 0 only).
    2.  bottom = mean at the lowest concentration, top = mean at the
        highest, so the slope comes out positive for either direction.
    3.  IC50 via interpolation at the midpoint response on log scale.
    4.  slope via logit-linear regression of the normalised response.
    """
    mask = concentration > 0
    conc = concentration[mask]
    resp = response[mask]
    levels = np.unique(conc)
    if len(levels) < 2:
        raise InvalidInputError(
            "need at least 2 distinct positive concentrations to derive starting values"
        )
    means = np.array([np.mean(resp[conc == c]) for c in levels])

    bottom = float(means[0])
    top = float(means[-1])
    ic50 = max(_midpoint_crossing(levels, means, (bottom + top) / 2.0), 1e-20)

    span = top - bottom
    slope = 1.0
    if abs(span) > 1e-12:
        z = np.clip((means - bottom) / span, 0.01, 0.99)
        coeffs = np.polyfit(np.log(levels), np.log(z / (1.0 - z)), 1)
        slope = float(np.clip(coeffs[0], -20.0, 20.0))
        if abs(slope) < 0.05:
            slope = 1.0
    return CurveParams(top=top, bottom=bottom, ic50=ic50, slope=slope)


# ---------------------------------------------------------------------------
# Covariance
# ---------------------------------------------------------------------------

def _unscaled_cov(jac: NDArray) -> NDArray[np.floating]:
    """``(J'WJ)^{-1}`` from the weighted Jacobian; all-NaN if singular."""
    if not np.all(np.isfinite(jac)):
        return np.full((_N_PARAMS, _N_PARAMS), np.nan)
    try:
        cov = np.linalg.inv(jac.T @ jac)
    except np.linalg.LinAlgError:
        cov = np.full((_N_PARAMS, _N_PARAMS), np.nan)
    return cov


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def fit_ll4(
    concentration: NDArray[np.floating],
    response: NDArray[np.floating],
    start: CurveParams | dict[str, float],
    *,
    weights: NDArray[np.floating] | None = None,
    max_nfev: int = DEFAULT_MAX_NFEV,
) -> FitResult:
    """Fit the 4PL curve by (weighted) nonlinear least squares.

    Parameters
    ----------
    concentration : array
        Positive concentrations.
    response : array
        Observed responses.
    start : CurveParams or dict
        Starting values for ``top``, ``bottom``, ``ic50``, ``slope``.
    weights : array or None
        Observation weights (default all 1).
    max_nfev : int
        Cap on model evaluations.  Running out, a non-finite Jacobian or a
        failed linear solve is reported via ``FitResult.converged``; it
        does not raise.

    Returns
    -------
    FitResult

    Examples
    --------
    >>> import numpy as np
    >>> x = np.array([1, 1, 10, 10, 100, 100], dtype=float)
    >>> y = np.array([0.95, 0.93, 0.55, 0.52, 0.12, 0.10])
    >>> fit = fit_ll4(x, y, {"top": 1, "bottom": 0.1, "ic50": 10, "slope": -1})
    >>> 5 < fit.params.ic50 < 20
    True
    """
    conc, resp = _as_xy(concentration, response)
    n_obs = len(conc)
    if n_obs < _N_PARAMS + 1:
        raise InvalidInputError(
            f"Need at least {_N_PARAMS + 1} observations for a 4PL fit, got {n_obs}"
        )
    if np.any(conc <= 0):
        raise InvalidInputError("concentrations must be positive for fitting")
    if not np.all(np.isfinite(resp)):
        raise InvalidInputError("response must be finite")

    start = CurveParams.coerce(start)
    if start.ic50 <= 0:
        raise InvalidInputError(f"start ic50 must be > 0, got {start.ic50}")

    sol = nonlinear_least_squares(
        _model,
        conc,
        resp,
        start.to_array(),
        jac=_model_jac,
        weights=weights,
        lower=_LOWER,
        upper=_UPPER,
        max_nfev=max_nfev,
    )
    if not sol.converged:
        logger.warning("4PL solve did not converge after %d evaluations: %s",
                       sol.n_iter, sol.message)

    df_resid = n_obs - _N_PARAMS
    sigma = float(np.sqrt(sol.wss / df_resid))
    w = np.ones(n_obs) if weights is None else np.asarray(weights, dtype=np.float64)

    return FitResult(
        params=CurveParams.from_array(sol.x),
        residuals=sol.residuals,
        weighted_residuals=sol.weighted_residuals,
        weights=w,
        cov_unscaled=_unscaled_cov(sol.jac),
        df_resid=df_resid,
        sigma=sigma,
        converged=sol.converged,
        n_iter=sol.n_iter,
        message=sol.message,
    )
