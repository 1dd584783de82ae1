"""Weighted nonlinear least squares for pluggable models.

Minimises ``sum(w * (y - f(x, p))**2)`` for any model ``f`` supplied as a
callable, with an optional analytic Jacobian ``jac(x, p)`` returning the
``(n_obs, n_params)`` derivative of ``f`` w.r.t. ``p``.  Without one, a
2-point finite-difference Jacobian is used.

The optimisation itself is ``scipy.optimize.least_squares``, by default the
Trust Region Reflective method so that box constraints (e.g. a positive
IC50) can be imposed; ``method='lm'`` selects MINPACK Levenberg-Marquardt.
A solve is only reported as converged when scipy reports success *and*
the parameters and Jacobian at the solution are finite.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray
from scipy.optimize import least_squares

from pyassaycal.calibration._common import DEFAULT_MAX_NFEV, InvalidInputError

logger = logging.getLogger(__name__)

ModelFunc = Callable[[NDArray, NDArray], NDArray]


@dataclass(frozen=True)
class SolverResult:
    """Raw outcome of :func:`nonlinear_least_squares`."""

    x: NDArray[np.floating]  # parameter vector at the solution
    residuals: NDArray[np.floating]  # y - f(x, p), unweighted
    weighted_residuals: NDArray[np.floating]
    jac: NDArray[np.floating]  # weighted model Jacobian sqrt(w) * df/dp
    converged: bool
    n_iter: int  # function evaluations
    message: str

    @property
    def wss(self) -> float:
        return float(np.sum(self.weighted_residuals**2))


def nonlinear_least_squares(
    func: ModelFunc,
    x: NDArray[np.floating],
    y: NDArray[np.floating],
    p0: NDArray[np.floating],
    *,
    jac: ModelFunc | None = None,
    weights: NDArray[np.floating] | None = None,
    lower: NDArray[np.floating] | None = None,
    upper: NDArray[np.floating] | None = None,
    method: str = "trf",
    max_nfev: int = DEFAULT_MAX_NFEV,
    tol: float = 1e-12,
) -> SolverResult:
    """Fit ``func`` to ``(x, y)`` by weighted nonlinear least squares.

    Parameters
    ----------
    func : callable
        ``func(x, p) -> predicted y``.
    x, y : array
        Predictor and observed values (1-D, same length).
    p0 : array
        Starting parameter vector.
    jac : callable or None
        ``jac(x, p) -> (n_obs, n_params)`` model Jacobian.  ``None`` uses
        2-point finite differences.
    weights : array or None
        Non-negative observation weights; ``None`` means all ones.
    lower, upper : array or None
        Box constraints (``method='trf'`` only).
    method : str
        ``'trf'`` or ``'lm'``.
    max_nfev : int
        Cap on model evaluations.  Exhausting it is reported through
        ``converged=False``, not raised.
    tol : float
        ``ftol``, ``xtol`` and ``gtol`` passed to scipy.

    Returns
    -------
    SolverResult
    """
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    p0 = np.array(p0, dtype=np.float64)
    n_params = len(p0)

    if weights is None:
        w = np.ones_like(y)
    else:
        w = np.asarray(weights, dtype=np.float64)
        if w.shape != y.shape:
            raise InvalidInputError("weights must have same shape as response")
        if not np.all(np.isfinite(w)) or np.any(w < 0):
            raise InvalidInputError("weights must be finite and non-negative")
    if max_nfev < 1:
        raise InvalidInputError(f"max_nfev must be >= 1, got {max_nfev}")
    if method not in ("trf", "lm"):
        raise InvalidInputError(f"method must be 'trf' or 'lm', got {method!r}")

    lb = np.full(n_params, -np.inf) if lower is None else np.asarray(lower, dtype=np.float64)
    ub = np.full(n_params, np.inf) if upper is None else np.asarray(upper, dtype=np.float64)
    if method == "lm" and (np.any(np.isfinite(lb)) or np.any(np.isfinite(ub))):
        raise InvalidInputError("method 'lm' does not support bounds")

    sw = np.sqrt(w)

    def residuals(p: NDArray) -> NDArray:
        with np.errstate(all="ignore"):
            return sw * (y - func(x, p))

    def model_jac(p: NDArray) -> NDArray:
        with np.errstate(all="ignore"):
            return sw[:, None] * jac(x, p)

    if not np.all(np.isfinite(residuals(p0))):
        raise InvalidInputError("model is not finite at the starting parameters")

    def _failed(message: str) -> SolverResult:
        logger.debug("Solve failed at start: %s", message)
        with np.errstate(all="ignore"):
            J0 = model_jac(p0) if jac is not None else np.full((len(y), n_params), np.nan)
        return SolverResult(
            x=p0,
            residuals=y - func(x, p0),
            weighted_residuals=residuals(p0),
            jac=J0,
            converged=False,
            n_iter=1,
            message=message,
        )

    if jac is not None and not np.all(np.isfinite(model_jac(p0))):
        return _failed("Jacobian is not finite at the starting parameters")

    scipy_jac = (lambda p: -model_jac(p)) if jac is not None else "2-point"
    if method == "trf":
        p_start = np.clip(p0, lb + 1e-15, ub - 1e-15)
        kwargs = dict(bounds=(lb, ub))
    else:
        p_start = p0
        kwargs = {}

    try:
        res = least_squares(
            residuals,
            p_start,
            jac=scipy_jac,
            method=method,
            max_nfev=max_nfev,
            xtol=tol,
            ftol=tol,
            gtol=tol,
            **kwargs,
        )
    except np.linalg.LinAlgError as exc:
        return _failed(f"linear algebra failure during solve: {exc}")

    # scipy's Jacobian is of the residual, y - f, hence the sign flip
    J = -np.asarray(res.jac, dtype=np.float64)
    finite = bool(np.all(np.isfinite(res.x)) and np.all(np.isfinite(J)))
    converged = bool(res.success) and finite
    message = str(res.message) if finite else "non-finite parameters or Jacobian at solution"
    logger.debug("Solve finished: status=%d nfev=%d %s", res.status, res.nfev, message)

    with np.errstate(all="ignore"):
        fitted = func(x, res.x)

    return SolverResult(
        x=res.x,
        residuals=y - fitted,
        weighted_residuals=np.asarray(res.fun, dtype=np.float64),
        jac=J,
        converged=converged,
        n_iter=int(res.nfev),
        message=message,
    )
