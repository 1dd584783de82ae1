"""Inverse prediction with delta-method uncertainty.

For a response ``y`` read off the fitted curve, the back-calculated
concentration ``x(y)`` has approximate variance

.. math::
    Var(\\hat x) = \\Bigl(\\frac{\\partial x}{\\partial y}\\Bigr)^2
                  \\frac{\\sigma^2 |y|^{\\theta}}{m}
                  + g^\\top (\\sigma^2 C) g

where ``m`` is the number of replicates averaged for the unknown, ``C``
the unscaled parameter covariance of the final IRLS fit and ``g`` the
gradient of ``x`` w.r.t. ``(top, bottom, ic50, slope)``.  The first term
is measurement error, the second calibration-curve error.  The exponent
on ``|y|`` follows the weighting policy of the fit.
"""

from __future__ import annotations

import logging

import numpy as np
from numpy.typing import NDArray

from pyassaycal.calibration._common import (
    DEFAULT_GRID_SIZE,
    DEFAULT_REPLICATES,
    GRID_FLOOR,
    BackCalculation,
    InvalidInputError,
    InversionGrid,
    IRLSResult,
)
from pyassaycal.calibration._irls import variance_exponent
from pyassaycal.calibration._models import ll4_inverse_gradient

logger = logging.getLogger(__name__)


def _check_replicates(n_replicates: int) -> None:
    if n_replicates < 1:
        raise InvalidInputError(f"n_replicates must be >= 1, got {n_replicates}")


def _delta_sd(
    irls_result: IRLSResult,
    response: NDArray[np.floating],
    theta: float,
    n_replicates: int,
) -> tuple[NDArray[np.floating], NDArray[np.floating]]:
    """Back-calculated concentration and its delta-method SD."""
    fit = irls_result.final
    p = fit.params
    grad = ll4_inverse_gradient(response, p.top, p.bottom, p.ic50, p.slope)
    power = variance_exponent(theta, irls_result.weighting)
    sigma2 = fit.sigma**2

    with np.errstate(all="ignore"):
        measurement = grad.d_response**2 * sigma2 * (response**2) ** (power / 2.0) / n_replicates
        G = grad.params_matrix()
        calibration = np.einsum("ij,jk,ik->i", G, fit.cov, G)
        sd = np.sqrt(measurement + calibration)
    return grad.concentration, sd


def _concentration_grid(
    irls_result: IRLSResult,
    grid_size: int,
) -> NDArray[np.floating]:
    """Geometric grid: floor -> IC50 for the lower half, IC50 -> max for the upper."""
    conc = irls_result.concentration
    positive = conc[conc > 0]
    if len(positive) == 0:
        raise InvalidInputError("no positive concentrations to span the grid")
    floor = min(GRID_FLOOR, float(np.min(positive)))
    ceiling = float(np.max(positive))
    ic50 = irls_result.final.params.ic50

    n_lower = grid_size // 2
    lower = np.geomspace(floor, ic50, n_lower)
    upper = np.geomspace(ic50, ceiling, grid_size - n_lower + 1)[1:]
    return np.concatenate([lower, upper])


def inverse_predict(
    irls_result: IRLSResult,
    theta: float,
    *,
    n_replicates: int = DEFAULT_REPLICATES,
    grid_size: int = DEFAULT_GRID_SIZE,
) -> InversionGrid:
    """Precision profile of the calibration across the working range.

    Grid concentrations are spaced geometrically, i.e. evenly in log
    concentration, in two halves.  The lower ``grid_size // 2`` points run
    from ``min(5e-4, smallest standard)`` up to the fitted IC50.  The
    remaining points run from just above IC50 to the largest standard, so
    IC50 itself appears once.

    Parameters
    ----------
    irls_result : IRLSResult
        Converged fit from :func:`fit_irls`.
    theta : float
        Variance exponent (normally the one used for the fit).
    n_replicates : int
        Replicates averaged per unknown sample.
    grid_size : int
        Number of grid concentrations.

    Returns
    -------
    InversionGrid
        Sorted by concentration; rows with non-finite SD are dropped.
    """
    _check_replicates(n_replicates)
    if grid_size < 2:
        raise InvalidInputError(f"grid_size must be >= 2, got {grid_size}")

    x_grid = _concentration_grid(irls_result, grid_size)
    y_grid = irls_result.final.predict(x_grid)
    conc, sd = _delta_sd(irls_result, y_grid, theta, n_replicates)

    keep = np.isfinite(sd) & np.isfinite(conc)
    n_dropped = int(len(keep) - np.sum(keep))
    if n_dropped:
        logger.warning("Dropped %d grid points with undefined inverse prediction", n_dropped)

    order = np.argsort(conc[keep], kind="stable")
    return InversionGrid(
        response=y_grid[keep][order],
        concentration=conc[keep][order],
        sd=sd[keep][order],
        n_replicates=n_replicates,
    )


def back_calculate(
    irls_result: IRLSResult,
    response: NDArray[np.floating],
    theta: float,
    *,
    n_replicates: int = DEFAULT_REPLICATES,
) -> BackCalculation:
    """Concentration estimates and SDs for observed (unknown) responses.

    Responses outside the open interval between the asymptotes give NaN.
    """
    _check_replicates(n_replicates)
    y = np.atleast_1d(np.asarray(response, dtype=np.float64))
    conc, sd = _delta_sd(irls_result, y, theta, n_replicates)
    undefined = ~(np.isfinite(conc) & np.isfinite(sd))
    return BackCalculation(
        response=y,
        concentration=np.where(undefined, np.nan, conc),
        sd=np.where(undefined, np.nan, sd),
        n_replicates=n_replicates,
    )
