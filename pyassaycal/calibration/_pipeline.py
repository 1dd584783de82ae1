"""End-to-end calibration: replicates -> theta -> IRLS 4PL -> precision profile."""

from __future__ import annotations

import logging

import numpy as np
from numpy.typing import NDArray

from pyassaycal.calibration._common import (
    DEFAULT_GRID_SIZE,
    DEFAULT_MAX_CYCLES,
    DEFAULT_REPLICATES,
    DEFAULT_TOL,
    CalibrationResult,
    CurveParams,
    _as_xy,
)
from pyassaycal.calibration._fit import _initial_params
from pyassaycal.calibration._inverse import inverse_predict
from pyassaycal.calibration._irls import fit_irls
from pyassaycal.calibration._variance import fit_variance_model, summarize_replicates

logger = logging.getLogger(__name__)


def calibrate(
    concentration: NDArray[np.floating],
    response: NDArray[np.floating],
    *,
    start: CurveParams | dict[str, float] | None = None,
    n_replicates: int = DEFAULT_REPLICATES,
    grid_size: int = DEFAULT_GRID_SIZE,
    max_cycles: int = DEFAULT_MAX_CYCLES,
    tol: float = DEFAULT_TOL,
    weighting: str = "power",
) -> CalibrationResult:
    """Build a heteroscedastic 4PL calibration from long-format standards.

    Blank rows (concentration <= 0) are excluded before any log-scale
    step.  ``theta`` comes from the replicate mean-variance regression and
    is used both for the IRLS weights and the precision profile.

    Parameters
    ----------
    concentration, response : array
        One row per replicate measurement.
    start : CurveParams, dict or None
        Starting values; ``None`` derives them from the data.
    n_replicates, grid_size :
        Passed to :func:`inverse_predict`.
    max_cycles, tol, weighting :
        Passed to :func:`fit_irls`.

    Returns
    -------
    CalibrationResult
    """
    conc, resp = _as_xy(concentration, response)
    keep = conc > 0
    n_dropped = int(np.sum(~keep))
    if n_dropped:
        logger.warning("Excluding %d rows with non-positive concentration", n_dropped)
    conc, resp = conc[keep], resp[keep]

    replicates = summarize_replicates(conc, resp)
    variance = fit_variance_model(replicates)
    logger.info("Variance model: theta=%.4f over %d levels", variance.theta, variance.n_points)

    if start is None:
        start = _initial_params(conc, resp)
        logger.debug("Self-starting values: %s", start)

    irls = fit_irls(
        conc,
        resp,
        variance.theta,
        start,
        max_cycles=max_cycles,
        tol=tol,
        weighting=weighting,
    )
    grid = inverse_predict(
        irls,
        variance.theta,
        n_replicates=n_replicates,
        grid_size=grid_size,
    )
    logger.info("Calibration complete: IC50=%.4g, %d grid points", irls.params.ic50, len(grid))

    return CalibrationResult(
        replicates=replicates,
        variance=variance,
        irls=irls,
        grid=grid,
        n_dropped=n_dropped,
    )
