"""Four-parameter logistic (4PL) calibration model.

The curve is parameterised as

.. math::
    y = T + \\frac{B - T}{1 + (x / e)^s}

with ``T = top``, ``B = bottom``, ``e = ic50`` and ``s = slope``.  For
``slope > 0`` the response moves from ``bottom`` (x -> 0) to ``top``
(x -> inf); for ``slope < 0`` the roles swap.  Note the parameter order
``(top, bottom, ic50, slope)`` used by every Jacobian in this module.

Concentration zero is handled via IEEE 754 arithmetic on the log scale,
giving the appropriate asymptote.  Inverse quantities are undefined when
the response lies on or beyond an asymptote; they come back as NaN/inf
rather than raising.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray


def _safe_log(x: NDArray[np.floating]) -> NDArray[np.floating]:
    """log(x) with x=0 mapped to -inf, without a runtime warning."""
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(x > 0, np.log(np.where(x > 0, x, 1.0)), -np.inf)


def _ratio_power(
    x: NDArray[np.floating],
    ic50: float,
    slope: float,
) -> tuple[NDArray[np.floating], NDArray[np.floating]]:
    """Return ``(u, log(x/ic50))`` where ``u = (x/ic50)^slope``."""
    with np.errstate(invalid="ignore", divide="ignore", over="ignore"):
        log_ratio = _safe_log(x) - np.log(ic50)
        u = np.exp(slope * log_ratio)
    return u, log_ratio


# ---------------------------------------------------------------------------
# Forward model
# ---------------------------------------------------------------------------

def ll4(
    concentration: NDArray[np.floating],
    top: float,
    bottom: float,
    ic50: float,
    slope: float,
) -> NDArray[np.floating]:
    """Evaluate the 4PL curve.

    Parameters
    ----------
    concentration : array
        Concentrations on the natural scale.  May contain zeros.
    top, bottom : float
        Asymptotes.
    ic50 : float
        Inflection point; must be positive.  ``ll4(ic50) == (top+bottom)/2``.
    slope : float
        Steepness.  Sign selects which asymptote is reached at high dose.

    Returns
    -------
    NDArray
        Predicted response values.
    """
    x = np.asarray(concentration, dtype=np.float64)
    u, _ = _ratio_power(x, ic50, slope)
    with np.errstate(invalid="ignore"):
        return top + (bottom - top) / (1.0 + u)


def ll4_gradient(
    concentration: NDArray[np.floating],
    top: float,
    bottom: float,
    ic50: float,
    slope: float,
) -> NDArray[np.floating]:
    """Jacobian of the response w.r.t. ``(top, bottom, ic50, slope)``.

    Returns an ``(n, 4)`` array; row ``i`` is the gradient at
    ``concentration[i]``.  Concentrations must be positive.
    """
    x = np.asarray(concentration, dtype=np.float64)
    u, log_ratio = _ratio_power(x, ic50, slope)
    with np.errstate(invalid="ignore", over="ignore"):
        denom = 1.0 + u
        denom2 = denom**2
        span = bottom - top
        d_top = u / denom
        d_bottom = 1.0 / denom
        d_ic50 = span * slope * u / (ic50 * denom2)
        d_slope = -span * u * log_ratio / denom2
    return np.column_stack([d_top, d_bottom, d_ic50, d_slope])


def ll4_dose_derivative(
    concentration: NDArray[np.floating],
    top: float,
    bottom: float,
    ic50: float,
    slope: float,
) -> NDArray[np.floating]:
    """Slope of the calibration curve, dy/dx, at each concentration."""
    x = np.asarray(concentration, dtype=np.float64)
    u, _ = _ratio_power(x, ic50, slope)
    with np.errstate(invalid="ignore", divide="ignore", over="ignore"):
        return -(bottom - top) * slope * u / (x * (1.0 + u) ** 2)


# ---------------------------------------------------------------------------
# Inverse model
# ---------------------------------------------------------------------------

def ll4_inverse(
    response: NDArray[np.floating],
    top: float,
    bottom: float,
    ic50: float,
    slope: float,
) -> NDArray[np.floating]:
    """Concentration producing *response*: ``ic50 * ((B-y)/(y-T))^(1/s)``.

    NaN where the response is not strictly between the asymptotes.
    """
    y = np.asarray(response, dtype=np.float64)
    with np.errstate(invalid="ignore", divide="ignore", over="ignore"):
        ratio = (bottom - y) / (y - top)
        log_ratio = np.where(ratio > 0, np.log(np.where(ratio > 0, ratio, 1.0)), np.nan)
        return ic50 * np.exp(log_ratio / slope)


@dataclass(frozen=True)
class InverseGradient:
    """Partial derivatives of the back-calculated concentration."""

    concentration: NDArray[np.floating]
    d_response: NDArray[np.floating]
    d_top: NDArray[np.floating]
    d_bottom: NDArray[np.floating]
    d_ic50: NDArray[np.floating]
    d_slope: NDArray[np.floating]

    def params_matrix(self) -> NDArray[np.floating]:
        """``(n, 4)`` gradient w.r.t. ``(top, bottom, ic50, slope)``."""
        return np.column_stack([self.d_top, self.d_bottom, self.d_ic50, self.d_slope])


def ll4_inverse_gradient(
    response: NDArray[np.floating],
    top: float,
    bottom: float,
    ic50: float,
    slope: float,
) -> InverseGradient:
    """Closed-form partials of ``x(y)`` for delta-method error propagation.

    .. math::
        \\partial x/\\partial y = x (T-B) / (s (y-T)(B-y)) \\\\
        \\partial x/\\partial T = x / (s (y-T)) \\\\
        \\partial x/\\partial B = x / (s (B-y)) \\\\
        \\partial x/\\partial e = x / e \\\\
        \\partial x/\\partial s = -(x/s^2) \\ln((B-y)/(y-T))
    """
    y = np.asarray(response, dtype=np.float64)
    x = ll4_inverse(y, top, bottom, ic50, slope)
    with np.errstate(invalid="ignore", divide="ignore", over="ignore"):
        above_top = y - top
        below_bottom = bottom - y
        d_response = x * (top - bottom) / (slope * above_top * below_bottom)
        d_top = x / (slope * above_top)
        d_bottom = x / (slope * below_bottom)
        d_ic50 = x / ic50
        d_slope = -x / slope**2 * np.log(below_bottom / above_top)
    return InverseGradient(
        concentration=x,
        d_response=d_response,
        d_top=d_top,
        d_bottom=d_bottom,
        d_ic50=d_ic50,
        d_slope=d_slope,
    )
