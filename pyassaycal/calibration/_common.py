"""Shared result types, defaults and exceptions for assay calibration."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from pyassaycal.calibration._models import ll4


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_TOL = 1e-5  # relative change in weighted SS between IRLS cycles
DEFAULT_MAX_CYCLES = 100
DEFAULT_MAX_NFEV = 2000  # model evaluations per nonlinear solve
DEFAULT_GRID_SIZE = 700
DEFAULT_REPLICATES = 3
GRID_FLOOR = 5e-4

VALID_WEIGHTINGS = ("power", "power_squared")

PARAM_NAMES = ("top", "bottom", "ic50", "slope")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class InvalidInputError(ValueError):
    """Input data cannot support the requested computation."""


class IRLSNonConvergenceError(RuntimeError):
    """The reweighting loop hit its cycle cap without stabilising."""

    def __init__(self, cycles: int, last_change: float, last_fit: FitResult):
        super().__init__(
            f"IRLS did not converge within {cycles} cycles "
            f"(last relative change in wss = {last_change:.3g})"
        )
        self.cycles = cycles
        self.last_change = last_change
        self.last_fit = last_fit


# ---------------------------------------------------------------------------
# Input records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Observation:
    """One measured response at a known concentration."""

    concentration: float
    replicate: int
    response: float


def observations_to_arrays(
    observations: Sequence[Observation],
) -> tuple[NDArray[np.floating], NDArray[np.floating]]:
    """Split observation records into ``(concentration, response)`` arrays."""
    conc = np.array([o.concentration for o in observations], dtype=np.float64)
    resp = np.array([o.response for o in observations], dtype=np.float64)
    return conc, resp


def _as_xy(
    concentration: NDArray[np.floating],
    response: NDArray[np.floating],
) -> tuple[NDArray[np.floating], NDArray[np.floating]]:
    """Coerce to float64 1-D arrays of equal shape, or raise."""
    conc = np.asarray(concentration, dtype=np.float64)
    resp = np.asarray(response, dtype=np.float64)
    if conc.ndim != 1 or resp.ndim != 1:
        raise InvalidInputError("concentration and response must be 1-D arrays")
    if conc.shape != resp.shape:
        raise InvalidInputError(
            f"concentration and response must have same shape, "
            f"got {conc.shape} and {resp.shape}"
        )
    return conc, resp


# ---------------------------------------------------------------------------
# Curve parameters
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CurveParams:
    """Parameters of a four-parameter logistic calibration curve.

    response = top + (bottom - top) / (1 + (x / ic50)^slope)
    """

    top: float
    bottom: float
    ic50: float
    slope: float

    def predict(self, concentration: NDArray[np.floating]) -> NDArray[np.floating]:
        """Predict response at given concentrations."""
        return ll4(concentration, self.top, self.bottom, self.ic50, self.slope)

    def to_array(self) -> NDArray[np.floating]:
        """Return parameter vector in (top, bottom, ic50, slope) order."""
        return np.array([getattr(self, name) for name in PARAM_NAMES], dtype=np.float64)

    @staticmethod
    def from_array(params: NDArray[np.floating]) -> CurveParams:
        """Construct from a (top, bottom, ic50, slope) vector."""
        if len(params) != len(PARAM_NAMES):
            raise InvalidInputError(
                f"expected {len(PARAM_NAMES)} parameters, got {len(params)}"
            )
        return CurveParams(**{name: float(v) for name, v in zip(PARAM_NAMES, params)})

    @staticmethod
    def coerce(start: CurveParams | dict[str, float]) -> CurveParams:
        """Accept either a ``CurveParams`` or a name -> value mapping."""
        if isinstance(start, CurveParams):
            return start
        missing = [name for name in PARAM_NAMES if name not in start]
        if missing:
            raise InvalidInputError(f"start is missing parameters: {missing}")
        return CurveParams(**{name: float(start[name]) for name in PARAM_NAMES})


# ---------------------------------------------------------------------------
# Replicate statistics and variance model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ReplicateSummary:
    """Per-concentration replicate statistics.  Arrays share one length."""

    concentration: NDArray[np.floating]
    n: NDArray[np.integer]
    mean: NDArray[np.floating]
    variance: NDArray[np.floating]  # sample variance (ddof=1); NaN when n == 1

    def __len__(self) -> int:
        return len(self.concentration)


@dataclass(frozen=True)
class VarianceFit:
    """Power-law mean-variance fit: log(var) = intercept + theta * log(mean)."""

    theta: float
    intercept: float  # natural-log scale, i.e. log(c) in var = c * mean^theta
    theta_ci: tuple[float, float]
    conf_level: float
    r_squared: float
    n_points: int

    @property
    def scale(self) -> float:
        """The multiplier ``c`` of ``var = c * mean^theta``."""
        return float(np.exp(self.intercept))

    def summary(self) -> str:
        lo, hi = self.theta_ci
        pct = round(self.conf_level * 100)
        lines = [
            "Variance model: var = c * mean^theta",
            "",
            f"  theta     = {self.theta:.6f}  ({pct}% CI {lo:.4f} to {hi:.4f})",
            f"  log(c)    = {self.intercept:.6f}",
            f"  R-squared = {self.r_squared:.4f}",
            f"  n         = {self.n_points}",
        ]
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Fit results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FitResult:
    """Result of one weighted nonlinear least-squares solve."""

    params: CurveParams
    residuals: NDArray[np.floating]  # observed - fitted
    weighted_residuals: NDArray[np.floating]  # sqrt(w) * residuals
    weights: NDArray[np.floating]
    cov_unscaled: NDArray[np.floating]  # (J'WJ)^-1, 4 x 4
    df_resid: int
    sigma: float  # residual standard error
    converged: bool
    n_iter: int
    message: str = ""

    @property
    def wss(self) -> float:
        """Weighted residual sum of squares."""
        return float(np.sum(self.weighted_residuals**2))

    @property
    def cov(self) -> NDArray[np.floating]:
        """Scaled parameter covariance, ``sigma^2 * cov_unscaled``."""
        return self.sigma**2 * self.cov_unscaled

    @property
    def se(self) -> NDArray[np.floating]:
        """Standard errors in (top, bottom, ic50, slope) order."""
        return np.sqrt(np.maximum(np.diag(self.cov), 0.0))

    def predict(self, concentration: NDArray[np.floating]) -> NDArray[np.floating]:
        return self.params.predict(concentration)

    def summary(self) -> str:
        """Human-readable summary of the parameter estimates."""
        lines = ["4PL calibration fit", "", "Parameter estimates:"]
        p_arr = self.params.to_array()
        se = self.se
        for i, name in enumerate(PARAM_NAMES):
            se_val = se[i]
            t_val = p_arr[i] / se_val if se_val > 0 else float("nan")
            lines.append(
                f"  {name:>8s} = {p_arr[i]:>12.6f}  (SE = {se_val:.6f}, t = {t_val:.3f})"
            )
        lines.append("")
        lines.append(f"  wss   = {self.wss:.6g}")
        lines.append(f"  sigma = {self.sigma:.6g} on {self.df_resid} df")
        lines.append(f"  Converged: {self.converged}")
        return "\n".join(lines)


@dataclass(frozen=True)
class IRLSResult:
    """Outcome of iteratively reweighted 4PL fitting."""

    initial: FitResult  # unweighted first fit
    final: FitResult  # last reweighted fit
    cycles: int
    concentration: NDArray[np.floating]
    response: NDArray[np.floating]
    theta: float
    weighting: str
    wss_history: tuple[float, ...]
    n_excluded: int = 0  # rows dropped for non-positive concentration

    @property
    def converged(self) -> bool:
        """Whether the final inner solve met its own tolerance."""
        return self.final.converged

    @property
    def params(self) -> CurveParams:
        return self.final.params

    def summary(self) -> str:
        lines = [
            f"IRLS 4PL fit: theta = {self.theta:.4f}, weighting = {self.weighting!r}",
            f"  cycles = {self.cycles}",
            f"  initial wss = {self.initial.wss:.6g}",
        ]
        if self.n_excluded:
            lines.append(f"  {self.n_excluded} non-positive concentration rows excluded")
        lines += ["", self.final.summary()]
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Inverse prediction
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class InversionGrid:
    """Precision profile: response -> concentration -> standard deviation.

    Rows are sorted by increasing concentration; rows whose standard
    deviation is not finite are not present.
    """

    response: NDArray[np.floating]
    concentration: NDArray[np.floating]
    sd: NDArray[np.floating]
    n_replicates: int

    def __len__(self) -> int:
        return len(self.concentration)

    @property
    def cv(self) -> NDArray[np.floating]:
        """Coefficient of variation of the concentration estimate."""
        return self.sd / self.concentration


@dataclass(frozen=True)
class BackCalculation:
    """Concentration estimates for observed responses.

    Undefined estimates (response outside the asymptotes) are NaN.
    """

    response: NDArray[np.floating]
    concentration: NDArray[np.floating]
    sd: NDArray[np.floating]
    n_replicates: int

    @property
    def cv(self) -> NDArray[np.floating]:
        with np.errstate(divide="ignore", invalid="ignore"):
            return self.sd / self.concentration


@dataclass(frozen=True)
class CalibrationResult:
    """Everything produced by :func:`calibrate`."""

    replicates: ReplicateSummary
    variance: VarianceFit
    irls: IRLSResult
    grid: InversionGrid
    n_dropped: int  # observations excluded for non-positive concentration

    def summary(self) -> str:
        lines = [
            self.variance.summary(),
            "",
            self.irls.summary(),
            "",
            f"Inversion grid: {len(self.grid)} points, "
            f"{self.grid.n_replicates} replicates per unknown",
        ]
        if self.n_dropped:
            lines.append(f"NOTE: {self.n_dropped} non-positive concentration rows excluded")
        return "\n".join(lines)
