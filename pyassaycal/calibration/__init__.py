"""
Heteroscedastic 4PL calibration for bioassays and immunoassays.

Fits a four-parameter logistic standard curve with weights derived from a
power-law mean-variance model (IRLS), then inverts the curve to estimate
concentrations of unknowns with delta-method standard deviations.
"""

from pyassaycal.calibration._common import (
    BackCalculation,
    CalibrationResult,
    CurveParams,
    FitResult,
    InvalidInputError,
    InversionGrid,
    IRLSNonConvergenceError,
    IRLSResult,
    Observation,
    ReplicateSummary,
    VarianceFit,
    observations_to_arrays,
)
from pyassaycal.calibration._models import (
    InverseGradient,
    ll4,
    ll4_dose_derivative,
    ll4_gradient,
    ll4_inverse,
    ll4_inverse_gradient,
)
from pyassaycal.calibration._solver import SolverResult, nonlinear_least_squares
from pyassaycal.calibration._fit import fit_ll4
from pyassaycal.calibration._variance import fit_variance_model, summarize_replicates
from pyassaycal.calibration._irls import fit_irls, irls_weights, variance_exponent
from pyassaycal.calibration._inverse import back_calculate, inverse_predict
from pyassaycal.calibration._pipeline import calibrate

__all__ = [
    "Observation",
    "CurveParams",
    "ReplicateSummary",
    "VarianceFit",
    "FitResult",
    "IRLSResult",
    "InversionGrid",
    "BackCalculation",
    "CalibrationResult",
    "SolverResult",
    "InverseGradient",
    "InvalidInputError",
    "IRLSNonConvergenceError",
    "observations_to_arrays",
    "ll4",
    "ll4_gradient",
    "ll4_dose_derivative",
    "ll4_inverse",
    "ll4_inverse_gradient",
    "nonlinear_least_squares",
    "fit_ll4",
    "summarize_replicates",
    "fit_variance_model",
    "irls_weights",
    "variance_exponent",
    "fit_irls",
    "inverse_predict",
    "back_calculate",
    "calibrate",
]
