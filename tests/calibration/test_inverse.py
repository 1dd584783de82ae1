"""Tests for delta-method inverse prediction."""

import numpy as np
import pytest

from pyassaycal.calibration import (
    CurveParams,
    back_calculate,
    fit_irls,
    inverse_predict,
)
from pyassaycal.calibration._inverse import _concentration_grid


THETA = 1.5


@pytest.fixture(scope="module")
def irls_fit():
    np.random.seed(11)
    conc = np.repeat([0.1, 0.3, 1.0, 3.0, 10.0, 30.0, 100.0, 300.0], 3)
    mean = CurveParams(top=2.0, bottom=0.05, ic50=5.0, slope=1.0).predict(conc)
    resp = mean + np.random.normal(0, 0.03 * mean**0.75)
    start = CurveParams(top=1.8, bottom=0.1, ic50=3.0, slope=0.8)
    return fit_irls(conc, resp, THETA, start)


class TestInversePredict:
    """Precision profile over the concentration grid."""

    def test_sorted_by_concentration(self, irls_fit):
        grid = inverse_predict(irls_fit, THETA)
        assert np.all(np.diff(grid.concentration) >= 0)

    def test_all_sd_finite(self, irls_fit):
        grid = inverse_predict(irls_fit, THETA)
        assert np.all(np.isfinite(grid.sd))
        assert np.all(grid.sd > 0)

    def test_grid_size(self, irls_fit):
        grid = inverse_predict(irls_fit, THETA)
        assert 0 < len(grid) <= 700
        small = inverse_predict(irls_fit, THETA, grid_size=50)
        assert 0 < len(small) <= 50

    def test_grid_spans_floor_to_max(self, irls_fit):
        grid = inverse_predict(irls_fit, THETA)
        assert grid.concentration[0] >= 5e-4 * (1 - 1e-6)
        assert grid.concentration[0] < 1e-3
        assert grid.concentration[-1] == pytest.approx(300.0, rel=1e-6)

    def test_responses_on_fitted_curve(self, irls_fit):
        grid = inverse_predict(irls_fit, THETA, grid_size=40)
        np.testing.assert_allclose(irls_fit.final.predict(grid.concentration), grid.response,
                                   rtol=1e-8)

    def test_halves_evenly_spaced_in_log(self, irls_fit):
        x = _concentration_grid(irls_fit, 40)
        ic50 = irls_fit.params.ic50
        lower, upper = np.log(x[:20]), np.log(x[20:])
        np.testing.assert_allclose(np.diff(lower), np.diff(lower)[0], rtol=1e-8)
        np.testing.assert_allclose(np.diff(upper), np.diff(upper)[0], rtol=1e-8)
        assert x[19] == pytest.approx(ic50, rel=1e-12)
        assert np.sum(np.isclose(x, ic50, rtol=1e-10)) == 1

    def test_ic50_in_grid(self, irls_fit):
        grid = inverse_predict(irls_fit, THETA, grid_size=40)
        ic50 = irls_fit.params.ic50
        assert np.min(np.abs(grid.concentration / ic50 - 1.0)) < 1e-8

    def test_more_replicates_smaller_sd(self, irls_fit):
        g1 = inverse_predict(irls_fit, THETA, n_replicates=1, grid_size=60)
        g10 = inverse_predict(irls_fit, THETA, n_replicates=10, grid_size=60)
        np.testing.assert_allclose(g1.concentration, g10.concentration)
        assert np.all(g10.sd < g1.sd)

    def test_precision_best_near_ic50(self, irls_fit):
        """CV is lowest in the middle of the curve, not at the extremes."""
        grid = inverse_predict(irls_fit, THETA)
        cv = grid.cv
        i_min = int(np.argmin(cv))
        assert grid.concentration[i_min] > 0.1
        assert grid.concentration[i_min] < 300.0
        assert cv[0] > cv[i_min]

    def test_invalid_replicates(self, irls_fit):
        with pytest.raises(ValueError, match="n_replicates"):
            inverse_predict(irls_fit, THETA, n_replicates=0)

    def test_invalid_grid_size(self, irls_fit):
        with pytest.raises(ValueError, match="grid_size"):
            inverse_predict(irls_fit, THETA, grid_size=1)


class TestBackCalculate:
    """Concentration estimates for unknown samples."""

    def test_recovers_concentration(self, irls_fit):
        y = irls_fit.final.predict(np.array([0.5, 3.0, 40.0]))
        bc = back_calculate(irls_fit, y, THETA)
        np.testing.assert_allclose(bc.concentration, [0.5, 3.0, 40.0], rtol=1e-8)
        assert np.all(bc.sd > 0)

    def test_matches_grid(self, irls_fit):
        grid = inverse_predict(irls_fit, THETA, grid_size=30)
        bc = back_calculate(irls_fit, grid.response, THETA)
        np.testing.assert_allclose(bc.sd, grid.sd)

    def test_out_of_range_is_nan(self, irls_fit):
        p = irls_fit.params
        above = max(p.top, p.bottom) + 1.0
        bc = back_calculate(irls_fit, np.array([above, 1.0]), THETA)
        assert np.isnan(bc.concentration[0])
        assert np.isnan(bc.sd[0])
        assert np.isfinite(bc.concentration[1])

    def test_scalar_response(self, irls_fit):
        bc = back_calculate(irls_fit, 1.0, THETA)
        assert bc.concentration.shape == (1,)
        assert bc.cv[0] == pytest.approx(bc.sd[0] / bc.concentration[0])
