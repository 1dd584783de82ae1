"""End-to-end tests for calibrate()."""

import logging

import numpy as np
import pytest

from pyassaycal.calibration import CurveParams, calibrate
from pyassaycal.calibration._fit import _initial_params, _midpoint_crossing


@pytest.fixture
def standards():
    """Three replicates per level plus three zero-concentration blanks."""
    np.random.seed(5)
    levels = [0.0, 0.1, 0.3, 1.0, 3.0, 10.0, 30.0, 100.0, 300.0]
    conc = np.repeat(levels, 3)
    mean = CurveParams(top=2.0, bottom=0.05, ic50=5.0, slope=1.0).predict(conc)
    resp = mean + np.random.normal(0, 0.03 * mean**0.75)
    return conc, resp


class TestInitialParams:
    """Self-starting values."""

    def test_midpoint_crossing_log_interpolated(self):
        levels = np.array([1.0, 10.0, 100.0])
        assert _midpoint_crossing(levels, np.array([0.0, 0.5, 1.0]), 0.5) == pytest.approx(10.0)
        ic50 = _midpoint_crossing(levels, np.array([0.0, 0.25, 1.0]), 0.5)
        assert ic50 == pytest.approx(10.0 ** (4.0 / 3.0))

    def test_midpoint_never_reached(self):
        levels = np.array([1.0, 10.0, 100.0])
        ic50 = _midpoint_crossing(levels, np.array([0.1, 0.2, 0.3]), 0.9)
        assert ic50 == pytest.approx(10.0)

    def test_increasing_curve(self, standards):
        conc, resp = standards
        p = _initial_params(conc, resp)
        assert p.bottom < p.top
        assert p.slope > 0
        assert 0.3 < p.ic50 < 100

    def test_decreasing_curve(self):
        conc = np.repeat([1.0, 10.0, 100.0], 2)
        resp = np.array([0.95, 0.93, 0.55, 0.52, 0.12, 0.10])
        p = _initial_params(conc, resp)
        assert p.bottom == pytest.approx(0.94)
        assert p.top == pytest.approx(0.11)
        assert p.slope > 0
        assert 1.0 < p.ic50 < 100.0

    def test_needs_two_levels(self):
        with pytest.raises(ValueError, match="2 distinct"):
            _initial_params(np.ones(5), np.arange(5.0))


class TestCalibrate:
    """Full pipeline."""

    def test_runs_end_to_end(self, standards):
        conc, resp = standards
        result = calibrate(conc, resp)
        assert np.isfinite(result.variance.theta)
        assert result.irls.cycles >= 1
        assert result.irls.params.ic50 == pytest.approx(5.0, rel=0.3)
        assert len(result.grid) > 0

    def test_blanks_excluded(self, standards):
        conc, resp = standards
        result = calibrate(conc, resp)
        assert result.n_dropped == 3
        assert np.all(result.replicates.concentration > 0)
        assert np.all(result.irls.concentration > 0)
        assert np.all(np.isfinite(result.grid.sd))
        assert np.all(np.isfinite(result.grid.concentration))

    def test_blank_warning_logged(self, standards, caplog):
        conc, resp = standards
        with caplog.at_level(logging.WARNING, logger="pyassaycal"):
            calibrate(conc, resp)
        assert "non-positive concentration" in caplog.text

    def test_theta_shared_between_stages(self, standards):
        conc, resp = standards
        result = calibrate(conc, resp)
        assert result.irls.theta == result.variance.theta

    def test_explicit_start(self, standards):
        conc, resp = standards
        start = {"top": 1.8, "bottom": 0.1, "ic50": 3.0, "slope": 0.8}
        result = calibrate(conc, resp, start=start, grid_size=100, n_replicates=2)
        assert len(result.grid) <= 100
        assert result.grid.n_replicates == 2

    def test_summary(self, standards):
        conc, resp = standards
        s = calibrate(conc, resp).summary()
        assert "theta" in s
        assert "Inversion grid" in s
        assert "excluded" in s
