"""
PyAssayCal: calibration-curve statistics for bioassays.

Weighted four-parameter logistic standard curves with a power-law variance
model and inverse-prediction uncertainty for unknown samples.

Usage:
    from pyassaycal import calibration
"""

import logging

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())

from pyassaycal import calibration  # noqa: E402

__all__ = [
    "__version__",
    "calibration",
]
