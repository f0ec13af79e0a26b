"""
Error kinds and per-row diagnostic status.

Caller mistakes raise ConfigurationError immediately. Data problems in a
single biomarker or subgroup are recovered and recorded on the row.
"""

from __future__ import annotations

from enum import Enum


class ConfigurationError(ValueError):
    """Invalid plot/table request (bad widths, indices, log domain, ...)."""


class FitDegeneracy(RuntimeError):
    """A single model fit did not converge or is undefined."""


class RowStatus(str, Enum):
    OK = "ok"
    EMPTY_DATA = "empty_data"
    FIT_DEGENERATE = "fit_degenerate"
