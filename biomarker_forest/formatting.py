"""
Cell Formatting for Effect Tables

Formatters return display text only. Values whose magnitude exceeds the
display cap are shown as ">999.9" / "<-999.9"; the raw value stored next to
the text in the table cell is never altered.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd

from config import CONFIG


@dataclass(frozen=True)
class FormatConfig:
    """Formatting rules passed explicitly into the table builder."""

    display_cap: float = 999.9
    estimate_digits: int = 2
    proportion_digits: int = 1
    pval_digits: int = 4
    na_string: str = "NA"
    ci_separator: str = " - "

    @classmethod
    def from_config(cls, **overrides: Any) -> "FormatConfig":
        """Defaults from CONFIG['format.*'], with per-call overrides."""
        section = CONFIG.get_section("format") or {}
        values = {k: section[k] for k in cls.__dataclass_fields__ if k in section}
        values.update(overrides)
        return cls(**values)


def _missing(v: Any) -> bool:
    return v is None or bool(pd.isna(v))


def format_number(value: float, digits: int, cfg: FormatConfig) -> str:
    """Fixed-point text with extreme-value capping."""
    if _missing(value):
        return cfg.na_string
    value = float(value)
    if np.isposinf(value) or value > cfg.display_cap:
        return f">{cfg.display_cap}"
    if np.isneginf(value) or value < -cfg.display_cap:
        return f"<-{cfg.display_cap}"
    return f"{value:.{digits}f}"


def format_count(value: Any, cfg: FormatConfig) -> str:
    if _missing(value):
        return cfg.na_string
    return str(int(value))


def format_percent(proportion: float, cfg: FormatConfig) -> str:
    """Proportion in [0, 1] as a rounded percentage."""
    if _missing(proportion):
        return cfg.na_string
    return f"{100 * float(proportion):.{cfg.proportion_digits}f}"


def format_estimate(value: float, cfg: FormatConfig) -> str:
    return format_number(value, cfg.estimate_digits, cfg)


def format_ci(lower: float, upper: float, cfg: FormatConfig) -> str:
    """'(lower - upper)'; missing when both bounds are missing."""
    if _missing(lower) and _missing(upper):
        return cfg.na_string
    return (
        f"({format_estimate(lower, cfg)}{cfg.ci_separator}"
        f"{format_estimate(upper, cfg)})"
    )


def format_estimate_ci(value: float, lower: float, upper: float, cfg: FormatConfig) -> str:
    """Combined 'estimate (lower - upper)' cell."""
    if _missing(value):
        return cfg.na_string
    ci = format_ci(lower, upper, cfg)
    if ci == cfg.na_string:
        return format_estimate(value, cfg)
    return f"{format_estimate(value, cfg)} {ci}"


def format_pvalue(p: float, cfg: FormatConfig) -> str:
    """
    P-value with `cfg.pval_digits` decimals; values below 10^-digits show
    as '<0.0001' and values above 1 - 10^-digits as '>0.9999'.
    """
    if _missing(p) or not np.isfinite(p):
        return cfg.na_string
    digits = cfg.pval_digits
    bound = 10.0 ** -digits
    if p < bound:
        return f"<{bound:.{digits}f}"
    if p > 1 - bound:
        return f">{1 - bound:.{digits}f}"
    return f"{p:.{digits}f}"
