"""
Forest Layout Engine

Computes the plotting geometry of a forest plot from a nested table:
axis transform and domain, ticks, reference line, column widths and, for
every analysis row, the transformed point / whisker coordinates with clip
flags. Only raw cell values are used here, never the display text, so a
capped cell (">999.9") still lays out at its true position.

All x-values supplied by the caller (xlim, x_at, vline) are in the
original unit and transformed together with the data.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Sequence

import numpy as np

from biomarker_forest.errors import ConfigurationError
from biomarker_forest.table import TableLike, is_missing
from config import CONFIG
from logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ForestConfig:
    xlim: tuple[float, float] | None = None
    logx: bool = False
    x_at: Sequence[float] | None = None
    vline: float | None = None
    forest_header: tuple[str, str] | None = None
    width_row_names: float | Sequence[float] | None = None
    width_columns: Sequence[float] | None = None
    width_forest: float | Sequence[float] | None = None
    default_width: float = 30
    cell_padding: float = 2
    domain_margin: float = 0.04
    n_ticks: int = 5

    @classmethod
    def from_config(cls, **overrides: Any) -> "ForestConfig":
        """Layout constants from CONFIG['forest.*'], plot options from `overrides`."""
        section = CONFIG.get_section("forest") or {}
        values = {k: section[k] for k in ("default_width", "cell_padding", "domain_margin", "n_ticks") if k in section}
        values.update(overrides)
        return cls(**values)


@dataclass(frozen=True)
class Tick:
    x: float
    label: str


@dataclass(frozen=True)
class RowGeometry:
    row_index: int
    label: str
    point_x: float | None
    interval_x_lo: float | None
    interval_x_hi: float | None
    clipped_lo: bool = False
    clipped_hi: bool = False
    point_in_domain: bool = False
    estimate: float = np.nan
    lower: float = np.nan
    upper: float = np.nan

    @property
    def has_point(self) -> bool:
        return self.point_x is not None


@dataclass(frozen=True)
class ColumnWidths:
    row_names: float
    columns: tuple[float, ...]
    forest: float

    @property
    def total(self) -> float:
        return self.row_names + sum(self.columns) + self.forest

    def as_list(self) -> list[float]:
        return [self.row_names, *self.columns, self.forest]


@dataclass(frozen=True)
class ForestGeometry:
    rows: tuple[RowGeometry, ...]
    axis_transform: str
    domain: tuple[float, float]
    ticks: tuple[Tick, ...]
    vline_x: float | None
    forest_header: tuple[str, str] | None
    column_widths: ColumnWidths
    n_table_rows: int
    col_x: int
    col_ci: int
    row_index_map: dict[int, int] = field(default_factory=dict)

    @property
    def tick_positions(self) -> list[float]:
        return [t.x for t in self.ticks]

    def transform(self, x: float) -> float:
        return math.log10(x) if self.axis_transform == "log10" else float(x)

    def inverse(self, x: float) -> float:
        return 10.0 ** x if self.axis_transform == "log10" else float(x)

    def for_table_row(self, row_index: int) -> RowGeometry | None:
        """Geometry of a table row, None for header/content rows."""
        pos = self.row_index_map.get(row_index)
        return None if pos is None else self.rows[pos]


def _text_extent(text: str) -> int:
    """Widest line of a (possibly multi-line) label, in character units."""
    return max((len(line) for line in str(text).split("\n")), default=0)


def auto_row_names_width(table: TableLike, padding: float) -> float:
    widths = [_text_extent(getattr(table, "row_label_header", ""))]
    widths.extend(2 * row.indent + _text_extent(row.label) for row in table.rows)
    return float(max(widths, default=0) + padding)


def auto_column_widths(table: TableLike, padding: float) -> tuple[float, ...]:
    """
    Width of each data column: the widest of its header label, its share of
    a spanning parent label, and its cell texts, plus padding.
    """
    n_cols = len(table.columns)
    span_share = [0.0] * n_cols
    pos = 0
    for label, n in table.header_spans():
        for j in range(pos, pos + n):
            span_share[j] = _text_extent(label) / n
        pos += n

    widths = []
    for j, col in enumerate(table.columns):
        extent = max(
            [float(_text_extent(col.label)), span_share[j]]
            + [float(_text_extent(table.cell(i, j).text)) for i in range(len(table.rows))]
        )
        widths.append(extent + padding)
    return tuple(widths)


def _scalar_width(value: float | Sequence[float], name: str) -> float:
    if isinstance(value, (list, tuple, np.ndarray)):
        if len(value) != 1:
            raise ConfigurationError(f"{name} must be a single width, got {len(value)} values")
        value = value[0]
    return _positive_width(value, name)


def _positive_width(value: Any, name: str) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{name} must be numeric, got {value!r}") from e
    if not np.isfinite(value) or value <= 0:
        raise ConfigurationError(f"{name} must be a positive width, got {value}")
    return value


def compute_column_widths(table: TableLike, config: ForestConfig) -> ColumnWidths:
    """Explicit widths are used verbatim; only missing ones are computed."""
    n_cols = len(table.columns)

    if config.width_row_names is not None:
        row_names = _scalar_width(config.width_row_names, "width_row_names")
    else:
        row_names = auto_row_names_width(table, config.cell_padding)

    if config.width_columns is not None:
        widths = list(config.width_columns)
        if len(widths) != n_cols:
            raise ConfigurationError(
                f"width_columns has {len(widths)} values but the table has {n_cols} columns"
            )
        columns = tuple(_positive_width(w, "width_columns") for w in widths)
    else:
        columns = auto_column_widths(table, config.cell_padding)

    if config.width_forest is not None:
        forest = _scalar_width(config.width_forest, "width_forest")
    else:
        forest = float(config.default_width)

    return ColumnWidths(row_names=row_names, columns=columns, forest=forest)


def _nice_number(x: float, round_up: bool) -> float:
    exp = math.floor(math.log10(x))
    frac = x / 10 ** exp
    if round_up:
        nice = 1 if frac <= 1 else 2 if frac <= 2 else 5 if frac <= 5 else 10
    else:
        nice = 1 if frac < 1.5 else 2 if frac < 3 else 5 if frac < 7 else 10
    return nice * 10 ** exp


def nice_ticks(lo: float, hi: float, n: int = 5) -> list[float]:
    """Round-number ticks (step 1, 2 or 5 x 10^k) inside [lo, hi]."""
    if hi <= lo:
        return [lo]
    step = _nice_number(_nice_number(hi - lo, round_up=False) / max(n - 1, 1), round_up=False)
    start = math.ceil(lo / step - 1e-9) * step
    ticks = []
    k = 0
    while start + k * step <= hi + step * 1e-9:
        ticks.append(round(start + k * step, 12))
        k += 1
    return ticks


def log_ticks(lo: float, hi: float, n: int = 5) -> list[float]:
    """
    Ticks in the original unit for a log10 domain [lo, hi]: powers of ten,
    refined with 2 and 5 multiples when the domain spans less than `n` decades.
    """
    k_lo, k_hi = math.floor(lo), math.ceil(hi)
    for mantissas in ((1,), (1, 2, 5), (1, 1.5, 2, 3, 5, 7)):
        values = [
            m * 10.0 ** k
            for k in range(k_lo, k_hi + 1)
            for m in mantissas
            if lo - 1e-12 <= math.log10(m * 10.0 ** k) <= hi + 1e-12
        ]
        if len(values) >= min(n, 3):
            return values
    return [v for v in nice_ticks(10 ** lo, 10 ** hi, n) if v > 0]


def _tick_label(value: float) -> str:
    return f"{value:g}"


def _raw_estimate(value: Any, row: int, col: int) -> float:
    if isinstance(value, tuple):
        value = value[0] if value else None
    if is_missing(value):
        return np.nan
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Cell ({row}, {col}) does not hold a numeric estimate: {value!r}") from e


def _raw_interval(value: Any, row: int, col: int) -> tuple[float, float]:
    if is_missing(value):
        return np.nan, np.nan
    if not isinstance(value, tuple) or len(value) not in (2, 3):
        raise ConfigurationError(
            f"Cell ({row}, {col}) does not hold a (lower, upper) interval: {value!r}"
        )
    lo, hi = value[-2], value[-1]
    try:
        return (np.nan if is_missing(lo) else float(lo), np.nan if is_missing(hi) else float(hi))
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Cell ({row}, {col}) holds a non-numeric interval: {value!r}") from e


def _validate_request(table: TableLike, col_x: int, col_ci: int, config: ForestConfig) -> None:
    n_cols = len(table.columns)
    for name, idx in (("col_x", col_x), ("col_ci", col_ci)):
        if not isinstance(idx, (int, np.integer)) or isinstance(idx, bool) or not (0 <= idx < n_cols):
            raise ConfigurationError(f"{name}={idx!r} is out of range for a table with {n_cols} columns")

    if config.forest_header is not None:
        if config.vline is None:
            raise ConfigurationError("forest_header requires vline")
        if isinstance(config.forest_header, str) or len(config.forest_header) != 2:
            raise ConfigurationError("forest_header must have exactly two labels")

    if config.xlim is not None:
        if len(config.xlim) != 2 or not all(np.isfinite(config.xlim)) or config.xlim[0] >= config.xlim[1]:
            raise ConfigurationError(f"xlim must be an increasing pair of finite numbers, got {config.xlim!r}")

    if config.logx:
        supplied = list(config.xlim or []) + list(config.x_at or [])
        if config.vline is not None:
            supplied.append(config.vline)
        bad = [v for v in supplied if v <= 0]
        if bad:
            raise ConfigurationError(f"logx=True requires positive xlim / x_at / vline values, got {bad}")


def _auto_domain(values: np.ndarray, vline_t: float | None, margin: float, logx: bool) -> tuple[float, float]:
    finite = values[np.isfinite(values)]
    if finite.size == 0:
        # nothing to show: one decade (log) or half a unit (linear) around the reference
        center = vline_t if vline_t is not None else (0.0 if logx else 0.5)
        half = 1.0 if logx else 0.5
        return center - half, center + half
    lo, hi = float(finite.min()), float(finite.max())
    span = hi - lo
    if span == 0:
        pad = 0.5 if logx else max(abs(lo) * 0.1, 0.5)
        return lo - pad, hi + pad
    return lo - margin * span, hi + margin * span


def compute_forest_geometry(
    table: TableLike,
    col_x: int | None = None,
    col_ci: int | None = None,
    config: ForestConfig | None = None,
) -> ForestGeometry:
    """
    Lay out the forest panel for `table`.

    Parameters:
        table: any nested table; analysis rows are plotted, header and
            content rows only occupy vertical space.
        col_x: index of the column whose raw value is the point estimate
            (defaults to the table's own col_x when it has one).
        col_ci: index of the column whose raw value is the (lower, upper) pair.
        config: plot options (xlim, logx, x_at, vline, forest_header, widths).

    Raises:
        ConfigurationError: invalid indices, forest_header without vline or
            not of length two, mis-sized widths, or non-positive values
            under logx.
    """
    config = config or ForestConfig.from_config()
    col_x = col_x if col_x is not None else getattr(table, "col_x", None)
    col_ci = col_ci if col_ci is not None else getattr(table, "col_ci", None)
    if col_x is None or col_ci is None:
        raise ConfigurationError("col_x and col_ci must be given for a table without forest defaults")
    _validate_request(table, col_x, col_ci, config)

    raw: list[tuple[int, str, float, float, float]] = []
    for i, row in enumerate(table.rows):
        if row.kind != "analysis":
            continue
        est = _raw_estimate(table.cell(i, col_x).value, i, col_x)
        lo, hi = _raw_interval(table.cell(i, col_ci).value, i, col_ci)
        raw.append((i, row.label, est, lo, hi))

    if config.logx:
        nonpositive = [
            (label, v) for _, label, *vals in raw for v in vals if np.isfinite(v) and v <= 0
        ]
        if nonpositive:
            raise ConfigurationError(
                f"logx=True requires positive estimates and bounds; got {nonpositive[:3]}"
            )
        transform = np.log10
        axis_transform = "log10"
    else:
        def transform(v):
            return np.asarray(v, dtype=float)
        axis_transform = "identity"

    vline_t = float(transform(config.vline)) if config.vline is not None else None

    if config.xlim is not None:
        d0, d1 = (float(v) for v in transform(np.asarray(config.xlim, dtype=float)))
    else:
        values = np.array([v for _, _, *vals in raw for v in vals], dtype=float)
        with np.errstate(divide="ignore", invalid="ignore"):
            d0, d1 = _auto_domain(transform(values), vline_t, config.domain_margin, config.logx)

    if config.x_at is not None:
        tick_values = [float(v) for v in config.x_at]
    elif config.logx:
        tick_values = log_ticks(d0, d1, config.n_ticks)
    else:
        tick_values = nice_ticks(d0, d1, config.n_ticks)
    ticks = tuple(Tick(x=float(transform(v)), label=_tick_label(v)) for v in tick_values)

    rows: list[RowGeometry] = []
    index_map: dict[int, int] = {}
    n_clipped = 0
    for i, label, est, lo, hi in raw:
        index_map[i] = len(rows)
        if not np.isfinite(est):
            rows.append(RowGeometry(i, label, None, None, None, estimate=est, lower=lo, upper=hi))
            continue

        px = float(transform(est))
        lo_t = float(transform(lo)) if np.isfinite(lo) else None
        hi_t = float(transform(hi)) if np.isfinite(hi) else None
        clipped_lo = lo_t is not None and not (d0 <= lo_t <= d1)
        clipped_hi = hi_t is not None and not (d0 <= hi_t <= d1)
        n_clipped += clipped_lo + clipped_hi
        rows.append(
            RowGeometry(
                row_index=i,
                label=label,
                point_x=px,
                interval_x_lo=min(max(lo_t, d0), d1) if lo_t is not None else None,
                interval_x_hi=min(max(hi_t, d0), d1) if hi_t is not None else None,
                clipped_lo=clipped_lo,
                clipped_hi=clipped_hi,
                point_in_domain=d0 <= px <= d1,
                estimate=est,
                lower=lo,
                upper=hi,
            )
        )

    widths = compute_column_widths(table, config)
    logger.info(
        f"Forest layout: {len(rows)} analysis rows, {axis_transform} axis, "
        f"domain=[{d0:.3g}, {d1:.3g}], {n_clipped} clipped whisker ends"
    )

    return ForestGeometry(
        rows=tuple(rows),
        axis_transform=axis_transform,
        domain=(d0, d1),
        ticks=ticks,
        vline_x=vline_t,
        forest_header=tuple(config.forest_header) if config.forest_header is not None else None,
        column_widths=widths,
        n_table_rows=len(table.rows),
        col_x=int(col_x),
        col_ci=int(col_ci),
        row_index_map=index_map,
    )
