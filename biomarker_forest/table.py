"""
Nested table model shared by the table builder, the layout engine and the renderer.

Every cell keeps two fields: the raw value used for geometry and the
display text shown in the table. Display capping only ever touches the text.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, Protocol, Sequence, runtime_checkable

import numpy as np
import pandas as pd

from biomarker_forest.errors import RowStatus

ROW_KINDS = ("header", "content", "analysis")


def is_missing(value: Any) -> bool:
    """True for None/NaN scalars; tuples are missing when all members are."""
    if isinstance(value, tuple):
        return len(value) == 0 or all(is_missing(v) for v in value)
    if value is None:
        return True
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


@dataclass(frozen=True)
class Cell:
    value: Any
    text: str


@dataclass(frozen=True)
class Column:
    id: str
    label: str
    span: str | None = None


@dataclass(frozen=True)
class TableRow:
    label: str
    kind: str
    cells: tuple[Cell, ...]
    group: str | None = None
    indent: int = 0

    def __post_init__(self):
        if self.kind not in ROW_KINDS:
            raise ValueError(f"Unknown row kind '{self.kind}', expected one of {ROW_KINDS}")


@runtime_checkable
class TableLike(Protocol):
    """
    Capabilities the layout engine and renderer rely on: ordered columns
    (optionally grouped under a shared parent header), ordered rows tagged
    with a kind and label, and per-cell raw value plus display text.
    """

    @property
    def columns(self) -> tuple[Column, ...]: ...

    @property
    def rows(self) -> tuple[TableRow, ...]: ...

    def cell(self, row: int, col: int) -> Cell: ...

    def header_spans(self) -> list[tuple[str, int]]: ...


@dataclass(frozen=True)
class NestedTable:
    """Generic nested table."""

    columns: tuple[Column, ...]
    rows: tuple[TableRow, ...]
    row_label_header: str = ""

    def __post_init__(self):
        n_cols = len(self.columns)
        for row in self.rows:
            if len(row.cells) != n_cols:
                raise ValueError(
                    f"Row '{row.label}' has {len(row.cells)} cells, table has {n_cols} columns"
                )

    @property
    def n_columns(self) -> int:
        return len(self.columns)

    @property
    def n_rows(self) -> int:
        return len(self.rows)

    def cell(self, row: int, col: int) -> Cell:
        return self.rows[row].cells[col]

    def column_index(self, column_id: str) -> int:
        for i, col in enumerate(self.columns):
            if col.id == column_id:
                return i
        raise KeyError(f"Column '{column_id}' not in table")

    def iter_analysis_rows(self) -> Iterator[tuple[int, TableRow]]:
        for i, row in enumerate(self.rows):
            if row.kind == "analysis":
                yield i, row

    def header_spans(self) -> list[tuple[str, int]]:
        """
        Top header line as (label, number of columns spanned), merging
        neighbouring columns that share a parent label. Columns without a
        parent contribute an empty single-column span.
        """
        spans: list[tuple[str, int]] = []
        for col in self.columns:
            parent = col.span or ""
            if spans and parent and spans[-1][0] == parent:
                spans[-1] = (parent, spans[-1][1] + 1)
            else:
                spans.append((parent, 1))
        return spans

    def to_dataframe(self) -> pd.DataFrame:
        """Display text as a DataFrame indexed by row label."""
        return pd.DataFrame(
            [[c.text for c in row.cells] for row in self.rows],
            index=[("  " * row.indent) + row.label for row in self.rows],
            columns=[col.label for col in self.columns],
        )

    @classmethod
    def from_dataframe(
        cls,
        df: pd.DataFrame,
        label_col: str,
        value_cols: Sequence[str] | None = None,
        labels: dict[str, str] | None = None,
        kind_col: str | None = None,
        group_col: str | None = None,
        digits: int = 2,
    ) -> "NestedTable":
        """
        Expose a plain DataFrame as a nested table.

        Tuple values (e.g. (lower, upper)) are kept raw and shown as
        "(a, b)". Rows default to kind "analysis".
        """
        labels = labels or {}
        if value_cols is None:
            value_cols = [c for c in df.columns if c not in {label_col, kind_col, group_col}]

        missing = {label_col, *value_cols} - set(df.columns)
        if missing:
            raise KeyError(f"Missing columns: {missing}")

        def _text(v: Any) -> str:
            if isinstance(v, tuple):
                return "(" + ", ".join(_text(x) for x in v) + ")"
            if is_missing(v):
                return ""
            if isinstance(v, (float, np.floating)):
                return f"{v:.{digits}f}"
            return str(v)

        columns = tuple(Column(id=c, label=labels.get(c, c)) for c in value_cols)
        rows = []
        for _, rec in df.iterrows():
            rows.append(
                TableRow(
                    label=str(rec[label_col]),
                    kind=str(rec[kind_col]) if kind_col else "analysis",
                    cells=tuple(Cell(value=rec[c], text=_text(rec[c])) for c in value_cols),
                    group=str(rec[group_col]) if group_col else None,
                )
            )
        return cls(columns=columns, rows=tuple(rows), row_label_header=labels.get(label_col, ""))


@dataclass(frozen=True)
class SubgroupRow:
    """One statistical result for a biomarker within one subgroup."""

    label: str
    grouping_variable: str | None
    row_kind: str
    n_total: int
    n_event: int
    proportion: float
    estimate: float
    lower_ci: float
    upper_ci: float
    confidence_level: float
    p_value: float
    p_value_label: str
    biomarker: str = ""
    biomarker_label: str = ""
    grouping_label: str | None = None
    median: float = np.nan
    status: str = RowStatus.OK.value
    message: str = ""

    def __post_init__(self):
        if self.row_kind not in ROW_KINDS:
            raise ValueError(f"Unknown row kind '{self.row_kind}'")
        if self.n_total < 0 or self.n_event < 0 or self.n_event > self.n_total:
            raise ValueError(
                f"Inconsistent counts for '{self.label}': n_event={self.n_event}, n_total={self.n_total}"
            )
        if not (0 < self.confidence_level < 1):
            raise ValueError(f"confidence_level must be in (0, 1), got {self.confidence_level}")
        if self.has_estimate and not is_missing(self.lower_ci) and not is_missing(self.upper_ci):
            if not (self.lower_ci <= self.estimate <= self.upper_ci):
                raise ValueError(
                    f"Interval ({self.lower_ci}, {self.upper_ci}) does not contain estimate "
                    f"{self.estimate} for '{self.label}'"
                )

    @property
    def has_estimate(self) -> bool:
        return not is_missing(self.estimate)

    @classmethod
    def from_record(cls, rec: dict[str, Any]) -> "SubgroupRow":
        """Build from one record of an extraction DataFrame."""
        effect_col = "or" if "or" in rec else "hr"
        event_col = "n_rsp" if "n_rsp" in rec else "n_tot_events"
        n_tot = int(rec["n_tot"])
        n_event = int(rec[event_col])
        prop = rec.get("prop", np.nan)
        if "prop" not in rec:
            prop = n_event / n_tot if n_tot > 0 else np.nan
        return cls(
            label=str(rec["subgroup"]),
            grouping_variable=None if rec["var"] == "ALL" else str(rec["var"]),
            grouping_label=str(rec.get("var_label", rec["var"])),
            row_kind=str(rec["row_type"]),
            n_total=n_tot,
            n_event=n_event,
            proportion=float(prop),
            estimate=float(rec[effect_col]),
            lower_ci=float(rec["lcl"]),
            upper_ci=float(rec["ucl"]),
            confidence_level=float(rec["conf_level"]),
            p_value=float(rec["pval"]),
            p_value_label=str(rec["pval_label"]),
            biomarker=str(rec["biomarker"]),
            biomarker_label=str(rec["biomarker_label"]),
            median=float(rec.get("median", np.nan)),
            status=str(rec.get("status", RowStatus.OK.value)),
            message=str(rec.get("message", "")),
        )


@dataclass(frozen=True)
class EffectTable(NestedTable):
    """
    Biomarker effect table: a NestedTable plus the SubgroupRow behind each
    table row (None for biomarker header rows) and the default forest
    settings attached by the builder.
    """

    source_rows: tuple[SubgroupRow | None, ...] = field(default_factory=tuple)
    col_x: int | None = None
    col_ci: int | None = None
    forest_header: tuple[str, str] | None = None
    vline: float | None = None
    logx: bool = False

    def __post_init__(self):
        super().__post_init__()
        if self.source_rows and len(self.source_rows) != len(self.rows):
            raise ValueError("source_rows must align with rows")

    def diagnostics(self) -> pd.DataFrame:
        """Rows whose statistics were recovered from empty data or a failed fit."""
        recs = [
            {
                "biomarker": r.biomarker,
                "subgroup": r.label,
                "var": r.grouping_variable,
                "status": r.status,
                "message": r.message,
            }
            for r in self.source_rows
            if r is not None and r.status != RowStatus.OK.value
        ]
        return pd.DataFrame(recs, columns=["biomarker", "subgroup", "var", "status", "message"])
