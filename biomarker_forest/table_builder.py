"""
Effect Table Builder

Turns extraction output (one record per biomarker x subgroup) into an
EffectTable: a biomarker header row, the "All patients" content row, then
for every subgroup variable a header row followed by one analysis row per
level. Row order always follows the extraction order; nothing is re-sorted.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Sequence

import pandas as pd

from biomarker_forest.errors import ConfigurationError, RowStatus
from biomarker_forest.formatting import (
    FormatConfig,
    format_ci,
    format_count,
    format_estimate,
    format_estimate_ci,
    format_number,
    format_percent,
    format_pvalue,
)
from biomarker_forest.table import Cell, Column, EffectTable, SubgroupRow, TableRow
from logger import get_logger

logger = get_logger(__name__)

CellFn = Callable[[SubgroupRow, FormatConfig], Cell]


@dataclass(frozen=True)
class ColumnRule:
    label: str
    cell: CellFn
    span: str | None = None


def _ci_label(conf_level: float) -> str:
    pct = round(100 * conf_level, 2)
    return f"{pct:g}% CI"


def rsp_colvars(conf_level: float = 0.95, method: str = "p-value (Wald)") -> dict[str, ColumnRule]:
    """Column rules for response (odds ratio) tables."""
    return {
        "n_tot": ColumnRule("Total n", lambda r, f: Cell(r.n_total, format_count(r.n_total, f))),
        "n_rsp": ColumnRule(
            "Responders", lambda r, f: Cell(r.n_event, format_count(r.n_event, f)), span="Response"
        ),
        "prop": ColumnRule(
            "Response (%)", lambda r, f: Cell(r.proportion, format_percent(r.proportion, f)), span="Response"
        ),
        "or": ColumnRule(
            "Odds Ratio", lambda r, f: Cell(r.estimate, format_estimate(r.estimate, f)), span="Odds Ratio"
        ),
        "ci": ColumnRule(
            _ci_label(conf_level),
            lambda r, f: Cell((r.lower_ci, r.upper_ci), format_ci(r.lower_ci, r.upper_ci, f)),
            span="Odds Ratio",
        ),
        "estimate_ci": ColumnRule(
            f"Odds Ratio ({_ci_label(conf_level)})",
            lambda r, f: Cell(
                (r.estimate, r.lower_ci, r.upper_ci),
                format_estimate_ci(r.estimate, r.lower_ci, r.upper_ci, f),
            ),
        ),
        "pval": ColumnRule(method, lambda r, f: Cell(r.p_value, format_pvalue(r.p_value, f))),
    }


def surv_colvars(conf_level: float = 0.95, method: str = "p-value (Wald)") -> dict[str, ColumnRule]:
    """Column rules for time-to-event (hazard ratio) tables."""
    return {
        "n_tot": ColumnRule("Total n", lambda r, f: Cell(r.n_total, format_count(r.n_total, f))),
        "n_tot_events": ColumnRule(
            "Total Events", lambda r, f: Cell(r.n_event, format_count(r.n_event, f)), span="Events"
        ),
        "median": ColumnRule(
            "Median", lambda r, f: Cell(r.median, format_number(r.median, 1, f)), span="Events"
        ),
        "hr": ColumnRule(
            "Hazard Ratio", lambda r, f: Cell(r.estimate, format_estimate(r.estimate, f)), span="Hazard Ratio"
        ),
        "ci": ColumnRule(
            _ci_label(conf_level),
            lambda r, f: Cell((r.lower_ci, r.upper_ci), format_ci(r.lower_ci, r.upper_ci, f)),
            span="Hazard Ratio",
        ),
        "estimate_ci": ColumnRule(
            f"Hazard Ratio ({_ci_label(conf_level)})",
            lambda r, f: Cell(
                (r.estimate, r.lower_ci, r.upper_ci),
                format_estimate_ci(r.estimate, r.lower_ci, r.upper_ci, f),
            ),
        ),
        "pval": ColumnRule(method, lambda r, f: Cell(r.p_value, format_pvalue(r.p_value, f))),
    }


def _select_rules(colvars: dict[str, ColumnRule], vars: Sequence[str]) -> list[tuple[str, ColumnRule]]:
    if not vars:
        raise ConfigurationError("vars must select at least one column")
    unknown = [v for v in vars if v not in colvars]
    if unknown:
        raise ConfigurationError(f"Unknown column ids {unknown}; choose from {list(colvars)}")
    if len(set(vars)) != len(vars):
        raise ConfigurationError(f"Duplicate column ids in vars: {list(vars)}")
    return [(v, colvars[v]) for v in vars]


def _blank_row(label: str, n_cols: int, group: str | None, indent: int) -> TableRow:
    return TableRow(label=label, kind="header", cells=tuple(Cell(None, "") for _ in range(n_cols)), group=group, indent=indent)


def _rows_for_biomarker(
    records: list[SubgroupRow],
    rules: list[tuple[str, ColumnRule]],
    fmt: FormatConfig,
    include_all: bool,
) -> tuple[list[TableRow], list[SubgroupRow | None]]:
    rows: list[TableRow] = []
    sources: list[SubgroupRow | None] = []
    current_var: object = object()

    for rec in records:
        cells = tuple(rule.cell(rec, fmt) for _, rule in rules)
        if rec.grouping_variable is None:
            if not include_all:
                continue
            rows.append(TableRow(label=rec.label, kind="content", cells=cells, group=None, indent=1))
            sources.append(rec)
            continue

        if rec.grouping_variable != current_var:
            current_var = rec.grouping_variable
            rows.append(_blank_row(rec.grouping_label or rec.grouping_variable, len(rules), rec.grouping_variable, 1))
            sources.append(None)

        rows.append(TableRow(label=rec.label, kind="analysis", cells=cells, group=rec.grouping_variable, indent=2))
        sources.append(rec)

    return rows, sources


REQUIRED_COLUMNS = ["biomarker", "biomarker_label", "subgroup", "var", "row_type", "n_tot", "lcl", "ucl", "conf_level", "pval", "pval_label"]


def _records(df: pd.DataFrame) -> list[SubgroupRow]:
    missing = set(REQUIRED_COLUMNS) - set(df.columns)
    if missing:
        raise ConfigurationError(f"Missing columns: {sorted(missing)}")
    return [SubgroupRow.from_record(rec) for rec in df.to_dict("records")]


def _build(
    df: pd.DataFrame,
    vars: Sequence[str],
    colvars_fn: Callable[..., dict[str, ColumnRule]],
    effect_ids: tuple[str, ...],
    forest_header: tuple[str, str],
    fmt: FormatConfig | None,
    include_all: bool,
    single_biomarker: bool,
) -> EffectTable:
    fmt = fmt or FormatConfig.from_config()
    records = _records(df)
    if records:
        colvars = colvars_fn(conf_level=records[0].confidence_level, method=records[0].p_value_label)
    else:
        colvars = colvars_fn()
    rules = _select_rules(colvars, vars)

    # Biomarker order of first appearance
    by_biomarker: dict[str, list[SubgroupRow]] = {}
    for rec in records:
        by_biomarker.setdefault(rec.biomarker, []).append(rec)

    rows: list[TableRow] = []
    sources: list[SubgroupRow | None] = []
    for bm, bm_records in by_biomarker.items():
        if not single_biomarker:
            rows.append(_blank_row(bm_records[0].biomarker_label, len(rules), None, 0))
            sources.append(None)
        bm_rows, bm_sources = _rows_for_biomarker(bm_records, rules, fmt, include_all)
        if single_biomarker:
            bm_rows = [TableRow(r.label, r.kind, r.cells, r.group, max(r.indent - 1, 0)) for r in bm_rows]
        rows.extend(bm_rows)
        sources.extend(bm_sources)

    ids = list(vars)
    col_x = next((ids.index(e) for e in effect_ids if e in ids), None)
    if col_x is None and "estimate_ci" in ids:
        col_x = ids.index("estimate_ci")
    col_ci = ids.index("ci") if "ci" in ids else (ids.index("estimate_ci") if "estimate_ci" in ids else None)

    table = EffectTable(
        columns=tuple(Column(id=v, label=rule.label, span=rule.span) for v, rule in rules),
        rows=tuple(rows),
        row_label_header="Biomarker\n  Subgroup" if not single_biomarker else "Subgroup",
        source_rows=tuple(sources),
        col_x=col_x,
        col_ci=col_ci,
        forest_header=forest_header,
        vline=1.0,
        logx=True,
    )
    n_flagged = sum(1 for r in sources if r is not None and r.status != RowStatus.OK.value)
    logger.info(
        f"Effect table built: {len(by_biomarker)} biomarkers, {len(rows)} rows, "
        f"{len(rules)} columns, {n_flagged} rows with recovered diagnostics"
    )
    return table


def tab_one_biomarker(
    df: pd.DataFrame,
    vars: Sequence[str],
    fmt: FormatConfig | None = None,
    include_all: bool = True,
) -> EffectTable:
    """
    Sub-table for the results of a single biomarker: the "All patients"
    content row and the subgroup analysis rows, without a biomarker header.

    The effect family (odds / hazard ratio) follows the columns of `df`.
    """
    if df["biomarker"].nunique() > 1:
        raise ConfigurationError("tab_one_biomarker expects the results of exactly one biomarker")
    if "or" in df.columns:
        return _build(df, vars, rsp_colvars, ("or",), ("Lower\nBetter", "Higher\nBetter"), fmt, include_all, True)
    return _build(df, vars, surv_colvars, ("hr",), ("Higher\nBetter", "Lower\nBetter"), fmt, include_all, True)


def tabulate_rsp_biomarkers(
    df: pd.DataFrame,
    vars: Sequence[str] = ("n_tot", "n_rsp", "prop", "or", "ci", "pval"),
    fmt: FormatConfig | None = None,
    include_all: bool = True,
) -> EffectTable:
    """
    Stack one sub-table per biomarker (in extraction order) from the
    output of extract_rsp_biomarkers().

    The returned table carries forest defaults: col_x on the odds ratio
    column, col_ci on the interval column, vline at 1 and a log axis.
    """
    if "or" not in df.columns:
        raise ConfigurationError("Expected response results with an 'or' column")
    return _build(df, vars, rsp_colvars, ("or",), ("Lower\nBetter", "Higher\nBetter"), fmt, include_all, False)


def tabulate_surv_biomarkers(
    df: pd.DataFrame,
    vars: Sequence[str] = ("n_tot", "n_tot_events", "median", "hr", "ci", "pval"),
    fmt: FormatConfig | None = None,
    include_all: bool = True,
) -> EffectTable:
    """Time-to-event counterpart of tabulate_rsp_biomarkers()."""
    if "hr" not in df.columns:
        raise ConfigurationError("Expected survival results with an 'hr' column")
    return _build(df, vars, surv_colvars, ("hr",), ("Higher\nBetter", "Lower\nBetter"), fmt, include_all, False)
