"""
Biomarker Effect Extraction

One model fit per biomarker (and per subgroup level), reduced to a fixed
summary row. Fits of different biomarkers are independent and run on a
thread pool; results are re-joined in biomarker order.

Empty data and degenerate fits never abort extraction: the row is still
emitted with zero counts / missing statistics and a status flag.
"""

from __future__ import annotations

import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Sequence

import numpy as np
import pandas as pd
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from biomarker_forest.errors import ConfigurationError, FitDegeneracy, RowStatus
from biomarker_forest.model_fit import fit_coxreg, fit_logistic
from config import CONFIG
from logger import get_logger

logger = get_logger(__name__)

RSP_COLUMNS = [
    "biomarker", "biomarker_label", "n_tot", "n_rsp", "prop", "or", "lcl", "ucl",
    "conf_level", "pval", "pval_label", "status", "message",
]
SURV_COLUMNS = [
    "biomarker", "biomarker_label", "n_tot", "n_tot_events", "median", "hr", "lcl", "ucl",
    "conf_level", "pval", "pval_label", "status", "message",
]


@dataclass(frozen=True)
class ControlLogistic:
    conf_level: float
    response_definition: str
    max_iter: int


@dataclass(frozen=True)
class ControlCox:
    conf_level: float


def _check_conf_level(conf_level: float) -> float:
    conf_level = float(conf_level)
    if not (0 < conf_level < 1):
        raise ConfigurationError(f"conf_level must be in (0, 1), got {conf_level}")
    return conf_level


def control_logistic(
    conf_level: float | None = None,
    response_definition: str | None = None,
    max_iter: int | None = None,
) -> ControlLogistic:
    """Logistic fit settings, defaulting to CONFIG['analysis.*']."""
    response_definition = response_definition or CONFIG.get("analysis.response_definition", "x")
    if response_definition not in ("x", "1 - x"):
        raise ConfigurationError(
            f"response_definition must be 'x' or '1 - x', got '{response_definition}'"
        )
    return ControlLogistic(
        conf_level=_check_conf_level(conf_level if conf_level is not None else CONFIG.get("analysis.conf_level", 0.95)),
        response_definition=response_definition,
        max_iter=int(max_iter or CONFIG.get("analysis.logit_max_iter", 100)),
    )


def control_coxreg(conf_level: float | None = None) -> ControlCox:
    """Cox fit settings, defaulting to CONFIG['analysis.conf_level']."""
    return ControlCox(
        conf_level=_check_conf_level(conf_level if conf_level is not None else CONFIG.get("analysis.conf_level", 0.95))
    )


def rsp_to_logistic_variables(variables: dict[str, Any], biomarker: str) -> dict[str, Any]:
    """
    Convert a response variable list ({rsp, covariates, strat}) into the
    variable list of the logistic fit, with `biomarker` as the arm term.
    """
    if not isinstance(variables, dict) or not isinstance(variables.get("rsp"), str):
        raise ConfigurationError("variables must be a dict with a string 'rsp' entry")
    if not isinstance(biomarker, str):
        raise ConfigurationError("biomarker must be a string")
    return {
        "response": variables["rsp"],
        "arm": biomarker,
        "covariates": _as_list(variables.get("covariates")),
        "strata": _as_list(variables.get("strat")),
    }


def surv_to_coxreg_variables(variables: dict[str, Any], biomarker: str) -> dict[str, Any]:
    """Survival counterpart of rsp_to_logistic_variables ({tte, is_event, ...})."""
    if not isinstance(variables, dict) or not isinstance(variables.get("tte"), str) \
            or not isinstance(variables.get("is_event"), str):
        raise ConfigurationError("variables must be a dict with string 'tte' and 'is_event' entries")
    if not isinstance(biomarker, str):
        raise ConfigurationError("biomarker must be a string")
    return {
        "time": variables["tte"],
        "event": variables["is_event"],
        "arm": biomarker,
        "covariates": _as_list(variables.get("covariates")),
        "strata": _as_list(variables.get("strat")),
    }


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


def _validate_variables(variables: dict[str, Any], data: pd.DataFrame, required: Sequence[str]) -> list[str]:
    biomarkers = _as_list(variables.get("biomarkers"))
    if not biomarkers:
        raise ConfigurationError("variables['biomarkers'] must name at least one biomarker")

    needed = set(biomarkers)
    for key in required:
        needed.update(_as_list(variables.get(key)))
    for key in ("covariates", "strat", "subgroups"):
        needed.update(_as_list(variables.get(key)))

    missing = needed - set(data.columns)
    if missing:
        raise ConfigurationError(f"Missing columns: {sorted(missing)}")

    # Biomarkers enter the models as a single continuous term
    numeric = biomarkers + [v for key in required for v in _as_list(variables.get(key))]
    non_numeric = [c for c in dict.fromkeys(numeric) if not pd.api.types.is_numeric_dtype(data[c])]
    if non_numeric:
        raise ConfigurationError(f"Columns must be numeric: {non_numeric}")
    return biomarkers


def _labels_for(data: pd.DataFrame, names: Sequence[str], var_labels: dict[str, str] | None) -> dict[str, str]:
    """Variable labels, falling back to the column name."""
    labels = dict(data.attrs.get("labels", {}))
    labels.update(var_labels or {})
    return {n: str(labels.get(n, n)) for n in names}


def _run_batch(biomarkers: Sequence[str], fit_one: Callable[[str], dict[str, Any]]) -> list[dict[str, Any]]:
    """
    Apply `fit_one` to every biomarker, concurrently when the batch is big
    enough. Output order always equals biomarker order.
    """
    n_threads = max(1, int(CONFIG.get("performance.num_threads", 4)))
    min_parallel = int(CONFIG.get("performance.parallel_min_biomarkers", 2))

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        warnings.simplefilter("ignore", RuntimeWarning)
        if n_threads == 1 or len(biomarkers) < min_parallel:
            return [fit_one(bm) for bm in biomarkers]
        with ThreadPoolExecutor(max_workers=min(n_threads, len(biomarkers))) as pool:
            return list(pool.map(fit_one, biomarkers))


def logistic_mult_cont_df(
    variables: dict[str, Any],
    data: pd.DataFrame,
    control: ControlLogistic | None = None,
    var_labels: dict[str, str] | None = None,
) -> pd.DataFrame:
    """
    Responders, patients, response rate, odds ratio with CI and Wald p-value
    for each biomarker in `variables['biomarkers']`, within one dataset.

    `variables` needs `rsp` and `biomarkers`, optionally `covariates` and
    `strat`. An empty `data` gives one row per biomarker with zero counts and
    missing statistics.
    """
    control = control or control_logistic()
    biomarkers = _validate_variables(variables, data, ["rsp"])
    labels = _labels_for(data, biomarkers, var_labels)
    pval_label = CONFIG.get("analysis.pval_label", "p-value (Wald)")

    def _row(bm: str, **stats: Any) -> dict[str, Any]:
        row = {
            "biomarker": bm,
            "biomarker_label": labels[bm],
            "n_tot": 0,
            "n_rsp": 0,
            "prop": np.nan,
            "or": np.nan,
            "lcl": np.nan,
            "ucl": np.nan,
            "conf_level": control.conf_level,
            "pval": np.nan,
            "pval_label": pval_label,
            "status": RowStatus.OK.value,
            "message": "",
        }
        row.update(stats)
        return row

    if len(data) == 0:
        logger.warning(f"Empty data: returning missing rows for {len(biomarkers)} biomarkers")
        return pd.DataFrame(
            [_row(bm, status=RowStatus.EMPTY_DATA.value, message="no records") for bm in biomarkers],
            columns=RSP_COLUMNS,
        )

    def _fit_one(bm: str) -> dict[str, Any]:
        fit_vars = rsp_to_logistic_variables(variables, bm)
        try:
            fit = fit_logistic(
                fit_vars,
                data,
                conf_level=control.conf_level,
                response_definition=control.response_definition,
                max_iter=control.max_iter,
            )
        except FitDegeneracy as e:
            logger.warning(f"Biomarker '{bm}': {e}")
            used = data[list(dict.fromkeys([fit_vars["response"], bm] + fit_vars["covariates"] + fit_vars["strata"]))].dropna()
            rsp = used[fit_vars["response"]].astype(float)
            if control.response_definition == "1 - x":
                rsp = 1.0 - rsp
            return _row(
                bm,
                n_tot=len(used),
                n_rsp=int(rsp.sum()),
                prop=float(rsp.mean()) if len(used) else np.nan,
                status=RowStatus.FIT_DEGENERATE.value if len(used) else RowStatus.EMPTY_DATA.value,
                message=str(e),
            )
        logger.debug(f"Biomarker '{bm}': OR={fit.estimate:.3f}, P={fit.pval:.4f}, n={fit.n_used}")
        return _row(
            bm,
            n_tot=fit.n_used,
            n_rsp=fit.n_event,
            prop=fit.n_event / fit.n_used,
            **{"or": fit.estimate},
            lcl=fit.lcl,
            ucl=fit.ucl,
            pval=fit.pval,
        )

    logger.log_analysis("Logistic regression", variables["rsp"], len(biomarkers), len(data))
    with logger.track_time("logistic_mult_cont_df"):
        rows = _run_batch(biomarkers, _fit_one)
    return pd.DataFrame(rows, columns=RSP_COLUMNS)


def coxreg_mult_cont_df(
    variables: dict[str, Any],
    data: pd.DataFrame,
    control: ControlCox | None = None,
    var_labels: dict[str, str] | None = None,
) -> pd.DataFrame:
    """
    Patients, events, median survival, hazard ratio with CI and Wald p-value
    for each biomarker, within one dataset.

    `variables` needs `tte`, `is_event` and `biomarkers`, optionally
    `covariates` and `strat`.
    """
    control = control or control_coxreg()
    biomarkers = _validate_variables(variables, data, ["tte", "is_event"])
    labels = _labels_for(data, biomarkers, var_labels)
    pval_label = CONFIG.get("analysis.pval_label", "p-value (Wald)")

    def _row(bm: str, **stats: Any) -> dict[str, Any]:
        row = {
            "biomarker": bm,
            "biomarker_label": labels[bm],
            "n_tot": 0,
            "n_tot_events": 0,
            "median": np.nan,
            "hr": np.nan,
            "lcl": np.nan,
            "ucl": np.nan,
            "conf_level": control.conf_level,
            "pval": np.nan,
            "pval_label": pval_label,
            "status": RowStatus.OK.value,
            "message": "",
        }
        row.update(stats)
        return row

    if len(data) == 0:
        logger.warning(f"Empty data: returning missing rows for {len(biomarkers)} biomarkers")
        return pd.DataFrame(
            [_row(bm, status=RowStatus.EMPTY_DATA.value, message="no records") for bm in biomarkers],
            columns=SURV_COLUMNS,
        )

    def _fit_one(bm: str) -> dict[str, Any]:
        fit_vars = surv_to_coxreg_variables(variables, bm)
        try:
            fit = fit_coxreg(fit_vars, data, conf_level=control.conf_level)
        except FitDegeneracy as e:
            logger.warning(f"Biomarker '{bm}': {e}")
            cols = [fit_vars["time"], fit_vars["event"], bm] + fit_vars["covariates"] + fit_vars["strata"]
            used = data[list(dict.fromkeys(cols))].dropna()
            return _row(
                bm,
                n_tot=len(used),
                n_tot_events=int(used[fit_vars["event"]].astype(float).sum()),
                status=RowStatus.FIT_DEGENERATE.value if len(used) else RowStatus.EMPTY_DATA.value,
                message=str(e),
            )
        logger.debug(f"Biomarker '{bm}': HR={fit.estimate:.3f}, P={fit.pval:.4f}, n={fit.n_used}")
        return _row(
            bm,
            n_tot=fit.n_used,
            n_tot_events=fit.n_event,
            median=fit.median,
            hr=fit.estimate,
            lcl=fit.lcl,
            ucl=fit.ucl,
            pval=fit.pval,
        )

    logger.log_analysis("Cox regression", variables["is_event"], len(biomarkers), len(data))
    with logger.track_time("coxreg_mult_cont_df"):
        rows = _run_batch(biomarkers, _fit_one)
    return pd.DataFrame(rows, columns=SURV_COLUMNS)


def _subgroup_levels(
    data: pd.DataFrame, var: str, groups_lists: dict[str, dict[str, list[Any]]] | None
) -> list[tuple[str, list[Any]]]:
    """
    (label, levels) pairs for a subgroup variable, in caller order:
    an explicit regrouping from `groups_lists`, the categories of a
    categorical column, or order of first appearance. Never sorted.
    """
    if groups_lists and var in groups_lists:
        return [(str(label), list(levels)) for label, levels in groups_lists[var].items()]
    col = data[var]
    if isinstance(col.dtype, pd.CategoricalDtype):
        levels = list(col.cat.categories)
    else:
        levels = list(pd.unique(col.dropna()))
    return [(str(level), [level]) for level in levels]


def _extract_by_subgroup(
    variables: dict[str, Any],
    data: pd.DataFrame,
    mult_cont_df: Callable[..., pd.DataFrame],
    groups_lists: dict[str, dict[str, list[Any]]] | None,
    label_all: str,
    var_labels: dict[str, str] | None,
    **kwargs: Any,
) -> pd.DataFrame:
    subgroups = _as_list(variables.get("subgroups"))
    _validate_variables(variables, data, [])
    sub_labels = _labels_for(data, subgroups, var_labels)

    df_all = mult_cont_df(variables, data, var_labels=var_labels, **kwargs)
    df_all.insert(2, "subgroup", label_all)
    df_all.insert(3, "var", "ALL")
    df_all.insert(4, "var_label", label_all)
    df_all.insert(5, "row_type", "content")
    parts = [df_all]

    for var in subgroups:
        for label, levels in _subgroup_levels(data, var, groups_lists):
            df_sub = mult_cont_df(variables, data[data[var].isin(levels)], var_labels=var_labels, **kwargs)
            df_sub.insert(2, "subgroup", label)
            df_sub.insert(3, "var", var)
            df_sub.insert(4, "var_label", sub_labels[var])
            df_sub.insert(5, "row_type", "analysis")
            parts.append(df_sub)

    result = pd.concat(parts, ignore_index=True)
    logger.info(
        f"Extracted {len(result)} rows for {len(_as_list(variables['biomarkers']))} biomarkers "
        f"across {len(subgroups)} subgroup variables"
    )
    return result


def extract_rsp_biomarkers(
    variables: dict[str, Any],
    data: pd.DataFrame,
    groups_lists: dict[str, dict[str, list[Any]]] | None = None,
    control: ControlLogistic | None = None,
    label_all: str = "All patients",
    var_labels: dict[str, str] | None = None,
) -> pd.DataFrame:
    """
    Response effects of each biomarker in the whole population ("All
    patients", row_type 'content') and within each level of every variable in
    `variables['subgroups']` (row_type 'analysis').

    Parameters:
        variables: {"rsp", "biomarkers", "covariates", "strat", "subgroups"}
        groups_lists: optional {subgroup_var: {label: [levels, ...]}} regrouping
        control: see control_logistic()
        label_all: label of the whole-population row
        var_labels: display labels for biomarkers and subgroup variables
    """
    return _extract_by_subgroup(
        variables, data, logistic_mult_cont_df, groups_lists, label_all, var_labels,
        control=control or control_logistic(),
    )


def extract_surv_biomarkers(
    variables: dict[str, Any],
    data: pd.DataFrame,
    groups_lists: dict[str, dict[str, list[Any]]] | None = None,
    control: ControlCox | None = None,
    label_all: str = "All patients",
    var_labels: dict[str, str] | None = None,
) -> pd.DataFrame:
    """Time-to-event counterpart of extract_rsp_biomarkers()."""
    return _extract_by_subgroup(
        variables, data, coxreg_mult_cont_df, groups_lists, label_all, var_labels,
        control=control or control_coxreg(),
    )
