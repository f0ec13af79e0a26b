"""
Model-fit collaborators for biomarker effect extraction.

Each fit takes the biomarker as the single effect-of-interest term, adjusts
for covariates, optionally stratifies, and reduces the result to a
ModelFit: sample size used, events, exponentiated effect with its two-sided
Wald interval and p-value. Any non-convergence or undefined estimate is
raised as FitDegeneracy so the caller can recover per biomarker.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd
import scipy.stats as stats
import statsmodels.api as sm
from lifelines import CoxPHFitter, KaplanMeierFitter
from lifelines.exceptions import ConvergenceError
from statsmodels.discrete.conditional_models import ConditionalLogit
from statsmodels.tools.sm_exceptions import PerfectSeparationError

from biomarker_forest.errors import FitDegeneracy
from logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ModelFit:
    n_used: int
    n_event: int
    estimate: float
    lcl: float
    ucl: float
    pval: float
    median: float = np.nan


def _design_matrix(data: pd.DataFrame, arm: str, covariates: list[str]) -> pd.DataFrame:
    """Biomarker column first, categorical covariates dummy-coded."""
    X = data[[arm] + covariates].copy()
    categorical = [c for c in covariates if not pd.api.types.is_numeric_dtype(X[c])]
    if categorical:
        X = pd.get_dummies(X, columns=categorical, drop_first=True, dtype=float)
    return X.astype(float)


def _check_variation(y: pd.Series, X: pd.DataFrame, arm: str) -> None:
    """
    Reject fits that are undefined before handing them to the optimizer.
    """
    if len(y) == 0:
        raise FitDegeneracy("No complete cases")
    if y.nunique() < 2:
        raise FitDegeneracy("Outcome variable has only one unique value (constant).")
    if X[arm].nunique() <= 1:
        raise FitDegeneracy(f"Variable '{arm}' has zero variance (only one value)")


def _wald_effect(coef: float, se: float, conf_level: float) -> tuple[float, float, float, float]:
    """
    Exponentiated coefficient with its two-sided Wald interval and p-value.
    """
    coef, se = float(coef), float(se)
    if not np.isfinite(coef) or not np.isfinite(se) or se <= 0:
        raise FitDegeneracy(f"Undefined effect estimate (coef={coef:.3g}, se={se:.3g})")
    z = stats.norm.ppf(1 - (1 - conf_level) / 2)
    lo, hi = coef - z * se, coef + z * se
    pval = float(2 * stats.norm.sf(abs(coef / se)))
    with np.errstate(over="ignore"):
        est, lcl, ucl = float(np.exp(coef)), float(np.exp(lo)), float(np.exp(hi))
    if not all(np.isfinite([est, lcl, ucl])) or lcl <= 0:
        raise FitDegeneracy(f"Undefined effect estimate (coef={coef:.3g}, CI=({lo:.3g}, {hi:.3g}))")
    return est, lcl, ucl, pval


def fit_logistic(
    variables: dict[str, Any],
    data: pd.DataFrame,
    conf_level: float = 0.95,
    response_definition: str = "x",
    max_iter: int = 100,
) -> ModelFit:
    """
    Logistic regression of `response` on `arm` + covariates.

    With strata the model is a conditional logistic regression grouped by
    the (combined) strata levels; otherwise an ordinary logit with intercept.

    Parameters:
        variables: {"response", "arm", "covariates", "strata"}
        data: analysis dataset
        conf_level: two-sided confidence level of the Wald interval
        response_definition: "x" or "1 - x" (model the complement)
        max_iter: optimizer iteration limit
    """
    response = variables["response"]
    arm = variables["arm"]
    covariates = list(variables.get("covariates") or [])
    strata = list(variables.get("strata") or [])

    used = data[list(dict.fromkeys([response, arm] + covariates + strata))].dropna()
    y = used[response].astype(float)
    if response_definition == "1 - x":
        y = 1.0 - y
    elif response_definition != "x":
        raise ValueError(f"Unsupported response_definition '{response_definition}'")

    X = _design_matrix(used, arm, covariates)
    _check_variation(y, X, arm)
    try:
        if strata:
            groups = used[strata].astype(str).agg("/".join, axis=1)
            result = ConditionalLogit(y, X, groups=groups).fit(disp=0, maxiter=max_iter)
        else:
            result = sm.Logit(y, sm.add_constant(X, has_constant="add")).fit(disp=0, maxiter=max_iter)
    except (np.linalg.LinAlgError, PerfectSeparationError, ValueError) as e:
        raise FitDegeneracy(f"Logistic fit failed: {e}") from e

    retvals = getattr(result, "mle_retvals", None) or {}
    if not retvals.get("converged", True):
        raise FitDegeneracy(f"Logistic fit did not converge in {max_iter} iterations")

    est, lcl, ucl, pval = _wald_effect(result.params[arm], result.bse[arm], conf_level)
    n_event = int(y.sum())
    return ModelFit(n_used=len(y), n_event=n_event, estimate=est, lcl=lcl, ucl=ucl, pval=pval)


def fit_coxreg(
    variables: dict[str, Any],
    data: pd.DataFrame,
    conf_level: float = 0.95,
) -> ModelFit:
    """
    Cox proportional hazards model of (time, event) on `arm` + covariates,
    stratified by `strata` when given. Ties are handled with Efron's method.

    Parameters:
        variables: {"time", "event", "arm", "covariates", "strata"}
    """
    time_col = variables["time"]
    event_col = variables["event"]
    arm = variables["arm"]
    covariates = list(variables.get("covariates") or [])
    strata = list(variables.get("strata") or [])

    used = data[list(dict.fromkeys([time_col, event_col, arm] + covariates + strata))].dropna()
    if len(used) == 0:
        raise FitDegeneracy("No complete cases")
    event = used[event_col].astype(float)
    if event.sum() == 0:
        raise FitDegeneracy("No events observed")

    X = _design_matrix(used, arm, covariates)
    if X[arm].nunique() <= 1:
        raise FitDegeneracy(f"Variable '{arm}' has zero variance (only one value)")

    fit_df = pd.concat([X, used[[time_col]], event.rename(event_col)], axis=1)
    if strata:
        fit_df = pd.concat([fit_df, used[strata]], axis=1)

    cph = CoxPHFitter(alpha=1 - conf_level)
    try:
        cph.fit(
            fit_df,
            duration_col=time_col,
            event_col=event_col,
            strata=strata or None,
            show_progress=False,
        )
    except (ConvergenceError, np.linalg.LinAlgError, ValueError) as e:
        raise FitDegeneracy(f"Cox fit failed: {e}") from e

    est, lcl, ucl, pval = _wald_effect(cph.params_[arm], cph.standard_errors_[arm], conf_level)

    kmf = KaplanMeierFitter().fit(used[time_col], event_observed=event)
    median = float(kmf.median_survival_time_)

    return ModelFit(
        n_used=len(used),
        n_event=int(event.sum()),
        estimate=est,
        lcl=lcl,
        ucl=ucl,
        pval=pval,
        median=median if np.isfinite(median) else np.nan,
    )
