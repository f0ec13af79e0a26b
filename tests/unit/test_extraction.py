"""
🧪 Unit Tests for Biomarker Effect Extraction
File: tests/unit/test_extraction.py

Tests biomarker_forest/extraction.py and model_fit.py:
- Variable list conversion and fit controls
- Logistic / Cox summaries per biomarker
- Empty data and degenerate fits never abort extraction
- Biomarker and subgroup ordering (serial and thread pool)

Run with: pytest tests/unit/test_extraction.py -v
"""

import numpy as np
import pandas as pd
import pytest

from biomarker_forest.errors import ConfigurationError, FitDegeneracy, RowStatus
from biomarker_forest.extraction import (
    RSP_COLUMNS,
    SURV_COLUMNS,
    control_coxreg,
    control_logistic,
    coxreg_mult_cont_df,
    extract_rsp_biomarkers,
    extract_surv_biomarkers,
    logistic_mult_cont_df,
    rsp_to_logistic_variables,
    surv_to_coxreg_variables,
)
from biomarker_forest.model_fit import fit_coxreg, fit_logistic
from config import CONFIG

pytestmark = pytest.mark.unit


# ============================================================================
# Variable lists and controls
# ============================================================================


class TestVariableConversion:

    def test_rsp_to_logistic(self):
        variables = {"rsp": "rsp", "covariates": ["AGE"], "strat": "STRATA"}
        out = rsp_to_logistic_variables(variables, "BMRKR1")
        assert out == {"response": "rsp", "arm": "BMRKR1", "covariates": ["AGE"], "strata": ["STRATA"]}

    def test_rsp_to_logistic_lists(self):
        variables = {"rsp": "rsp", "covariates": ["AGE", "SEX"], "strat": ["STRATA"]}
        out = rsp_to_logistic_variables(variables, "BMRKR1")
        assert out == {"response": "rsp", "arm": "BMRKR1", "covariates": ["AGE", "SEX"], "strata": ["STRATA"]}

    def test_rsp_requires_response(self):
        with pytest.raises(ConfigurationError):
            rsp_to_logistic_variables({"covariates": ["AGE"]}, "BMRKR1")

    def test_surv_to_coxreg(self):
        variables = {"tte": "AVAL", "is_event": "is_event", "covariates": None}
        out = surv_to_coxreg_variables(variables, "BMRKR2")
        assert out == {"time": "AVAL", "event": "is_event", "arm": "BMRKR2", "covariates": [], "strata": []}

    def test_surv_requires_event(self):
        with pytest.raises(ConfigurationError):
            surv_to_coxreg_variables({"tte": "AVAL"}, "BMRKR2")


class TestControls:

    def test_logistic_defaults(self):
        control = control_logistic()
        assert control.conf_level == 0.95
        assert control.response_definition == "x"
        assert control.max_iter == 100

    def test_logistic_defaults_follow_config(self):
        CONFIG.update("analysis.conf_level", 0.9)
        assert control_logistic().conf_level == 0.9
        assert control_coxreg().conf_level == 0.9

    @pytest.mark.parametrize("kwargs", [{"conf_level": 1.5}, {"conf_level": 0}, {"response_definition": "y"}])
    def test_logistic_invalid(self, kwargs):
        with pytest.raises(ConfigurationError):
            control_logistic(**kwargs)

    def test_coxreg_invalid(self):
        with pytest.raises(ConfigurationError):
            control_coxreg(conf_level=-0.1)


# ============================================================================
# Model fits
# ============================================================================


class TestModelFit:

    def test_logistic_fit(self, rsp_data):
        fit = fit_logistic({"response": "rsp", "arm": "BMRKR1", "covariates": ["AGE", "SEX"]}, rsp_data)
        assert fit.n_used == 200
        assert fit.n_event == int(rsp_data["rsp"].sum())
        assert fit.estimate > 1
        assert fit.lcl < fit.estimate < fit.ucl
        assert 0 <= fit.pval <= 1

    def test_logistic_constant_outcome(self, rsp_data):
        data = rsp_data.assign(rsp=1)
        with pytest.raises(FitDegeneracy, match="constant"):
            fit_logistic({"response": "rsp", "arm": "BMRKR1"}, data)

    def test_wider_interval_at_higher_level(self, rsp_data):
        v = {"response": "rsp", "arm": "BMRKR1"}
        narrow = fit_logistic(v, rsp_data, conf_level=0.8)
        wide = fit_logistic(v, rsp_data, conf_level=0.99)
        assert wide.lcl < narrow.lcl and wide.ucl > narrow.ucl
        assert wide.estimate == pytest.approx(narrow.estimate)

    def test_cox_fit(self, surv_data):
        fit = fit_coxreg({"time": "AVAL", "event": "is_event", "arm": "BMRKR1", "covariates": ["AGE"]}, surv_data)
        assert fit.n_used == 200
        assert fit.n_event == int(surv_data["is_event"].sum())
        assert fit.estimate > 1
        assert fit.lcl < fit.estimate < fit.ucl

    def test_cox_no_events(self, surv_data):
        data = surv_data.assign(is_event=0)
        with pytest.raises(FitDegeneracy, match="No events"):
            fit_coxreg({"time": "AVAL", "event": "is_event", "arm": "BMRKR1"}, data)


# ============================================================================
# Per-biomarker summaries
# ============================================================================


class TestLogisticMultContDf:

    def test_one_row_per_biomarker(self, rsp_data):
        df = logistic_mult_cont_df({"rsp": "rsp", "biomarkers": ["BMRKR1", "BMRKR2"]}, rsp_data)
        assert list(df.columns) == RSP_COLUMNS
        assert list(df["biomarker"]) == ["BMRKR1", "BMRKR2"]
        assert list(df["biomarker_label"]) == ["Continuous Level Biomarker 1", "BMRKR2"]
        assert (df["n_tot"] == 200).all()
        assert (df["status"] == "ok").all()
        assert (df["lcl"] <= df["or"]).all() and (df["or"] <= df["ucl"]).all()
        assert df.loc[0, "prop"] == pytest.approx(rsp_data["rsp"].mean())
        assert df.loc[0, "pval_label"] == "p-value (Wald)"

    def test_var_labels_override(self, rsp_data):
        df = logistic_mult_cont_df(
            {"rsp": "rsp", "biomarkers": ["BMRKR2"]}, rsp_data, var_labels={"BMRKR2": "Biomarker 2"}
        )
        assert df.loc[0, "biomarker_label"] == "Biomarker 2"

    def test_empty_data(self, rsp_data):
        df = logistic_mult_cont_df({"rsp": "rsp", "biomarkers": ["BMRKR1", "BMRKR2"]}, rsp_data.iloc[0:0])
        assert len(df) == 2
        assert (df["n_tot"] == 0).all()
        assert (df["n_rsp"] == 0).all()
        assert df["or"].isna().all()
        assert df["pval"].isna().all()
        assert (df["status"] == RowStatus.EMPTY_DATA.value).all()

    def test_degenerate_biomarker_does_not_abort(self, rsp_data):
        data = rsp_data.assign(CONST=1.0)
        df = logistic_mult_cont_df({"rsp": "rsp", "biomarkers": ["CONST", "BMRKR1"]}, data)
        assert list(df["biomarker"]) == ["CONST", "BMRKR1"]
        bad, good = df.iloc[0], df.iloc[1]
        assert bad["status"] == RowStatus.FIT_DEGENERATE.value
        assert np.isnan(bad["or"])
        assert bad["n_tot"] == 200
        assert bad["n_rsp"] == int(rsp_data["rsp"].sum())
        assert "zero variance" in bad["message"]
        assert good["status"] == "ok"
        assert np.isfinite(good["or"])

    def test_order_preserved_on_thread_pool(self, rsp_data):
        CONFIG.update("performance.num_threads", 4)
        biomarkers = ["BMRKR2", "AGE", "BMRKR1"]
        parallel = logistic_mult_cont_df({"rsp": "rsp", "biomarkers": biomarkers}, rsp_data)
        CONFIG.update("performance.num_threads", 1)
        serial = logistic_mult_cont_df({"rsp": "rsp", "biomarkers": biomarkers}, rsp_data)
        assert list(parallel["biomarker"]) == biomarkers
        pd.testing.assert_frame_equal(parallel, serial)

    def test_response_complement(self, rsp_data):
        v = {"rsp": "rsp", "biomarkers": ["BMRKR1"]}
        direct = logistic_mult_cont_df(v, rsp_data)
        complement = logistic_mult_cont_df(v, rsp_data, control=control_logistic(response_definition="1 - x"))
        assert complement.loc[0, "n_rsp"] == 200 - direct.loc[0, "n_rsp"]
        assert direct.loc[0, "or"] * complement.loc[0, "or"] == pytest.approx(1.0, rel=1e-4)

    def test_stratified(self, rsp_data):
        df = logistic_mult_cont_df(
            {"rsp": "rsp", "biomarkers": ["BMRKR1"], "covariates": ["AGE"], "strat": ["STRATA"]}, rsp_data
        )
        assert df.loc[0, "status"] == "ok"
        assert np.isfinite(df.loc[0, "or"])

    def test_missing_columns(self, rsp_data):
        with pytest.raises(ConfigurationError, match="Missing columns"):
            logistic_mult_cont_df({"rsp": "rsp", "biomarkers": ["NOPE"]}, rsp_data)

    def test_no_biomarkers(self, rsp_data):
        with pytest.raises(ConfigurationError):
            logistic_mult_cont_df({"rsp": "rsp", "biomarkers": []}, rsp_data)

    @pytest.mark.parametrize("column", ["SEX", "BMRKR3"])
    def test_non_numeric_biomarker_rejected(self, rsp_data, column):
        with pytest.raises(ConfigurationError, match="must be numeric"):
            logistic_mult_cont_df({"rsp": "rsp", "biomarkers": ["BMRKR1", column]}, rsp_data)

    def test_non_numeric_response_rejected(self, rsp_data):
        data = rsp_data.assign(rsp=np.where(rsp_data["rsp"] == 1, "Y", "N"))
        with pytest.raises(ConfigurationError, match=r"\['rsp'\]"):
            logistic_mult_cont_df({"rsp": "rsp", "biomarkers": ["BMRKR1"]}, data)

    def test_non_numeric_biomarker_rejected_in_subgroups(self, rsp_data):
        variables = {"rsp": "rsp", "biomarkers": ["BMRKR3"], "subgroups": ["SEX"]}
        with pytest.raises(ConfigurationError, match="must be numeric"):
            extract_rsp_biomarkers(variables, rsp_data)


class TestCoxregMultContDf:

    def test_one_row_per_biomarker(self, surv_data):
        variables = {"tte": "AVAL", "is_event": "is_event", "biomarkers": ["BMRKR1", "BMRKR2"], "covariates": ["AGE"]}
        df = coxreg_mult_cont_df(variables, surv_data)
        assert list(df.columns) == SURV_COLUMNS
        assert list(df["biomarker"]) == ["BMRKR1", "BMRKR2"]
        assert (df["n_tot_events"] == surv_data["is_event"].sum()).all()
        assert df.loc[0, "hr"] > 1
        assert np.isfinite(df.loc[0, "median"])

    def test_stratified(self, surv_data):
        variables = {"tte": "AVAL", "is_event": "is_event", "biomarkers": ["BMRKR1"], "strat": "STRATA"}
        df = coxreg_mult_cont_df(variables, surv_data, control=control_coxreg(conf_level=0.9))
        assert df.loc[0, "status"] == "ok"
        assert df.loc[0, "conf_level"] == 0.9

    def test_empty_data(self, surv_data):
        variables = {"tte": "AVAL", "is_event": "is_event", "biomarkers": ["BMRKR1"]}
        df = coxreg_mult_cont_df(variables, surv_data.iloc[0:0])
        assert df.loc[0, "n_tot"] == 0
        assert df.loc[0, "status"] == "empty_data"
        assert np.isnan(df.loc[0, "hr"])

    def test_non_numeric_event_rejected(self, surv_data):
        data = surv_data.assign(is_event=surv_data["is_event"].map({1: "DEATH", 0: "CENSORED"}))
        variables = {"tte": "AVAL", "is_event": "is_event", "biomarkers": ["BMRKR1"]}
        with pytest.raises(ConfigurationError, match=r"\['is_event'\]"):
            coxreg_mult_cont_df(variables, data)

    def test_degenerate(self, surv_data):
        data = surv_data.assign(CONST=3.0)
        variables = {"tte": "AVAL", "is_event": "is_event", "biomarkers": ["CONST"]}
        df = coxreg_mult_cont_df(variables, data)
        assert df.loc[0, "status"] == "fit_degenerate"
        assert df.loc[0, "n_tot"] == 200


# ============================================================================
# Subgroup extraction
# ============================================================================


class TestExtractBiomarkers:

    def test_structure(self, rsp_data):
        variables = {"rsp": "rsp", "biomarkers": ["BMRKR1", "BMRKR2"], "subgroups": ["SEX"]}
        df = extract_rsp_biomarkers(variables, rsp_data)
        assert len(df) == 2 * (1 + 2)
        assert list(df.columns[:6]) == ["biomarker", "biomarker_label", "subgroup", "var", "var_label", "row_type"]
        overall = df[df["var"] == "ALL"]
        assert list(overall["subgroup"]) == ["All patients", "All patients"]
        assert (overall["row_type"] == "content").all()
        assert (df.loc[df["var"] == "SEX", "var_label"] == "Sex").all()

    def test_subgroup_levels_in_appearance_order(self, rsp_data):
        variables = {"rsp": "rsp", "biomarkers": ["BMRKR1"], "subgroups": ["SEX"]}
        df = extract_rsp_biomarkers(variables, rsp_data)
        expected = [str(v) for v in pd.unique(rsp_data["SEX"])]
        assert list(df.loc[df["var"] == "SEX", "subgroup"]) == expected

    def test_categorical_levels_follow_categories(self, rsp_data):
        variables = {"rsp": "rsp", "biomarkers": ["BMRKR1"], "subgroups": ["BMRKR3"]}
        df = extract_rsp_biomarkers(variables, rsp_data)
        assert list(df.loc[df["var"] == "BMRKR3", "subgroup"]) == ["LOW", "MEDIUM", "HIGH"]

    def test_groups_lists(self, rsp_data):
        variables = {"rsp": "rsp", "biomarkers": ["BMRKR1"], "subgroups": ["BMRKR3"]}
        groups = {"BMRKR3": {"high": ["HIGH"], "low/medium": ["LOW", "MEDIUM"]}}
        df = extract_rsp_biomarkers(variables, rsp_data, groups_lists=groups)
        sub = df[df["var"] == "BMRKR3"]
        assert list(sub["subgroup"]) == ["high", "low/medium"]
        assert sub["n_tot"].sum() == 200

    def test_empty_level_kept(self, rsp_data):
        variables = {"rsp": "rsp", "biomarkers": ["BMRKR1"], "subgroups": ["SEX"]}
        groups = {"SEX": {"F": ["F"], "Unknown": ["U"]}}
        df = extract_rsp_biomarkers(variables, rsp_data, groups_lists=groups)
        unknown = df[df["subgroup"] == "Unknown"].iloc[0]
        assert unknown["n_tot"] == 0
        assert unknown["status"] == "empty_data"

    def test_label_all(self, rsp_data):
        variables = {"rsp": "rsp", "biomarkers": ["BMRKR1"], "subgroups": []}
        df = extract_rsp_biomarkers(variables, rsp_data, label_all="Overall")
        assert list(df["subgroup"]) == ["Overall"]

    def test_surv(self, surv_data):
        variables = {"tte": "AVAL", "is_event": "is_event", "biomarkers": ["BMRKR1"], "subgroups": ["SEX"]}
        df = extract_surv_biomarkers(variables, surv_data)
        assert len(df) == 3
        assert "hr" in df.columns
        assert df["n_tot"].iloc[1:].sum() == 200
