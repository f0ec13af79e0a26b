"""
Biomarker subgroup effects and forest plot layout.

Pipeline:
- extraction: one model fit per biomarker / subgroup -> summary rows
- table_builder: summary rows -> EffectTable (formatted, nested header)
- layout: EffectTable -> ForestGeometry (axis, widths, clipping)
- forest_plot_lib: EffectTable + ForestGeometry -> plotly figure
"""

from biomarker_forest.errors import ConfigurationError, FitDegeneracy, RowStatus
from biomarker_forest.extraction import (
    control_coxreg,
    control_logistic,
    coxreg_mult_cont_df,
    extract_rsp_biomarkers,
    extract_surv_biomarkers,
    logistic_mult_cont_df,
    rsp_to_logistic_variables,
    surv_to_coxreg_variables,
)
from biomarker_forest.forest_plot_lib import ForestLayout, g_forest
from biomarker_forest.formatting import FormatConfig
from biomarker_forest.layout import ForestConfig, ForestGeometry, RowGeometry, compute_forest_geometry
from biomarker_forest.table import EffectTable, NestedTable, SubgroupRow, TableLike
from biomarker_forest.table_builder import (
    tab_one_biomarker,
    tabulate_rsp_biomarkers,
    tabulate_surv_biomarkers,
)

__all__ = [
    "ConfigurationError",
    "EffectTable",
    "FitDegeneracy",
    "ForestConfig",
    "ForestGeometry",
    "ForestLayout",
    "FormatConfig",
    "NestedTable",
    "RowGeometry",
    "RowStatus",
    "SubgroupRow",
    "TableLike",
    "compute_forest_geometry",
    "control_coxreg",
    "control_logistic",
    "coxreg_mult_cont_df",
    "extract_rsp_biomarkers",
    "extract_surv_biomarkers",
    "g_forest",
    "logistic_mult_cont_df",
    "rsp_to_logistic_variables",
    "surv_to_coxreg_variables",
    "tab_one_biomarker",
    "tabulate_rsp_biomarkers",
    "tabulate_surv_biomarkers",
]
