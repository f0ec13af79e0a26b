"""
🧪 Pytest Configuration for biomarker-forest Tests

Shared fixtures:
- Seeded response / survival datasets with biomarkers and subgroups
- A fresh CONFIG state per test
"""

import copy

import numpy as np
import pandas as pd
import pytest

from config import CONFIG


@pytest.fixture(autouse=True)
def restore_config():
    """Undo runtime CONFIG updates made by a test."""
    saved = copy.deepcopy(CONFIG._config)
    yield
    CONFIG._config = saved


@pytest.fixture
def rsp_data():
    """200 patients, two continuous biomarkers, response driven by BMRKR1."""
    rng = np.random.default_rng(42)
    n = 200
    bm1 = rng.normal(6, 2, n)
    bm2 = rng.normal(0, 1, n)
    age = rng.normal(60, 8, n)
    logit = -3 + 0.5 * bm1
    rsp = (rng.random(n) < 1 / (1 + np.exp(-logit))).astype(int)
    df = pd.DataFrame({
        "USUBJID": [f"S{i:03d}" for i in range(n)],
        "rsp": rsp,
        "BMRKR1": bm1,
        "BMRKR2": bm2,
        "AGE": age,
        "SEX": rng.choice(["F", "M"], n),
        "BMRKR3": pd.Categorical(rng.choice(["LOW", "MEDIUM", "HIGH"], n), categories=["LOW", "MEDIUM", "HIGH"]),
        "STRATA": rng.choice(["A", "B"], n),
    })
    df.attrs["labels"] = {"BMRKR1": "Continuous Level Biomarker 1", "SEX": "Sex"}
    return df


@pytest.fixture
def surv_data():
    """200 patients with exponential survival times shortened by BMRKR1."""
    rng = np.random.default_rng(7)
    n = 200
    bm1 = rng.normal(6, 2, n)
    bm2 = rng.normal(0, 1, n)
    rate = 0.05 * np.exp(0.2 * (bm1 - 6))
    t_event = rng.exponential(1 / rate)
    t_cens = rng.uniform(5, 40, n)
    return pd.DataFrame({
        "AVAL": np.minimum(t_event, t_cens),
        "is_event": (t_event <= t_cens).astype(int),
        "BMRKR1": bm1,
        "BMRKR2": bm2,
        "AGE": rng.normal(60, 8, n),
        "SEX": rng.choice(["F", "M"], n),
        "STRATA": rng.choice(["A", "B"], n),
    })
