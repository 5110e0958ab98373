"""Shared fixtures: a small MaxQuant-style peptide table and matching configs."""

import numpy as np
import pandas as pd
import polars as pl
import pytest

SAMPLES = ["A_1", "A_2", "B_1", "B_2"]


@pytest.fixture
def peptide_frame():
    """6 peptides x 4 samples (2 groups x 2 replicates).

    pep2 has a zero in A_2, pep3 is a decoy, pep5 is observed once and
    pep6 maps to P2;P4, a strict superset of the P2 group.
    """
    return pd.DataFrame({
        "Sequence": ["PEPONE", "PEPTWO", "PEPTHREE", "PEPFOUR", "PEPFIVE", "PEPSIX"],
        "Proteins": ["P1", "P1", "P2", "P2", "P3", "P2;P4"],
        "Reverse": ["", "", "+", "", "", ""],
        "Potential contaminant": ["", "", "", "", "", ""],
        "Intensity A_1": [100.0, 110.0, 50.0, 60.0, 0.0, 70.0],
        "Intensity A_2": [120.0, 0.0, 55.0, 62.0, 0.0, 72.0],
        "Intensity B_1": [200.0, 210.0, 52.0, 64.0, 0.0, 74.0],
        "Intensity B_2": [220.0, 230.0, 54.0, 66.0, 30.0, 76.0],
    })


@pytest.fixture
def peptide_file(tmp_path, peptide_frame):
    path = tmp_path / "peptides.txt"
    peptide_frame.to_csv(path, sep="\t", index=False)
    return path


@pytest.fixture
def config(peptide_file, tmp_path):
    return {
        "dataset": {
            "input_file": str(peptide_file),
            "intensity_prefix": "Intensity ",
            "sample_factors": {
                "group": {"method": "split", "delimiter": "_", "index": 0},
            },
        },
        "preprocessing": {
            "filtering": {"min_observations": 2},
            "normalization": {"method": "center.median"},
            "summarization": {"method": "robust"},
        },
        "analysis": {
            "formula": "~ group",
            "mode": "fixed",
            "robust": True,
            "contrasts": ["groupB = 0"],
            "exports": {
                "path_table": str(tmp_path / "out" / "results"),
                "use_xlsx": False,
                "path_h5ad": str(tmp_path / "out" / "results.h5ad"),
            },
        },
    }


@pytest.fixture
def harmonized():
    """Harmonized peptide table (canonical columns) and its sample annotation."""
    df = pl.DataFrame({
        "PEPTIDE_ID": ["a", "b", "c", "d", "e", "f", "g"],
        "PROTEIN_GROUP": ["P1", "P1", "P1;P2", "P2;P3", "P4", "P5", "P4"],
        "IS_DECOY": [False, False, False, False, True, False, False],
        "IS_CONTAMINANT": [False, False, False, False, False, True, False],
        "A_1": [10.0, 0.0, 5.0, 8.0, 3.0, 7.0, 0.0],
        "A_2": [12.0, 4.0, 6.0, 9.0, 2.0, 6.0, 0.0],
        "B_1": [20.0, 0.0, 7.0, 0.0, 4.0, 8.0, 9.0],
        "B_2": [22.0, 0.0, 8.0, 11.0, 5.0, 9.0, 0.0],
    })
    annotation = pd.DataFrame(
        {"HEADER": [f"Intensity {s}" for s in SAMPLES], "group": ["A", "A", "B", "B"]},
        index=pd.Index(SAMPLES, name="Sample"),
    )
    annotation["group"] = annotation["group"].astype("category")
    return df, annotation


@pytest.fixture
def group_design_data():
    """20 proteins x 6 samples, three groups; the first five proteins shift in group C."""
    rng = np.random.default_rng(7)
    samples = ["A1", "A2", "B1", "B2", "C1", "C2"]
    obs = pd.DataFrame({"group": ["A", "A", "B", "B", "C", "C"]}, index=pd.Index(samples, name="Sample"))
    obs["group"] = obs["group"].astype("category")
    values = 20 + rng.normal(0, 0.2, size=(20, 6))
    values[:5, 4:] += 3.0
    expression = pd.DataFrame(values, index=[f"P{i}" for i in range(20)], columns=samples)
    return expression, obs
