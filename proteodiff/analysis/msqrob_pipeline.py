"""Per-protein (robust) linear models and contrast tests on the summarized assay.

This module provides:
  - `fit_protein_models`: design from the formula + one model per protein
  - `resolve_contrasts`: configured contrasts and/or all pairwise contrasts of a factor
  - `run_msqrob_pipeline`: models, moderated contrast tests and optional stage-wise testing,
    stored on the AnnData object
"""

from typing import Dict, List, Optional, Tuple

import anndata as ad
import numpy as np
import pandas as pd

from proteodiff.analysis.linearmodelfitter import LinearModelFitter, ModelResult
from proteodiff.analysis.statisticaltester import RESULT_COLUMNS, ContrastTester, StageWiseTester
from proteodiff.design.contrast import Contrast, parse_contrasts
from proteodiff.design.contrastbuilder import ContrastBuilder
from proteodiff.design.designmatrixbuilder import DesignMatrix, DesignMatrixBuilder
from proteodiff.utils.utils import log_info, log_time, log_warning


def _expression(adata: ad.AnnData) -> pd.DataFrame:
    """Proteins x samples view of adata.X."""
    X = np.asarray(adata.X, dtype=float)
    return pd.DataFrame(X.T, index=adata.var_names.astype(str), columns=adata.obs_names.astype(str))


def fit_protein_models(adata: ad.AnnData, analysis_cfg: dict) -> Tuple[LinearModelFitter, DesignMatrix]:
    """Build the design and fit one model per protein."""
    builder = DesignMatrixBuilder(adata.obs, analysis_cfg)
    design = builder.build()
    fitter = LinearModelFitter(
        _expression(adata),
        design,
        mode=builder.mode,
        robust=bool(analysis_cfg.get("robust", True)),
        ridge_lambda=float(analysis_cfg.get("ridge_lambda", 1.0)),
        maxiter=int(analysis_cfg.get("maxiter", 20)),
    ).fit()
    return fitter, design


def resolve_contrasts(adata: ad.AnnData, analysis_cfg: dict, coefficient_names: List[str]) -> List[Contrast]:
    contrasts = parse_contrasts(analysis_cfg.get("contrasts"))
    factor = analysis_cfg.get("pairwise_factor")
    if factor:
        builder = ContrastBuilder(adata.obs, coefficient_names, factor, baseline=analysis_cfg.get("baseline"))
        contrasts += builder.make_all_pairwise_contrasts()

    names = [c.name for c in contrasts]
    duplicated = sorted({n for n in names if names.count(n) > 1})
    if duplicated:
        raise ValueError(f"Duplicated contrast names: {duplicated}")
    for c in contrasts:
        c.validate(coefficient_names)
    return contrasts


def _stagewise_cfg(analysis_cfg: dict) -> Optional[float]:
    """Screening alpha, or None when stage-wise testing is off."""
    cfg = analysis_cfg.get("stagewise")
    if isinstance(cfg, dict):
        return float(cfg.get("alpha", 0.05)) if cfg.get("enabled", True) else None
    return 0.05 if cfg else None


@log_time("Analysis pipeline")
def run_msqrob_pipeline(
    adata: ad.AnnData,
    config: dict,
) -> Tuple[ad.AnnData, Dict[str, Optional[ModelResult]]]:
    """Fit, test and store results. Returns (annotated copy, models by protein)."""
    analysis_cfg = (config or {}).get("analysis", {}) or {}
    out = adata.copy()

    fitter, design = fit_protein_models(out, analysis_cfg)
    models = fitter.get_results()
    coefficient_names = fitter.coefficient_names

    has_model = np.array([models.get(p) is not None for p in out.var_names.astype(str)], dtype=bool)
    out.var["HAS_MODEL"] = has_model
    coefs = np.full((out.n_vars, len(coefficient_names)), np.nan)
    for i, p in enumerate(out.var_names.astype(str)):
        if models.get(p) is not None:
            coefs[i] = models[p].coefficients.reindex(coefficient_names).to_numpy()
    out.varm["coefficients"] = coefs

    out.uns["analysis"] = {
        "formula": design.formula,
        "mode": fitter.mode,
        "robust": bool(fitter.robust),
        "coefficient_names": list(coefficient_names),
        "n_models": int(has_model.sum()),
        "n_without_model": int((~has_model).sum()),
    }

    contrasts = resolve_contrasts(out, analysis_cfg, coefficient_names)
    if not contrasts:
        log_warning("No contrast configured; skipping statistical testing.")
        out.uns["contrast_names"] = []
        return out, models

    tester = ContrastTester(models, coefficient_names, moderated=bool(analysis_cfg.get("moderated", True)))
    alpha = _stagewise_cfg(analysis_cfg)
    if alpha is not None and len(contrasts) > 1:
        results = StageWiseTester(tester, contrasts, alpha=alpha).run()
    else:
        if alpha is not None:
            log_info("Stage-wise testing needs several contrasts; using per-contrast BH only.")
        results = tester.test_all(contrasts)

    names = [c.name for c in contrasts]
    order = out.var_names.astype(str)
    for col in RESULT_COLUMNS:
        out.varm[col] = np.column_stack([results[n].loc[order, col].to_numpy() for n in names])
    if "adjPvalStageWise" in results[names[0]].columns:
        out.varm["adjPvalStageWise"] = np.column_stack(
            [results[n].loc[order, "adjPvalStageWise"].to_numpy() for n in names]
        )

    out.uns["contrast_names"] = names
    out.uns["contrasts"] = {c.name: dict(c.weights) for c in contrasts}
    out.uns["ebayes"] = {"df_prior": float(tester.df_prior), "s2_prior": float(tester.s2_prior)}
    return out, models


def contrast_table(adata: ad.AnnData, contrast_name: str) -> pd.DataFrame:
    """Per-protein result table of one contrast, read back from `adata.varm`."""
    names = list(adata.uns.get("contrast_names", []))
    if contrast_name not in names:
        raise KeyError(f"Unknown contrast '{contrast_name}' (available: {names})")
    j = names.index(contrast_name)
    cols = RESULT_COLUMNS + (["adjPvalStageWise"] if "adjPvalStageWise" in adata.varm else [])
    return pd.DataFrame(
        {c: np.asarray(adata.varm[c])[:, j] for c in cols},
        index=pd.Index(adata.var_names.astype(str), name="protein"),
    )
