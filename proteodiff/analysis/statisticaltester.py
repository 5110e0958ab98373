from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy.stats import f as f_dist

from proteodiff.analysis.ebayes_prior import squeeze_var
from proteodiff.analysis.linearmodelfitter import ModelResult
from proteodiff.analysis.stats_ops import bh_adjust, holm_adjust, t_test_two_sided
from proteodiff.design.contrast import Contrast
from proteodiff.utils.utils import log_info, log_time

RESULT_COLUMNS = ["logFC", "se", "df", "t", "pval", "adjPval"]


class ContrastTester:
    """
    Test linear contrasts of the per-protein model coefficients.

    Residual variances are moderated once, over every protein with a model
    (limma squeezeVar). Proteins without a model get NaN in every column and
    stay out of the Benjamini-Hochberg correction.
    """

    def __init__(
        self,
        models: Dict[str, Optional[ModelResult]],
        coefficient_names: Sequence[str],
        moderated: bool = True,
    ) -> None:
        self.models = models
        self.protein_ids: List[str] = list(models)
        self.coefficient_names: List[str] = list(coefficient_names)
        self.moderated = moderated

        fitted = [m for m in models.values() if m is not None]
        self.has_model = np.array([models[p] is not None for p in self.protein_ids], dtype=bool)

        s2 = np.full(len(self.protein_ids), np.nan)
        df = np.full(len(self.protein_ids), np.nan)
        s2[self.has_model] = [m.sigma2 for m in fitted]
        df[self.has_model] = [m.df_residual for m in fitted]
        self.s2 = s2
        self.df_residual = df

        if moderated and fitted:
            s2_post, d0, s20 = squeeze_var(s2[self.has_model], df[self.has_model])
            self.s2_post = np.full_like(s2, np.nan)
            self.s2_post[self.has_model] = s2_post
            self.df_prior, self.s2_prior = float(d0), float(s20)
            # limma caps the total df at the pooled residual df
            df_pooled = np.nansum(df[self.has_model])
            self.df_total = np.minimum(df + self.df_prior, df_pooled)
            log_info(f"Variance moderation: prior df={self.df_prior:.3g}, prior variance={self.s2_prior:.3g}")
        else:
            self.s2_post = s2.copy()
            self.df_prior, self.s2_prior = 0.0, np.nan
            self.df_total = df.copy()

    def _aligned(self, model: ModelResult, weights: np.ndarray):
        beta = model.coefficients.reindex(self.coefficient_names).to_numpy(dtype=float)
        V = model.vcov_unscaled.reindex(index=self.coefficient_names, columns=self.coefficient_names).to_numpy(dtype=float)
        used = weights != 0
        return beta[used], V[np.ix_(used, used)], weights[used]

    def test(self, contrast: Contrast) -> pd.DataFrame:
        """One row per protein: logFC, se, df, t, pval, adjPval."""
        w = contrast.vector(self.coefficient_names)

        logfc = np.full(len(self.protein_ids), np.nan)
        var_unscaled = np.full(len(self.protein_ids), np.nan)
        for i, protein_id in enumerate(self.protein_ids):
            model = self.models[protein_id]
            if model is None:
                continue
            beta, V, wu = self._aligned(model, w)
            logfc[i] = float(wu @ beta)
            var_unscaled[i] = float(wu @ V @ wu)

        with np.errstate(invalid="ignore"):
            se = np.sqrt(var_unscaled * self.s2_post)
        t, p = t_test_two_sided(logfc, se, self.df_total)
        out = pd.DataFrame(
            {
                "logFC": logfc,
                "se": se,
                "df": self.df_total,
                "t": t,
                "pval": p,
                "adjPval": bh_adjust(p),
            },
            index=pd.Index(self.protein_ids, name="protein"),
        )
        return out[RESULT_COLUMNS]

    @log_time("Contrast Testing")
    def test_all(self, contrasts: Sequence[Contrast]) -> Dict[str, pd.DataFrame]:
        results = {}
        for contrast in contrasts:
            res = self.test(contrast)
            n_sig = int((res["adjPval"] < 0.05).sum())
            log_info(f"{contrast.name}: {res['pval'].notna().sum()} proteins tested, {n_sig} with adjPval < 0.05")
            results[contrast.name] = res
        return results

    def omnibus(self, contrasts: Sequence[Contrast]) -> pd.DataFrame:
        """Moderated F test of all contrasts jointly (rows of L) per protein."""
        L = np.vstack([c.vector(self.coefficient_names) for c in contrasts])
        F = np.full(len(self.protein_ids), np.nan)
        # numerator df: rank of the contrast family, not its number of rows
        df1 = np.full(len(self.protein_ids), np.nan)
        for i, protein_id in enumerate(self.protein_ids):
            model = self.models[protein_id]
            if model is None or not np.isfinite(self.s2_post[i]) or self.s2_post[i] <= 0:
                continue
            beta = model.coefficients.reindex(self.coefficient_names).to_numpy(dtype=float)
            V = model.vcov_unscaled.reindex(index=self.coefficient_names, columns=self.coefficient_names).to_numpy(dtype=float)
            est = L @ np.nan_to_num(beta)
            cov = L @ np.nan_to_num(V) @ L.T
            rank = np.linalg.matrix_rank(cov)
            if rank == 0:
                continue
            F[i] = float(est @ np.linalg.pinv(cov) @ est) / (rank * self.s2_post[i])
            df1[i] = rank

        with np.errstate(invalid="ignore"):
            p = f_dist.sf(F, df1, self.df_total)
        p = np.where(np.isfinite(F), p, np.nan)
        return pd.DataFrame(
            {"F": F, "df1": df1, "df2": self.df_total, "pval": p, "adjPval": bh_adjust(p)},
            index=pd.Index(self.protein_ids, name="protein"),
        )


class StageWiseTester:
    """
    Two-stage testing of a family of contrasts.

    Screening: one moderated F test per protein over all contrasts, BH across
    proteins. Confirmation: for proteins passing screening at `alpha`, the
    per-contrast p-values are Holm-adjusted within the protein. The stage-wise
    adjusted p-value is the larger of the two; proteins failing screening get NaN.
    """

    def __init__(self, tester: ContrastTester, contrasts: Sequence[Contrast], alpha: float = 0.05):
        if len(contrasts) < 1:
            raise ValueError("Stage-wise testing needs at least one contrast.")
        self.tester = tester
        self.contrasts = list(contrasts)
        self.alpha = alpha

    @log_time("Stage-wise Testing")
    def run(self) -> Dict[str, pd.DataFrame]:
        screen = self.tester.omnibus(self.contrasts)
        passed = (screen["adjPval"] < self.alpha).to_numpy()
        log_info(f"Screening: {int(passed.sum())} of {int(screen['pval'].notna().sum())} proteins pass "
                 f"(adjPval < {self.alpha}).")

        per_contrast = {c.name: self.tester.test(c) for c in self.contrasts}
        pmat = np.column_stack([per_contrast[c.name]["pval"].to_numpy() for c in self.contrasts])

        confirmed = np.full_like(pmat, np.nan)
        for i in np.flatnonzero(passed):
            confirmed[i] = holm_adjust(pmat[i])
        screen_adj = screen["adjPval"].to_numpy()

        results = {}
        for j, contrast in enumerate(self.contrasts):
            res = per_contrast[contrast.name].copy()
            res["pvalScreen"] = screen["pval"].to_numpy()
            res["adjPvalScreen"] = screen_adj
            res["adjPvalStageWise"] = np.where(passed, np.fmax(confirmed[:, j], screen_adj), np.nan)
            results[contrast.name] = res
        return results
