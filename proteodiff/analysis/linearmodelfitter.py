import warnings
from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
import statsmodels.api as sm
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from proteodiff.analysis.stats_ops import huber_fit
from proteodiff.design.designmatrixbuilder import MODES, DesignMatrix
from proteodiff.utils.utils import log_info, log_time, log_warning, logger


@dataclass(frozen=True)
class ModelResult:
    """Per-protein fit: estimates, unscaled covariance and residual scale."""
    protein_id: str
    coefficients: pd.Series          # coefficient name -> estimate
    vcov_unscaled: pd.DataFrame      # sigma^2 * vcov_unscaled = covariance of the estimates
    sigma: float
    df_residual: float
    n_obs: int
    mode: str

    @property
    def sigma2(self) -> float:
        return self.sigma ** 2


class LinearModelFitter:
    def __init__(
        self,
        expression: pd.DataFrame,
        design: DesignMatrix,
        mode: str = "fixed",
        robust: bool = True,
        ridge_lambda: float = 1.0,
        maxiter: int = 20,
    ):
        """
        Parameters:
        - expression: (n_proteins x n_samples) summarized log2 values, NaN = missing
        - design: DesignMatrix from DesignMatrixBuilder (rows aligned to the samples)
        - mode: "fixed" (OLS / Huber), "mixed" (random intercept, MixedLM) or
          "ridge" (penalized least squares on every non-intercept column)
        """
        if mode not in MODES:
            raise ValueError(f"Unknown model mode: {mode} (use one of {', '.join(MODES)})")
        self.Y = expression.loc[:, list(design.fixed.index)]
        self.design = design
        self.mode = mode
        self.robust = robust
        self.ridge_lambda = float(ridge_lambda)
        self.maxiter = maxiter
        self.results: Dict[str, Optional[ModelResult]] = {}

        if mode == "ridge":
            blocks = [design.fixed] + [design.random[f] for f in design.random_factors]
            self.X = pd.concat(blocks, axis=1)
        else:
            self.X = design.fixed
        if mode == "mixed" and robust:
            log_warning("Robust fitting is not available for mixed models; fitting by REML.")

    @property
    def coefficient_names(self) -> List[str]:
        return list(self.X.columns)

    @log_time("Linear Regressions")
    def fit(self):
        """Fits one model per protein, on the samples where that protein is observed."""
        for protein_id, row in self.Y.iterrows():
            y = row.to_numpy(dtype=float)
            observed = np.isfinite(y)
            if self.mode == "fixed":
                result = self._fit_fixed(protein_id, y[observed], observed)
            elif self.mode == "ridge":
                result = self._fit_ridge(protein_id, y[observed], observed)
            else:
                result = self._fit_mixed(protein_id, y[observed], observed)
            self.results[str(protein_id)] = result

        n_missing = sum(r is None for r in self.results.values())
        log_info(f"{n_missing} of {len(self.results)} proteins had no model.")
        return self

    def get_results(self) -> Dict[str, Optional[ModelResult]]:
        return self.results

    def _make_result(self, protein_id, names, beta, vcov_unscaled, sigma2, df, n) -> ModelResult:
        return ModelResult(
            protein_id=str(protein_id),
            coefficients=pd.Series(beta, index=names, dtype=float),
            vcov_unscaled=pd.DataFrame(vcov_unscaled, index=names, columns=names),
            sigma=float(np.sqrt(sigma2)),
            df_residual=float(df),
            n_obs=int(n),
            mode=self.mode,
        )

    def _fit_fixed(self, protein_id, y: np.ndarray, observed: np.ndarray) -> Optional[ModelResult]:
        X = self.X.to_numpy(dtype=float)[observed]
        n, p = X.shape
        if n <= p or np.linalg.matrix_rank(X) < p:
            return None

        if self.robust:
            beta, w = huber_fit(X, y, maxiter=self.maxiter)
        else:
            beta, *_ = np.linalg.lstsq(X, y, rcond=None)
            w = np.ones(n)

        XtWX = X.T @ (X * w[:, None])
        try:
            vcov_unscaled = np.linalg.inv(XtWX)
        except np.linalg.LinAlgError:
            logger.debug(f"{protein_id}: singular weighted design")
            return None

        resid = y - X @ beta
        df = n - p
        sigma2 = float(np.sum(w * resid ** 2) / df)
        return self._make_result(protein_id, self.coefficient_names, beta, vcov_unscaled, sigma2, df, n)

    def _fit_ridge(self, protein_id, y: np.ndarray, observed: np.ndarray) -> Optional[ModelResult]:
        X = self.X.to_numpy(dtype=float)[observed]
        n, p = X.shape
        if n < 2:
            return None
        # every fixed effect must be observed; the penalty alone gives no estimate
        X_fixed = self.design.fixed.to_numpy(dtype=float)[observed]
        if np.linalg.matrix_rank(X_fixed) < X_fixed.shape[1]:
            return None

        penalty = np.full(p, self.ridge_lambda)
        if "(Intercept)" in self.coefficient_names:
            penalty[self.coefficient_names.index("(Intercept)")] = 0.0
        P = np.diag(penalty)

        w = np.ones(n)
        beta = None
        for _ in range(self.maxiter if self.robust else 1):
            A = X.T @ (X * w[:, None]) + P
            try:
                A_inv = np.linalg.inv(A)
            except np.linalg.LinAlgError:
                logger.debug(f"{protein_id}: singular penalized design")
                return None
            new_beta = A_inv @ (X.T @ (w * y))
            if beta is not None and np.allclose(new_beta, beta, atol=1e-8):
                beta = new_beta
                break
            beta = new_beta
            if self.robust:
                resid = y - X @ beta
                scale = sm.robust.scale.mad(resid, center=0.0)
                if not np.isfinite(scale) or scale <= 0:
                    break
                w = sm.robust.norms.HuberT().weights(resid / scale)

        A = X.T @ (X * w[:, None]) + P
        A_inv = np.linalg.inv(A)
        hat_trace = float(np.trace(A_inv @ X.T @ (X * w[:, None])))
        df = n - hat_trace
        if df <= 1e-8:
            return None

        resid = y - X @ beta
        sigma2 = float(np.sum(w * resid ** 2) / df)
        return self._make_result(protein_id, self.coefficient_names, beta, A_inv, sigma2, df, n)

    def _fit_mixed(self, protein_id, y: np.ndarray, observed: np.ndarray) -> Optional[ModelResult]:
        X = self.X.to_numpy(dtype=float)[observed]
        n, p = X.shape
        factor = self.design.random_factors[0]
        groups = self.design.random[factor].to_numpy()[observed].argmax(axis=1)
        if n <= p + 1 or np.linalg.matrix_rank(X) < p or np.unique(groups).size < 2:
            return None

        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", category=ConvergenceWarning)
                warnings.simplefilter("ignore", category=RuntimeWarning)
                warnings.filterwarnings("ignore", message=".*random effects covariance is singular.*")
                warnings.filterwarnings("ignore", message=".*MLE may be on the boundary.*")
                res = sm.MixedLM(y, X, groups=groups).fit(reml=True)
        except (np.linalg.LinAlgError, ValueError) as exc:
            logger.debug(f"{protein_id}: mixed model failed ({exc})")
            return None

        scale = float(res.scale)
        if not np.isfinite(scale) or scale <= 0:
            return None
        beta = np.asarray(res.fe_params, dtype=float)
        vcov_fixed = np.asarray(res.cov_params(), dtype=float)[:p, :p]
        # one variance component is estimated on top of the fixed effects
        df = n - p - 1
        return self._make_result(protein_id, self.coefficient_names, beta, vcov_fixed / scale, scale, df, n)
