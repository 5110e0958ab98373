from __future__ import annotations

import warnings

import numpy as np
import statsmodels.api as sm
from scipy.stats import t as t_dist
from statsmodels.stats.multitest import multipletests
from statsmodels.tools.sm_exceptions import ConvergenceWarning


def huber_fit(X: np.ndarray, y: np.ndarray, maxiter: int = 20) -> tuple[np.ndarray, np.ndarray]:
    """
    Huber M-estimation (IRLS) of y ~ X.

    Returns (params, weights). Exact or near-exact fits, where the robust scale
    collapses to zero, return the least-squares solution with unit weights.
    """
    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float)
    params, *_ = np.linalg.lstsq(X, y, rcond=None)
    resid = y - X @ params
    tol = 1e-10 * max(1.0, float(np.max(np.abs(y))))
    if y.size <= X.shape[1] or np.median(np.abs(resid)) <= tol:
        return params, np.ones_like(y)

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=ConvergenceWarning)
        res = sm.RLM(y, X, M=sm.robust.norms.HuberT()).fit(maxiter=maxiter)
    return np.asarray(res.params, dtype=float), np.asarray(res.weights, dtype=float)


def t_test_two_sided(estimate: np.ndarray, se: np.ndarray, df: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Mechanical shared primitive:
      t = estimate / se
      p = 2 * t.sf(|t|, df)
    Zero or non-finite standard errors give NaN.
    """
    estimate = np.asarray(estimate, dtype=float)
    se = np.asarray(se, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        t = estimate / se
    t = np.where(np.isfinite(se) & (se > 0), t, np.nan)
    with np.errstate(invalid="ignore"):
        p = 2 * t_dist.sf(np.abs(t), df=df)
    return t, p


def bh_adjust(p: np.ndarray) -> np.ndarray:
    """Benjamini-Hochberg adjustment over the finite p-values only; the rest stay NaN."""
    p = np.asarray(p, dtype=float)
    out = np.full_like(p, np.nan)
    valid = np.isfinite(p)
    if valid.any():
        out[valid] = multipletests(p[valid], method="fdr_bh")[1]
    return out


def holm_adjust(p: np.ndarray) -> np.ndarray:
    """Holm adjustment over the finite p-values only."""
    p = np.asarray(p, dtype=float)
    out = np.full_like(p, np.nan)
    valid = np.isfinite(p)
    if valid.any():
        out[valid] = multipletests(p[valid], method="holm")[1]
    return out
