import warnings

import numpy as np

from proteodiff.analysis.stats_ops import huber_fit


def _nanmedian_columns(mat: np.ndarray) -> np.ndarray:
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)
        return np.nanmedian(mat, axis=0)


def robust_summary(mat: np.ndarray, maxiter: int = 20) -> np.ndarray:
    """
    Robust protein summary of a (peptides x samples) log-intensity block.

    Fits value ~ 0 + sample + peptide with sum-to-zero peptide effects by Huber
    M-estimation, so each sample coefficient is a robust mean over peptides,
    adjusted for peptide ionization differences. A few aberrant peptide values
    get down-weighted instead of dragging the estimate.

    Samples without any observed peptide give NaN. Single-peptide proteins
    return that peptide's values. Saturated or singular designs fall back to the
    per-sample median of the observed peptides.
    """
    mat = np.asarray(mat, dtype=float)
    n_samples = mat.shape[1]
    out = np.full(n_samples, np.nan)

    observed = ~np.isnan(mat)
    if not observed.any():
        return out

    rows, cols = np.nonzero(observed)
    y = mat[rows, cols]
    samples = np.unique(cols)
    peptides = np.unique(rows)

    if peptides.size == 1:
        return mat[peptides[0]].copy()

    s_idx = np.searchsorted(samples, cols)
    p_idx = np.searchsorted(peptides, rows)
    n_obs, k = y.size, peptides.size

    X_sample = np.zeros((n_obs, samples.size))
    X_sample[np.arange(n_obs), s_idx] = 1.0

    # sum contrast: last peptide carries -1 on every peptide column
    X_peptide = np.zeros((n_obs, k - 1))
    last = p_idx == k - 1
    X_peptide[~last, p_idx[~last]] = 1.0
    X_peptide[last, :] = -1.0

    X = np.hstack([X_sample, X_peptide])
    if n_obs <= X.shape[1] or np.linalg.matrix_rank(X) < X.shape[1]:
        medians = _nanmedian_columns(mat)
        out[samples] = medians[samples]
        return out

    params, _ = huber_fit(X, y, maxiter=maxiter)
    out[samples] = params[: samples.size]
    return out
