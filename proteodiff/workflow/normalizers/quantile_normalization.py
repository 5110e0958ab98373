import warnings

import numpy as np
from scipy.stats import rankdata


def quantile_normalization(mat: np.ndarray) -> np.ndarray:
    """
    Quantile-normalize the columns (samples) of a matrix that may contain NaNs.

    Every column is mapped onto a common reference distribution: the per-rank
    mean of the sorted columns. Columns with missing values are first
    interpolated onto the full rank grid, and their observed values are mapped
    back by relative rank (ties share their average rank). NaNs stay NaNs and
    the within-column order is preserved.

    Parameters:
        mat (np.ndarray): 2D array (features x samples), log scale.

    Returns:
        np.ndarray: normalized copy of `mat`.
    """
    mat = np.asarray(mat, dtype=float)
    n_rows, n_cols = mat.shape
    out = mat.copy()
    if n_rows < 2 or n_cols == 0:
        return out

    grid = np.arange(n_rows) / (n_rows - 1)
    sorted_cols = np.full((n_rows, n_cols), np.nan)
    n_obs = np.zeros(n_cols, dtype=int)

    for j in range(n_cols):
        x = np.sort(mat[~np.isnan(mat[:, j]), j])
        n_obs[j] = x.size
        if x.size == 0:
            continue
        if x.size == 1:
            sorted_cols[:, j] = x[0]
        elif x.size < n_rows:
            sorted_cols[:, j] = np.interp(grid, np.arange(x.size) / (x.size - 1), x)
        else:
            sorted_cols[:, j] = x

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)
        reference = np.nanmean(sorted_cols, axis=1)

    for j in range(n_cols):
        observed = ~np.isnan(mat[:, j])
        if n_obs[j] == 0:
            continue
        if n_obs[j] == 1:
            out[observed, j] = np.interp(0.5, grid, reference)
            continue
        ranks = rankdata(mat[observed, j], method="average")
        out[observed, j] = np.interp((ranks - 1) / (n_obs[j] - 1), grid, reference)

    return out
