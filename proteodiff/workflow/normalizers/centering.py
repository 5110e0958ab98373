import warnings

import numpy as np


def _nan_column_stat(mat: np.ndarray, stat: str) -> np.ndarray:
    """Column median/mean over observed values; NaN for all-missing columns."""
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)
        if stat == "median":
            return np.nanmedian(mat, axis=0, keepdims=True)
        if stat == "mean":
            return np.nanmean(mat, axis=0, keepdims=True)
    raise ValueError(f"Unknown column statistic '{stat}'")


def center_columns(mat: np.ndarray, stat: str = "median") -> np.ndarray:
    """Subtract each sample's median (or mean) of observed values. NaNs stay NaNs."""
    mat = np.asarray(mat, dtype=float)
    values = _nan_column_stat(mat, stat)
    # all-missing samples are left untouched
    return mat - np.where(np.isfinite(values), values, 0.0)


def diff_median(mat: np.ndarray) -> np.ndarray:
    """Shift every sample median onto the median of the sample medians."""
    mat = np.asarray(mat, dtype=float)
    medians = _nan_column_stat(mat, "median")
    finite = np.isfinite(medians)
    if not finite.any():
        return mat.copy()
    target = np.median(medians[finite])
    return mat - np.where(finite, medians - target, 0.0)
