import warnings
from dataclasses import dataclass

import numpy as np

from proteodiff.utils.utils import logger


@dataclass
class MedianPolishResult:
    """
    Result of Tukey median polish on a (peptides x samples) block.

    Additive model: y_ij = overall + row_i + col_j + e_ij
    The protein value of sample j is overall + col_j.
    """
    overall: float
    row_effects: np.ndarray
    col_effects: np.ndarray
    residuals: np.ndarray
    n_iterations: int
    converged: bool

    @property
    def sample_values(self) -> np.ndarray:
        return self.overall + self.col_effects


def tukey_median_polish(mat: np.ndarray, max_iter: int = 10, tol: float = 1e-4) -> MedianPolishResult:
    """Tukey's median polish ignoring NaNs. All-missing samples keep a NaN effect."""
    residuals = np.asarray(mat, dtype=float).copy()
    n_rows, n_cols = residuals.shape
    overall = 0.0
    row_effects = np.zeros(n_rows)
    col_effects = np.zeros(n_cols)
    converged = False
    iteration = 0

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)
        for iteration in range(max_iter):
            old_residuals = residuals.copy()

            row_medians = np.nanmedian(residuals, axis=1)
            row_medians = np.where(np.isfinite(row_medians), row_medians, 0.0)
            residuals = residuals - row_medians[:, np.newaxis]
            delta = np.nanmedian(col_effects)
            row_effects += row_medians
            col_effects -= delta
            overall += delta

            col_medians = np.nanmedian(residuals, axis=0)
            residuals = residuals - col_medians[np.newaxis, :]
            col_effects += col_medians
            delta = np.nanmedian(row_effects)
            row_effects -= delta
            overall += delta

            max_change = np.nanmax(np.abs(residuals - old_residuals))
            if not np.isfinite(max_change) or max_change < tol:
                converged = True
                break

    if not converged:
        logger.debug(f"Median polish did not converge after {max_iter} iterations")

    return MedianPolishResult(
        overall=float(overall),
        row_effects=row_effects,
        col_effects=col_effects,
        residuals=residuals,
        n_iterations=iteration + 1,
        converged=converged,
    )


def median_polish_summary(mat: np.ndarray, max_iter: int = 10) -> np.ndarray:
    return tukey_median_polish(mat, max_iter=max_iter).sample_values
