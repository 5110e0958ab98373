import warnings
from typing import Callable, Sequence, Tuple

import numpy as np
import polars as pl

from proteodiff.utils.utils import log_info, numpy_to_polars_columns


def _nan_aggregate(fn: Callable) -> Callable[[np.ndarray], np.ndarray]:
    def _agg(mat: np.ndarray) -> np.ndarray:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", category=RuntimeWarning)
            return fn(mat, axis=0)
    return _agg


def _nan_sum(mat: np.ndarray) -> np.ndarray:
    # all-missing samples stay missing instead of summing to 0
    out = np.nansum(mat, axis=0)
    return np.where(np.isnan(mat).all(axis=0), np.nan, out)


def get_summarizer(**kwargs) -> Callable[[np.ndarray], np.ndarray]:
    """
    Returns a block summarizer: (peptides x samples) -> (samples,).

    Valid methods:
        - "robust": Huber M-estimation of sample + peptide effects (default).
        - "median_polish": Tukey median polish, overall + sample effect.
        - "median", "mean", "sum": column-wise statistics over observed peptides.
    """
    method = kwargs.pop("method", "robust")

    if method == "robust":
        from proteodiff.workflow.summarizers.robust_summary import robust_summary
        maxiter = int(kwargs.get("maxiter", 20))
        return lambda mat: robust_summary(mat, maxiter=maxiter)
    elif method == "median_polish":
        from proteodiff.workflow.summarizers.median_polish import median_polish_summary
        max_iter = int(kwargs.get("maxiter", 10))
        return lambda mat: median_polish_summary(mat, max_iter=max_iter)
    elif method == "median":
        return _nan_aggregate(np.nanmedian)
    elif method == "mean":
        return _nan_aggregate(np.nanmean)
    elif method == "sum":
        return _nan_sum
    else:
        raise ValueError(f"Invalid summarization method: {method}.\n"
                         "Options: robust, median_polish, median, mean, sum")


def summarize_to_proteins(
    df: pl.DataFrame,
    sample_cols: Sequence[str],
    summarizer: Callable[[np.ndarray], np.ndarray],
    group_col: str = "PROTEIN_GROUP",
) -> Tuple[pl.DataFrame, pl.DataFrame]:
    """
    Collapse peptide rows sharing a protein group into one row per group.

    Returns (protein table [INDEX + samples], protein metadata [INDEX, N_PEPTIDES]).
    Proteins are sorted by identifier; sample order is unchanged.
    """
    sample_cols = list(sample_cols)
    groups = df.get_column(group_col).to_list()
    mat = (
        df.select([pl.col(c).cast(pl.Float64) for c in sample_cols])
          .fill_null(np.nan)
          .to_numpy()
    )

    order: dict = {}
    for i, g in enumerate(groups):
        order.setdefault(g, []).append(i)

    proteins = sorted(order)
    values = np.full((len(proteins), len(sample_cols)), np.nan)
    n_peptides = np.zeros(len(proteins), dtype=np.int64)
    for r, protein in enumerate(proteins):
        rows = order[protein]
        values[r] = summarizer(mat[rows, :])
        n_peptides[r] = len(rows)

    protein_df = numpy_to_polars_columns(
        pl.DataFrame({"INDEX": proteins}, schema={"INDEX": pl.Utf8}), sample_cols, values
    )
    meta_df = pl.DataFrame({"INDEX": proteins, "N_PEPTIDES": n_peptides},
                           schema={"INDEX": pl.Utf8, "N_PEPTIDES": pl.Int64})

    log_info(f"Summarized {df.height} peptides into {len(proteins)} proteins.")
    return protein_df, meta_df
