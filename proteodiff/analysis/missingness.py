from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import pandas as pd
import polars as pl


@dataclass(frozen=True)
class MissingnessResult:
    df: pd.DataFrame
    source: str
    rule: str


def _is_missing(col: str) -> pl.Expr:
    return pl.col(col).is_null() | pl.col(col).is_nan()


def zero_is_na(df: pl.DataFrame, sample_cols: Sequence[str]) -> pl.DataFrame:
    """Literal zero intensities mean 'not observed': turn them into nulls, keep everything else."""
    return df.with_columns([
        pl.when(pl.col(c) == 0).then(None).otherwise(pl.col(c)).alias(c)
        for c in sample_cols
    ])


def count_nonmissing(df: pl.DataFrame, sample_cols: Sequence[str]) -> pl.Series:
    """Per-row number of observed (non-null, non-NaN) sample values."""
    return df.select(
        pl.sum_horizontal([(~_is_missing(c)).cast(pl.Int64) for c in sample_cols]).alias("N_NONMISSING")
    ).to_series()


def count_blocks(df: pl.DataFrame, sample_cols: Sequence[str], blocks: Sequence[str]) -> pl.Series:
    """Per-row number of distinct block levels with at least one observed value."""
    if len(blocks) != len(sample_cols):
        raise ValueError("One block label per sample column is required.")
    by_block: dict[str, list[str]] = {}
    for col, block in zip(sample_cols, blocks):
        by_block.setdefault(str(block), []).append(col)

    return df.select(
        pl.sum_horizontal([
            pl.any_horizontal([~_is_missing(c) for c in cols]).cast(pl.Int64)
            for cols in by_block.values()
        ]).alias("N_BLOCKS")
    ).to_series()


def annotate_missingness(
    df: pl.DataFrame,
    sample_cols: Sequence[str],
    blocks: Optional[Sequence[str]] = None,
) -> pl.DataFrame:
    """Zero-to-missing conversion plus the per-row observation counts used by the filter.

    The counts are a snapshot of this table; later stages do not refresh them.
    No rows are dropped.
    """
    out = zero_is_na(df, sample_cols)
    out = out.with_columns(count_nonmissing(out, sample_cols))
    if blocks is not None:
        out = out.with_columns(count_blocks(out, sample_cols, blocks))
    return out


def _missingness_counts(intensity_matrix_GxN: np.ndarray, conditions: list[str]) -> dict[str, np.ndarray]:
    cond_arr = np.asarray(conditions, dtype=str)
    uniq = np.unique(cond_arr)
    out: dict[str, np.ndarray] = {}
    for cond in uniq:
        mask = cond_arr == cond
        sub = intensity_matrix_GxN[:, mask]
        out[cond] = np.isnan(sub).sum(axis=1)
    return out


def compute_missingness(
    matrix_GxN: np.ndarray,
    feature_ids: Sequence[str],
    conditions: Sequence[str],
    source: str = "summarized",
) -> MissingnessResult:
    """Per-feature missing-value counts for each condition level."""
    counts = _missingness_counts(np.asarray(matrix_GxN, dtype=float), list(conditions))
    df = pd.DataFrame(counts, index=list(feature_ids))
    return MissingnessResult(df=df, source=source, rule="nan-is-missing")
