"""Preprocessing pipeline for proteodiff.

This module performs, on the harmonized peptide table:
1) Missingness: literal zeros become missing, observation counts per peptide
2) Filtering (smallest unique protein group, decoys, contaminants, min. observations)
3) log2 transformation
4) Normalization (quantiles, median/mean centering, median difference)
5) Summarization of peptides into proteins

Every step records its table in `IntermediateResults` under a new stage name.
The stages are then assembled into a `PreprocessResults` container consumed by
downstream code.
"""

from typing import List, Optional

import numpy as np
import pandas as pd
import polars as pl

from proteodiff.analysis.missingness import annotate_missingness, compute_missingness
from proteodiff.dataset.intermediateresults import IntermediateResults
from proteodiff.dataset.preprocessresults import PreprocessResults
from proteodiff.utils.utils import log_indent, log_info, log_time, log_warning, numpy_to_polars_columns
from proteodiff.workflow.normalizers.centering import center_columns, diff_median
from proteodiff.workflow.normalizers.quantile_normalization import quantile_normalization
from proteodiff.workflow.protein_groups import unique_group_mask
from proteodiff.workflow.summarizer_factory import get_summarizer, summarize_to_proteins

ROW_ANNOTATION_COLUMNS = ["PEPTIDE_ID", "PROTEIN_GROUP", "IS_DECOY", "IS_CONTAMINANT"]


class Preprocessor:
    """Handles missingness, filtering, transformation, normalization and summarization of peptide data."""

    available_normalization = ["quantiles", "center.median", "center.mean", "diff.median", "none"]

    def __init__(self, config: Optional[dict] = None):
        """Initialize from the `preprocessing` section of the config."""
        config = config or {}
        self.intermediate_results = IntermediateResults()

        # Filtering
        self.filtering = config.get("filtering") or {}
        self.filter_unique_groups = bool(self.filtering.get("unique_groups", True))
        self.filter_decoys = bool(self.filtering.get("remove_decoys", True))
        self.filter_contaminants = bool(self.filtering.get("remove_contaminants", True))
        self.min_observations = self.filtering.get("min_observations", 2)
        self.group_separator = self.filtering.get("group_separator", ";")

        # Observations are counted per block level instead of per sample when set
        self.block_factor = config.get("block_factor")

        # Normalization
        self.normalization = config.get("normalization") or {}
        self.normalization_method = self.normalization.get("method", "center.median") or "none"
        if self.normalization_method not in self.available_normalization:
            raise ValueError(f"Invalid normalization method: {self.normalization_method}.\n"
                             f"Options: {', '.join(self.available_normalization)}")

        # Summarization
        self.summarization = dict(config.get("summarization") or {})
        self.summarizer = get_summarizer(**self.summarization)
        self.summarization_method = self.summarization.get("method", "robust")

        self.sample_cols: List[str] = []
        self.sample_annotation: Optional[pd.DataFrame] = None

    def fit_transform(self, df: pl.DataFrame, sample_annotation: pd.DataFrame) -> PreprocessResults:
        """Run the full preprocessing pipeline and return a `PreprocessResults` bundle."""
        self.sample_annotation = sample_annotation
        self.sample_cols = sample_annotation.index.tolist()
        self.intermediate_results.set_columns(self.sample_cols)
        self.intermediate_results.add_df("raw", df)

        # Step 1: zeros -> missing
        self._missingness()

        # Step 2: Filtering
        self._filter()

        # Step 3: log2
        self._transform()

        # Step 4: Normalization
        self._normalize()

        # Step 5: Summarization
        self._summarize()

        ir = self.intermediate_results
        filtered = ir.get_df("filtered")
        annotation_cols = ROW_ANNOTATION_COLUMNS + [
            c for c in ("N_NONMISSING", "N_BLOCKS") if c in filtered.columns
        ]

        return PreprocessResults(
            filtered=self._feature_table(filtered),
            log2=self._feature_table(ir.get_df("log2")),
            normalized=self._feature_table(ir.get_df("normalized")),
            summarized=ir.get_df("summarized"),
            row_annotation=filtered.select(annotation_cols),
            protein_meta=ir.get_df("protein_metadata"),
            sample_annotation=sample_annotation,
            meta_filtering=ir.metadata.get("filtering"),
            meta_normalization=ir.metadata.get("normalization"),
            meta_summarization=ir.metadata.get("summarization"),
            missingness=self._condition_missingness(),
        )

    def _feature_table(self, df: pl.DataFrame) -> pl.DataFrame:
        return df.select(["PEPTIDE_ID"] + self.sample_cols)

    def _block_labels(self) -> Optional[List[str]]:
        if not self.block_factor:
            return None
        if self.block_factor not in self.sample_annotation.columns:
            raise ValueError(
                f"preprocessing.block_factor '{self.block_factor}' is not a sample factor "
                f"(known: {[c for c in self.sample_annotation.columns if c != 'HEADER']})."
            )
        return self.sample_annotation[self.block_factor].astype(str).tolist()

    @log_time("Missingness")
    def _missingness(self) -> None:
        """Literal zeros become missing; observation counts are recorded per peptide."""
        df = self.intermediate_results.get_df("raw")
        n_zero = int(df.select(
            pl.sum_horizontal([(pl.col(c) == 0).fill_null(False).cast(pl.Int64) for c in self.sample_cols]).sum()
        ).item() or 0)

        out = annotate_missingness(df, self.sample_cols, self._block_labels())
        self.intermediate_results.add_df("zero_na", out)
        log_info(f"Zero-to-missing: {n_zero} zero intensities set to missing.")

    @log_time("Filtering")
    def _filter(self) -> None:
        """Ordered filters; each one reads the output of the previous one."""
        df = self.intermediate_results.get_df("zero_na")
        n_start = df.height

        x = self._filter_unique_groups(df)
        self.intermediate_results.add_df("filtered/unique_groups", x)

        x = self._filter_flag(x, "IS_DECOY", "decoy", self.filter_decoys)
        self.intermediate_results.add_df("filtered/decoys", x)

        x = self._filter_flag(x, "IS_CONTAMINANT", "contaminant", self.filter_contaminants)
        self.intermediate_results.add_df("filtered/contaminants", x)

        x = self._filter_min_observations(x)
        self.intermediate_results.add_df("filtered", x)

        self.intermediate_results.add_metadata("filtering", "number_start", n_start)
        self.intermediate_results.add_metadata("filtering", "number_final", x.height)
        log_info(f"{x.height} of {n_start} peptides pass filtering.")
        if x.height == 0:
            log_warning("No peptide passed filtering; downstream tables will be empty.")

    def _record_filter(self, key: str, df: pl.DataFrame, keep: pl.Series, **extra) -> pl.DataFrame:
        df_kept = df.filter(keep)
        dropped_dict = {
            **extra,
            "number_kept": df_kept.height,
            "number_dropped": df.height - df_kept.height,
        }
        self.intermediate_results.add_metadata("filtering", key, dropped_dict)
        return df_kept

    def _skip_filter(self, key: str, df: pl.DataFrame, reason: str) -> pl.DataFrame:
        skipped = {
            "skipped": True,
            "reason": reason,
            "number_kept": df.height,
            "number_dropped": 0,
        }
        self.intermediate_results.add_metadata("filtering", key, skipped)
        return df

    def _filter_unique_groups(self, df: pl.DataFrame) -> pl.DataFrame:
        """Keep peptides whose protein group is not a strict superset of another observed group."""
        if not self.filter_unique_groups:
            log_info("Unique-group filtering: skipped (disabled).")
            return self._skip_filter("meta_unique", df, "disabled")

        keep = unique_group_mask(df, "PROTEIN_GROUP", self.group_separator)
        out = self._record_filter("meta_unique", df, keep, separator=self.group_separator)
        log_info(f"Unique-group filtering: kept={out.height} dropped={df.height - out.height}.")
        return out

    def _filter_flag(self, df: pl.DataFrame, flag: str, label: str, enabled: bool) -> pl.DataFrame:
        key = f"meta_{label}"
        if not enabled:
            log_info(f"{label.capitalize()} filtering: skipped (disabled).")
            return self._skip_filter(key, df, "disabled")

        keep = df.get_column(flag).fill_null(False).not_()
        out = self._record_filter(key, df, keep, column=flag)
        log_info(f"{label.capitalize()} filtering: kept={out.height} dropped={df.height - out.height}.")
        return out

    def _filter_min_observations(self, df: pl.DataFrame) -> pl.DataFrame:
        """Keep peptides observed in at least `min_observations` samples (or block levels)."""
        thr = self.min_observations
        if thr is None or int(thr) <= 0:
            log_info("Min-observation filtering: skipped (threshold disabled).")
            return self._skip_filter("meta_min_obs", df, "min_observations <= 0 or None")

        count_col = "N_BLOCKS" if "N_BLOCKS" in df.columns else "N_NONMISSING"
        values = df.get_column(count_col)

        keep = values >= int(thr)
        out = self._record_filter("meta_min_obs", df, keep, threshold=int(thr), column=count_col)
        log_info(f"Min-observation filtering: kept={out.height} dropped={df.height - out.height} "
                 f"({count_col} >= {thr}).")
        return out

    @log_time("Transformation")
    def _transform(self) -> None:
        """log2 of every observed value. Missing stays missing; non-positive values give NaN."""
        df = self.intermediate_results.get_df("filtered")
        mat = df.select(self.sample_cols).fill_null(np.nan).to_numpy().astype(float)
        with np.errstate(divide="ignore", invalid="ignore"):
            logged = np.log2(mat)
        logged[~np.isfinite(logged)] = np.nan
        self.intermediate_results.add_df("log2", numpy_to_polars_columns(df, self.sample_cols, logged))
        log_info("log2 transformation applied.")

    @log_time("Normalization")
    def _normalize(self) -> None:
        """Apply the configured normalization to the log2 peptide table."""
        df = self.intermediate_results.get_df("log2")
        mat = df.select(self.sample_cols).fill_null(np.nan).to_numpy().astype(float)
        method = self.normalization_method

        if method == "quantiles":
            normed = quantile_normalization(mat)
        elif method == "center.median":
            normed = center_columns(mat, "median")
        elif method == "center.mean":
            normed = center_columns(mat, "mean")
        elif method == "diff.median":
            normed = diff_median(mat)
        else:
            log_info("Skipping normalization (log2 data kept as is)")
            normed = mat.copy()

        self.intermediate_results.add_df("normalized", numpy_to_polars_columns(df, self.sample_cols, normed))
        self.intermediate_results.add_metadata("normalization", "method", method)
        log_info(f"Normalization: {method}.")

    @log_time("Summarization")
    def _summarize(self) -> None:
        """Peptides -> proteins with the configured summarizer."""
        df = self.intermediate_results.get_df("normalized")
        log_info(f"Summarization using {self.summarization_method}")
        with log_indent():
            proteins, meta = summarize_to_proteins(df, self.sample_cols, self.summarizer)

        self.intermediate_results.add_df("summarized", proteins)
        peptides = (
            df.group_by("PROTEIN_GROUP")
              .agg(pl.col("PEPTIDE_ID").sort().str.join(";").alias("PEPTIDES"))
              .rename({"PROTEIN_GROUP": "INDEX"})
        )
        meta = meta.join(peptides, on="INDEX", how="left")
        self.intermediate_results.add_df("protein_metadata", meta, check_columns=False)
        self.intermediate_results.add_metadata("summarization", "method", self.summarization_method)
        self.intermediate_results.add_metadata("summarization", "number_proteins", proteins.height)

    def _condition_missingness(self) -> Optional[pd.DataFrame]:
        """Missing counts per protein and level of the first sample factor."""
        factors = [c for c in self.sample_annotation.columns if c != "HEADER"]
        if not factors:
            return None
        proteins = self.intermediate_results.get_df("summarized")
        mat = proteins.select(self.sample_cols).fill_null(np.nan).to_numpy().astype(float)
        conditions = self.sample_annotation[factors[0]].astype(str).tolist()
        result = compute_missingness(mat, proteins.get_column("INDEX").to_list(), conditions)
        return result.df
