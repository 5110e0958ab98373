import re
from typing import Dict, List, Optional, Tuple

import pandas as pd
import polars as pl

from proteodiff.utils.errors import MetadataDerivationError, SchemaMismatchError
from proteodiff.utils.utils import log_time, log_info, log_warning


class DataHarmonizer:
    """Harmonizes a wide peptide table: canonical column names, sample columns, sample factors."""

    DEFAULT_COLUMN_MAP = {
        "sequence_column": "PEPTIDE_ID",
        "protein_group_column": "PROTEIN_GROUP",
        "decoy_column": "IS_DECOY",
        "contaminant_column": "IS_CONTAMINANT",
    }

    DEFAULT_COLUMN_NAMES = {
        "sequence_column": "Sequence",
        "protein_group_column": "Proteins",
        "decoy_column": "Reverse",
        "contaminant_column": "Potential contaminant",
    }

    FLAG_COLUMNS = {"IS_DECOY", "IS_CONTAMINANT"}

    def __init__(self, column_config: dict):
        """Initialize column mappings with user-defined config."""
        column_config = column_config or {}
        self.intensity_prefix = column_config.get("intensity_prefix", "Intensity ")
        if not self.intensity_prefix:
            raise ValueError("dataset.intensity_prefix must be a non-empty string.")
        self.flag_true_value = str(column_config.get("flag_true_value", "+"))
        self.sample_factors: Dict[str, dict] = column_config.get("sample_factors") or {}

        # original name -> canonical name; a key explicitly set to null disables that column
        self.column_map: Dict[str, str] = {}
        for config_key, std_name in self.DEFAULT_COLUMN_MAP.items():
            original_col = column_config.get(config_key, self.DEFAULT_COLUMN_NAMES[config_key])
            if original_col:
                self.column_map[str(original_col)] = std_name
            elif std_name not in self.FLAG_COLUMNS:
                raise ValueError(f"dataset.{config_key} is required.")

    def intensity_columns(self, df: pl.DataFrame) -> List[str]:
        """Headers starting with the intensity prefix, in file order."""
        cols = [c for c in df.columns if c.startswith(self.intensity_prefix)]
        if not cols:
            raise SchemaMismatchError(
                f"No intensity columns found with prefix '{self.intensity_prefix}'. "
                f"Example columns: {df.columns[:10]}"
            )
        return cols

    def _sample_name(self, header: str) -> str:
        name = header[len(self.intensity_prefix):].strip()
        if not name:
            raise SchemaMismatchError(f"Intensity column '{header}' has an empty sample name.")
        return name

    def _check_required_columns(self, df: pl.DataFrame) -> None:
        missing = [c for c in self.column_map if c not in df.columns]
        if missing:
            raise SchemaMismatchError(
                f"Expected column(s) not found in input: {missing}. "
                f"Available columns: {df.columns[:20]}"
            )

    def _as_flag(self, col: str) -> pl.Expr:
        return (
            pl.col(col).cast(pl.Utf8, strict=False).str.strip_chars()
              .eq(self.flag_true_value)
              .fill_null(False)
        )

    @staticmethod
    def derive_factor(header: str, sample: str, factor: str, rule: dict) -> str:
        """Apply one fixed derivation rule to a sample header.

        Rules:
          - {method: substring, start, end}   fixed-offset slice (0-based, end exclusive)
          - {method: split, delimiter, index} split on a fixed delimiter, pick one token
          - {method: regex, pattern, group}   full match of a regular expression
        `source: header` applies the rule to the full column header instead of the sample name.
        """
        text = header if rule.get("source", "sample") == "header" else sample
        method = rule.get("method", "substring")

        if method == "substring":
            start = int(rule.get("start", 0))
            end = rule.get("end")
            if end is None:
                value = text[start:]
            else:
                end = int(end)
                if len(text) < end:
                    raise MetadataDerivationError(
                        f"Cannot derive '{factor}' from '{header}': needs at least {end} characters, "
                        f"got {len(text)} in '{text}'."
                    )
                value = text[start:end]
        elif method == "split":
            delimiter = rule.get("delimiter", "_")
            index = int(rule.get("index", 0))
            tokens = text.split(delimiter)
            if index >= len(tokens) or index < -len(tokens):
                raise MetadataDerivationError(
                    f"Cannot derive '{factor}' from '{header}': splitting '{text}' on '{delimiter}' "
                    f"gives {len(tokens)} token(s), token {index} requested."
                )
            value = tokens[index]
        elif method == "regex":
            pattern = rule.get("pattern")
            if not pattern:
                raise ValueError(f"sample_factors.{factor}: regex rule needs a 'pattern'.")
            m = re.fullmatch(pattern, text)
            if m is None:
                raise MetadataDerivationError(
                    f"Cannot derive '{factor}' from '{header}': '{text}' does not match /{pattern}/."
                )
            value = m.group(rule.get("group", 1))
        else:
            raise ValueError(f"sample_factors.{factor}: unknown method '{method}' (use substring, split or regex).")

        value = (value or "").strip()
        if not value:
            raise MetadataDerivationError(f"Cannot derive '{factor}' from '{header}': empty value.")

        levels = rule.get("levels")
        if levels is not None and value not in {str(lv) for lv in levels}:
            raise MetadataDerivationError(
                f"Derived '{factor}'='{value}' from '{header}' is not one of the declared levels {list(levels)}."
            )
        return value

    def sample_annotation(self, headers: List[str]) -> pd.DataFrame:
        """Build the sample (column) annotation from the intensity headers."""
        samples = [self._sample_name(h) for h in headers]
        if len(set(samples)) != len(samples):
            raise SchemaMismatchError(f"Duplicate sample names after removing the intensity prefix: {samples}")

        data = {"HEADER": headers}
        for factor, rule in self.sample_factors.items():
            data[factor] = [self.derive_factor(h, s, factor, rule or {}) for h, s in zip(headers, samples)]

        annotation = pd.DataFrame(data, index=pd.Index(samples, name="Sample"))
        for factor in self.sample_factors:
            annotation[factor] = annotation[factor].astype("category")
            levels = list(annotation[factor].cat.categories)
            if len(levels) < 2:
                log_warning(f"Sample factor '{factor}' has a single level: {levels}")
            log_info(f"Sample factor '{factor}': levels={levels}")
        return annotation

    @log_time("Data Harmonizing")
    def harmonize(self, df: pl.DataFrame) -> Tuple[pl.DataFrame, pd.DataFrame]:
        """Return (peptide table with canonical columns, sample annotation)."""
        self._check_required_columns(df)
        headers = self.intensity_columns(df)
        annotation = self.sample_annotation(headers)
        samples = annotation.index.tolist()

        out = df.select(
            [pl.col(orig).alias(std) for orig, std in self.column_map.items()]
            + [pl.col(h).cast(pl.Float64, strict=False).alias(s) for h, s in zip(headers, samples)]
        )
        out = out.with_columns(
            pl.col("PEPTIDE_ID").cast(pl.Utf8),
            pl.col("PROTEIN_GROUP").cast(pl.Utf8).fill_null(""),
        )
        for flag in self.FLAG_COLUMNS:
            if flag in out.columns:
                out = out.with_columns(self._as_flag(flag).alias(flag))
            else:
                out = out.with_columns(pl.lit(False).alias(flag))

        if out.get_column("PEPTIDE_ID").null_count():
            raise SchemaMismatchError("Peptide key column contains empty values.")
        n_dup = out.height - out.get_column("PEPTIDE_ID").n_unique()
        if n_dup:
            raise SchemaMismatchError(f"Peptide key column is not unique ({n_dup} duplicated key(s)).")

        out = out.select(["PEPTIDE_ID", "PROTEIN_GROUP", "IS_DECOY", "IS_CONTAMINANT"] + samples)
        log_info(f"Harmonized {out.height} peptides × {len(samples)} samples "
                 f"(intensity prefix '{self.intensity_prefix}').")
        return out, annotation
