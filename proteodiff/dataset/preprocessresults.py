from dataclasses import dataclass
from typing import Dict, Optional

import pandas as pd
import polars as pl


@dataclass
class PreprocessResults:
    filtered: pl.DataFrame              # peptides after filtering, zeros as missing
    log2: pl.DataFrame                  # peptides, log2
    normalized: pl.DataFrame            # peptides, log2 + normalized
    summarized: pl.DataFrame            # proteins
    row_annotation: pl.DataFrame        # filtered peptides: group, flags, observation counts
    protein_meta: pl.DataFrame          # proteins: N_PEPTIDES
    sample_annotation: pd.DataFrame     # samples: derived factors
    meta_filtering: Dict
    meta_normalization: Dict
    meta_summarization: Dict
    missingness: Optional[pd.DataFrame] = None
