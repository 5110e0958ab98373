from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import polars as pl


@dataclass
class IntermediateResults:
    """Named, write-once store of the pipeline stages (the assay chain).

    Every preprocessing step adds a new table under a new name; nothing is
    overwritten, so an earlier stage always reads as it was produced.
    """
    # Wide Polars tables per stage ("raw", "zero_na", "filtered/...", "log2", ...)
    dfs: Dict[str, pl.DataFrame] = field(default_factory=dict)

    # Stage names in creation order
    order: List[str] = field(default_factory=list)

    # Metadata per step
    metadata: Dict[str, Any] = field(default_factory=lambda: {
        "filtering": {},
        "normalization": {},
        "summarization": {}})

    # Sample columns shared by every stage
    columns: Optional[List[str]] = None

    def set_columns(self, columns: List[str]):
        """Set sample columns once, from the loaded table."""
        self.columns = list(columns)

    def add_df(self, name: str, df: pl.DataFrame, check_columns: bool = True):
        """Add a stage. Stage names are unique and sample columns must match."""
        if name in self.dfs:
            raise ValueError(f"Stage '{name}' already exists; stages are immutable.")
        if check_columns and self.columns is not None:
            missing = [c for c in self.columns if c not in df.columns]
            if missing:
                raise ValueError(f"Stage '{name}' lacks sample columns: {missing}")
        self.dfs[name] = df
        self.order.append(name)

    def get_df(self, name: str) -> pl.DataFrame:
        if name not in self.dfs:
            raise KeyError(f"Stage '{name}' has not been computed yet (available: {self.order}).")
        return self.dfs[name]

    def add_metadata(self, step: str, key: str, value: Any):
        """Store step metadata (kept/dropped counts, method names, ...)."""
        if step not in self.metadata:
            raise ValueError(f"step must be one of {sorted(self.metadata)}")
        self.metadata[step][key] = value
