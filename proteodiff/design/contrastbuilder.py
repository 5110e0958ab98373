import itertools
from typing import List, Optional

import pandas as pd

from proteodiff.design.contrast import Contrast


class ContrastBuilder:
    def __init__(self, sample_metadata: pd.DataFrame, coefficient_names: List[str], factor: str, baseline: Optional[str] = None):
        """
        Parameters:
        - sample_metadata: sample annotation holding `factor`
        - coefficient_names: fitted coefficient names (R-style, e.g. 'celltypeB')
        - factor: the factor whose levels are compared
        - baseline: str (optional), if you want to force a specific reference level
        """
        if factor not in sample_metadata.columns:
            raise ValueError(f"Factor '{factor}' not found in sample metadata.")
        self.factor = factor
        self.column_names = list(coefficient_names)
        self.levels = self._extract_levels(sample_metadata[factor])
        self.baseline = baseline or self.levels[0]

    @staticmethod
    def _extract_levels(column: pd.Series) -> List[str]:
        if isinstance(column.dtype, pd.CategoricalDtype):
            return [str(c) for c in column.cat.categories]
        return sorted(str(v) for v in column.unique())

    def _level_weights(self, level: str) -> dict:
        """Coefficient weights giving the mean of `level` up to terms shared by all levels."""
        name = f"{self.factor}{level}"
        if name in self.column_names:
            return {name: 1.0}
        # reference level of a treatment-coded factor
        return {}

    def contrast(self, group1: str, group2: str) -> Contrast:
        """group1 - group2"""
        weights = dict(self._level_weights(group1))
        for k, v in self._level_weights(group2).items():
            weights[k] = weights.get(k, 0.0) - v
        weights = {k: v for k, v in weights.items() if v != 0}
        if not weights:
            raise ValueError(
                f"Levels '{group1}' and '{group2}' of '{self.factor}' are not separated by any coefficient "
                f"in {self.column_names}."
            )
        return Contrast(name=f"{group1}_vs_{group2}", weights=weights)

    def make_all_pairwise_contrasts(self) -> List[Contrast]:
        """
        Generate all pairwise contrasts between levels (not just vs baseline).
        Each contrast is later level minus earlier level, e.g. 'B_vs_A' = B - A.
        """
        ordered = [self.baseline] + [lv for lv in self.levels if lv != self.baseline]
        return [self.contrast(g2, g1) for g1, g2 in itertools.combinations(ordered, 2)]
