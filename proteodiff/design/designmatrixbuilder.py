import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
import patsy

from proteodiff.utils.errors import UnidentifiableDesignError
from proteodiff.utils.utils import log_info

RANDOM_TERM = re.compile(r"^\(\s*1\s*\|\s*([A-Za-z_][A-Za-z0-9_.]*)\s*\)$")
_PATSY_LEVEL = re.compile(r"^(?:C\(\s*([A-Za-z_][A-Za-z0-9_.]*)\s*(?:,.*)?\)|([A-Za-z_][A-Za-z0-9_.]*))\[(?:T\.)?(.*)\]$")

MODES = ("fixed", "mixed", "ridge")


def split_terms(formula: str) -> List[str]:
    """Split a formula right-hand side on top-level '+' (parentheses are kept intact)."""
    terms, depth, current = [], 0, []
    for ch in formula:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        if ch == "+" and depth == 0:
            terms.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
    terms.append("".join(current).strip())
    return [t for t in terms if t]


def r_style_name(patsy_name: str) -> str:
    """'Intercept' -> '(Intercept)', 'celltype[T.B]' -> 'celltypeB', interactions joined by ':'."""
    parts = []
    for part in patsy_name.split(":"):
        if part == "Intercept":
            parts.append("(Intercept)")
            continue
        m = _PATSY_LEVEL.match(part)
        if m:
            factor = m.group(1) or m.group(2)
            parts.append(f"{factor}{m.group(3)}")
        else:
            parts.append(part)
    return ":".join(parts)


@dataclass
class DesignMatrix:
    """Fixed-effect design plus the one-hot blocks of the random intercepts."""
    fixed: pd.DataFrame                      # samples x fixed coefficients, R-style names
    random: Dict[str, pd.DataFrame] = field(default_factory=dict)   # factor -> samples x levels
    fixed_formula: str = "1"
    formula: str = "1"

    @property
    def coefficient_names(self) -> List[str]:
        return list(self.fixed.columns)

    @property
    def random_factors(self) -> List[str]:
        return list(self.random)


class DesignMatrixBuilder:
    """Builds the per-sample design from a formula over the sample factors.

    `~ celltype + (1|mouse)`: fixed terms go to patsy; `(1|factor)` terms are
    random intercepts, kept as one dummy column per level.
    """
    def __init__(
        self,
        sample_metadata: pd.DataFrame,
        config: Optional[Dict[str, Any]] = None,
    ):
        self.meta = sample_metadata.copy()
        self.config = config or {}
        self.formula: str = str(self.config.get("formula", "1")).strip()
        self.mode: str = str(self.config.get("mode", "fixed")).lower()
        if self.mode not in MODES:
            raise ValueError(f"Unknown model mode: {self.mode} (use one of {', '.join(MODES)})")
        self.design: Optional[DesignMatrix] = None

    def _parse(self):
        rhs = self.formula
        if "~" in rhs:
            lhs, rhs = rhs.split("~", 1)
            if lhs.strip():
                raise ValueError(f"Formula must not have a response: '{self.formula}'")
        fixed_terms, random_factors = [], []
        for term in split_terms(rhs):
            m = RANDOM_TERM.match(term)
            if m:
                random_factors.append(m.group(1))
            elif "|" in term:
                raise ValueError(f"Only random intercepts '(1|factor)' are supported, got '{term}'")
            else:
                fixed_terms.append(term)
        return " + ".join(fixed_terms) or "1", random_factors

    def _random_block(self, factor: str) -> pd.DataFrame:
        if factor not in self.meta.columns:
            raise UnidentifiableDesignError(f"Random term factor '{factor}' is not a sample factor.")
        values = self.meta[factor].astype(str)
        levels = sorted(values.unique())
        return pd.DataFrame(
            {f"{factor}{lv}": (values == lv).astype(float) for lv in levels},
            index=self.meta.index,
        )

    def build(self) -> DesignMatrix:
        fixed_formula, random_factors = self._parse()

        try:
            design_df = patsy.dmatrix(fixed_formula, self.meta, return_type="dataframe")
        except patsy.PatsyError as exc:
            raise UnidentifiableDesignError(f"Cannot build design from '{self.formula}': {exc}") from exc

        names = [r_style_name(c) for c in design_df.columns]
        design_df.columns = names
        design_df.index = self.meta.index

        self.design = DesignMatrix(
            fixed=design_df,
            random={f: self._random_block(f) for f in random_factors},
            fixed_formula=fixed_formula,
            formula=self.formula,
        )
        self._check_identifiable()
        log_info(f"Design '{self.formula}' ({self.mode}): {len(names)} fixed coefficient(s) {names}"
                 + (f", random intercept(s) {random_factors}" if random_factors else ""))
        return self.design

    def _check_identifiable(self):
        """Global checks, done once before any protein is fitted."""
        X = self.design.fixed.to_numpy(dtype=float)
        n, p = X.shape
        rank = np.linalg.matrix_rank(X) if n else 0
        random_factors = self.design.random_factors

        if self.mode == "fixed":
            if random_factors:
                raise UnidentifiableDesignError(
                    f"Random term(s) {random_factors} cannot be estimated as fixed effects; "
                    "use mode 'mixed' or 'ridge'."
                )
            if rank < p:
                raise UnidentifiableDesignError(
                    f"Design '{self.formula}' is rank deficient (rank {rank} < {p} coefficients)."
                )
            if n <= p:
                raise UnidentifiableDesignError(
                    f"Design '{self.formula}' is saturated ({n} samples for {p} coefficients); "
                    "no residual degrees of freedom."
                )
        elif self.mode == "mixed":
            if len(random_factors) != 1:
                raise UnidentifiableDesignError(
                    f"Mixed mode needs exactly one random intercept '(1|factor)', got {random_factors}."
                )
            if rank < p:
                raise UnidentifiableDesignError(
                    f"Fixed part '{self.design.fixed_formula}' is rank deficient (rank {rank} < {p})."
                )
