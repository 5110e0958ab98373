import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Union

import numpy as np

from proteodiff.utils.errors import UnknownCoefficientError

_TERM = re.compile(r"^(?:(?P<weight>\d+(?:\.\d*)?(?:[eE][+-]?\d+)?|\.\d+)\s*\*\s*)?(?P<name>\S.*?)$")


def _parse_terms(expression: str) -> Dict[str, float]:
    """'0.5*a + 0.5*b - c' -> {'a': 0.5, 'b': 0.5, 'c': -1.0}.

    Terms are separated by '+' or '-' surrounded by spaces, so coefficient
    names may themselves contain '-' (e.g. 'conditionKO-1').
    """
    text = expression.strip()
    sign = 1.0
    if text[:1] and text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:].strip()

    pieces = re.split(r"\s+([+-])\s+", text)
    weights: Dict[str, float] = {}
    signs = [sign] + [-1.0 if op == "-" else 1.0 for op in pieces[1::2]]
    for s, term in zip(signs, pieces[0::2]):
        m = _TERM.match(term.strip())
        if m is None or not term.strip():
            raise ValueError(f"Cannot parse contrast term '{term}' in '{expression}'")
        weight = float(m.group("weight")) if m.group("weight") else 1.0
        name = m.group("name").strip()
        weights[name] = weights.get(name, 0.0) + s * weight
    return weights


@dataclass(frozen=True)
class Contrast:
    """A linear hypothesis sum(weight * coefficient) = 0, keyed by coefficient name."""
    name: str
    weights: Mapping[str, float]

    @classmethod
    def parse(cls, spec: Union[str, Mapping[str, float], "Contrast"], name: Optional[str] = None) -> "Contrast":
        """Build from 'celltypeB - celltypeA = 0', '0.5*a + 0.5*b - c' or {'celltypeB': 1, 'celltypeA': -1}."""
        if isinstance(spec, Contrast):
            return spec if name is None else cls(name=name, weights=dict(spec.weights))
        if isinstance(spec, Mapping):
            weights = {str(k): float(v) for k, v in spec.items()}
            if not weights:
                raise ValueError("Empty contrast.")
            label = name or " + ".join(f"{v:g}*{k}" for k, v in weights.items())
            return cls(name=label, weights=weights)

        text = str(spec).strip()
        lhs, _, rhs = text.partition("=")
        if rhs.strip():
            try:
                rhs_value = float(rhs)
            except ValueError:
                raise ValueError(f"Contrast right-hand side must be a number: '{text}'") from None
            if rhs_value != 0:
                raise ValueError(f"Only contrasts tested against 0 are supported: '{text}'")
        if not lhs.strip():
            raise ValueError(f"Empty contrast: '{text}'")
        return cls(name=name or lhs.strip(), weights=_parse_terms(lhs))

    def validate(self, coefficient_names: Iterable[str]) -> None:
        known = set(coefficient_names)
        unknown = [k for k in self.weights if k not in known]
        if unknown:
            hint = ""
            if any(re.search(r"\S[+\-*]\S", k) for k in unknown):
                hint = " Separate terms with spaced operators, e.g. 'groupB - groupA = 0'."
            raise UnknownCoefficientError(
                f"Contrast '{self.name}' uses unknown coefficient(s) {unknown}; "
                f"fitted coefficients are {sorted(known)}.{hint}"
            )

    def vector(self, coefficient_names: List[str]) -> np.ndarray:
        """Weights aligned on `coefficient_names` (validated first)."""
        self.validate(coefficient_names)
        return np.array([self.weights.get(c, 0.0) for c in coefficient_names], dtype=float)


def parse_contrasts(specs) -> List[Contrast]:
    """Config entry (string, list of strings/dicts, or {name: expression}) -> contrasts."""
    if specs is None:
        return []
    if isinstance(specs, (str, Contrast)):
        return [Contrast.parse(specs)]
    if isinstance(specs, Mapping):
        if all(isinstance(v, (int, float)) for v in specs.values()):
            return [Contrast.parse(specs)]
        return [Contrast.parse(v, name=str(k)) for k, v in specs.items()]
    return [Contrast.parse(s) for s in specs]
