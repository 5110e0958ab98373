"""Error kinds raised by the workflow.

Structural problems (input schema, sample header parsing, model design,
contrast definition) abort the run. Per-protein statistical insufficiency is
never an error: it shows up as a missing model / NaN result instead.
"""
from enum import Enum


class ErrorKind(str, Enum):
    SCHEMA_MISMATCH = "SchemaMismatch"
    METADATA_DERIVATION_FAILURE = "MetadataDerivationFailure"
    UNIDENTIFIABLE_DESIGN = "UnidentifiableDesign"
    UNKNOWN_COEFFICIENT = "UnknownCoefficient"


class ProteodiffError(ValueError):
    kind: ErrorKind

    def __init__(self, message: str):
        super().__init__(f"[{self.kind.value}] {message}")


class SchemaMismatchError(ProteodiffError):
    kind = ErrorKind.SCHEMA_MISMATCH


class MetadataDerivationError(ProteodiffError):
    kind = ErrorKind.METADATA_DERIVATION_FAILURE


class UnidentifiableDesignError(ProteodiffError):
    kind = ErrorKind.UNIDENTIFIABLE_DESIGN


class UnknownCoefficientError(ProteodiffError):
    kind = ErrorKind.UNKNOWN_COEFFICIENT
