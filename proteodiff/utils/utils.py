import logging
import sys
import time
from contextlib import contextmanager
from functools import wraps
from typing import List, Optional, Tuple

import numpy as np
import polars as pl

logger = logging.getLogger("proteodiff")

if not logger.handlers:
    _handler = logging.StreamHandler(sys.stdout)
    _handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", "%H:%M:%S"))
    logger.addHandler(_handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False

_indent_level = 0


def _prefix() -> str:
    return "  " * _indent_level


def log_info(msg: str) -> None:
    logger.info(f"{_prefix()}{msg}")


def log_warning(msg: str) -> None:
    logger.warning(f"{_prefix()}{msg}")


@contextmanager
def log_indent():
    """Indent every log line emitted inside the block by one level."""
    global _indent_level
    _indent_level += 1
    try:
        yield
    finally:
        _indent_level -= 1


def log_time(step: str):
    """Decorator: log start and elapsed time of a pipeline step."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            log_info(f"{step}...")
            start = time.perf_counter()
            with log_indent():
                result = func(*args, **kwargs)
            log_info(f"{step} done in {time.perf_counter() - start:.2f}s")
            return result
        return wrapper
    return decorator


def polars_matrix_to_numpy(df: Optional[pl.DataFrame], index_col: str = "INDEX") -> Tuple[Optional[np.ndarray], Optional[List[str]]]:
    """Split a wide polars table into (float matrix, row keys). Nulls become NaN."""
    if df is None:
        return None, None
    index = [str(x) for x in df.get_column(index_col).to_list()]
    value_cols = [c for c in df.columns if c != index_col]
    mat = (
        df.select([pl.col(c).cast(pl.Float64) for c in value_cols])
          .fill_null(np.nan)
          .to_numpy()
    )
    return np.asarray(mat, dtype=float), index


def numpy_to_polars_columns(df: pl.DataFrame, columns: List[str], mat: np.ndarray) -> pl.DataFrame:
    """Write a (rows x columns) float matrix back into `df`. NaN becomes null."""
    mat = np.asarray(mat, dtype=float)
    return df.with_columns([
        pl.Series(col, mat[:, j], dtype=pl.Float64).fill_nan(None)
        for j, col in enumerate(columns)
    ])
