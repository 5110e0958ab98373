from typing import Tuple

import numpy as np
from scipy.special import digamma, polygamma


def squeeze_var_input_filter(s2: np.ndarray, df) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Returns (s2, df, mask) restricted to finite, positive variances and degrees of freedom."""
    s2 = np.asarray(s2, dtype=float)
    # If df is scalar, broadcast it to shape of s2
    if np.isscalar(df) or np.ndim(df) == 0:
        df = np.full_like(s2, df)
    df = np.asarray(df, dtype=float)

    mask = np.isfinite(s2) & (s2 > 0) & np.isfinite(df) & (df > 0)
    return s2[mask], df[mask], mask


def trigamma_inverse(y, tol=1e-8):
    """Solve trigamma(x) = y for x > 0 (Newton iteration as in limma)."""
    # Initial guess
    if y > 1e7:
        return 1.0 / np.sqrt(y)
    if y < 1e-6:
        return 1.0 / y
    x = 0.5 + 1.0 / y

    for _ in range(50):
        tri = polygamma(1, x)
        delta = tri * (1 - tri / y) / polygamma(2, x)
        x = x + delta
        if -delta / x < tol:
            break
    return x


def fit_fdist(s2: np.ndarray, df1: np.ndarray) -> Tuple[float, float]:
    """
    Moment estimation of the scaled F prior of the variances (limma `fitFDist`).

    Returns (s20, d0): prior variance and prior degrees of freedom. d0 is inf
    when the variances are no more dispersed than sampling noise explains.
    """
    x, d, _ = squeeze_var_input_filter(s2, df1)
    if x.size < 2:
        return np.nan, np.nan

    # Avoid zeros like limma does
    x = np.maximum(x, 1e-5 * np.median(x))
    z = np.log(x)

    e = z - digamma(d / 2.0) + np.log(d / 2.0)
    emean = np.mean(e)
    evar = np.var(e, ddof=1)

    evar_adj = evar - np.mean(polygamma(1, d / 2.0))

    if evar_adj > 0:
        df2 = 2 * trigamma_inverse(evar_adj)
        s20 = np.exp(emean + digamma(df2 / 2.0) - np.log(df2 / 2.0))
    else:
        df2 = np.inf
        s20 = np.exp(emean)

    return float(s20), float(df2)


def squeeze_var(s2: np.ndarray, df: np.ndarray) -> Tuple[np.ndarray, float, float]:
    """
    Empirical-Bayes posterior variances (limma `squeezeVar`).

    Returns (s2_post, d0, s20). Invalid entries of `s2` stay NaN. With fewer
    than two usable variances no prior can be estimated: d0 = 0 and s2 is returned.
    """
    s2 = np.asarray(s2, dtype=float)
    df = np.broadcast_to(np.asarray(df, dtype=float), s2.shape)
    s20, d0 = fit_fdist(s2, df)

    out = np.where(np.isfinite(s2), s2, np.nan)
    if not np.isfinite(s20):
        return out, 0.0, np.nan
    if np.isinf(d0):
        return np.where(np.isfinite(s2), s20, np.nan), d0, s20

    post = (d0 * s20 + df * s2) / (d0 + df)
    return np.where(np.isfinite(s2), post, np.nan), d0, s20
