"""Norms used for the Picard convergence check."""

from __future__ import annotations

from typing import Optional

import numpy as np

from .errors import ConfigurationError


# -----------------------------------------------------------------------------
# Norms of the difference between successive iterates
# -----------------------------------------------------------------------------


def l1_norm(diff: np.ndarray) -> float:
    """Mean absolute difference."""
    return float(np.mean(np.abs(diff)))


def l2_norm(diff: np.ndarray) -> float:
    """Root-mean-square difference."""
    return float(np.sqrt(np.mean(diff**2)))


def linf_norm(diff: np.ndarray) -> float:
    """Maximum absolute difference."""
    return float(np.max(np.abs(diff)))


NORM_FUNCTIONS = {
    "l1": l1_norm,
    "l2": l2_norm,
    "linf": linf_norm,
}


def iterate_norm(
    current: np.ndarray,
    previous: np.ndarray,
    norm: str = "linf",
    mask: Optional[np.ndarray] = None,
) -> float:
    """Norm of ``current - previous`` over the masked entries.

    Parameters
    ----------
    current, previous : np.ndarray
        Successive iterates on the same discretization.
    norm : str
        One of ``"l1"``, ``"l2"``, ``"linf"``.
    mask : np.ndarray, optional
        Entries to include, e.g. cells with nonzero mapped volume.

    Returns
    -------
    float
        The norm, or 0.0 when no entry is selected.
    """
    try:
        fn = NORM_FUNCTIONS[norm.lower()]
    except KeyError:
        raise ConfigurationError(f"Unknown norm '{norm}'") from None

    diff = np.asarray(current, dtype=np.float64) - np.asarray(previous, dtype=np.float64)
    if mask is not None:
        diff = diff[np.asarray(mask, dtype=bool)]
    if diff.size == 0:
        return 0.0
    return fn(diff)
