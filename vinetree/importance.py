"""Importance sampling of trees and helpers shared by the resampling schemes."""

from __future__ import annotations

import logging
import math
from bisect import bisect_right
from typing import Callable, Sequence, TextIO, TypeVar

import numpy as np
from scipy.stats import chi2

T = TypeVar("T")

logger = logging.getLogger(__name__)


def importance_sample(nsamples: int, trees: Sequence[T], log_densities,
                      log_likelihood: Callable[[T], float],
                      rng: np.random.Generator | None = None,
                      log: TextIO | None = None) -> list[T]:
    """Draw ``nsamples`` trees with weights likelihood / sampling density.

    Returned trees are the same objects as in ``trees`` and may repeat.
    """
    trees = list(trees)
    logdens = np.asarray(log_densities, dtype=float)
    if logdens.shape != (len(trees),):
        raise ValueError("log densities do not match the number of trees")
    if not trees:
        raise ValueError("no trees to sample from")

    lls = np.array([float(log_likelihood(t)) for t in trees])
    lls[~np.isfinite(lls)] = -np.inf
    logw = lls - logdens
    maxweight = np.max(logw)
    if not maxweight > -np.inf:
        raise ValueError("no tree has positive importance weight")

    weights = np.exp(logw - maxweight)
    weights /= weights.sum()
    count = int(np.sum(weights > 1.0 / (len(trees) * 10)))
    if count < nsamples:
        logger.warning("only %d trees eligible for importance sampling", count)

    rng = rng if rng is not None else np.random.default_rng()
    picks = rng.choice(len(trees), size=nsamples, p=weights)
    if log is not None:
        avelnl = float(lls[picks].sum()) / nsamples if nsamples else math.nan
        log.write(f"# Importance sampling from {count} eligible trees of {len(trees)}; "
                  f"avelnl: {avelnl:f}, maxlnl: {float(np.max(lls)):f}\n")
    return [trees[j] for j in picks]


def shell_bounds(nregions: int, dim: int) -> list[float]:
    """Boundaries on z^2 splitting a standard normal in ``dim`` dimensions
    into ``nregions`` shells of equal probability."""
    if nregions < 1 or dim < 1:
        raise ValueError("nregions and dim must be positive")
    inner = [float(chi2.ppf(r / nregions, dim)) for r in range(1, nregions)]
    return [0.0, *inner, math.inf]


def shell_index(bounds: Sequence[float], z2: float) -> int:
    """Shell r with bounds[r] <= z2 < bounds[r + 1]."""
    if len(bounds) < 2:
        raise ValueError("need at least two bounds")
    return min(max(bisect_right(bounds, z2) - 1, 0), len(bounds) - 2)


def systematic_resample(weights, nsamples: int, u: float) -> list[int]:
    """Systematic resampling of normalised ``weights`` with offset ``u`` in [0, 1)."""
    w = np.asarray(weights, dtype=float)
    if w.size == 0:
        raise ValueError("no weights")
    last = w.size - 1
    u0 = u / nsamples
    j = 0
    cum = w[0]
    out = []
    for k in range(nsamples):
        pos = u0 + k / nsamples
        while pos > cum and j < last:
            j += 1
            cum += w[j]
        out.append(j)
    return out