"""Building blocks of stochastic variational inference over node embeddings.

These cover the Adam update, antithetic sampling of embeddings, the
Gaussian KL divergence and its low-rank gradient, normalizing flows,
gradient clipping and the ELBO-based stopping rule.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Protocol, Sequence

import numpy as np

ADAM_BETA1 = 0.9
ADAM_BETA2 = 0.9
ADAM_EPS = 1e-8

# starting number of alignment columns to subsample in early stages
NSUBSAMPLES = 256


class Flow(Protocol):
    """A normalizing flow: maps points and reports log|det J| of the map."""

    def forward(self, points: np.ndarray) -> tuple[np.ndarray, float]:
        ...


@dataclass
class AdamOptimizer:
    """Adam moment estimates for a parameter vector of fixed size."""

    size: int
    beta1: float = ADAM_BETA1
    beta2: float = ADAM_BETA2
    eps: float = ADAM_EPS
    t: int = 0
    m: np.ndarray = field(init=False)
    v: np.ndarray = field(init=False)

    def __post_init__(self) -> None:
        if self.size < 0:
            raise ValueError("size must be non-negative")
        self.m = np.zeros(self.size)
        self.v = np.zeros(self.size)

    def step(self, grad, lr: float) -> np.ndarray:
        """Fold in one gradient and return the increment for gradient ascent."""
        g = np.asarray(grad, dtype=float)
        if g.shape != (self.size,):
            raise ValueError(f"gradient must have shape ({self.size},)")
        self.t += 1
        self.m = self.beta1 * self.m + (1.0 - self.beta1) * g
        self.v = self.beta2 * self.v + (1.0 - self.beta2) * g * g
        mhat = self.m / (1.0 - self.beta1 ** self.t)
        vhat = self.v / (1.0 - self.beta2 ** self.t)
        return lr * mhat / (np.sqrt(vhat) + self.eps)


class AntitheticSampler:
    """Draws points as ``mean + scale @ z`` in antithetic pairs.

    Every second call returns the mirror image of the previous draw
    (computed at the time of that draw) together with the negated
    standard normal variate.
    """

    def __init__(self, mean, scale=None, rng: np.random.Generator | None = None) -> None:
        self.mean = np.asarray(mean, dtype=float).copy()
        if scale is None:
            scale = np.eye(self.mean.size)
        self.scale = np.asarray(scale, dtype=float)
        if self.scale.ndim != 2 or self.scale.shape[0] != self.mean.size:
            raise ValueError("scale must have one row per coordinate of the mean")
        self.rng = rng if rng is not None else np.random.default_rng()
        self._count = 0
        self._cached_points: np.ndarray | None = None
        self._cached_std: np.ndarray | None = None

    def reset(self) -> None:
        """Force the next call to draw a fresh pair."""
        self._count = 0
        self._cached_points = self._cached_std = None

    def sample(self) -> tuple[np.ndarray, np.ndarray]:
        """Return ``(points, std)`` where ``std`` is the underlying N(0, I) variate."""
        if self._count % 2 == 0 or self._cached_points is None:
            z = self.rng.standard_normal(self.scale.shape[1])
            offset = self.scale @ z
            points = self.mean + offset
            self._cached_points = self.mean - offset
            self._cached_std = z.copy()
            self._count = 1
            return points, z
        self._count += 1
        return self._cached_points.copy(), -self._cached_std


@dataclass
class ConvergenceMonitor:
    """Tracks the best ELBO and decides when optimisation has stalled.

    Every ``window`` steps the summed ELBO of the window is compared with
    that of the previous window; optimisation stops once at least
    ``min_steps`` steps have run and the total has failed to rise by
    about 0.1%.  Only steps with full gradients count towards the best
    ELBO and the stopping decision.
    """

    window: int = 50
    min_steps: int = 200
    t: int = 0
    best_elbo: float = -math.inf
    best_step: int = -1
    improved: bool = False
    window_averages: list[float] = field(default_factory=list)
    _running: float = 0.0
    _last_running: float = -math.inf

    def __post_init__(self) -> None:
        if self.window <= 0:
            raise ValueError("window must be positive")

    def update(self, elbo: float, full_gradient: bool) -> bool:
        """Record one step's ELBO; return True when optimisation should stop."""
        self.improved = False
        if elbo > self.best_elbo and full_gradient:
            self.best_elbo = elbo
            self.best_step = self.t
            self.improved = True
        self.t += 1
        self._running += elbo
        stop = False
        if self.t % self.window == 0:
            self.window_averages.append(self._running / self.window)
            if (full_gradient and self.t >= self.min_steps
                    and 1.001 * self._running <= self._last_running * 0.999):
                stop = True
            self._last_running = self._running
            self._running = 0.0
        return stop


def kld_gaussian(trace: float, mu2: float, dim: int, logdet: float) -> float:
    """KL divergence of N(mu, Sigma) from N(0, I) given tr(Sigma), |mu|^2 and log|Sigma|."""
    return 0.5 * (trace + mu2 - dim - logdet)


def kld_grad_lowrank(r, inv_rtr, d: int) -> np.ndarray:
    """Gradient of the negative KLD with respect to a low-rank factor R, flattened by row."""
    r = np.asarray(r, dtype=float)
    inv_rtr = np.asarray(inv_rtr, dtype=float)
    if r.ndim != 2 or inv_rtr.shape != (r.shape[1], r.shape[1]):
        raise ValueError("inv_rtr must be square with as many rows as R has columns")
    return ((r @ inv_rtr - r) * d).ravel()


def apply_flows(points, flows: Sequence[Flow]) -> tuple[np.ndarray, float]:
    """Push points through the flows in order; return the result and total log|det J|."""
    y = np.asarray(points, dtype=float).copy()
    logdet = 0.0
    for flow in flows:
        y, ld = flow.forward(y)
        y = np.asarray(y, dtype=float)
        logdet += float(ld)
    return y, logdet


def clip_gradient(grad, max_norm: float) -> tuple[np.ndarray, float, bool]:
    """Scale ``grad`` down to L2 norm ``max_norm`` if larger (0 disables).

    Returns the possibly clipped gradient, the original norm and whether
    clipping happened.
    """
    g = np.asarray(grad, dtype=float)
    norm = float(np.linalg.norm(g))
    if max_norm > 0 and norm > max_norm:
        return g * (max_norm / norm), norm, True
    return g.copy(), norm, False