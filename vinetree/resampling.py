"""Rejection and importance resampling of trees drawn from the variational
distribution, stratified into shells by distance from the mean."""

from __future__ import annotations

import logging
import math
import statistics
from dataclasses import dataclass
from typing import Any, Callable, TextIO

import numpy as np

from .importance import shell_bounds, shell_index, systematic_resample

logger = logging.getLogger(__name__)

NREGIONS = 12

# tuning of the rejection-sampling envelopes
_Q_CENTER = 0.990
_Q_TAIL = 0.9990
_M_CENTER = 0.35
_M_TAIL = 0.60
_DELTA_MIN = 0.25
_TAIL_FRAC = 0.20
_TAIL_NMIN = 20
_GAP_GAIN = 1.05
_BUMP_GAIN = 1.60
_COOLDOWN_TRIGGER = 200
_COOLDOWN_STEP = 1
_MIN_ACCEPTANCE = 0.001


@dataclass
class Proposal:
    """One draw from the variational distribution.

    ``log_density`` is the sampling log density of the draw (including
    any flow Jacobian) and ``z2`` the squared norm of the underlying
    standard normal variate.
    """

    tree: Any
    log_likelihood: float
    log_density: float
    z2: float

    @property
    def log_ratio(self) -> float:
        return self.log_likelihood - self.log_density


class RejectionSamplingError(RuntimeError):
    """Raised when the acceptance rate is too low to go on."""


@dataclass
class _Accepted:
    tree: Any
    region: int
    logu: float
    logr: float
    log_likelihood: float


def _draw(propose: Callable[[], Proposal]) -> Proposal:
    """Draw until both the likelihood and the density are finite."""
    while True:
        p = propose()
        if math.isfinite(p.log_likelihood) and math.isfinite(p.log_density):
            return p


def _log_uniform(rng: np.random.Generator) -> float:
    u = rng.random()
    return math.log(u) if u > 0 else -math.inf


def _check_nsamples(nsamples: int) -> None:
    if nsamples <= 0:
        raise ValueError("nsamples must be positive")


def _envelopes(pilot: list[Proposal], regions: list[int]) -> tuple[list[float], list[float]]:
    log_m = [-math.inf] * NREGIONS
    sigma_tail = [0.0] * NREGIONS
    for r in range(NREGIONS):
        vals = sorted(p.log_ratio for p, reg in zip(pilot, regions) if reg == r)
        if not vals:
            continue
        m = len(vals)
        t = r / (NREGIONS - 1)
        q_r = min(_Q_CENTER + t * (_Q_TAIL - _Q_CENTER), 0.9999)
        margin = _M_CENTER + t * (_M_TAIL - _M_CENTER)
        log_m[r] = vals[int(math.floor(q_r * (m - 1)))] + margin
        tail_n = min(max(int(_TAIL_FRAC * m), _TAIL_NMIN), m)
        tail = vals[m - tail_n:]
        sigma_tail[r] = statistics.stdev(tail) if tail_n > 1 else 0.0
    # enforce nondecreasing envelopes and spreads from inner to outer shells
    for r in range(1, NREGIONS):
        log_m[r] = max(log_m[r], log_m[r - 1])
        sigma_tail[r] = max(sigma_tail[r], sigma_tail[r - 1])
    return log_m, sigma_tail


def rejection_sample(nsamples: int, propose: Callable[[], Proposal], dim: int,
                     rng: np.random.Generator | None = None,
                     log: TextIO | None = None) -> list:
    """Sharpen the variational distribution by rejection sampling.

    Envelopes are set per shell from a pilot sample and raised whenever a
    later proposal exceeds one, in which case the accepted samples of
    that shell are checked again against the new envelope.
    """
    _check_nsamples(nsamples)
    rng = rng if rng is not None else np.random.default_rng()
    nprop = max(nsamples * 10, 2000)
    bounds = shell_bounds(NREGIONS, dim)

    pilot = [_draw(propose) for _ in range(nprop)]
    regions = [shell_index(bounds, p.z2) for p in pilot]
    regnum = [0] * NREGIONS
    for r in regions:
        regnum[r] += 1
    log_m, sigma_tail = _envelopes(pilot, regions)

    accepted: list[_Accepted] = []
    examined = 0
    for p, r in zip(pilot, regions):
        if len(accepted) >= nsamples:
            break
        examined += 1
        logu = _log_uniform(rng)
        if logu <= p.log_ratio - log_m[r]:
            accepted.append(_Accepted(p.tree, r, logu, p.log_ratio, p.log_likelihood))

    accpt = [0] * NREGIONS
    for a in accepted:
        accpt[a.region] += 1
    rate = len(accepted) / examined
    logger.info("region-specific acceptance rates (overall %f): %s", rate,
                " ".join(f"{r} ({accpt[r] / regnum[r] if regnum[r] else 0.0:f})"
                         for r in range(NREGIONS)))
    if rate < _MIN_ACCEPTANCE:
        raise RejectionSamplingError(f"acceptance rate {rate:f} too low")

    viol_count = [0] * NREGIONS
    since_viol = [0] * NREGIONS

    def cooldown() -> None:
        for rr in range(NREGIONS):
            if since_viol[rr] >= _COOLDOWN_TRIGGER and viol_count[rr] > 0:
                viol_count[rr] = max(viol_count[rr] - _COOLDOWN_STEP, 0)
                since_viol[rr] = 0

    while len(accepted) < nsamples:
        examined += 1
        p = _draw(propose)
        r = shell_index(bounds, p.z2)
        for rr in range(NREGIONS):
            if rr != r:
                since_viol[rr] += 1
        since_viol[r] = 0

        logr = p.log_ratio
        if logr > log_m[r]:
            gap = logr - log_m[r]
            base_bump = max(_DELTA_MIN, 2.0 * sigma_tail[r], _GAP_GAIN * gap)
            bump = base_bump * _BUMP_GAIN ** viol_count[r]
            viol_count[r] += 1
            logger.info("region %d exceeded by %.6f (%.6f - %.6f): bump=%.3f "
                        "(sigma=%.3f, nviol=%d); revalidating region",
                        r, gap, logr, log_m[r], bump, sigma_tail[r], viol_count[r])
            log_m[r] = logr + bump
            accepted = [a for a in accepted
                        if a.region != r or a.logu <= a.logr - log_m[r]]
            cooldown()
            continue

        logu = _log_uniform(rng)
        if logu <= logr - log_m[r]:
            accepted.append(_Accepted(p.tree, r, logu, logr, p.log_likelihood))
        cooldown()

    if log is not None:
        avelnl = sum(a.log_likelihood for a in accepted)
        log.write(f"# Rejection sampling from {examined} trees (acceptance rate "
                  f"{nsamples / examined:.3f}); avelnl: {avelnl / nsamples:f}\n")
    return [a.tree for a in accepted]


def importance_resample(nsamples: int, propose: Callable[[], Proposal], dim: int,
                        rng: np.random.Generator | None = None,
                        log: TextIO | None = None) -> list:
    """Shell-aware importance sampling with systematic resampling to
    exactly ``nsamples`` trees."""
    _check_nsamples(nsamples)
    rng = rng if rng is not None else np.random.default_rng()
    nprop = max(nsamples * 20, 20000)
    bounds = shell_bounds(NREGIONS, dim)

    props = [_draw(propose) for _ in range(nprop)]
    logw = np.array([p.log_ratio for p in props])
    lls = np.array([p.log_likelihood for p in props])
    shells = np.array([shell_index(bounds, p.z2) for p in props])

    max_logw = float(np.max(logw))
    w = np.exp(logw - max_logw)
    sumw = float(w.sum())
    if sumw == 0.0 or not math.isfinite(sumw):
        # underflow: keep the proposals with the largest log-weights
        order = sorted(range(nprop), key=lambda i: -logw[i])
        return [props[i].tree for i in order[:nsamples]]
    w /= sumw

    ess_denom = float(np.sum(w * w))
    ess = 1.0 / ess_denom if ess_denom > 0.0 else 0.0
    masses = np.bincount(shells, weights=w, minlength=NREGIONS)
    logger.info("IS: shell weight masses: %s | ESS=%.1f / %d",
                " ".join(f"{r}({m:.3f})" for r, m in enumerate(masses)), ess, nsamples)

    picks = systematic_resample(w, nsamples, rng.random())
    if log is not None:
        avelnl = float(np.sum(lls[picks])) / nsamples
        log.write(f"# IS from {nprop} trees; ESS\u2248{ess:.1f}; avelnl: {avelnl:f}\n")
    return [props[j].tree for j in picks]