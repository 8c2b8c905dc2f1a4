"""Priors over trees and branch lengths: Yule or gamma tree-length priors,
optionally combined with a relaxed local clock on branch rates."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from .tree import TreeNode

# floors that keep branch lengths and internode times away from zero
BL_EPS = 1.0e-6
TAU_EPS = 1.0e-6

GAMMA_SHAPE = 2.0
SIG_INIT = 0.5
SIG_FLOOR = 0.4
LSIG_MEAN = math.log(0.7)
LSIG_SD = 0.1
SIG_EXP_MEAN = 2.0
HUBER_KAPPA = 0.5


class TreePriorType(Enum):
    YULE = "YULE"
    GAMMA = "GAMMA"
    NONE = "NONE"


def softplus(x: float) -> float:
    """log(1 + exp(x)), evaluated stably."""
    if x > 0:
        return x + math.log1p(math.exp(-x))
    return math.log1p(math.exp(x))


def inv_softplus(y: float) -> float:
    """Inverse of :func:`softplus` for y > 0."""
    if y <= 0:
        raise ValueError("inv_softplus requires a positive argument")
    if y > 30:
        return y + math.log(-math.expm1(-y))
    return math.log(math.expm1(y))


def sigmoid(x: float) -> float:
    if x >= 0:
        return 1.0 / (1.0 + math.exp(-x))
    e = math.exp(x)
    return e / (1.0 + e)


def _clamp_exp_arg(x: float) -> float:
    return min(max(x, -60.0), 60.0)


def ssp(x: float, beta: float) -> float:
    """Scaled softplus (1/beta) * log(1 + exp(beta * x))."""
    z = _clamp_exp_arg(beta * x)
    if z > 0.0:
        return (z + math.log1p(math.exp(-z))) / beta
    return math.log1p(math.exp(z)) / beta


def ssp_prime(x: float, beta: float) -> float:
    """Derivative of :func:`ssp` with respect to x."""
    return sigmoid(beta * x)


def ssp_inv(y: float, beta: float) -> float:
    """Inverse of :func:`ssp` for y >= 0, stable for small y."""
    by = beta * (y if y > 0.0 else 0.0)
    if by < 1e-8:
        return math.log(max(by, 1e-300)) / beta
    return math.log(max(math.expm1(by), 1e-300)) / beta


def huber_rho(z: float, kappa: float) -> float:
    """Huber loss: quadratic within kappa of zero, linear beyond."""
    a = abs(z)
    if a <= kappa:
        return 0.5 * z * z
    return kappa * (a - 0.5 * kappa)


def huber_psi(z: float, kappa: float) -> float:
    """Derivative of :func:`huber_rho` with respect to z."""
    if z >= kappa:
        return kappa
    if z <= -kappa:
        return -kappa
    return z


def tree_length(tree: TreeNode) -> float:
    """Total branch length, with the same per-branch floor as the prior."""
    return sum(BL_EPS + node.dparent for node in tree.preorder() if node.parent is not None)


def leaf_bitsets(tree: TreeNode) -> list[int]:
    """Per-node bitmasks of descendant leaves, indexed by node id.

    A leaf sets the bit of its own id; an internal node ORs its children.
    A mask with more than half of the leaves set is complemented over
    all node ids, so each split has one canonical key.
    """
    nn = tree.nnodes
    if sorted(node.id for node in tree.preorder()) != list(range(nn)):
        raise ValueError("node ids must be 0..nnodes-1")
    half = ((nn + 1) // 2) >> 1
    full = (1 << nn) - 1
    masks = [0] * nn
    for node in tree.postorder():
        if node.is_leaf():
            mask = 1 << node.id
        else:
            mask = masks[node.lchild.id] | masks[node.rchild.id]
        if mask.bit_count() > half:
            mask ^= full
        masks[node.id] = mask
    return masks


@dataclass
class TreePrior:
    """Prior over trees and branch lengths, optionally with a relaxed clock.

    ``relclock_sig`` is a raw value; the clock's standard deviation is
    ``SIG_FLOOR + softplus(relclock_sig)``.  ``nodetimes`` are raw values
    passed through a scaled softplus to obtain internode times.  With
    ``relclock_sig_exp_mean`` set, sigma gets an exponential prior;
    otherwise log sigma gets a normal prior.
    """

    type: TreePriorType = TreePriorType.NONE
    relclock: bool = False
    gamma_shape: float = GAMMA_SHAPE
    gamma_scale: float | None = None
    relclock_sig: float = field(default_factory=lambda: inv_softplus(SIG_INIT))
    relclock_sig_grad: float = 0.0
    relclock_lsig_mean: float = LSIG_MEAN
    relclock_lsig_sd: float = LSIG_SD
    relclock_sig_exp_mean: float | None = None
    nodetimes: np.ndarray | None = None
    nodetimes_grad: np.ndarray | None = None
    tau_beta: float | None = None
    bs2idx: dict[int, int] = field(default_factory=dict)

    def _index_for(self, key: int, used: list[bool]) -> int:
        idx = self.bs2idx.get(key)
        if idx is None:
            idx = next((j for j, taken in enumerate(used) if not taken), 0)
            self.bs2idx[key] = idx
        used[idx] = True
        return idx

    def log_prior(self, tree: TreeNode) -> tuple[float, np.ndarray]:
        """Log prior of the tree and its gradient by branch (indexed by node id).

        Also sets ``relclock_sig_grad`` and ``nodetimes_grad`` when the
        relaxed clock is on.
        """
        nn = tree.nnodes
        nbranches = nn - 1
        self.relclock_sig_grad = 0.0
        branchgrad = np.zeros(nn)

        if self.type is TreePriorType.GAMMA and self.gamma_scale is None:
            self.init_gamma_scale(tree)

        if not self.relclock:
            if self.type is TreePriorType.NONE:
                return 0.0, branchgrad
            return self.log_prior_noclock(tree)

        bitsets = leaf_bitsets(tree)
        if self.nodetimes is None:
            self.init_nodetimes(tree, bitsets)
        beta = self.tau_beta
        nodetimes = self.nodetimes
        grad_times = np.zeros(len(nodetimes))
        used = [False] * len(nodetimes)

        raw_sigma = self.relclock_sig
        sig = SIG_FLOOR + softplus(raw_sigma)
        sig2 = sig * sig
        mu = -0.5 * sig2
        lsig = math.log(sig)
        dsig_draw = sigmoid(raw_sigma)

        retval = nbranches * (-lsig - 0.5 * math.log(2 * math.pi))
        timesum = 0.0
        sig_grad = 0.0
        edges = []  # (child slot or -1, parent slot, delta, base)

        for node in tree.nodes:
            if node.parent is None:
                continue
            thistime = 0.0
            child_idx = -1
            if node.lchild is not None:
                child_idx = self._index_for(bitsets[node.id], used)
                thistime = nodetimes[child_idx]
            parent_idx = self._index_for(bitsets[node.parent.id], used)
            partime = nodetimes[parent_idx]

            bl = BL_EPS + node.dparent
            delta = partime - thistime
            tau = TAU_EPS + ssp(delta, beta)
            timesum += tau

            z = math.log(bl / tau) - mu
            rho = huber_rho(z, HUBER_KAPPA)
            psi = huber_psi(z, HUBER_KAPPA)

            retval += -math.log(bl) - rho / sig2
            branchgrad[node.id] = -1.0 / bl - psi / (sig2 * bl)
            sig_grad += -1.0 / sig - psi / sig + (2.0 * rho) / (sig * sig2)
            edges.append((child_idx, parent_idx, delta, psi / (sig2 * tau)))

        if self.type is TreePriorType.YULE:
            retval += -nbranches * math.log(timesum)
            g_total = -nbranches / timesum
        elif self.type is TreePriorType.GAMMA:
            k, theta = self.gamma_shape, self.gamma_scale
            retval += ((k - 1.0) * math.log(timesum) - timesum / theta
                       - k * math.log(theta) - math.lgamma(k))
            g_total = (k - 1.0) / timesum - 1.0 / theta
        else:
            g_total = 0.0

        if self.relclock_sig_exp_mean is None:
            lsigdif = lsig - self.relclock_lsig_mean
            lsigvar = self.relclock_lsig_sd ** 2
            retval += -0.5 * lsigdif * lsigdif / lsigvar
            sig_grad += -lsigdif / lsigvar / sig
        else:
            mean = self.relclock_sig_exp_mean
            retval += -math.log(mean) - sig / mean
            sig_grad += -1.0 / mean

        if not math.isfinite(retval):
            raise ValueError("log prior is not finite")

        if sig < SIG_FLOOR and sig_grad < 0.0:
            sig_grad = 0.0
        self.relclock_sig_grad = sig_grad * dsig_draw

        for child_idx, parent_idx, delta, base in edges:
            tau_d = (base + g_total) * ssp_prime(delta, beta)
            grad_times[parent_idx] += tau_d
            if child_idx >= 0:
                grad_times[child_idx] -= tau_d

        # gauge projection: remove the common shift of all node times
        self.nodetimes_grad = grad_times - grad_times.mean()
        return retval, branchgrad

    def log_prior_noclock(self, tree: TreeNode) -> tuple[float, np.ndarray]:
        """Tree-length prior used when the relaxed clock is off."""
        nn = tree.nnodes
        nbranches = nn - 1
        total = max(tree_length(tree), 1e-12)
        lp = 0.0
        dlogp = 0.0
        if self.type is TreePriorType.YULE:
            lp = -nbranches * math.log(total)
            dlogp = -nbranches / total
        elif self.type is TreePriorType.GAMMA:
            if self.gamma_scale is None:
                self.init_gamma_scale(tree)
            k, theta = self.gamma_shape, self.gamma_scale
            lp = ((k - 1.0) * math.log(total) - total / theta
                  - k * math.log(theta) - math.lgamma(k))
            dlogp = (k - 1.0) / total - 1.0 / theta
        return lp, np.full(nn, dlogp)

    def init_nodetimes(self, tree: TreeNode, bitsets: list[int]) -> None:
        """Set raw node times so that each branch length roughly equals its
        internode time; also sets ``tau_beta`` from the mean branch length."""
        nn = tree.nnodes
        ninternal = (nn + 1) // 2 - 1
        self.nodetimes = np.zeros(ninternal)
        self.nodetimes_grad = np.zeros(ninternal)

        avebl = tree_length(tree) / (nn - 1.0)
        alpha = 0.1
        self.tau_beta = 1.0 / (alpha * max(avebl, 1e-12))
        beta = self.tau_beta

        used = [False] * ninternal
        t_raw = [0.0] * nn
        post = list(tree.postorder())
        for node in post:
            if node.is_leaf():
                continue
            left, right = node.lchild, node.rchild
            y_left = max(BL_EPS + left.dparent - TAU_EPS, 1e-12)
            y_right = max(BL_EPS + right.dparent - TAU_EPS, 1e-12)
            p_left = t_raw[left.id] + ssp_inv(y_left, beta)
            p_right = t_raw[right.id] + ssp_inv(y_right, beta)
            raw = max(p_left, p_right, t_raw[left.id] + TAU_EPS, t_raw[right.id] + TAU_EPS)
            t_raw[node.id] = raw

        for node in post:
            if node.is_leaf():
                continue
            idx = self._index_for(bitsets[node.id], used)
            self.nodetimes[idx] = t_raw[node.id]

    def init_gamma_scale(self, tree: TreeNode) -> None:
        """Empirical-Bayes gamma scale: the prior mean equals the tree length."""
        self.gamma_scale = tree_length(tree) / self.gamma_shape