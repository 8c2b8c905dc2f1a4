import math

import numpy as np
import pytest

from vinetree.tree import TreeNode, parse_newick
from vinetree.tree_prior import (
    BL_EPS,
    SIG_INIT,
    TAU_EPS,
    TreePrior,
    TreePriorType,
    huber_psi,
    huber_rho,
    inv_softplus,
    leaf_bitsets,
    sigmoid,
    softplus,
    ssp,
    ssp_inv,
    ssp_prime,
    tree_length,
)

NEWICK = "(((A:0.1,B:0.25):0.3,C:0.4):0.2,(D:0.15,E:0.35):0.05);"


def _tree(text=NEWICK):
    return parse_newick(text)


def _with_length(text, node_id, new_length):
    tree = parse_newick(text)
    for node in tree.preorder():
        if node.id == node_id:
            node.dparent = new_length
    return tree


@pytest.mark.parametrize("x", [-5.0, -0.3, 0.0, 0.7, 12.0])
def test_softplus_round_trip(x):
    assert inv_softplus(softplus(x)) == pytest.approx(x, abs=1e-9)


def test_sigmoid_at_zero():
    assert sigmoid(0.0) == 0.5


def test_relclock_sig_initialised_from_sig_init():
    tp = TreePrior(TreePriorType.YULE, True)
    assert softplus(tp.relclock_sig) == pytest.approx(SIG_INIT)


@pytest.mark.parametrize("y", [1e-4, 0.05, 0.3, 2.0])
@pytest.mark.parametrize("beta", [1.0, 40.0])
def test_ssp_inverse_round_trip(y, beta):
    assert ssp(ssp_inv(y, beta), beta) == pytest.approx(y, rel=1e-6)


@pytest.mark.parametrize("x", [-0.5, 0.0, 0.02, 0.4])
def test_ssp_prime_matches_finite_difference(x):
    beta, eps = 10.0, 1e-6
    numeric = (ssp(x + eps, beta) - ssp(x - eps, beta)) / (2 * eps)
    assert ssp_prime(x, beta) == pytest.approx(numeric, rel=1e-5)


def test_ssp_is_positive_and_increasing():
    values = [ssp(x, 5.0) for x in np.linspace(-3, 3, 25)]
    assert all(v > 0 for v in values)
    assert all(b > a for a, b in zip(values, values[1:]))


@pytest.mark.parametrize("z", [-2.0, -0.3, 0.1, 0.45, 1.7])
def test_huber_psi_is_derivative_of_rho(z):
    eps = 1e-6
    numeric = (huber_rho(z + eps, 0.5) - huber_rho(z - eps, 0.5)) / (2 * eps)
    assert huber_psi(z, 0.5) == pytest.approx(numeric, rel=1e-5)


def test_huber_psi_is_bounded_by_kappa():
    assert huber_psi(10.0, 0.5) == 0.5
    assert huber_psi(-10.0, 0.5) == -0.5


def test_tree_length_adds_floor_per_branch():
    tree = _tree("((A:0.1,B:0.2):0.3,C:0.4);")
    assert tree_length(tree) == pytest.approx(1.0 + 4 * BL_EPS)


def test_leaf_bitsets_leaves_have_own_bit_and_keys_distinct():
    tree = _tree()
    masks = leaf_bitsets(tree)
    assert len(masks) == tree.nnodes
    for leaf in tree.leaves():
        assert masks[leaf.id] == 1 << leaf.id
    assert len(set(masks)) == len(masks)


def test_leaf_bitsets_requires_consecutive_ids():
    root = TreeNode(name="r", id=0)
    root.add_child(TreeNode(name="a", id=5))
    root.add_child(TreeNode(name="b", id=6))
    with pytest.raises(ValueError):
        leaf_bitsets(root)


def test_no_prior_no_clock_is_zero():
    tree = _tree()
    value, grad = TreePrior(TreePriorType.NONE, False).log_prior(tree)
    assert value == 0.0
    assert not grad.any()


def test_init_gamma_scale_matches_tree_length():
    tree = _tree()
    tp = TreePrior(TreePriorType.GAMMA, False)
    tp.init_gamma_scale(tree)
    assert tp.gamma_scale * tp.gamma_shape == pytest.approx(tree_length(tree))


@pytest.mark.parametrize("kind", [TreePriorType.YULE, TreePriorType.GAMMA])
def test_noclock_gradient_matches_finite_difference(kind):
    tp = TreePrior(kind, False)
    value, grad = tp.log_prior(_tree())
    assert np.allclose(grad, grad[0])
    eps = 1e-6
    plus, _ = tp.log_prior(_with_length(NEWICK, 3, 0.1 + eps))
    minus, _ = tp.log_prior(_with_length(NEWICK, 3, 0.1 - eps))
    assert (plus - minus) / (2 * eps) == pytest.approx(grad[3], rel=1e-5)
    assert math.isfinite(value)


def test_init_nodetimes_orders_and_fits_branches():
    tree = _tree("((A:0.2,B:0.2):0.3,C:0.5);")
    tp = TreePrior(TreePriorType.YULE, True)
    masks = leaf_bitsets(tree)
    tp.init_nodetimes(tree, masks)
    assert len(tp.nodetimes) == 2
    assert tp.tau_beta > 0
    cherry = tree.lchild
    t_cherry = tp.nodetimes[tp.bs2idx[masks[cherry.id]]]
    t_root = tp.nodetimes[tp.bs2idx[masks[tree.id]]]
    assert t_root > t_cherry
    assert TAU_EPS + ssp(t_cherry, tp.tau_beta) == pytest.approx(BL_EPS + 0.2, rel=1e-6)


@pytest.mark.parametrize("kind", [TreePriorType.YULE, TreePriorType.GAMMA, TreePriorType.NONE])
def test_relclock_branch_gradient_matches_finite_difference(kind):
    tp = TreePrior(kind, True)
    tree = _tree()
    value, grad = tp.log_prior(tree)
    assert math.isfinite(value)
    eps = 1e-7
    for node in tree.nodes:
        if node.parent is None:
            continue
        plus, _ = tp.log_prior(_with_length(NEWICK, node.id, node.dparent + eps))
        minus, _ = tp.log_prior(_with_length(NEWICK, node.id, node.dparent - eps))
        assert (plus - minus) / (2 * eps) == pytest.approx(grad[node.id], rel=1e-4, abs=1e-4)


@pytest.mark.parametrize("exp_mean", [None, 2.0])
def test_relclock_sigma_gradient_matches_finite_difference(exp_mean):
    tp = TreePrior(TreePriorType.YULE, True, relclock_sig_exp_mean=exp_mean)
    tree = _tree()
    tp.log_prior(tree)
    analytic = tp.relclock_sig_grad
    raw, eps = tp.relclock_sig, 1e-6
    tp.relclock_sig = raw + eps
    plus, _ = tp.log_prior(tree)
    tp.relclock_sig = raw - eps
    minus, _ = tp.log_prior(tree)
    assert (plus - minus) / (2 * eps) == pytest.approx(analytic, rel=1e-4, abs=1e-6)


def test_relclock_nodetime_gradient_is_centered():
    tp = TreePrior(TreePriorType.YULE, True)
    tree = _tree()
    tp.log_prior(tree)
    assert len(tp.nodetimes_grad) == (tree.nnodes + 1) // 2 - 1
    assert tp.nodetimes_grad.sum() == pytest.approx(0.0, abs=1e-9)


def test_nodetimes_persist_across_calls():
    tp = TreePrior(TreePriorType.YULE, True)
    tp.log_prior(_tree())
    saved = tp.nodetimes.copy()
    tp.log_prior(_with_length(NEWICK, 3, 0.5))
    assert np.array_equal(saved, tp.nodetimes)