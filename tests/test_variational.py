import math

import numpy as np
import pytest

from vinetree.variational import (
    AdamOptimizer,
    AntitheticSampler,
    ConvergenceMonitor,
    apply_flows,
    clip_gradient,
    kld_gaussian,
    kld_grad_lowrank,
)


def test_adam_first_step_is_lr_times_sign():
    opt = AdamOptimizer(3)
    step = opt.step([2.0, -0.5, 7.0], lr=0.05)
    assert np.allclose(step, [0.05, -0.05, 0.05], atol=1e-8)
    assert opt.t == 1


def test_adam_zero_gradient_gives_zero_step():
    opt = AdamOptimizer(4)
    assert np.array_equal(opt.step(np.zeros(4), lr=1.0), np.zeros(4))


def test_adam_step_bounded_by_lr_for_constant_gradient():
    opt = AdamOptimizer(2)
    for _ in range(20):
        step = opt.step([1.0, -3.0], lr=0.1)
    assert np.allclose(np.abs(step), 0.1, atol=1e-6)
    assert opt.t == 20


def test_adam_rejects_wrong_shape():
    opt = AdamOptimizer(3)
    with pytest.raises(ValueError):
        opt.step([1.0, 2.0], lr=0.1)


def test_antithetic_pairs_mirror_about_mean():
    mean = np.array([1.0, 2.0, 3.0])
    scale = np.diag([0.5, 1.0, 2.0])
    sampler = AntitheticSampler(mean, scale, rng=np.random.default_rng(1))
    x1, z1 = sampler.sample()
    x2, z2 = sampler.sample()
    assert np.allclose(x1 + x2, 2 * mean)
    assert np.allclose(z2, -z1)
    assert np.allclose(x1, mean + scale @ z1)


def test_antithetic_third_sample_is_fresh():
    sampler = AntitheticSampler(np.zeros(5), rng=np.random.default_rng(2))
    _, z1 = sampler.sample()
    sampler.sample()
    _, z3 = sampler.sample()
    assert not np.allclose(np.abs(z3), np.abs(z1))


def test_antithetic_reset_forces_new_draw():
    sampler = AntitheticSampler(np.zeros(4), rng=np.random.default_rng(3))
    _, z1 = sampler.sample()
    sampler.reset()
    _, z2 = sampler.sample()
    assert not np.allclose(z2, -z1)


def test_antithetic_bad_scale():
    with pytest.raises(ValueError):
        AntitheticSampler(np.zeros(3), np.eye(2))


def test_kld_zero_for_standard_normal():
    assert kld_gaussian(trace=4.0, mu2=0.0, dim=4, logdet=0.0) == 0.0


def test_kld_grows_with_mean_norm():
    assert kld_gaussian(4.0, 2.0, 4, 0.0) > kld_gaussian(4.0, 1.0, 4, 0.0)


def test_kld_grad_lowrank_zero_at_identity():
    r = np.eye(3)
    assert np.allclose(kld_grad_lowrank(r, np.linalg.inv(r.T @ r), 5), 0.0)


def test_kld_grad_lowrank_shape_and_scaling():
    rng = np.random.default_rng(4)
    r = rng.standard_normal((2, 4))
    inv = rng.standard_normal((4, 4))
    g1 = kld_grad_lowrank(r, inv, 1)
    g3 = kld_grad_lowrank(r, inv, 3)
    assert g1.shape == (8,)
    assert np.allclose(g3, 3 * g1)
    assert np.allclose(g1.reshape(2, 4), r @ inv - r)


def test_kld_grad_lowrank_bad_shapes():
    with pytest.raises(ValueError):
        kld_grad_lowrank(np.ones((2, 3)), np.eye(2), 1)


class _Shift:
    def __init__(self, delta, logdet):
        self.delta = delta
        self.logdet = logdet

    def forward(self, points):
        return points + self.delta, self.logdet


def test_apply_flows_empty_is_identity():
    pts = np.array([1.0, -2.0])
    y, ld = apply_flows(pts, [])
    assert np.array_equal(y, pts)
    assert ld == 0.0
    y[0] = 99.0
    assert pts[0] == 1.0


def test_apply_flows_composes_in_order():
    y, ld = apply_flows(np.zeros(3), [_Shift(1.0, 0.25), _Shift(2.0, 0.5)])
    assert np.allclose(y, 3.0)
    assert ld == pytest.approx(0.75)


def test_clip_gradient_scales_to_max_norm():
    g, norm, clipped = clip_gradient([3.0, 4.0], 1.0)
    assert clipped
    assert norm == pytest.approx(5.0)
    assert np.linalg.norm(g) == pytest.approx(1.0)
    assert np.allclose(g / np.linalg.norm(g), [0.6, 0.8])


def test_clip_gradient_disabled_or_small():
    g, _, clipped = clip_gradient([3.0, 4.0], 0.0)
    assert not clipped and np.allclose(g, [3.0, 4.0])
    g, _, clipped = clip_gradient([0.3, 0.4], 1.0)
    assert not clipped and np.allclose(g, [0.3, 0.4])


def test_monitor_stops_on_plateau():
    mon = ConvergenceMonitor(window=5, min_steps=5)
    stops = [mon.update(-10.0, True) for _ in range(10)]
    assert stops[:9] == [False] * 9
    assert stops[9] is True
    assert mon.window_averages == [pytest.approx(-10.0), pytest.approx(-10.0)]


def test_monitor_keeps_going_while_improving():
    mon = ConvergenceMonitor(window=5, min_steps=5)
    stops = [mon.update(-100.0 + 5 * k, True) for k in range(30)]
    assert stops == [False] * 30
    assert mon.window_averages == [
        pytest.approx(-90.0),
        pytest.approx(-65.0),
        pytest.approx(-40.0),
        pytest.approx(-15.0),
        pytest.approx(10.0),
        pytest.approx(35.0),
    ]
    assert mon.best_elbo == pytest.approx(45.0)
    assert mon.best_step == 29


def test_monitor_never_stops_without_full_gradient():
    mon = ConvergenceMonitor(window=2, min_steps=0)
    assert not any(mon.update(-1.0, False) for _ in range(20))
    assert mon.best_step == -1
    assert mon.best_elbo == -math.inf


def test_monitor_tracks_best():
    mon = ConvergenceMonitor(window=10, min_steps=100)
    for e in [-5.0, -2.0, -3.0]:
        mon.update(e, True)
    assert mon.best_elbo == -2.0
    assert mon.best_step == 1
    assert mon.improved is False


def test_monitor_bad_window():
    with pytest.raises(ValueError):
        ConvergenceMonitor(window=0)