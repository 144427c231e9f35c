"""Tests for the L-BFGS ring buffer and the line searches."""

import numpy as np
import pytest
from numpy.testing import assert_allclose

from treedual.blocks.aux import DualConfig
from treedual.blocks.lbfgs import LbfgsBuffer
from treedual.blocks.linesearch import LineSearcher


class TestLbfgsBuffer:
    def test_negative_curvature_rejected(self):
        buf = LbfgsBuffer(3, memory=2)
        s = np.array([1.0, 0.0, 0.0])
        assert not buf.update(s, -s)
        assert buf.skip_count == 1
        assert buf.col == 0 and buf.count == 0

    def test_tiny_curvature_rejected(self):
        buf = LbfgsBuffer(2, memory=2, curv_eps=1e-3)
        assert not buf.update(np.array([1.0, 0.0]), np.array([1e-6, 1.0]))
        assert buf.skip_count == 1

    def test_capacity_and_ring_order(self):
        buf = LbfgsBuffer(2, memory=3)
        for k in range(5):
            assert buf.update(np.array([1.0, float(k)]), np.array([1.0, float(k)]))
        assert buf.count == 3
        assert buf.col == 2
        assert buf.indices() == [1, 0, 2]
        # most recent pair sits at index 1
        assert_allclose(buf.S[1], [1.0, 4.0])

    def test_two_loop_recovers_diagonal_inverse(self):
        a = np.array([2.0, 5.0, 0.5])
        buf = LbfgsBuffer(3, memory=3)
        for i in range(3):
            e = np.zeros(3)
            e[i] = 1.0
            assert buf.update(e, a[i] * e)
        g = np.array([1.0, -2.0, 3.0])
        assert_allclose(buf.two_loop(g), g / a)

    def test_empty_buffer_is_identity(self):
        buf = LbfgsBuffer(3)
        g = np.array([1.0, 2.0, 3.0])
        out = np.empty(3)
        assert buf.two_loop(g, out=out) is out
        assert_allclose(out, g)

    def test_reset_keeps_skip_count(self):
        buf = LbfgsBuffer(1, memory=2)
        buf.update(np.array([1.0]), np.array([-1.0]))
        buf.update(np.array([1.0]), np.array([4.0]))
        assert buf.hessian == pytest.approx(0.25)
        buf.reset()
        assert buf.count == 0 and buf.hessian == 1.0
        assert buf.skip_count == 1

    def test_memory_must_be_positive(self):
        with pytest.raises(ValueError):
            LbfgsBuffer(3, memory=0)


class TestLineSearcher:
    def test_fbe_backtracks_to_first_sufficient_decrease(self):
        ls = LineSearcher(DualConfig())
        tau, iters, ok = ls.search_fbe(lambda t: (t - 0.3) ** 2, 0.09, -0.6)
        assert ok
        assert tau == pytest.approx(0.5)
        assert iters == 2

    def test_accepted_step_satisfies_armijo(self):
        cfg = DualConfig(ls_armijo=0.3).validate()
        ls = LineSearcher(cfg)
        phi = lambda t: (t - 0.05) ** 2
        tau, _, ok = ls.search_fbe(phi, phi(0.0), -0.1)
        assert ok
        assert phi(tau) <= phi(0.0) + cfg.ls_armijo * tau * (-0.1)
        # the previous (larger) trial failed the test
        assert phi(2 * tau) > phi(0.0) + cfg.ls_armijo * 2 * tau * (-0.1)

    def test_non_descent_direction_falls_back(self):
        ls = LineSearcher(DualConfig())
        calls = []
        tau, iters, ok = ls.search_fbe(lambda t: calls.append(t) or 0.0, 1.0, 0.1)
        assert not ok and tau == 0.0 and iters == 0
        assert calls == []
        assert ls.n_fallbacks == 1

    def test_exhaustion_falls_back(self):
        cfg = DualConfig(ls_max_iter=4).validate()
        ls = LineSearcher(cfg)
        tau, iters, ok = ls.search_fbe(lambda t: np.inf, 1.0, -1.0)
        assert not ok and tau == 0.0
        assert iters == 4
        assert ls.n_fallbacks == 1

    def test_ame_accepts_full_step(self):
        ls = LineSearcher(DualConfig())
        tau, iters, ok = ls.search_ame(lambda t: 2.0, 3.0, 1.0, 0.5)
        assert ok and tau == 1.0 and iters == 1

    def test_ame_rejects_insufficient_decrease(self):
        ls = LineSearcher(DualConfig(ls_max_iter=3).validate())
        tau, iters, ok = ls.search_ame(lambda t: 2.9, 3.0, 1.0, 0.5)
        assert not ok and iters == 3
