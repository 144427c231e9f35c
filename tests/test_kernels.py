"""Tests for the node-parallel tree kernels."""

import numpy as np
import pytest
from numpy.testing import assert_allclose, assert_array_equal

from treedual.blocks.kernels import (
    axpy_with_offset,
    compute_extrapolation_delta,
    diagonal_precondition,
    dual_ascent_update,
    dual_extrapolate,
    layout_shuffle,
    project_box,
    project_control_box,
    propagate_ancestor_update,
    redistribute_to_children,
    reduce_children_to_parent,
)


class TestRedistribute:
    def test_children_sum_to_parent_delta(self, three_stage_tree):
        tree = three_stage_tree
        rng = np.random.default_rng(0)
        delta = rng.standard_normal((tree.n_nodes, 3))
        out = np.zeros_like(delta)
        for s in range(tree.n_stages - 1):
            start, count = tree.stage_range(s)
            redistribute_to_children(
                delta, tree.prob, tree.child_offset, tree.num_children, out, start, count
            )
        for p in range(tree.n_nonleaf):
            assert_allclose(out[tree.children(p)].sum(axis=0), delta[p], atol=1e-12)

    def test_probability_proportional_shares(self, three_stage_tree):
        tree = three_stage_tree
        delta = np.zeros((tree.n_nodes, 1))
        delta[0, 0] = 10.0
        out = np.zeros_like(delta)
        redistribute_to_children(delta, tree.prob, tree.child_offset, tree.num_children, out, 0, 1)
        assert_allclose(out[1:3, 0], [3.0, 7.0])

    def test_zero_weights_split_evenly(self, two_stage_tree):
        tree = two_stage_tree
        delta = np.array([[4.0], [0.0], [0.0]])
        out = np.zeros_like(delta)
        redistribute_to_children(delta, np.zeros(3), tree.child_offset, tree.num_children, out, 0, 1)
        assert_allclose(out[1:, 0], [2.0, 2.0])


class TestReduceAndPropagate:
    def test_reduce_adds_children_into_parent(self, three_stage_tree):
        tree = three_stage_tree
        rng = np.random.default_rng(1)
        src = rng.standard_normal((tree.n_nodes, 2))
        dst = np.ones_like(src)
        for s in range(tree.n_stages - 1):
            start, count = tree.stage_range(s)
            reduce_children_to_parent(src, dst, tree.num_children, tree.child_offset, start, count)
        for p in range(tree.n_nonleaf):
            assert_allclose(dst[p], 1.0 + src[tree.children(p)].sum(axis=0))
        # leaves untouched
        assert_array_equal(dst[tree.n_nonleaf :], 1.0)

    def test_subtree_sums_match_brute_force(self, three_stage_tree):
        tree = three_stage_tree
        rng = np.random.default_rng(2)
        v = rng.standard_normal((tree.n_nodes, 2))
        got = tree.subtree_sums(v)
        for i in range(tree.n_nodes):
            members = [j for j in range(tree.n_nodes) if _is_descendant(tree, j, i)]
            assert_allclose(got[i], v[members].sum(axis=0), atol=1e-12)

    def test_propagate_copies_ancestor_rows(self, three_stage_tree):
        tree = three_stage_tree
        src = np.arange(tree.n_nodes * 2, dtype=float).reshape(-1, 2)
        dst = np.zeros_like(src)
        start, count = tree.stage_range(2)
        propagate_ancestor_update(src, dst, tree.ancestor, start, count)
        assert_array_equal(dst[start:], src[tree.ancestor[start:]])
        assert_array_equal(dst[:start], 0.0)

    def test_accumulate_down_is_path_sum(self, three_stage_tree):
        tree = three_stage_tree
        rng = np.random.default_rng(3)
        inc = rng.standard_normal((tree.n_nodes, 2))
        root = np.array([1.0, -2.0])
        got = tree.accumulate_down(inc, root)
        for i in range(tree.n_nodes):
            expected = root.copy()
            j = i
            while j >= 0:
                expected += inc[j]
                j = tree.ancestor[j]
            assert_allclose(got[i], expected, atol=1e-12)


def _is_descendant(tree, j, i):
    while j >= 0:
        if j == i:
            return True
        j = tree.ancestor[j]
    return False


class TestProjection:
    def test_project_box_is_idempotent(self):
        rng = np.random.default_rng(4)
        x = 3.0 * rng.standard_normal((5, 4))
        lo = -np.ones((5, 2))
        hi = np.ones((5, 2))
        project_box(x, lo, hi, 1, 2)
        once = x.copy()
        project_box(x, lo, hi, 1, 2)
        assert_array_equal(x, once)
        assert np.all(x[:, 1:3] >= -1.0) and np.all(x[:, 1:3] <= 1.0)

    def test_project_box_leaves_other_columns(self):
        x = np.full((2, 3), 5.0)
        project_box(x, np.zeros((2, 1)), np.ones((2, 1)), 2, 1)
        assert_array_equal(x[:, :2], 5.0)
        assert_array_equal(x[:, 2], 1.0)

    def test_project_control_box_with_infinite_bounds(self):
        u = np.array([[-5.0, 5.0], [0.5, -0.5]])
        lo = np.array([[-np.inf, 0.0], [0.0, 0.0]])
        hi = np.array([[np.inf, 1.0], [1.0, 1.0]])
        project_control_box(u, lo, hi)
        assert_array_equal(u, [[-5.0, 1.0], [0.5, 0.0]])

    def test_bound_shape_mismatch_raises(self):
        with pytest.raises(ValueError):
            project_control_box(np.zeros((2, 2)), np.zeros((2, 1)), np.ones((2, 1)))


class TestLayoutShuffle:
    def test_matches_transpose_and_inverts(self):
        src = np.arange(12, dtype=float)  # (count=4, dim=3)
        dst = np.empty(12)
        layout_shuffle(dst, src, 3, 4)
        assert_array_equal(dst, src.reshape(4, 3).T.ravel())
        back = np.empty(12)
        layout_shuffle(back, dst, 4, 3)
        assert_array_equal(back, src)

    def test_in_place_rejected(self):
        a = np.zeros(6)
        with pytest.raises(ValueError):
            layout_shuffle(a, a, 2, 3)


class TestDualKernels:
    def test_extrapolate_and_ascent(self):
        rng = np.random.default_rng(5)
        y, y_prev, hx, z = rng.standard_normal((4, 10))
        w = np.empty(10)
        dual_extrapolate(w, y, y_prev, 0.3)
        assert_allclose(w, y + 0.3 * (y - y_prev))
        y_next = np.empty(10)
        dual_ascent_update(y_next, w, hx, z, 0.5)
        assert_allclose(y_next, w + 0.5 * (hx - z))

    def test_axpy_with_offset_touches_segment_only(self):
        dst = np.zeros(6)
        src = np.arange(6, dtype=float)
        axpy_with_offset(dst, 2, src, 1, 2.0, 3)
        assert_array_equal(dst, [0.0, 0.0, 2.0, 4.0, 6.0, 0.0])
        with pytest.raises(ValueError):
            axpy_with_offset(dst, 5, src, 0, 1.0, 3)

    def test_extrapolation_delta_roots_against_reference(self, two_stage_tree):
        tree = two_stage_tree
        cur = np.array([[1.0], [2.0], [4.0]])
        out = np.empty_like(cur)
        compute_extrapolation_delta(cur, cur, tree.ancestor, np.array([0.5]), out)
        assert_allclose(out[:, 0], [0.5, 1.0, 3.0])
        with pytest.raises(ValueError):
            compute_extrapolation_delta(cur, cur, tree.ancestor, np.array([0.5]), cur)


class TestPrecondition:
    def test_rows_scaled_with_vectors(self):
        mats = np.ones((2, 2, 3))
        vecs = np.ones((2, 2, 2))
        diagonal_precondition(mats, vecs, np.array([2.0, 0.5]))
        assert_allclose(mats[:, 0], 2.0)
        assert_allclose(mats[:, 1], 0.5)
        assert_allclose(vecs[:, :, 0], 2.0)
        assert_allclose(vecs[:, :, 1], 0.5)

    def test_non_positive_scale_rejected(self):
        with pytest.raises(ValueError):
            diagonal_precondition(np.ones((1, 2, 2)), np.ones((1, 1, 2)), np.array([1.0, 0.0]))
