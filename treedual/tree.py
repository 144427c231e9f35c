from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np

from .blocks.aux import TreeStructureError, _as_float_array, _as_index_array
from .blocks.kernels import (
    axpy_with_offset,
    propagate_ancestor_update,
    redistribute_to_children,
    reduce_children_to_parent,
)


@dataclass
class ScenarioTree:
    """
    Breadth-first numbered scenario tree.

    Node 0 is the root (ancestor -1). Children of a node occupy a contiguous
    index range starting at `child_offset[node]`, stages occupy contiguous
    ranges `[stage_offset[s], stage_offset[s+1])`, and every leaf sits in the
    last stage. All tables are read-only index/weight tables for the kernels.
    """

    ancestor: np.ndarray
    prob: np.ndarray
    num_children: np.ndarray = field(init=False)
    child_offset: np.ndarray = field(init=False)
    stage: np.ndarray = field(init=False)
    stage_offset: np.ndarray = field(init=False)
    stage_nodes: np.ndarray = field(init=False)

    def __post_init__(self):
        self.ancestor = _as_index_array(self.ancestor).ravel()
        self.prob = _as_float_array(self.prob).ravel()
        n = self.ancestor.size
        if n == 0:
            raise TreeStructureError("tree has no nodes")
        if self.prob.size != n:
            raise TreeStructureError(f"prob has {self.prob.size} entries for {n} nodes")
        if self.ancestor[0] != -1:
            raise TreeStructureError("node 0 must be the root (ancestor -1)")

        anc = self.ancestor[1:]
        idx = np.arange(1, n)
        if np.any(anc < 0) or np.any(anc >= idx):
            bad = int(idx[(anc < 0) | (anc >= idx)][0])
            raise TreeStructureError(
                f"ancestor index of node {bad} out of range: {int(self.ancestor[bad])}"
            )
        if np.any(np.diff(anc) < 0):
            raise TreeStructureError("siblings must be numbered contiguously (ancestors non-decreasing)")

        self.num_children = np.bincount(anc, minlength=n).astype(np.int64)
        self.child_offset = (1 + np.concatenate(([0], np.cumsum(self.num_children)[:-1]))).astype(np.int64)

        stage = np.zeros(n, dtype=np.int64)
        for i in range(1, n):
            stage[i] = stage[self.ancestor[i]] + 1
        if np.any(np.diff(stage) < 0):
            raise TreeStructureError("nodes must be numbered stage by stage")
        self.stage = stage

        n_stages = int(stage[-1]) + 1
        self.stage_nodes = np.bincount(stage, minlength=n_stages).astype(np.int64)
        self.stage_offset = np.concatenate(([0], np.cumsum(self.stage_nodes))).astype(np.int64)

        leaves = self.num_children == 0
        if np.any(leaves[: self.stage_offset[-2]]):
            raise TreeStructureError("leaf node before the final stage")

        if np.any(self.prob <= 0.0):
            raise TreeStructureError("node probabilities must be positive")
        if abs(self.prob[0] - 1.0) > 1e-9:
            raise TreeStructureError(f"root probability must be 1, got {self.prob[0]}")
        child_mass = self.subtree_children_mass()
        nonleaf = ~leaves
        if not np.allclose(child_mass[nonleaf], self.prob[nonleaf], rtol=1e-9, atol=1e-12):
            raise TreeStructureError("children probabilities must sum to the parent probability")
        logging.debug(
            f"[ScenarioTree] nodes={n} stages={n_stages} scenarios={int(self.stage_nodes[-1])}"
        )

    # ------------------------------------------------------------------ #
    # Sizes
    # ------------------------------------------------------------------ #
    @property
    def n_nodes(self) -> int:
        return int(self.ancestor.size)

    @property
    def n_stages(self) -> int:
        return int(self.stage_nodes.size)

    @property
    def n_nonleaf(self) -> int:
        return int(self.stage_offset[-2])

    @property
    def n_scenarios(self) -> int:
        return int(self.stage_nodes[-1])

    def stage_range(self, s: int):
        return int(self.stage_offset[s]), int(self.stage_nodes[s])

    def children(self, node: int) -> np.ndarray:
        first = int(self.child_offset[node])
        return np.arange(first, first + int(self.num_children[node]))

    # ------------------------------------------------------------------ #
    # Construction
    # ------------------------------------------------------------------ #
    @classmethod
    def from_ancestors(cls, ancestor: Sequence[int], prob: Sequence[float]) -> "ScenarioTree":
        return cls(np.asarray(ancestor), np.asarray(prob))

    @classmethod
    def from_branching(
        cls, branching: Sequence[int], weights: Optional[Sequence[Sequence[float]]] = None
    ) -> "ScenarioTree":
        """
        Tree where every node of stage s has `branching[s]` children.

        `weights[s]` gives the relative weight of each child at stage s
        (default: equiprobable); absolute probabilities are split top-down.
        """
        branching = [int(b) for b in branching]
        if any(b < 1 for b in branching):
            raise TreeStructureError(f"branching factors must be >= 1, got {branching}")
        ancestor = [-1]
        rel = [1.0]
        stage_start, stage_count = 0, 1
        for s, b in enumerate(branching):
            w = np.ones(b) if weights is None else np.asarray(weights[s], dtype=float)
            if w.size != b:
                raise TreeStructureError(f"weights[{s}] has {w.size} entries, expected {b}")
            for parent in range(stage_start, stage_start + stage_count):
                ancestor.extend([parent] * b)
                rel.extend(w.tolist())
            stage_start, stage_count = stage_start + stage_count, stage_count * b

        ancestor = np.asarray(ancestor, dtype=np.int64)
        rel = np.asarray(rel, dtype=np.float64)
        n = ancestor.size
        num_children = np.bincount(ancestor[1:], minlength=n).astype(np.int64)
        child_offset = (1 + np.concatenate(([0], np.cumsum(num_children)[:-1]))).astype(np.int64)

        absolute = np.zeros((n, 1))
        absolute[0, 0] = 1.0
        start, count = 0, 1
        for b in branching:
            redistribute_to_children(absolute, rel, child_offset, num_children, absolute, start, count)
            start, count = start + count, count * b
        return cls(ancestor, absolute[:, 0])

    # ------------------------------------------------------------------ #
    # Stage-ordered reductions and broadcasts
    # ------------------------------------------------------------------ #
    def subtree_children_mass(self) -> np.ndarray:
        mass = np.zeros((self.n_nodes, 1))
        src = self.prob.reshape(-1, 1).copy()
        for s in range(self.n_stages - 1):
            start, count = self.stage_range(s)
            reduce_children_to_parent(src, mass, self.num_children, self.child_offset, start, count)
        return mass[:, 0]

    def subtree_sums(self, values: np.ndarray, out: Optional[np.ndarray] = None) -> np.ndarray:
        """out[i] = sum of values over the subtree rooted at i (leaves to root)."""
        if out is None:
            out = np.empty_like(values)
        out[...] = values
        for s in range(self.n_stages - 2, -1, -1):
            start, count = self.stage_range(s)
            reduce_children_to_parent(out, out, self.num_children, self.child_offset, start, count)
        return out

    def accumulate_down(
        self, increments: np.ndarray, root_value: np.ndarray, out: Optional[np.ndarray] = None
    ) -> np.ndarray:
        """out[i] = root_value + sum of increments along the path root -> i."""
        if out is None:
            out = np.empty_like(increments)
        if not (out.flags.c_contiguous and increments.flags.c_contiguous):
            raise ValueError("accumulate_down needs C-contiguous arrays")
        dim = increments.shape[1]
        out[0] = root_value + increments[0]
        flat_out = out.reshape(-1)
        flat_inc = increments.reshape(-1)
        for s in range(1, self.n_stages):
            start, count = self.stage_range(s)
            propagate_ancestor_update(out, out, self.ancestor, start, count)
            axpy_with_offset(flat_out, start * dim, flat_inc, start * dim, 1.0, count * dim)
        return out
