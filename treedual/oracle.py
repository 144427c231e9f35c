"""
Factor-step oracles: the per-node solve the dual iteration calls with H^T w.

Contract
--------
`factor(state, forecast)` runs once per control step. Afterwards `solve` must
be deterministic and cheap for any right-hand side, and `hessian` returns the
linear part of `solve` (its response with all affine terms removed):

    solve(wx + dx, wu + du) = solve(wx, wu) + hessian(dx, du)

Arrays follow the oracle's `layout`: `"node"` means (N, dim) per block,
`"dim"` means (dim, N). `objective` always takes node-major arrays.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Protocol

import numpy as np

from .blocks.aux import _as_float_array, _per_node
from .tree import ScenarioTree


@dataclass
class Forecast:
    """Per-node nominal trajectories for one control step."""

    demand: np.ndarray  # (N, nd)
    price: np.ndarray  # (N, nu)
    nominal_control: np.ndarray  # (N, nu)


class Forecaster(Protocol):
    def forecast(self, step: int, state: np.ndarray) -> Forecast: ...


class StaticForecaster:
    """Returns the same forecast at every step."""

    def __init__(self, forecast: Forecast):
        self._forecast = forecast

    def forecast(self, step: int, state: np.ndarray) -> Forecast:
        return self._forecast


class FactorStepOracle(ABC):
    layout: str = "node"

    def __init__(self, tree: ScenarioTree, nx: int, nu: int):
        self.tree = tree
        self.nx = int(nx)
        self.nu = int(nu)
        self.factored = False

    @abstractmethod
    def factor(self, state: np.ndarray, forecast: Forecast) -> None:
        raise NotImplementedError

    @abstractmethod
    def solve(self, wx: np.ndarray, wu: np.ndarray, x_out: np.ndarray, u_out: np.ndarray) -> None:
        raise NotImplementedError

    @abstractmethod
    def hessian(self, dx: np.ndarray, du: np.ndarray, x_out: np.ndarray, u_out: np.ndarray) -> None:
        raise NotImplementedError

    @abstractmethod
    def objective(self, x: np.ndarray, u: np.ndarray) -> float:
        raise NotImplementedError

    def _require_factored(self) -> None:
        if not self.factored:
            raise RuntimeError("call factor() before solve()")


# =============================================================================
# Water-network dynamics on the tree
# =============================================================================
class TreeFlowOracle(FactorStepOracle):
    """
    Tank volumes x and actuator flows u on every node, with

        x_i = x_anc(i) + B u_i + Gd d_i        (x_anc(root) = measured state)
        f   = sum_i p_i (price_i' u_i + 1/2 ||u_i - unom_i||_R^2)

    Minimising f + <wx, x> + <wu, u> is separable in u once x is eliminated:

        u_j = unom_j - (price_j + (wu_j + B' S_j) / p_j) / R

    with S_j the sum of wx over the subtree of j. Subtree sums are stage-by-stage
    reductions (leaves first); states are path sums broadcast root first.
    """

    layout = "node"

    def __init__(self, tree: ScenarioTree, B, Gd, R):
        B = _as_float_array(B)
        if B.ndim != 2:
            raise ValueError(f"B must be a matrix, got shape {B.shape}")
        nx, nu = B.shape
        super().__init__(tree, nx, nu)
        self.B = B
        self.Gd = _as_float_array(Gd)
        if self.Gd.ndim != 2 or self.Gd.shape[0] != nx:
            raise ValueError(f"Gd must have {nx} rows, got shape {self.Gd.shape}")
        self.R = _as_float_array(np.broadcast_to(np.asarray(R, dtype=float), (nu,)))
        if np.any(self.R <= 0.0):
            raise ValueError("R must be positive")

        n = tree.n_nodes
        self._inv_pr = 1.0 / (tree.prob[:, None] * self.R[None, :])  # (N, nu)
        self._S = np.empty((n, nx))
        self._inc = np.empty((n, nx))
        self._u_aff = np.zeros((n, nu))
        self._e = np.zeros((n, nx))
        self._state = np.zeros(nx)
        self._zero_state = np.zeros(nx)
        self._price = np.zeros((n, nu))
        self._nominal = np.zeros((n, nu))

    def factor(self, state: np.ndarray, forecast: Forecast) -> None:
        n = self.tree.n_nodes
        self._state[:] = _as_float_array(state).ravel()
        demand = _per_node(forecast.demand, n, self.Gd.shape[1], "demand")
        self._price[:] = _per_node(forecast.price, n, self.nu, "price")
        self._nominal[:] = _per_node(forecast.nominal_control, n, self.nu, "nominal_control")
        np.matmul(demand, self.Gd.T, out=self._e)
        # affine part of u, independent of the dual right-hand side
        np.divide(self._price, self.R[None, :], out=self._u_aff)
        np.subtract(self._nominal, self._u_aff, out=self._u_aff)
        self.factored = True

    def _apply(self, wx, wu, x_out, u_out, u_aff, e, root_state) -> None:
        tree = self.tree
        tree.subtree_sums(wx, out=self._S)
        # u = u_aff - (wu + S B) / (p R)
        np.matmul(self._S, self.B, out=u_out)
        u_out += wu
        u_out *= self._inv_pr
        if u_aff is None:
            np.negative(u_out, out=u_out)
        else:
            np.subtract(u_aff, u_out, out=u_out)
        # x = path sums of B u + e
        np.matmul(u_out, self.B.T, out=self._inc)
        if e is not None:
            self._inc += e
        tree.accumulate_down(self._inc, root_state, out=x_out)

    def solve(self, wx, wu, x_out, u_out) -> None:
        self._require_factored()
        self._apply(wx, wu, x_out, u_out, self._u_aff, self._e, self._state)

    def hessian(self, dx, du, x_out, u_out) -> None:
        self._apply(dx, du, x_out, u_out, None, None, self._zero_state)

    def objective(self, x, u) -> float:
        dev = u - self._nominal
        stage = np.einsum("ij,ij->i", self._price, u) + 0.5 * np.einsum("ij,j,ij->i", dev, self.R, dev)
        return float(np.dot(self.tree.prob, stage))


# =============================================================================
# Decoupled per-node quadratic (dimension-major)
# =============================================================================
class SeparableOracle(FactorStepOracle):
    """
    f = sum_i p_i (q/2 ||x_i - x_ref||^2 + r/2 ||u_i - unom_i||^2)

    with x_ref the measured state at every node. The solve is a diagonal
    scaling, evaluated one dimension row at a time over all nodes, so this
    oracle consumes dimension-major (dim, N) arrays.
    """

    layout = "dim"

    def __init__(self, tree: ScenarioTree, nx: int, nu: int, q: float = 1.0, r: float = 1.0):
        super().__init__(tree, nx, nu)
        if q <= 0 or r <= 0:
            raise ValueError("q and r must be positive")
        self.q = float(q)
        self.r = float(r)
        n = tree.n_nodes
        self._inv_pq = 1.0 / (self.q * tree.prob)[None, :]  # (1, N)
        self._inv_pr = 1.0 / (self.r * tree.prob)[None, :]
        self._x_ref = np.zeros((self.nx, n))
        self._u_ref = np.zeros((self.nu, n))

    def factor(self, state: np.ndarray, forecast: Forecast) -> None:
        n = self.tree.n_nodes
        state = _as_float_array(state).ravel()
        if state.size != self.nx:
            raise ValueError(f"state has length {state.size}, expected {self.nx}")
        self._x_ref[:] = state[:, None]
        self._u_ref[:] = _per_node(forecast.nominal_control, n, self.nu, "nominal_control").T
        self.factored = True

    def solve(self, wx, wu, x_out, u_out) -> None:
        self._require_factored()
        np.multiply(wx, self._inv_pq, out=x_out)
        np.subtract(self._x_ref, x_out, out=x_out)
        np.multiply(wu, self._inv_pr, out=u_out)
        np.subtract(self._u_ref, u_out, out=u_out)

    def hessian(self, dx, du, x_out, u_out) -> None:
        np.multiply(dx, self._inv_pq, out=x_out)
        np.negative(x_out, out=x_out)
        np.multiply(du, self._inv_pr, out=u_out)
        np.negative(u_out, out=u_out)

    def objective(self, x, u) -> float:
        dx = x - self._x_ref.T
        du = u - self._u_ref.T
        stage = 0.5 * self.q * np.einsum("ij,ij->i", dx, dx) + 0.5 * self.r * np.einsum("ij,ij->i", du, du)
        return float(np.dot(self.tree.prob, stage))
