"""
Constraint map H and the closed-form proximal operator of g.

Dual vectors are flat arenas `[xi | psi]`:

* xi  (N, 2*nx): rows `[x_i ; x_i]`, the first block against the hard storage
  box `[x_min, x_max]`, the second against the soft safe-volume level
  `x_safe` (penalty `p_i * safety_weight * dist(z, [x_safe, +inf))`);
* psi (N, nu): rows `u_i` against the actuator box `[u_min, u_max]`.

A diagonal row scaling (preconditioner) may be applied once to H and, with
it, to every bound, before the first solve.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from .aux import _as_float_array, _per_node
from .kernels import diagonal_precondition, project_box, project_control_box


@dataclass
class ConstraintBounds:
    """Static bounds on storage and actuators (vectors or per-node tables)."""

    x_min: Sequence[float]
    x_max: Sequence[float]
    u_min: Sequence[float]
    u_max: Sequence[float]
    x_safe: Optional[Sequence[float]] = None
    safety_weight: float = 0.0

    def per_node(self, n_nodes: int, nx: int, nu: int):
        x_min = _per_node(self.x_min, n_nodes, nx, "x_min")
        x_max = _per_node(self.x_max, n_nodes, nx, "x_max")
        u_min = _per_node(self.u_min, n_nodes, nu, "u_min")
        u_max = _per_node(self.u_max, n_nodes, nu, "u_max")
        x_safe = (
            np.full((n_nodes, nx), -np.inf)
            if self.x_safe is None
            else _per_node(self.x_safe, n_nodes, nx, "x_safe")
        )
        if np.any(x_min > x_max):
            raise ValueError("x_min must not exceed x_max")
        if np.any(u_min > u_max):
            raise ValueError("u_min must not exceed u_max")
        if self.safety_weight < 0:
            raise ValueError(f"safety_weight must be non-negative, got {self.safety_weight}")
        return x_min, x_max, x_safe, u_min, u_max


class ConstraintMap:
    """Per-node blocks of H: F (N, 2nx, nx) on states, G (N, nu, nu) on controls."""

    def __init__(self, n_nodes: int, nx: int, nu: int):
        self.n_nodes = int(n_nodes)
        self.nx = int(nx)
        self.nu = int(nu)
        self.n_xi = 2 * self.nx
        self.n_psi = self.nu
        self.xi_size = self.n_nodes * self.n_xi
        self.n_dual = self.xi_size + self.n_nodes * self.n_psi

        eye_x = np.eye(self.nx)
        self.F = np.array(
            np.broadcast_to(np.vstack([eye_x, eye_x]), (self.n_nodes, self.n_xi, self.nx))
        )
        self.G = np.array(
            np.broadcast_to(np.eye(self.nu), (self.n_nodes, self.n_psi, self.nu))
        )
        self._preconditioned = False

    # ---------- views into flat dual arenas ----------
    def xi(self, v: np.ndarray) -> np.ndarray:
        return v[: self.xi_size].reshape(self.n_nodes, self.n_xi)

    def psi(self, v: np.ndarray) -> np.ndarray:
        return v[self.xi_size :].reshape(self.n_nodes, self.n_psi)

    # ---------- H and H^T ----------
    def forward(self, x: np.ndarray, u: np.ndarray, out: np.ndarray) -> np.ndarray:
        np.einsum("nij,nj->ni", self.F, x, out=self.xi(out))
        np.einsum("nij,nj->ni", self.G, u, out=self.psi(out))
        return out

    def adjoint(self, y: np.ndarray, wx: np.ndarray, wu: np.ndarray) -> None:
        np.einsum("nij,ni->nj", self.F, self.xi(y), out=wx)
        np.einsum("nij,ni->nj", self.G, self.psi(y), out=wu)

    def precondition(self, xi_scale, psi_scale, xi_vecs: np.ndarray, psi_vecs: np.ndarray) -> None:
        if self._preconditioned:
            raise RuntimeError("constraint map is already preconditioned")
        d_xi = np.ones(self.n_xi) if xi_scale is None else _as_float_array(xi_scale).ravel()
        d_psi = np.ones(self.n_psi) if psi_scale is None else _as_float_array(psi_scale).ravel()
        diagonal_precondition(self.F, xi_vecs, d_xi)
        diagonal_precondition(self.G, psi_vecs, d_psi)
        self._preconditioned = True
        logging.debug(
            f"[ConstraintMap] preconditioned: xi scale in [{d_xi.min():.3e}, {d_xi.max():.3e}], "
            f"psi scale in [{d_psi.min():.3e}, {d_psi.max():.3e}]"
        )


class ProximalOperator:
    """
    z = prox_{g/gamma}(Hx + w/gamma), group by group.

    `apply` keeps no state between calls; it returns the value of each
    group's term of g at z (the box terms are indicators, hence zero).
    """

    def __init__(
        self,
        cmap: ConstraintMap,
        bounds: ConstraintBounds,
        prob: np.ndarray,
        xi_scale=None,
        psi_scale=None,
    ):
        self.cmap = cmap
        n, nx, nu = cmap.n_nodes, cmap.nx, cmap.nu
        x_min, x_max, x_safe, u_min, u_max = bounds.per_node(n, nx, nu)

        # (lower, upper) stacks, scaled together with H
        self.xi_vecs = np.empty((2, n, cmap.n_xi))
        self.xi_vecs[0, :, :nx] = x_min
        self.xi_vecs[0, :, nx:] = x_safe
        self.xi_vecs[1, :, :nx] = x_max
        self.xi_vecs[1, :, nx:] = np.inf
        self.psi_vecs = np.stack([u_min, u_max])
        cmap.precondition(xi_scale, psi_scale, self.xi_vecs, self.psi_vecs)

        self.box_lo = self.xi_vecs[0, :, :nx]
        self.box_hi = self.xi_vecs[1, :, :nx]
        self.safe_lo = self.xi_vecs[0, :, nx:]
        self.u_lo = self.psi_vecs[0]
        self.u_hi = self.psi_vecs[1]
        self.safe_weight = float(bounds.safety_weight) * _as_float_array(prob).ravel()

    def apply(self, hx: np.ndarray, w: np.ndarray, gamma: float, z: np.ndarray) -> Tuple[float, float]:
        cmap = self.cmap
        nx = cmap.nx
        inv = 1.0 / gamma

        np.multiply(w, inv, out=z)
        z += hx
        zx = cmap.xi(z)
        zu = cmap.psi(z)

        project_box(zx, self.box_lo, self.box_hi, 0, nx)
        g_xi = self._prox_safe(zx[:, nx:], self.safe_weight * inv)
        project_control_box(zu, self.u_lo, self.u_hi)
        return g_xi, 0.0

    def _prox_safe(self, vs: np.ndarray, thr: np.ndarray) -> float:
        # prox of thr_i * dist(., [x_safe, inf)) per node, in place on vs
        diff = np.maximum(vs, self.safe_lo) - vs
        d = np.sqrt(np.einsum("ij,ij->i", diff, diff))
        with np.errstate(divide="ignore", invalid="ignore"):
            frac = np.where(d > thr, thr / d, 1.0)
        vs += frac[:, None] * diff
        # gamma * thr_i is p_i * safety_weight
        dist = np.maximum(d - thr, 0.0)
        return float(np.dot(self.safe_weight, dist))

    def group_values(self, z: np.ndarray) -> Tuple[float, float]:
        """Value of g at an arbitrary (feasible for the boxes) z."""
        zs = self.cmap.xi(z)[:, self.cmap.nx :]
        gap = np.maximum(self.safe_lo - zs, 0.0)
        dist = np.sqrt(np.einsum("ij,ij->i", gap, gap))
        return float(np.dot(self.safe_weight, dist)), 0.0
