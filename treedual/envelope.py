"""
One dual evaluation pass and the forward-backward envelope built on it.

With F(y) = f*(-H^T y) and G = g*, the dual problem is min F + G. At a dual
point y the oracle gives x*(y) = argmin f(x) + <y, Hx>, so grad F(y) = -Hx*,
and the proximal step gives z and y+ = y + gamma (Hx* - z). The envelope is

    phi(y) = -(f(x*) + g(z) + <y, Hx* - z> + gamma/2 ||Hx* - z||^2)

and, writing K for the oracle's linear response (hess F = -H K H^T),

    grad phi(y) = r + gamma H K H^T r,      r = z - Hx*.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

import numpy as np
import scipy.linalg as la
import scipy.sparse.linalg as spla

from .blocks.aux import DualConfig, _check_finite
from .blocks.kernels import dual_ascent_update, layout_shuffle
from .blocks.prox import ConstraintMap, ProximalOperator
from .oracle import FactorStepOracle


class Evaluation:
    """Preallocated result of one solve/prox pass at a dual point."""

    __slots__ = ("x", "u", "hx", "z", "res", "y_plus", "f", "g", "merit", "infeasibility")

    def __init__(self, n_nodes: int, nx: int, nu: int, n_dual: int):
        self.x = np.zeros((n_nodes, nx))
        self.u = np.zeros((n_nodes, nu))
        self.hx = np.zeros(n_dual)
        self.z = np.zeros(n_dual)
        self.res = np.zeros(n_dual)
        self.y_plus = np.zeros(n_dual)
        self.f = 0.0
        self.g = 0.0
        self.merit = np.inf
        self.infeasibility = np.inf


class EnvelopeOracle:
    def __init__(self, oracle: FactorStepOracle, cmap: ConstraintMap, prox: ProximalOperator):
        if oracle.layout not in ("node", "dim"):
            raise ValueError(f"unknown oracle layout {oracle.layout!r}")
        self.oracle = oracle
        self.cmap = cmap
        self.prox = prox
        n, nx, nu = cmap.n_nodes, cmap.nx, cmap.nu
        self._wx = np.zeros((n, nx))
        self._wu = np.zeros((n, nu))
        self._dwx = np.zeros((n, nx))
        self._dwu = np.zeros((n, nu))
        self._dx = np.zeros((n, nx))
        self._du = np.zeros((n, nu))
        self._r = np.zeros(cmap.n_dual)
        self.n_solves = 0
        self.n_hessian = 0
        if oracle.layout == "dim":
            # dimension-major staging buffers
            self._t_wx = np.zeros(nx * n)
            self._t_wu = np.zeros(nu * n)
            self._t_x = np.zeros(nx * n)
            self._t_u = np.zeros(nu * n)

    # ------------------------------------------------------------------ #
    # Primal solve (layout handling + output checks)
    # ------------------------------------------------------------------ #
    def _primal(self, wx, wu, x, u, linear: bool) -> None:
        oracle = self.oracle
        call = oracle.hessian if linear else oracle.solve
        if oracle.layout == "node":
            call(wx, wu, x, u)
        else:
            n, nx, nu = self.cmap.n_nodes, self.cmap.nx, self.cmap.nu
            layout_shuffle(self._t_wx, wx.reshape(-1), nx, n)
            layout_shuffle(self._t_wu, wu.reshape(-1), nu, n)
            call(self._t_wx.reshape(nx, n), self._t_wu.reshape(nu, n),
                 self._t_x.reshape(nx, n), self._t_u.reshape(nu, n))
            layout_shuffle(x.reshape(-1), self._t_x, n, nx)
            layout_shuffle(u.reshape(-1), self._t_u, n, nu)
        _check_finite("primal state/control", x, u)
        if linear:
            self.n_hessian += 1
        else:
            self.n_solves += 1

    # ------------------------------------------------------------------ #
    # Evaluation pass
    # ------------------------------------------------------------------ #
    def evaluate(self, y: np.ndarray, gamma: float, ev: Evaluation) -> Evaluation:
        """H^T y -> oracle -> Hx -> prox -> dual ascent -> residual -> merit."""
        cmap = self.cmap
        cmap.adjoint(y, self._wx, self._wu)
        self._primal(self._wx, self._wu, ev.x, ev.u, linear=False)
        cmap.forward(ev.x, ev.u, ev.hx)
        g_xi, g_psi = self.prox.apply(ev.hx, y, gamma, ev.z)
        self.compute_fixed_point_residual(ev)
        dual_ascent_update(ev.y_plus, y, ev.hx, ev.z, gamma)
        ev.f = self.oracle.objective(ev.x, ev.u)
        ev.g = g_xi + g_psi
        ev.infeasibility = float(np.max(np.abs(ev.res))) if ev.res.size else 0.0
        ev.merit = self.compute_value_fbe(ev, y, gamma)
        return ev

    @staticmethod
    def compute_fixed_point_residual(ev: Evaluation) -> np.ndarray:
        np.subtract(ev.hx, ev.z, out=ev.res)
        return ev.res

    @staticmethod
    def compute_value_fbe(ev: Evaluation, y: np.ndarray, gamma: float) -> float:
        r = ev.res
        return -(ev.f + ev.g + float(np.dot(y, r)) + 0.5 * gamma * float(np.dot(r, r)))

    def compute_hessian_oracle(self, d: np.ndarray, out: np.ndarray) -> np.ndarray:
        """out = H K H^T d (the negated Hessian of the smooth dual term)."""
        cmap = self.cmap
        cmap.adjoint(d, self._dwx, self._dwu)
        self._primal(self._dwx, self._dwu, self._dx, self._du, linear=True)
        cmap.forward(self._dx, self._du, out)
        return out

    def compute_gradient_fbe(self, ev: Evaluation, gamma: float, out: np.ndarray) -> np.ndarray:
        r = np.negative(ev.res, out=self._r)
        self.compute_hessian_oracle(r, out)
        out *= gamma
        out += r
        return out

    # ------------------------------------------------------------------ #
    # Step size
    # ------------------------------------------------------------------ #
    def estimate_lipschitz(self, cfg: DualConfig) -> float:
        """Largest eigenvalue of -H K H^T (Lipschitz constant of grad F)."""
        n = self.cmap.n_dual
        out = np.empty(n)

        def matvec(v: np.ndarray) -> np.ndarray:
            self.compute_hessian_oracle(np.ascontiguousarray(v, dtype=np.float64).ravel(), out)
            return -out.copy()

        if n <= cfg.dense_threshold:
            M = np.empty((n, n))
            e = np.zeros(n)
            for j in range(n):
                e[j] = 1.0
                M[:, j] = matvec(e)
                e[j] = 0.0
            lam = float(la.eigvalsh(0.5 * (M + M.T))[-1])
        else:
            rng = np.random.default_rng(cfg.seed)
            op = spla.LinearOperator((n, n), matvec=matvec, dtype=np.float64)
            try:
                vals = spla.eigsh(
                    op, k=1, which="LA", maxiter=cfg.lipschitz_iters, tol=1e-6,
                    v0=rng.standard_normal(n), return_eigenvectors=False,
                )
                lam = float(vals[0])
            except spla.ArpackNoConvergence:
                logging.debug("[Envelope] eigsh did not converge; using power iteration")
                lam = _power_iteration(matvec, n, cfg.lipschitz_iters, rng)

        if not np.isfinite(lam) or lam <= 0.0:
            logging.warning(f"[Envelope] degenerate dual curvature (L={lam}); using L=1")
            lam = 1.0
        return lam * cfg.lipschitz_margin


def _power_iteration(
    matvec: Callable[[np.ndarray], np.ndarray], n: int, iters: int, rng: Optional[np.random.Generator] = None
) -> float:
    rng = rng if rng is not None else np.random.default_rng(0)
    v = rng.standard_normal(n)
    v /= np.linalg.norm(v)
    lam = 0.0
    for _ in range(max(1, iters)):
        w = matvec(v)
        nw = float(np.linalg.norm(w))
        if nw == 0.0:
            return 0.0
        lam = float(np.dot(v, w))
        v = w / nw
    return lam
