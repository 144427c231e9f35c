from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Dict, List, Optional

import numpy as np

from .blocks.aux import Algorithm, DualConfig, ExitStatus
from .blocks.kernels import dual_extrapolate
from .blocks.lbfgs import LbfgsBuffer
from .blocks.linesearch import LineSearcher
from .blocks.prox import ConstraintBounds, ConstraintMap, ProximalOperator
from .envelope import EnvelopeOracle, Evaluation
from .oracle import FactorStepOracle
from .tree import ScenarioTree

Array = np.ndarray


# ----------------------------- dual vector slots -------------------------- #


class Slot(IntEnum):
    CURRENT = 0
    PREVIOUS = 1
    EXTRAPOLATED = 2
    UPDATED = 3
    TRIAL = 4
    DIRECTION = 5
    GRADIENT = 6
    PREV_GRADIENT = 7
    RESIDUAL = 8
    PREV_RESIDUAL = 9
    PREV_ITERATE = 10
    SCRATCH = 11


class DualBank:
    """
    Named copies of the flat dual vector `[xi | psi]` in one arena.

    Each slot maps to its own arena row; `advance` and `swap` permute that
    mapping and never copy data, so two slots can never share a row.
    """

    def __init__(self, n_dual: int):
        self.n_dual = int(n_dual)
        self.data = np.zeros((len(Slot), self.n_dual))
        self._row = np.arange(len(Slot))

    def __getitem__(self, slot: Slot) -> Array:
        return self.data[self._row[slot]]

    def row(self, slot: Slot) -> int:
        return int(self._row[slot])

    def swap(self, a: Slot, b: Slot) -> None:
        self._row[a], self._row[b] = self._row[b], self._row[a]

    def advance(self, *slots: Slot) -> None:
        """advance(A, B, C): A takes B's row, B takes C's row, C recycles A's."""
        rows = [self._row[s] for s in slots]
        for s, r in zip(slots, rows[1:] + rows[:1]):
            self._row[s] = r

    def copy(self, dst: Slot, src: Slot) -> None:
        self[dst][:] = self[src]

    def zero(self, *slots: Slot) -> None:
        for s in slots:
            self[s].fill(0.0)


def update_fixed_point_residual_nama(bank: DualBank) -> None:
    """Roll RESIDUAL -> PREV_RESIDUAL after a NAMA iteration."""
    bank.swap(Slot.RESIDUAL, Slot.PREV_RESIDUAL)


# ----------------------------- logging structs ---------------------------- #


class SolverState(Enum):
    INITIALIZED = "initialized"
    ITERATING = "iterating"
    CONVERGED = "converged"
    MAX_ITER_REACHED = "max_iter_reached"


@dataclass
class History:
    infeasibility: List[float] = field(default_factory=list)
    merit: List[float] = field(default_factory=list)
    tau: List[float] = field(default_factory=list)
    iters: int = 0
    converged: bool = False
    reason: str = ""

    def as_arrays(self) -> Dict[str, Array]:
        return {
            "infeasibility": np.asarray(self.infeasibility, dtype=float),
            "merit": np.asarray(self.merit, dtype=float),
            "tau": np.asarray(self.tau, dtype=float),
        }


@dataclass
class SolveInfo:
    status: ExitStatus
    iterations: int
    infeasibility: float
    x: Array
    u: Array
    step_size: float
    history: History
    ls_fallbacks: int = 0
    lbfgs_skips: int = 0
    elapsed: float = 0.0

    def has_converged(self) -> bool:
        return self.status is ExitStatus.CONVERGED


# ----------------------------- variant strategies ------------------------- #


class _Variant:
    """
    One iteration scheme plugged into the shared loop.

    `evaluate(k)` returns the evaluation whose infeasibility is tested at
    iteration k, `advance(k)` moves the dual iterate, and `finish()` leaves
    the certified dual point in CURRENT and PREVIOUS for warm starts.
    """

    algorithm: Algorithm

    def __init__(self, solver: "DualDecompositionSolver"):
        self.s = solver

    def reset(self) -> None:
        pass

    def evaluate(self, k: int) -> Evaluation:
        raise NotImplementedError

    def advance(self, k: int) -> None:
        raise NotImplementedError

    def finish(self) -> None:
        bank = self.s.bank
        bank.copy(Slot.PREVIOUS, Slot.CURRENT)


class _Apg(_Variant):
    algorithm = Algorithm.APG

    def reset(self) -> None:
        self.theta = 1.0
        self.theta_prev = 1.0

    def evaluate(self, k: int) -> Evaluation:
        s = self.s
        bank = s.bank
        alpha = self.theta * (1.0 / self.theta_prev - 1.0)
        dual_extrapolate(bank[Slot.EXTRAPOLATED], bank[Slot.CURRENT], bank[Slot.PREVIOUS], alpha)
        return s.env.evaluate(bank[Slot.EXTRAPOLATED], s.gamma, s.cur)

    def advance(self, k: int) -> None:
        s = self.s
        bank = s.bank
        bank[Slot.UPDATED][:] = s.cur.y_plus
        bank.advance(Slot.PREVIOUS, Slot.CURRENT, Slot.UPDATED)
        th = self.theta
        self.theta_prev = th
        self.theta = 0.5 * (np.sqrt(th**4 + 4.0 * th**2) - th**2)

    def finish(self) -> None:
        # the primal pair was computed at the extrapolated point
        bank = self.s.bank
        bank.copy(Slot.CURRENT, Slot.EXTRAPOLATED)
        bank.copy(Slot.PREVIOUS, Slot.EXTRAPOLATED)


class _QuasiNewton(_Variant):
    """Shared state of the two L-BFGS variants."""

    def reset(self) -> None:
        self.s.lbfgs.reset()
        self.have_cur = False
        self.have_prev = False

    def evaluate(self, k: int) -> Evaluation:
        s = self.s
        if not self.have_cur:
            s.env.evaluate(s.bank[Slot.CURRENT], s.gamma, s.cur)
            self.have_cur = True
        return s.cur

    def _curvature(self, src: Slot, prev_src: Slot) -> None:
        bank = self.s.bank
        if self.have_prev:
            ds = np.subtract(bank[Slot.CURRENT], bank[Slot.PREV_ITERATE], out=bank[Slot.SCRATCH])
            dy = np.subtract(bank[src], bank[prev_src], out=bank[Slot.DIRECTION])
            self.s.lbfgs.update(ds, dy)

    def _trial_merit(self, tau: float) -> float:
        s = self.s
        self._fill_trial(tau)
        return s.env.evaluate(s.bank[Slot.TRIAL], s.gamma, s.trial).merit

    def _fill_trial(self, tau: float) -> None:
        raise NotImplementedError

    def _accept(self, tau: float, accepted: bool) -> None:
        s = self.s
        bank = s.bank
        if accepted:
            s.swap_evaluations()
        else:
            # plain forward-backward step T(y)
            bank[Slot.TRIAL][:] = s.cur.y_plus
            self.have_cur = False
        bank.advance(Slot.PREV_ITERATE, Slot.CURRENT, Slot.TRIAL)
        self.have_prev = True
        s.history.tau.append(tau if accepted else 0.0)


class _GlobalFbe(_QuasiNewton):
    algorithm = Algorithm.GLOBAL_FBE

    def advance(self, k: int) -> None:
        s = self.s
        bank = s.bank
        g = s.env.compute_gradient_fbe(s.cur, s.gamma, bank[Slot.GRADIENT])
        self._curvature(Slot.GRADIENT, Slot.PREV_GRADIENT)

        d = s.lbfgs.two_loop(g, out=bank[Slot.DIRECTION])
        np.negative(d, out=d)
        slope = float(np.dot(g, d))
        if slope >= 0.0:
            logging.debug(f"[DualSolver] FBE: L-BFGS direction not descent (slope={slope:.3e}), using -grad")
            np.negative(g, out=d)
            slope = -float(np.dot(g, g))

        tau, _, ok = s.linesearch.search_fbe(self._trial_merit, s.cur.merit, slope)
        self._accept(tau, ok)
        bank.swap(Slot.GRADIENT, Slot.PREV_GRADIENT)

    def _fill_trial(self, tau: float) -> None:
        bank = self.s.bank
        t = bank[Slot.TRIAL]
        np.multiply(bank[Slot.DIRECTION], tau, out=t)
        t += bank[Slot.CURRENT]


class _Nama(_QuasiNewton):
    algorithm = Algorithm.NAMA

    def reset(self) -> None:
        super().reset()
        s = self.s
        L = s.lipschitz if s.lipschitz is not None else 1.0 / s.gamma
        self.sigma = s.cfg.ls_ame_beta * s.gamma * max(1.0 - s.gamma * L, 0.0) / 2.0

    def advance(self, k: int) -> None:
        s = self.s
        bank = s.bank
        # R = y - T(y) = -gamma (Hx - z)
        R = np.subtract(bank[Slot.CURRENT], s.cur.y_plus, out=bank[Slot.RESIDUAL])
        self._curvature(Slot.RESIDUAL, Slot.PREV_RESIDUAL)

        d = s.lbfgs.two_loop(R, out=bank[Slot.DIRECTION])
        np.negative(d, out=d)

        res_sq = float(np.dot(s.cur.res, s.cur.res))
        tau, _, ok = s.linesearch.search_ame(self._trial_merit, s.cur.merit, res_sq, self.sigma)
        self._accept(tau, ok)
        update_fixed_point_residual_nama(bank)

    def _fill_trial(self, tau: float) -> None:
        # y - (1 - tau) R + tau d
        bank = self.s.bank
        t = bank[Slot.TRIAL]
        np.multiply(bank[Slot.RESIDUAL], tau - 1.0, out=t)
        t += bank[Slot.CURRENT]
        t += tau * bank[Slot.DIRECTION]


_VARIANTS = {v.algorithm: v for v in (_Apg, _GlobalFbe, _Nama)}


# ------------------------------- the solver ------------------------------- #


class DualDecompositionSolver:
    """
    Dual decomposition of the scenario-tree problem

        min  f(x, u) + g(H(x, u))

    iterating on the multipliers of the constraint groups (xi, psi). The
    oracle solves the primal for H^T y, the proximal operator handles g, and
    the configured variant (APG, global FBE or NAMA) updates y until the
    primal infeasibility ||Hx - z||_inf drops below `cfg.tol`.

    Call `oracle.factor(...)`, then `initialise_algorithm()`, then `solve()`.
    """

    def __init__(
        self,
        tree: ScenarioTree,
        oracle: FactorStepOracle,
        bounds: ConstraintBounds,
        cfg: Optional[DualConfig] = None,
    ):
        self.cfg = (cfg or DualConfig()).validate()
        if oracle.tree is not tree and not (
            np.array_equal(oracle.tree.ancestor, tree.ancestor)
            and np.array_equal(oracle.tree.prob, tree.prob)
        ):
            raise ValueError("oracle was built for a different scenario tree")
        self.tree = tree
        self.oracle = oracle
        self.algorithm = self.cfg.variant

        n, nx, nu = tree.n_nodes, oracle.nx, oracle.nu
        self.cmap = ConstraintMap(n, nx, nu)
        self.prox = ProximalOperator(
            self.cmap, bounds, tree.prob, xi_scale=self.cfg.xi_scale, psi_scale=self.cfg.psi_scale
        )
        self.env = EnvelopeOracle(oracle, self.cmap, self.prox)
        self.bank = DualBank(self.cmap.n_dual)
        self.cur = Evaluation(n, nx, nu, self.cmap.n_dual)
        self.trial = Evaluation(n, nx, nu, self.cmap.n_dual)
        self.lbfgs = LbfgsBuffer(self.cmap.n_dual, self.cfg.lbfgs_memory, self.cfg.lbfgs_curv_eps)
        self.linesearch = LineSearcher(self.cfg)

        self.gamma: float = np.nan
        self.lipschitz: Optional[float] = self.cfg.lipschitz
        self.history = History()
        self.info: Optional[SolveInfo] = None
        self.state: Optional[SolverState] = None
        self._variants: Dict[Algorithm, _Variant] = {}
        self._n_initialised = 0

        logging.debug(
            f"[DualSolver] algorithm={self.algorithm.value} nodes={n} nx={nx} nu={nu} "
            f"n_dual={self.cmap.n_dual}"
        )

    # ------------------------------------------------------------------ #
    # Setup
    # ------------------------------------------------------------------ #
    def _variant(self, algorithm: Algorithm) -> _Variant:
        if algorithm not in self._variants:
            self._variants[algorithm] = _VARIANTS[algorithm](self)
        return self._variants[algorithm]

    def swap_evaluations(self) -> None:
        self.cur, self.trial = self.trial, self.cur

    def _determine_step_size(self) -> None:
        cfg = self.cfg
        need_l = cfg.step_size is None or self.algorithm is Algorithm.NAMA
        if self.lipschitz is None and need_l:
            t0 = time.perf_counter()
            self.lipschitz = self.env.estimate_lipschitz(cfg)
            logging.debug(
                f"[DualSolver] Lipschitz estimate L={self.lipschitz:.6e} "
                f"({time.perf_counter() - t0:.3f}s)"
            )
        if cfg.step_size is not None:
            self.gamma = float(cfg.step_size)
        else:
            self.gamma = cfg.step_size_scale / self.lipschitz

    def initialise_algorithm(self) -> None:
        """Reset per-solve state; keep the last dual point when warm starting."""
        bank = self.bank
        if not self.cfg.warm_start or self._n_initialised == 0:
            bank.zero(Slot.CURRENT)
        bank.copy(Slot.PREVIOUS, Slot.CURRENT)
        bank.zero(Slot.PREV_ITERATE, Slot.GRADIENT, Slot.PREV_GRADIENT, Slot.RESIDUAL, Slot.PREV_RESIDUAL)
        self.lbfgs.reset()
        self._determine_step_size()
        for v in self._variants.values():
            v.reset()
        self.history = History()
        self.info = None
        self.state = SolverState.INITIALIZED
        self._n_initialised += 1

    # ------------------------------------------------------------------ #
    # Main loop
    # ------------------------------------------------------------------ #
    def _run(self, variant: _Variant) -> SolveInfo:
        if self.state is not SolverState.INITIALIZED:
            raise RuntimeError("call initialise_algorithm() before solve()")
        cfg = self.cfg
        hist = self.history
        variant.reset()
        skips0 = self.lbfgs.skip_count
        fallbacks0 = self.linesearch.n_fallbacks
        self.state = SolverState.ITERATING
        t0 = time.perf_counter()

        status = ExitStatus.MAX_ITER_REACHED
        ev = self.cur
        k = 0
        for k in range(cfg.max_iter):
            ev = variant.evaluate(k)
            hist.infeasibility.append(ev.infeasibility)
            hist.merit.append(ev.merit)
            logging.debug(
                f"[DualSolver] it={k:4d} infeas={ev.infeasibility:.3e} "
                f"merit={ev.merit:.6e} f={ev.f:.6e}"
            )
            if ev.infeasibility < cfg.tol:
                status = ExitStatus.CONVERGED
                break
            variant.advance(k)

        variant.finish()
        elapsed = time.perf_counter() - t0
        hist.iters = k + 1
        hist.converged = status is ExitStatus.CONVERGED
        hist.reason = status.value
        self.state = (
            SolverState.CONVERGED if hist.converged else SolverState.MAX_ITER_REACHED
        )

        self.info = SolveInfo(
            status=status,
            iterations=hist.iters,
            infeasibility=float(ev.infeasibility),
            x=ev.x.copy(),
            u=ev.u.copy(),
            step_size=self.gamma,
            history=hist,
            ls_fallbacks=self.linesearch.n_fallbacks - fallbacks0,
            lbfgs_skips=self.lbfgs.skip_count - skips0,
            elapsed=elapsed,
        )
        summary = (
            f"[DualSolver] {variant.algorithm.value}: {status.value} after {hist.iters} it, "
            f"infeas={ev.infeasibility:.3e}, f={ev.f:.6e}, {elapsed:.3f}s"
        )
        if hist.converged:
            if cfg.verbose:
                logging.info(summary)
        else:
            logging.warning(summary)
        return self.info

    def algorithm_apg(self) -> float:
        return self._run(self._variant(Algorithm.APG)).infeasibility

    def algorithm_global_fbe(self) -> float:
        return self._run(self._variant(Algorithm.GLOBAL_FBE)).infeasibility

    def algorithm_nama(self) -> float:
        return self._run(self._variant(Algorithm.NAMA)).infeasibility

    def solve(self) -> SolveInfo:
        entry = {
            Algorithm.APG: self.algorithm_apg,
            Algorithm.GLOBAL_FBE: self.algorithm_global_fbe,
            Algorithm.NAMA: self.algorithm_nama,
        }[self.algorithm]
        entry()
        return self.info
