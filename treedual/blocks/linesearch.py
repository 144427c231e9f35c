import logging
from typing import Callable, Tuple

import numpy as np

from .aux import DualConfig


class LineSearcher:
    """Backtracking line searches for the quasi-Newton dual variants.

    - `search_fbe(...)`: Armijo on the forward-backward envelope along y + τ d.
    - `search_ame(...)`: residual-based sufficient decrease along
                         y - (1-τ) R + τ d, where τ → 0 is the plain
                         forward-backward step.

    Both take a `merit_at(τ)` callback that evaluates the trial point (and
    leaves that evaluation in place for the caller), and both return
    `(τ, iters, accepted)`. A rejected search means the caller falls back to
    the plain forward-backward step for this iteration.
    """

    def __init__(self, cfg: DualConfig):
        self.cfg = cfg
        self.backtrack = cfg.ls_backtrack
        self.armijo = cfg.ls_armijo
        self.max_iter = cfg.ls_max_iter
        self.tau_max = cfg.ls_tau_max
        self.n_calls = 0
        self.n_fallbacks = 0

    # ------------------------- envelope (global FBE) -------------------------
    def search_fbe(
        self, merit_at: Callable[[float], float], merit0: float, slope: float,
    ) -> Tuple[float, int, bool]:
        """
        Armijo backtracking: accept the first (largest) τ with
            φ(y + τ d) <= φ(y) + c τ ∇φ(y)ᵀd.
        """
        self.n_calls += 1
        if not np.isfinite(merit0) or slope >= 0.0:
            # non-descent direction
            self.n_fallbacks += 1
            logging.debug(f"[LineSearch] FBE: non-descent direction (slope={slope:.3e})")
            return 0.0, 0, False

        tau = self.tau_max
        it = 0
        while it < self.max_iter:
            phi_t = merit_at(tau)
            it += 1
            if np.isfinite(phi_t) and phi_t <= merit0 + self.armijo * tau * slope:
                return tau, it, True
            tau *= self.backtrack

        self.n_fallbacks += 1
        logging.debug(f"[LineSearch] FBE: backtracking exhausted after {it} trials (tau={tau:.2e})")
        return 0.0, it, False

    # ------------------------- residual-based (NAMA) -------------------------
    def search_ame(
        self, merit_at: Callable[[float], float], merit0: float, res_sq: float, sigma: float,
    ) -> Tuple[float, int, bool]:
        """
        Backtracking on the blended step with sufficient decrease
            φ(trial) <= φ(y) - σ ||Hx - z||².
        """
        self.n_calls += 1
        if not np.isfinite(merit0):
            self.n_fallbacks += 1
            return 0.0, 0, False

        bound = merit0 - sigma * res_sq
        tau = self.tau_max
        it = 0
        while it < self.max_iter:
            phi_t = merit_at(tau)
            it += 1
            if np.isfinite(phi_t) and phi_t <= bound:
                return tau, it, True
            tau *= self.backtrack

        self.n_fallbacks += 1
        logging.debug(f"[LineSearch] AME: backtracking exhausted after {it} trials (tau={tau:.2e})")
        return 0.0, it, False
