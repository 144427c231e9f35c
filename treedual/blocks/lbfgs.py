from __future__ import annotations

import logging
from typing import List, Optional

import numpy as np


class LbfgsBuffer:
    """
    Fixed-capacity ring of curvature pairs (s_k, y_k, rho_k).

    Accepted pairs are written at `col`, which then advances modulo `memory`;
    the valid range is the last `count` (at most `memory`) writes. Pairs that
    fail the curvature test are dropped and only bump `skip_count`.
    """

    def __init__(self, n: int, memory: int = 5, curv_eps: float = 1e-12):
        if memory < 1:
            raise ValueError(f"memory must be positive, got {memory}")
        self.n = int(n)
        self.memory = int(memory)
        self.curv_eps = float(curv_eps)
        self.S = np.zeros((self.memory, self.n))
        self.Y = np.zeros((self.memory, self.n))
        self.rho = np.zeros(self.memory)
        self._alpha = np.zeros(self.memory)
        self.col = 0
        self.count = 0
        self.skip_count = 0
        self.hessian = 1.0  # initial inverse-Hessian diagonal H0 = gamma_k * I

    def reset(self) -> None:
        self.col = 0
        self.count = 0
        self.hessian = 1.0

    def update(self, s: np.ndarray, y: np.ndarray) -> bool:
        ys = float(np.dot(s, y))
        ss = float(np.dot(s, s))
        yy = float(np.dot(y, y))
        if not np.isfinite(ys) or ys <= 0.0 or ys <= self.curv_eps * np.sqrt(ss * yy):
            self.skip_count += 1
            logging.debug(f"[LBFGS] curvature pair rejected: y's={ys:.3e}, skips={self.skip_count}")
            return False

        self.S[self.col] = s
        self.Y[self.col] = y
        self.rho[self.col] = 1.0 / ys
        self.col = (self.col + 1) % self.memory
        self.count = min(self.count + 1, self.memory)
        self.hessian = ys / yy
        return True

    def indices(self) -> List[int]:
        """Ring positions of the valid pairs, most recent first."""
        return [(self.col - 1 - i) % self.memory for i in range(self.count)]

    def two_loop(self, g: np.ndarray, out: Optional[np.ndarray] = None) -> np.ndarray:
        """Approximate inverse-Hessian product H_k g (negate it for a direction)."""
        if out is None:
            out = np.empty_like(g)
        q = out
        q[...] = g
        idx = self.indices()
        alpha = self._alpha
        for i in idx:
            alpha[i] = self.rho[i] * float(np.dot(self.S[i], q))
            q -= alpha[i] * self.Y[i]
        q *= self.hessian
        for i in reversed(idx):
            beta = self.rho[i] * float(np.dot(self.Y[i], q))
            q += (alpha[i] - beta) * self.S[i]
        return q
