# aux.py
# Shared configuration, enums and small array helpers for the dual
# decomposition stack.

from __future__ import annotations

# =========================
# Standard library
# =========================
import logging
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Sequence

# =========================
# Third-party
# =========================
import numpy as np


# ======================================
# Enums
# ======================================
class Algorithm(Enum):
    """Supported dual iteration schemes."""

    APG = "apg"
    GLOBAL_FBE = "global_fbe"
    NAMA = "nama"


class ExitStatus(Enum):
    """Why a dual solve stopped."""

    CONVERGED = "converged"
    MAX_ITER_REACHED = "max_iter_reached"


class TreeStructureError(ValueError):
    """Malformed scenario-tree index tables."""


# ======================================
# Global configuration
# ======================================
@dataclass
class DualConfig:
    """
    Configuration for the dual decomposition controller.

    Notes
    -----
    • Loaded once per controller; never mutated during a control step.
    • `step_size=None` means gamma = step_size_scale / L, with L estimated
      from the Hessian oracle unless `lipschitz` is given.
    """

    # ---------------- Core toggles ----------------
    algorithm: str = "apg"  # {"apg","global_fbe","nama"}
    verbose: bool = False
    warm_start: bool = True

    # ---------------- Termination ----------------
    max_iter: int = 500
    tol: float = 1e-4

    # ---------------- Step size ----------------
    step_size: Optional[float] = None
    step_size_scale: float = 0.95
    lipschitz: Optional[float] = None
    lipschitz_margin: float = 1.05
    lipschitz_iters: int = 300
    dense_threshold: int = 400  # dual sizes up to this use a dense eigensolve

    # ---------------- L-BFGS ----------------
    lbfgs_memory: int = 5
    lbfgs_curv_eps: float = 1e-12

    # ---------------- Line search ----------------
    ls_backtrack: float = 0.5
    ls_max_iter: int = 10
    ls_armijo: float = 1e-4
    ls_tau_max: float = 1.0
    ls_ame_beta: float = 0.5

    # ---------------- Preconditioning ----------------
    xi_scale: Optional[Sequence[float]] = None  # length 2*nx
    psi_scale: Optional[Sequence[float]] = None  # length nu

    seed: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DualConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"unknown config keys: {unknown}")
        cfg = cls(**dict(data))
        return cfg.validate()

    @property
    def variant(self) -> Algorithm:
        return Algorithm(self.algorithm)

    def validate(self) -> "DualConfig":
        try:
            Algorithm(self.algorithm)
        except ValueError:
            raise ValueError(
                f"algorithm must be one of {[a.value for a in Algorithm]}, got {self.algorithm!r}"
            ) from None
        if self.max_iter < 1:
            raise ValueError(f"max_iter must be positive, got {self.max_iter}")
        if self.tol <= 0:
            raise ValueError(f"tol must be positive, got {self.tol}")
        if self.lbfgs_memory < 1:
            raise ValueError(f"lbfgs_memory must be positive, got {self.lbfgs_memory}")
        if self.step_size is not None and self.step_size <= 0:
            raise ValueError(f"step_size must be positive, got {self.step_size}")
        if self.lipschitz is not None and self.lipschitz <= 0:
            raise ValueError(f"lipschitz must be positive, got {self.lipschitz}")

        # basic param guards
        self.ls_backtrack = float(max(1e-4, min(0.99, self.ls_backtrack)))
        self.ls_armijo = float(max(1e-12, min(0.5, self.ls_armijo)))
        self.ls_max_iter = int(max(1, self.ls_max_iter))
        self.ls_tau_max = float(max(1e-12, self.ls_tau_max))
        self.ls_ame_beta = float(max(0.0, min(1.0, self.ls_ame_beta)))
        self.step_size_scale = float(max(1e-6, min(1.0, self.step_size_scale)))
        self.lipschitz_margin = float(max(1.0, self.lipschitz_margin))
        return self

    def as_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


# ======================================
# Array helpers
# ======================================
def _as_float_array(a, shape=None) -> np.ndarray:
    out = np.ascontiguousarray(a, dtype=np.float64)
    if shape is not None and out.shape != shape:
        out = out.reshape(shape)
    return out


def _as_index_array(a) -> np.ndarray:
    return np.ascontiguousarray(a, dtype=np.int64)


def _per_node(v, n_nodes: int, width: int, name: str) -> np.ndarray:
    """Broadcast a vector (width,) or table (n_nodes, width) to (n_nodes, width)."""
    a = np.asarray(v, dtype=np.float64)
    if a.ndim == 0:
        a = np.full(width, float(a))
    if a.ndim == 1:
        if a.size != width:
            raise ValueError(f"{name} has length {a.size}, expected {width}")
        a = np.broadcast_to(a, (n_nodes, width))
    if a.shape != (n_nodes, width):
        raise ValueError(f"{name} has shape {a.shape}, expected ({n_nodes}, {width})")
    return np.array(a, dtype=np.float64)


def _check_finite(name: str, *arrays: np.ndarray) -> None:
    for a in arrays:
        if not np.isfinite(a).all():
            logging.error(f"[Oracle] non-finite values in {name}")
            raise RuntimeError(f"Oracle returned non-finite {name}")
