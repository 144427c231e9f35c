from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np

from .blocks.aux import _as_float_array
from .blocks.kernels import compute_extrapolation_delta
from .tree import ScenarioTree


@dataclass
class KpiRecord:
    economic: float
    smoothness: float
    safety: float
    network: float
    plan_smoothness: float


@dataclass
class KpiTracker:
    """
    Per-step key performance indicators of the applied control.

    * economic   : price_0' u_0
    * smoothness : ||u_0 - u_prev||^2 (zero at the first step)
    * safety     : ||max(x_safe - x_0, 0)||^2
    * network    : sum_j (u_0j / u_max_j)^2
    * plan_smoothness : sum_i p_i ||u_i - u_anc(i)||^2 over the planned tree,
      the root differenced against the previously applied control
    """

    tree: ScenarioTree
    x_safe: np.ndarray
    u_max: np.ndarray
    records: List[KpiRecord] = field(default_factory=list)
    _u_prev: Optional[np.ndarray] = field(default=None, repr=False)

    def __post_init__(self):
        self.x_safe = _as_float_array(self.x_safe).ravel()
        self.u_max = _as_float_array(self.u_max).ravel()
        # entries with no finite positive capacity do not count towards network usage
        cap = np.abs(self.u_max)
        self._inv_cap = np.where(np.isfinite(cap) & (cap > 0.0), 1.0 / np.where(cap > 0.0, cap, 1.0), 0.0)

    @property
    def n_steps(self) -> int:
        return len(self.records)

    def reset(self) -> None:
        self.records.clear()
        self._u_prev = None

    def plan_smoothness(self, u_plan: np.ndarray, u_prev: Optional[np.ndarray] = None) -> float:
        u_plan = _as_float_array(u_plan)
        root_ref = u_plan[0] if u_prev is None else _as_float_array(u_prev).ravel()
        delta = compute_extrapolation_delta(
            u_plan, u_plan, self.tree.ancestor, root_ref, np.empty_like(u_plan)
        )
        return float(np.dot(self.tree.prob, np.einsum("ij,ij->i", delta, delta)))

    def record(self, u_plan: np.ndarray, x_plan: np.ndarray, price0: np.ndarray) -> KpiRecord:
        u_plan = _as_float_array(u_plan)
        x0 = _as_float_array(x_plan)[0]
        u0 = u_plan[0]
        price0 = _as_float_array(price0).ravel()

        economic = float(np.dot(price0, u0))
        smooth = 0.0 if self._u_prev is None else float(np.sum((u0 - self._u_prev) ** 2))
        gap = self.x_safe - x0
        safety = float(np.sum(np.where(gap > 0.0, gap, 0.0) ** 2))
        network = float(np.sum((u0 * self._inv_cap) ** 2))
        plan = self.plan_smoothness(u_plan, self._u_prev)

        rec = KpiRecord(economic, smooth, safety, network, plan)
        self.records.append(rec)
        self._u_prev = u0.copy()
        logging.debug(
            f"[KPI] step={self.n_steps - 1} economic={economic:.4e} smooth={smooth:.4e} "
            f"safety={safety:.4e} network={network:.4e}"
        )
        return rec

    def totals(self, horizon: Optional[int] = None) -> Dict[str, float]:
        """Sums of each indicator over the first `horizon` recorded steps."""
        recs = self.records if horizon is None else self.records[: max(0, int(horizon))]
        return {
            "economic": float(sum(r.economic for r in recs)),
            "smoothness": float(sum(r.smoothness for r in recs)),
            "safety": float(sum(r.safety for r in recs)),
            "network": float(sum(r.network for r in recs)),
            "plan_smoothness": float(sum(r.plan_smoothness for r in recs)),
        }

    def as_arrays(self) -> Dict[str, np.ndarray]:
        return {
            name: np.asarray([getattr(r, name) for r in self.records], dtype=float)
            for name in ("economic", "smoothness", "safety", "network", "plan_smoothness")
        }
