from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

import numpy as np

from .blocks.aux import DualConfig, ExitStatus, _as_float_array, _per_node
from .blocks.prox import ConstraintBounds
from .dual import DualDecompositionSolver, SolveInfo
from .kpi import KpiTracker
from .oracle import FactorStepOracle, Forecast, Forecaster
from .tree import ScenarioTree


class Controller:
    """
    Receding-horizon controller around the dual decomposition solver.

    Per real-time step:
        ctrl.initialise(measured_state)        # factor step + solver reset
        u0, status = ctrl.control_action()     # dual iterations, KPI update

    `control_action` never raises on the iteration cap; the returned status
    tells the caller whether the plan was certified feasible.
    """

    def __init__(
        self,
        tree: ScenarioTree,
        oracle: FactorStepOracle,
        bounds: ConstraintBounds,
        cfg: Optional[DualConfig] = None,
        forecaster: Optional[Forecaster] = None,
    ):
        self.cfg = cfg if cfg is not None else DualConfig()
        self.tree = tree
        self.oracle = oracle
        self.forecaster = forecaster
        self.solver = DualDecompositionSolver(tree, oracle, bounds, self.cfg)

        _, _, x_safe, _, u_max = bounds.per_node(tree.n_nodes, oracle.nx, oracle.nu)
        self.kpi = KpiTracker(tree, x_safe[0], u_max[0])

        self.step = 0
        self.state: Optional[np.ndarray] = None
        self.forecast: Optional[Forecast] = None
        self.last_info: Optional[SolveInfo] = None
        self._ready = False

    def initialise(self, state, forecast: Optional[Forecast] = None) -> None:
        """Ingest the measured state (and forecast) for the next control step."""
        state = _as_float_array(state).ravel()
        if state.size != self.oracle.nx:
            raise ValueError(f"state has length {state.size}, expected {self.oracle.nx}")
        if forecast is None:
            if self.forecaster is None:
                raise ValueError("no forecast given and no forecaster configured")
            forecast = self.forecaster.forecast(self.step, state)

        self.state = state
        self.forecast = forecast
        self.oracle.factor(state, forecast)
        self.solver.initialise_algorithm()
        self._ready = True

    def control_action(self) -> Tuple[np.ndarray, ExitStatus]:
        if not self._ready:
            raise RuntimeError("call initialise() before control_action()")
        info = self.solver.solve()
        self.last_info = info

        price0 = _per_node(self.forecast.price, self.tree.n_nodes, self.oracle.nu, "price")[0]
        self.kpi.record(info.u, info.x, price0)

        if self.cfg.verbose:
            logging.info(
                f"[Controller] step={self.step} status={info.status.value} "
                f"iters={info.iterations} infeas={info.infeasibility:.3e}"
            )
        self.step += 1
        self._ready = False
        return info.u[0].copy(), info.status

    def kpi_totals(self, horizon: Optional[int] = None) -> Dict[str, float]:
        return self.kpi.totals(horizon)
