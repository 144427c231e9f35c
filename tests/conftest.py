"""Shared fixtures for tests."""

import numpy as np
import pytest

from treedual.blocks.prox import ConstraintBounds
from treedual.oracle import Forecast, SeparableOracle, TreeFlowOracle
from treedual.tree import ScenarioTree


@pytest.fixture
def two_stage_tree():
    """Root with two equiprobable children."""
    return ScenarioTree.from_branching([2])


@pytest.fixture
def three_stage_tree():
    return ScenarioTree.from_branching([2, 2], weights=[[0.3, 0.7], [0.5, 0.5]])


@pytest.fixture
def unit_bounds():
    return ConstraintBounds(x_min=[-1.0], x_max=[1.0], u_min=[-1.0], u_max=[1.0])


@pytest.fixture
def separable_forecast(two_stage_tree):
    n = two_stage_tree.n_nodes
    return Forecast(
        demand=np.zeros((n, 1)),
        price=np.zeros((n, 1)),
        nominal_control=np.full((n, 1), 1.5),
    )


@pytest.fixture
def active_separable(two_stage_tree, separable_forecast):
    """Separable oracle whose unconstrained optimum violates both boxes."""
    oracle = SeparableOracle(two_stage_tree, nx=1, nu=1)
    oracle.factor(np.array([2.0]), separable_forecast)
    return oracle


@pytest.fixture
def flow_network():
    B = np.array([[1.0, -1.0, 0.0], [0.0, 1.0, 1.0]])
    Gd = -np.eye(2)
    R = np.array([1.0, 0.5, 2.0])
    return B, Gd, R


@pytest.fixture
def flow_forecast(three_stage_tree):
    n = three_stage_tree.n_nodes
    rng = np.random.default_rng(7)
    return Forecast(
        demand=0.5 + 0.1 * rng.standard_normal((n, 2)),
        price=np.tile([0.1, 0.0, 0.2], (n, 1)),
        nominal_control=np.full((n, 3), 0.5),
    )


@pytest.fixture
def flow_oracle(three_stage_tree, flow_network, flow_forecast):
    B, Gd, R = flow_network
    oracle = TreeFlowOracle(three_stage_tree, B, Gd, R)
    oracle.factor(np.array([5.0, 4.0]), flow_forecast)
    return oracle


@pytest.fixture
def loose_flow_bounds():
    return ConstraintBounds(
        x_min=[-100.0, -100.0],
        x_max=[100.0, 100.0],
        u_min=[-10.0, -10.0, -10.0],
        u_max=[10.0, 10.0, 10.0],
    )
