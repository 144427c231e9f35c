"""Tests for DualConfig parsing and validation."""

import pytest

from treedual.blocks.aux import Algorithm, DualConfig


class TestDualConfig:
    def test_defaults_validate(self):
        cfg = DualConfig().validate()
        assert cfg.variant is Algorithm.APG

    def test_from_dict(self):
        cfg = DualConfig.from_dict({"algorithm": "nama", "tol": 1e-6, "lbfgs_memory": 7})
        assert cfg.variant is Algorithm.NAMA
        assert cfg.lbfgs_memory == 7
        assert cfg.as_dict()["tol"] == 1e-6

    def test_unknown_key_rejected(self):
        with pytest.raises(ValueError, match="unknown config keys"):
            DualConfig.from_dict({"algorithm": "apg", "rho": 1.0})

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"algorithm": "admm"},
            {"max_iter": 0},
            {"tol": 0.0},
            {"step_size": -1.0},
            {"lipschitz": 0.0},
            {"lbfgs_memory": 0},
        ],
    )
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(ValueError):
            DualConfig(**kwargs).validate()

    def test_line_search_parameters_clamped(self):
        cfg = DualConfig(ls_backtrack=2.0, ls_max_iter=0, ls_ame_beta=3.0, lipschitz_margin=0.5).validate()
        assert cfg.ls_backtrack == 0.99
        assert cfg.ls_max_iter == 1
        assert cfg.ls_ame_beta == 1.0
        assert cfg.lipschitz_margin == 1.0
