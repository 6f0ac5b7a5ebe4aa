"""Tests for coupled-run parameters and result data structures."""

import math

import numpy as np
import pytest

from coupling.datastructures import (
    ROBBINS_MONRO,
    CouplingParameters,
    EntityTable,
    Metrics,
    TimeSeries,
    parse_relaxation_factor,
)
from coupling.errors import ConfigurationError


class TestCouplingParameters:
    """Tests for parameter defaults and validation."""

    def test_defaults(self):
        params = CouplingParameters()
        assert params.norm == "linf"
        assert params.epsilon == 1e-3
        assert params.alpha == 1.0
        assert params.temperature_ic == "neutronics"

    def test_field_factors_default_to_alpha(self):
        params = CouplingParameters(alpha=0.4)
        assert params.alpha_T == 0.4
        assert params.alpha_rho == 0.4

    def test_field_factors_override(self):
        params = CouplingParameters(alpha=0.4, alpha_T="robbins-monro", alpha_rho=0.9)
        assert params.alpha_T == ROBBINS_MONRO
        assert params.alpha_rho == 0.9

    @pytest.mark.parametrize("value", ["robbins-monro", "Robbins_Monro", -1, -1.0])
    def test_sentinel(self, value):
        assert parse_relaxation_factor("alpha", value) == ROBBINS_MONRO

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"alpha": 0.0},
            {"alpha": 1.2},
            {"alpha_T": -0.3},
            {"norm": "l3"},
            {"temperature_ic": "cfd"},
            {"density_ic": "openmc"},
            {"epsilon": 0.0},
            {"max_picard_iter": 0},
            {"max_timesteps": 0},
            {"power": -1.0},
            {"boron_epsilon": 0.0},
        ],
    )
    def test_invalid(self, kwargs):
        """Invalid settings are rejected before any stepping."""
        with pytest.raises(ConfigurationError):
            CouplingParameters(**kwargs)

    def test_to_mlflow(self):
        params = CouplingParameters(alpha="robbins-monro", norm="L2")
        logged = params.to_mlflow()
        assert logged["alpha"] == "robbins-monro"
        assert logged["alpha_T"] == "robbins-monro"
        assert logged["norm"] == "l2"

    def test_to_dataframe(self):
        df = CouplingParameters(power=5.0).to_dataframe()
        assert len(df) == 1
        assert df["power"].iloc[0] == 5.0


class TestMetrics:
    def test_to_mlflow_floats(self):
        logged = Metrics(picard_iterations=4, converged=True).to_mlflow()
        assert logged["picard_iterations"] == 4.0
        assert logged["converged"] == 1.0
        assert all(isinstance(v, float) for v in logged.values())


class TestTimeSeries:
    """Tests for the Picard history."""

    @pytest.fixture
    def series(self):
        n = 10
        return TimeSeries(
            timestep=[0] * n,
            picard=list(range(n)),
            temperature_norm=[0.5**i for i in range(n)],
            alpha=[1.0] * n,
            alpha_T=[1.0 / (i + 1) for i in range(n)],
            alpha_rho=[1.0] * n,
            k_eff=[float("nan")] + [1.0] * (n - 1),
        )

    def test_to_dataframe(self, series):
        df = series.to_dataframe()
        assert len(df) == 10
        assert "boron_ppm" not in df.columns
        assert "k_eff" in df.columns

    def test_downsample(self, series):
        small = series.downsample(max_points=4)
        assert len(small) == 4
        assert small.picard[0] == 0
        assert small.picard[-1] == 9
        assert series.downsample(max_points=100) is series

    def test_mlflow_batch(self, series):
        """Indices are not logged and non-finite values are skipped."""
        pytest.importorskip("mlflow")
        batch = series.to_mlflow_batch()
        keys = {m.key for m in batch}
        assert keys == {"temperature_norm", "alpha", "alpha_T", "alpha_rho", "k_eff"}
        assert all(math.isfinite(m.value) for m in batch)
        assert sum(1 for m in batch if m.key == "k_eff") == 9


class TestEntityTable:
    def test_coercion(self):
        table = EntityTable(handles=[1, 2], volumes=[1, 2], fluid=[0, 1], centroids=[0, 0, 1, 0, 0, 2])
        assert table.handles.dtype == np.int64
        assert table.fluid.tolist() == [False, True]
        assert table.centroids.shape == (2, 3)
        assert len(table) == 2
