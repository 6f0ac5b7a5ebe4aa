"""Data structures for coupled-run configuration and results.

This module defines the configuration and result data structures
for the coupled neutronics / thermal-hydraulics driver.

Structure:
- CouplingParameters: Input configuration (logged to MLflow at start)
- Metrics: Output results (logged to MLflow at end)
- TimeSeries: Picard convergence history
- EntityTable: Static geometry reported by a solver adapter
"""

import time
from dataclasses import dataclass, asdict, field
from typing import Optional, List, Union

import numpy as np
import pandas as pd

from .errors import ConfigurationError

#: Relaxation factor value requesting the Robbins-Monro schedule
ROBBINS_MONRO = -1.0

NORMS = ("l1", "l2", "linf")
INITIAL_CONDITIONS = ("neutronics", "heat")


def parse_relaxation_factor(name: str, value) -> float:
    """Normalise a relaxation factor, mapping the adaptive sentinel to ROBBINS_MONRO."""
    if isinstance(value, str):
        if value.strip().lower().replace("_", "-") == "robbins-monro":
            return ROBBINS_MONRO
        try:
            value = float(value)
        except ValueError:
            raise ConfigurationError(f"{name}: invalid relaxation factor '{value}'") from None

    value = float(value)
    if value == ROBBINS_MONRO:
        return ROBBINS_MONRO
    if not 0.0 < value <= 1.0:
        raise ConfigurationError(
            f"{name}: relaxation factor must lie in (0, 1] or be robbins-monro, got {value}"
        )
    return value


# ========================================================
# Parameters (Input Configuration)
# ========================================================


@dataclass
class CouplingParameters:
    """Coupled driver parameters - input configuration for a Picard run."""

    power: float = 1.0e6  # total power [W]
    max_timesteps: int = 1
    max_picard_iter: int = 10
    epsilon: float = 1e-3  # Picard convergence tolerance
    alpha: Union[float, str] = 1.0  # heat source relaxation
    alpha_T: Optional[Union[float, str]] = None  # defaults to alpha
    alpha_rho: Optional[Union[float, str]] = None  # defaults to alpha
    norm: str = "linf"
    temperature_ic: str = "neutronics"
    density_ic: str = "neutronics"
    criticality_search: bool = False
    boron_epsilon: float = 1e-3
    checkpoint: bool = False
    method: str = "Picard"  # MLflow run tag, no effect on the iteration

    def __post_init__(self):
        self.alpha = parse_relaxation_factor("alpha", self.alpha)
        self.alpha_T = self.alpha if self.alpha_T is None else parse_relaxation_factor("alpha_T", self.alpha_T)
        self.alpha_rho = (
            self.alpha if self.alpha_rho is None else parse_relaxation_factor("alpha_rho", self.alpha_rho)
        )

        self.norm = str(self.norm).lower()
        if self.norm not in NORMS:
            raise ConfigurationError(f"Unknown norm '{self.norm}', expected one of {NORMS}")

        for name in ("temperature_ic", "density_ic"):
            value = str(getattr(self, name)).lower()
            if value not in INITIAL_CONDITIONS:
                raise ConfigurationError(
                    f"{name}: unknown initial condition '{value}', expected one of {INITIAL_CONDITIONS}"
                )
            setattr(self, name, value)

        if self.epsilon <= 0:
            raise ConfigurationError(f"Picard tolerance must be positive, got {self.epsilon}")
        if self.boron_epsilon <= 0:
            raise ConfigurationError(f"Boron tolerance must be positive, got {self.boron_epsilon}")
        if self.max_timesteps < 1:
            raise ConfigurationError("max_timesteps must be at least 1")
        if self.max_picard_iter < 1:
            raise ConfigurationError("max_picard_iter must be at least 1")
        if self.power <= 0:
            raise ConfigurationError(f"Power must be positive, got {self.power}")

    def to_dataframe(self):
        return pd.DataFrame([asdict(self)])

    def to_mlflow(self) -> dict:
        """Flat parameter dict; the adaptive sentinel is logged by name."""
        params = asdict(self)
        for key in ("alpha", "alpha_T", "alpha_rho"):
            if params[key] == ROBBINS_MONRO:
                params[key] = "robbins-monro"
        return params


# ========================================================
# Metrics (Output Results)
# ========================================================


@dataclass
class Metrics:
    """Coupled run metrics - output results computed during/after execute()."""

    timesteps: int = 0
    picard_iterations: int = 0
    converged: bool = False
    unconverged_timesteps: int = 0
    final_temperature_norm: float = float("inf")
    final_k_eff: float = float("nan")
    final_boron_ppm: float = 0.0
    wall_time_seconds: float = 0.0

    def to_dataframe(self):
        return pd.DataFrame([asdict(self)])

    def to_mlflow(self) -> dict:
        return {k: float(v) for k, v in asdict(self).items()}


# ========================================================
# Time Series (Convergence History)
# ========================================================


@dataclass
class TimeSeries:
    """Picard convergence history (one value per global iteration)."""

    timestep: List[int] = field(default_factory=list)
    picard: List[int] = field(default_factory=list)
    temperature_norm: List[float] = field(default_factory=list)
    alpha: List[float] = field(default_factory=list)
    alpha_T: List[float] = field(default_factory=list)
    alpha_rho: List[float] = field(default_factory=list)
    k_eff: Optional[List[float]] = None
    boron_ppm: Optional[List[float]] = None

    def __len__(self):
        return len(self.temperature_norm)

    def to_dataframe(self) -> pd.DataFrame:
        """Convert to DataFrame with one row per Picard iteration."""
        return pd.DataFrame({k: v for k, v in asdict(self).items() if v is not None})

    def downsample(self, max_points: int = 1000) -> "TimeSeries":
        """Return a copy with at most ``max_points`` evenly spaced entries."""
        n = len(self)
        if n <= max_points:
            return self
        indices = np.linspace(0, n - 1, max_points, dtype=int)
        data = {
            k: None if v is None else [v[i] for i in indices]
            for k, v in asdict(self).items()
        }
        return TimeSeries(**data)

    def to_mlflow_batch(self, max_points: int = 1000) -> list:
        """Build MLflow ``Metric`` entities, stepped by global iteration."""
        from mlflow.entities import Metric

        series = self.downsample(max_points)
        timestamp = int(time.time() * 1000)
        skip = {"timestep", "picard"}
        batch = []
        for key, values in asdict(series).items():
            if key in skip or values is None:
                continue
            for step, value in enumerate(values):
                if np.isfinite(value):
                    batch.append(Metric(key=key, value=float(value), timestamp=timestamp, step=step))
        return batch


# ========================================================
# Adapter geometry
# ========================================================


@dataclass
class EntityTable:
    """Local entities reported by a solver adapter.

    Rows follow the adapter's local numbering. ``handles`` are cell handles for
    a neutronics adapter and element ids for a heat/fluids adapter.
    """

    handles: np.ndarray
    volumes: np.ndarray
    fluid: np.ndarray
    centroids: Optional[np.ndarray] = None  # (n, 3), required for elements
    fissionable: Optional[np.ndarray] = None  # neutronics cells only

    def __post_init__(self):
        self.handles = np.asarray(self.handles, dtype=np.int64)
        self.volumes = np.asarray(self.volumes, dtype=np.float64)
        self.fluid = np.asarray(self.fluid, dtype=bool)
        if self.centroids is not None:
            self.centroids = np.asarray(self.centroids, dtype=np.float64).reshape(-1, 3)
        if self.fissionable is not None:
            self.fissionable = np.asarray(self.fissionable, dtype=bool)

    def __len__(self):
        return self.handles.shape[0]
