"""Pytest configuration and fixtures for coupling tests."""

import sys
from pathlib import Path

import numpy as np
import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from coupling.datastructures import EntityTable  # noqa: E402
from coupling.drivers.base import HeatFluidsDriver, NeutronicsDriver  # noqa: E402
from coupling.drivers.boron import CriticalitySearch  # noqa: E402
from coupling.mapping import ElementRecord  # noqa: E402


# =============================================================================
# Fake solver adapters
# =============================================================================


class FakeNeutronics(NeutronicsDriver):
    """Cells 10, 11, ... laid out along x in unit slabs, plus unmapped extra cells."""

    def __init__(self, comm=None, n_cells=3, extra_cells=(), T0=1.0, rho0=0.7, k_eff=None):
        super().__init__(comm)
        self.n_cells = n_cells
        self.handles = np.concatenate(
            [np.arange(10, 10 + n_cells), np.asarray(extra_cells, dtype=np.int64)]
        ).astype(np.int64)
        n = self.handles.size
        self.volumes = np.full(n, 2.0)
        self.temperature = np.full(n, float(T0))
        self.density = np.full(n, float(rho0))
        self.fissionable = np.ones(n, dtype=bool)
        self.ppm = 0.0
        self.boron_calls = []
        self.k_eff_fn = k_eff or (lambda ppm: 1.0)
        self.k_eff = float("nan")
        self.n_steps = 0

    def enumerate_entities(self):
        return EntityTable(
            handles=self.handles,
            volumes=self.volumes,
            fluid=np.ones(self.handles.size, dtype=bool),
            fissionable=self.fissionable,
        )

    def locate(self, positions):
        x = np.asarray(positions)[:, 0]
        handles = 10 + np.floor(x).astype(np.int64)
        handles[(x < 0) | (x >= self.n_cells)] = -1
        return handles

    def get_field(self, name):
        if name == "heat_source":
            return np.where(self.handles < 10 + self.n_cells, 1.0, 0.0)
        self._check_field(name)
        return getattr(self, name).copy()

    def set_field(self, name, values):
        self._check_field(name)
        getattr(self, name)[:] = values

    def set_boron_ppm(self, ppm, cells):
        self.ppm = ppm
        self.boron_calls.append((ppm, np.asarray(cells).copy()))

    def step(self):
        self.n_steps += 1
        self.k_eff = self.k_eff_fn(self.ppm)

    def diagnostics(self):
        return {"k_eff": self.k_eff}


class FakeHeatFluids(HeatFluidsDriver):
    """``per_cell`` elements inside each unit slab; odd local elements are fluid.

    ``temperature(n)`` gives the element temperatures after the n-th step
    (n = 0, 1, ...).
    """

    def __init__(self, comm=None, n_cells=3, per_cell=2, temperature=None, T0=1.0, rho=0.6):
        super().__init__(comm)
        k = np.tile(np.arange(per_cell), n_cells)
        cell = np.repeat(np.arange(n_cells), per_cell)
        self.x = cell + (k + 0.5) / per_cell
        self.volumes = 1.0 + 0.5 * k
        self.fluid = (k % 2) == 1
        n = self.x.size
        self.temperature_fn = temperature or (lambda step: np.full(n, 1.0))
        self.temperature = np.full(n, float(T0))
        self.density = np.where(self.fluid, rho, 10.0)
        self.heat_source = np.zeros(n)
        self.received = []
        self.n_steps = 0

    def enumerate_entities(self):
        n = self.x.size
        return EntityTable(
            handles=np.arange(n),
            volumes=self.volumes,
            fluid=self.fluid,
            centroids=np.column_stack([self.x, np.zeros(n), np.zeros(n)]),
        )

    def get_field(self, name):
        if name == "temperature":
            return self.temperature.copy()
        if name == "density":
            return self.density.copy()
        self._check_field(name)
        return self.heat_source.copy()

    def set_field(self, name, values):
        self._check_field(name)
        self.heat_source = np.asarray(values, dtype=float).copy()
        self.received.append(self.heat_source)

    def step(self):
        self.temperature = np.asarray(self.temperature_fn(self.n_steps), dtype=float)
        self.n_steps += 1


class StubSearch(CriticalitySearch):
    """Search returning a fixed concentration with a fixed convergence flag."""

    def __init__(self, ppm=100.0, converged=False):
        self.target = ppm
        self.converged = converged
        self.calls = []

    def solve_ppm(self, first_pass, k_eff, k_eff_prev):
        self.calls.append((first_pass, k_eff, k_eff_prev))
        self.ppm = self.target
        return self.ppm

    def is_converged(self):
        return self.converged


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def comm_self():
    """Single-rank communicator (both solvers on one rank)."""
    MPI = pytest.importorskip("mpi4py.MPI")
    return MPI.COMM_SELF


@pytest.fixture
def partition(comm_self):
    from coupling.comm import partition_comm

    part = partition_comm(comm_self)
    yield part
    part.free()


@pytest.fixture
def make_records():
    """Build ElementRecord lists from (rank, volume, fluid, cell) tuples."""

    def _make(rows):
        counters = {}
        records = []
        for rank, volume, fluid, cell in rows:
            i = counters.get(rank, 0)
            counters[rank] = i + 1
            records.append(ElementRecord(rank, i, volume, fluid, cell))
        return records

    return _make


@pytest.fixture
def simple_mapping(make_records):
    """Three cells over two ranks; cell 30 has solid elements only."""
    from coupling.mapping import reduce_gathered

    records = make_records(
        [
            (0, 1.0, True, 10),
            (0, 3.0, False, 10),
            (0, 2.0, True, 20),
            (1, 4.0, False, 30),
            (1, 1.0, True, 20),
        ]
    )
    return reduce_gathered(records, model_cells=[10, 20, 30, 40])
