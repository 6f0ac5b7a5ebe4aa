"""Abstract solver adapters consumed by the coupled driver."""

from abc import ABC, abstractmethod

import numpy as np
from mpi4py import MPI

from ..datastructures import EntityTable
from ..exchange import normalize_heat_source


class SolverDriver(ABC):
    """Capability set every physics solver must provide to be coupled.

    Handles:
    - Membership in the solver's sub-communicator
    - Per-step lifecycle hooks (init, finalize, checkpoint)

    Subclasses must:
    - Implement enumerate_entities() - local entities with static geometry
    - Implement get_field() / set_field() - per-entity scalar fields, in the
      row order of enumerate_entities()
    - Implement step() - advance the physics with the accepted fields

    Field names are ``"temperature"``, ``"density"`` and ``"heat_source"``.
    """

    fields = ()  # field names accepted by set_field()

    def __init__(self, comm=None):
        """Initialize driver on a sub-communicator.

        Parameters
        ----------
        comm : MPI.Comm, optional
            Solver sub-communicator; ``MPI.COMM_NULL`` on ranks that do not
            run this solver. Defaults to ``MPI.COMM_SELF``.
        """
        self.comm = MPI.COMM_SELF if comm is None else comm

    @property
    def active(self) -> bool:
        """Whether this rank takes part in the solver."""
        return self.comm != MPI.COMM_NULL

    @abstractmethod
    def enumerate_entities(self) -> EntityTable:
        """Local entities with stable handles, volumes and fluid flags."""
        pass

    @abstractmethod
    def get_field(self, name: str) -> np.ndarray:
        """Report a per-entity scalar field."""
        pass

    @abstractmethod
    def set_field(self, name: str, values: np.ndarray):
        """Accept a per-entity scalar field."""
        pass

    @abstractmethod
    def step(self):
        """Advance the internal physics state with the accepted fields."""
        pass

    def init_step(self):
        """Prepare for a coupled step. Default does nothing."""

    def finalize_step(self):
        """Clean up after a coupled step. Default does nothing."""

    def write_step(self, timestep: int, iteration: int):
        """Write a solver-native checkpoint. Default does nothing."""

    def diagnostics(self) -> dict:
        """Solver-specific scalar diagnostics."""
        return {}

    def _check_field(self, name: str):
        if name not in self.fields:
            raise KeyError(f"{type(self).__name__} does not accept field '{name}'")


class NeutronicsDriver(SolverDriver):
    """Neutron transport solver working on cells.

    ``enumerate_entities()`` returns every cell of the neutronics model that
    takes part in coupling; geometry is replicated on all neutronics ranks.
    ``get_field("heat_source")`` returns the per-cell energy deposition of the
    last step (any unit); it is normalised to power by :meth:`heat_source`.
    ``diagnostics()`` reports ``k_eff``.
    """

    fields = ("temperature", "density")

    @abstractmethod
    def locate(self, positions: np.ndarray) -> np.ndarray:
        """Cell handle containing each position, negative where none does."""
        pass

    def heat_source(self, power: float) -> np.ndarray:
        """Volumetric heat source [W/cm^3] per cell, in entity order."""
        cells = self.enumerate_entities()
        return normalize_heat_source(self.get_field("heat_source"), cells.volumes, power)

    def set_boron_ppm(self, ppm: float, cells: np.ndarray):
        """Set the boron concentration [ppm] in the given fluid cells."""
        raise NotImplementedError(f"{type(self).__name__} has no boron model")


class HeatFluidsDriver(SolverDriver):
    """Thermal-hydraulics solver working on mesh elements.

    ``enumerate_entities()`` returns this rank's elements in local order with
    centroids, volumes and fluid flags.
    """

    fields = ("heat_source",)
