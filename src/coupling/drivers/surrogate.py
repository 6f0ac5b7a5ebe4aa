"""Surrogate solver adapters for a single axial fuel channel.

These lumped models exist so the coupled driver can be run end to end and
tested without an external transport or CFD code. They capture the feedback
loop (power shape and k-eff respond to temperature and density, temperature
responds to power) but make no claim to physical accuracy.

Geometry (cm):
- SlabNeutronics: ``n_cells`` axial slabs over ``[0, height)`` plus
  ``n_reflector`` slabs above the core that no heat/fluids element reaches.
- ChannelHeatFluids: ``n_axial`` levels over ``[0, height)``, each with one
  fuel element (solid) and one coolant element (fluid). Levels are split in
  contiguous blocks across the heat/fluids ranks.

Physics models
--------------
* Axial power: chopped cosine, q(z) ~ cos(pi (z - H/2) / H_e), scaled by a
  local Doppler factor 1 - gamma (T - T_ref).
* k_eff = k_0 + a_T (<T> - T_ref) + a_rho (<rho> - rho_ref) + w_B ppm.
* Coolant temperature from the axial energy balance; fuel temperature from a
  lumped conductance to the coolant.
* Coolant density linear in temperature.
"""

import logging

import numpy as np
from mpi4py import MPI

from ..datastructures import EntityTable
from .base import HeatFluidsDriver, NeutronicsDriver

log = logging.getLogger(__name__)


class SlabNeutronics(NeutronicsDriver):
    """Axial slab neutronics surrogate with temperature/density/boron feedback."""

    def __init__(
        self,
        comm=None,
        n_cells: int = 10,
        n_reflector: int = 1,
        height: float = 366.0,
        area: float = 1.6,
        extrapolation: float = 1.1,
        k0: float = 1.05,
        doppler: float = 2.0e-4,
        alpha_T: float = -3.0e-5,
        alpha_rho: float = 0.2,
        boron_worth: float = -1.0e-4,
        T_ref: float = 565.0,
        rho_ref: float = 0.74,
        T_initial: float = 565.0,
        rho_initial: float = 0.74,
        fissionable_reflector: bool = False,
    ):
        super().__init__(comm)
        self.n_cells = n_cells
        self.n_reflector = n_reflector
        self.height = height
        self.dz = height / n_cells
        self.area = area
        self.extrapolation = extrapolation
        self.k0 = k0
        self.doppler = doppler
        self.alpha_T = alpha_T
        self.alpha_rho = alpha_rho
        self.boron_worth = boron_worth
        self.T_ref = T_ref
        self.rho_ref = rho_ref

        n_total = n_cells + n_reflector
        self.z = (np.arange(n_total) + 0.5) * self.dz
        self.temperature = np.full(n_total, float(T_initial))
        self.density = np.full(n_total, float(rho_initial))
        self.ppm = np.zeros(n_total)
        self.fissionable = np.arange(n_total) < n_cells
        if fissionable_reflector:
            self.fissionable[:] = True
        self.deposition = np.zeros(n_total)
        self.k_eff = k0

    def enumerate_entities(self) -> EntityTable:
        n_total = self.n_cells + self.n_reflector
        return EntityTable(
            handles=np.arange(n_total),
            volumes=np.full(n_total, self.area * self.dz),
            fluid=np.ones(n_total, dtype=bool),
            centroids=np.column_stack([np.zeros(n_total), np.zeros(n_total), self.z]),
            fissionable=self.fissionable,
        )

    def locate(self, positions: np.ndarray) -> np.ndarray:
        z = np.asarray(positions, dtype=np.float64).reshape(-1, 3)[:, 2]
        handles = np.floor(z / self.dz).astype(np.int64)
        handles[(z < 0.0) | (handles >= self.n_cells + self.n_reflector)] = -1
        return handles

    def get_field(self, name: str) -> np.ndarray:
        if name == "heat_source":
            return self.deposition.copy()
        self._check_field(name)
        return getattr(self, name).copy()

    def set_field(self, name: str, values: np.ndarray):
        self._check_field(name)
        getattr(self, name)[:] = values

    def set_boron_ppm(self, ppm: float, cells: np.ndarray):
        self.ppm[np.asarray(cells, dtype=np.int64)] = ppm

    def step(self):
        H_e = self.height * self.extrapolation
        shape = np.cos(np.pi * (self.z - 0.5 * self.height) / H_e)
        feedback = 1.0 - self.doppler * (self.temperature - self.T_ref)
        self.deposition = np.where(self.fissionable, np.clip(shape * feedback, 0.0, None), 0.0)

        core = self.fissionable
        self.k_eff = (
            self.k0
            + self.alpha_T * (self.temperature[core].mean() - self.T_ref)
            + self.alpha_rho * (self.density[core].mean() - self.rho_ref)
            + self.boron_worth * self.ppm[core].mean()
        )
        log.debug(f"Slab neutronics step: k_eff={self.k_eff:.5f}")

    def diagnostics(self) -> dict:
        return {"k_eff": float(self.k_eff)}


class ChannelHeatFluids(HeatFluidsDriver):
    """Single-channel energy balance with fuel and coolant elements per level."""

    def __init__(
        self,
        comm=None,
        n_axial: int = 20,
        height: float = 366.0,
        fuel_area: float = 0.6,
        coolant_area: float = 1.0,
        mass_flow: float = 0.3,
        cp: float = 5500.0,
        conductance: float = 2.0,
        T_inlet: float = 560.0,
        rho_inlet: float = 0.75,
        drho_dT: float = -2.5e-3,
        rho_fuel: float = 10.4,
    ):
        super().__init__(comm)
        self.n_axial = n_axial
        self.height = height
        self.dz = height / n_axial
        self.fuel_area = fuel_area
        self.coolant_area = coolant_area
        self.mass_flow = mass_flow  # kg/s
        self.cp = cp  # J/kg/K
        self.conductance = conductance  # W/cm/K per unit length
        self.T_inlet = T_inlet
        self.rho_inlet = rho_inlet
        self.drho_dT = drho_dT
        self.rho_fuel = rho_fuel

        rank, size = (self.comm.Get_rank(), self.comm.Get_size()) if self.active else (0, 1)
        self.levels = np.array_split(np.arange(n_axial), size)[rank]
        n_local = 2 * self.levels.size

        # Local element 2k is fuel, 2k+1 is coolant, at level self.levels[k]
        self.is_fluid = np.tile([False, True], self.levels.size)
        self.heat = np.zeros(n_local)
        self.temperature = np.full(n_local, float(T_inlet))
        self.density = np.where(self.is_fluid, rho_inlet, rho_fuel)

    def enumerate_entities(self) -> EntityTable:
        z = np.repeat((self.levels + 0.5) * self.dz, 2)
        x = np.where(self.is_fluid, 0.5, 0.0)
        volumes = np.where(self.is_fluid, self.coolant_area, self.fuel_area) * self.dz
        return EntityTable(
            handles=np.repeat(self.levels, 2) * 2 + np.tile([0, 1], self.levels.size),
            volumes=volumes,
            fluid=self.is_fluid,
            centroids=np.column_stack([x, np.zeros_like(z), z]),
        )

    def get_field(self, name: str) -> np.ndarray:
        if name == "temperature":
            return self.temperature.copy()
        if name == "density":
            return self.density.copy()
        self._check_field(name)
        return self.heat.copy()

    def set_field(self, name: str, values: np.ndarray):
        self._check_field(name)
        self.heat[:] = values

    def step(self):
        volumes = self.enumerate_entities().volumes
        # Power per level [W]: both elements of a level deposit into the coolant
        level_power = (self.heat * volumes).reshape(-1, 2).sum(axis=1)

        # Power deposited upstream on lower-ranked blocks
        upstream = self.comm.exscan(float(level_power.sum()), op=MPI.SUM)
        if upstream is None:
            upstream = 0.0

        # Coolant temperature at level mid-planes
        cumulative = upstream + np.cumsum(level_power) - 0.5 * level_power
        T_coolant = self.T_inlet + cumulative / (self.mass_flow * self.cp)
        T_fuel = T_coolant + level_power / (self.conductance * self.dz)

        self.temperature = np.column_stack([T_fuel, T_coolant]).ravel()
        rho_coolant = self.rho_inlet + self.drho_dT * (T_coolant - self.T_inlet)
        self.density = np.column_stack([np.full_like(T_fuel, self.rho_fuel), rho_coolant]).ravel()
