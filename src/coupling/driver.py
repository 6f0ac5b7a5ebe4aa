"""Coupled neutronics / thermal-hydraulics driver (Picard iteration).

Each time step runs Picard iterations of:

    neutronics step -> heat source to elements (relaxed) -> heat/fluids step
    -> temperature and density to cells (relaxed) -> convergence check

until the temperature change between iterations falls below ``epsilon`` (and
the boron search has converged, when enabled) or ``max_picard_iter`` is
reached. An unconverged time step is reported with a
:class:`~coupling.errors.ConvergenceWarning` and the run moves on.

Fields are exchanged through the roots of the two groups: the producing
root projects and relaxes the field, then broadcasts the result to every
rank of the parent communicator, so all ranks hold identical snapshots.
"""

import logging
import math
import time
import warnings
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import mlflow
import numpy as np
from mpi4py import MPI

from .comm import CommPartition
from .datastructures import CouplingParameters, Metrics, TimeSeries
from .drivers.base import HeatFluidsDriver, NeutronicsDriver
from .drivers.boron import CriticalitySearch
from .errors import ConfigurationError, ConvergenceWarning
from .exchange import FieldExchange, FieldSnapshot, project_to_cells
from .mapping import CellElementMap, DiscretizationMapper, element_records, locate_elements
from .norms import iterate_norm

log = logging.getLogger(__name__)


class Phase(str, Enum):
    IDLE = "idle"
    TIMESTEP_ACTIVE = "timestep_active"
    PICARD_ACTIVE = "picard_active"
    CONVERGED = "converged"
    MAX_ITER_REACHED = "max_iter_reached"


@dataclass
class CoupledIterationState:
    """All mutable per-run state of a coupled simulation."""

    mapping: CellElementMap
    exchange: FieldExchange
    i_timestep: int = 0
    i_picard: int = 0
    phase: Phase = Phase.IDLE
    k_eff: float = math.nan
    k_eff_prev: float = math.nan
    boron_ppm: float = 0.0
    temperature_norm: float = math.inf
    boron_converged: bool = False
    n_iterations: int = 0
    time_series: TimeSeries = field(default_factory=TimeSeries)


class CoupledDriver:
    """Drives a neutronics and a heat/fluids solver to a self-consistent solution.

    Parameters
    ----------
    partition : CommPartition
        Communicator layout; the drivers must live on its sub-communicators.
    neutronics : NeutronicsDriver
    heat : HeatFluidsDriver
    params : CouplingParameters, optional
        If not provided, kwargs are used to create params.
    criticality : CriticalitySearch, optional
        Required when ``params.criticality_search`` is enabled.
    """

    Parameters = CouplingParameters

    def __init__(
        self,
        partition: CommPartition,
        neutronics: NeutronicsDriver,
        heat: HeatFluidsDriver,
        params: Optional[CouplingParameters] = None,
        criticality: Optional[CriticalitySearch] = None,
        **kwargs,
    ):
        if params is None:
            params = self.Parameters(**kwargs)
        if params.criticality_search and criticality is None:
            raise ConfigurationError("Criticality search enabled but no search was provided")

        self.params = params
        self.partition = partition
        self.neutronics = neutronics
        self.heat = heat
        self.criticality = criticality
        self.metrics = Metrics()
        self.time_series = None  # Populated after execute()
        self._mlflow_time = 0.0

        self.mapper = DiscretizationMapper(partition)
        mapping = self._init_mappings()
        self.state = CoupledIterationState(
            mapping=mapping,
            exchange=FieldExchange(
                mapping, alpha=params.alpha, alpha_T=params.alpha_T, alpha_rho=params.alpha_rho
            ),
        )
        self._init_temperatures()
        self._init_densities()
        if params.criticality_search:
            self._init_boron()

    # ------------------------------------------------------------------
    # Convenience accessors
    # ------------------------------------------------------------------

    @property
    def mapping(self) -> CellElementMap:
        return self.state.mapping

    @property
    def exchange(self) -> FieldExchange:
        return self.state.exchange

    def get_timestep_index(self) -> int:
        return self.state.i_timestep

    def get_picard_index(self) -> int:
        return self.state.i_picard

    def is_first_iteration(self) -> bool:
        """Whether this is the first Picard iteration of the first time step."""
        return self.state.i_timestep == 0 and self.state.i_picard == 0

    @property
    def _is_neutronics_root(self) -> bool:
        return self.partition.rank == self.partition.neutronics_root

    @property
    def _is_heat_root(self) -> bool:
        return self.partition.rank == self.partition.heat_root

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def _init_mappings(self) -> CellElementMap:
        """Locate every element in the neutronics model and build the global map."""
        p = self.partition

        records = []
        centroids = np.empty((0, 3))
        if p.is_heat:
            elements = self.heat.enumerate_entities()
            if elements.centroids is None:
                raise ConfigurationError("Heat/fluids driver must report element centroids")
            centroids = elements.centroids

        locate = self.neutronics.locate if self._is_neutronics_root else None
        handles = locate_elements(p, centroids, locate)
        if p.is_heat:
            records = element_records(p.rank, elements, handles)

        cells = self.neutronics.enumerate_entities() if p.is_neutronics else None
        mapping = self.mapper.build_mapping(records, cells)

        # Neutronics entity rows -> global cell indices
        self._cell_rows = None
        if p.is_neutronics:
            self._cell_rows = mapping.global_cell_indices(cells.handles)
            if self._is_neutronics_root and cells.fissionable is not None:
                unmapped = cells.handles[cells.fissionable & ~mapping.populated[self._cell_rows]]
                if unmapped.size:
                    log.warning(
                        f"{unmapped.size} fissionable cell(s) have no heat/fluids elements "
                        f"(first handles: {unmapped[:5].tolist()})"
                    )
        return mapping

    def _neutronics_cell_field(self, name: str) -> np.ndarray:
        """Global per-cell field read from the neutronics root and broadcast."""
        values = np.zeros(self.mapping.n_cells)
        if self._is_neutronics_root:
            values[self._cell_rows] = self.neutronics.get_field(name)
        return self.partition.broadcast_array(values, root=self.partition.neutronics_root)

    def _gather_heat_field(self, name: str) -> Optional[np.ndarray]:
        """Global element field assembled on the heat root (None elsewhere)."""
        local = self.heat.get_field(name) if self.partition.is_heat else None
        parts = self.partition.gather(local, root=self.partition.heat_root)
        if self._is_heat_root:
            return self.mapping.assemble(parts)
        return None

    def _init_temperatures(self):
        """Seed current and previous temperature from the configured source."""
        values = self._neutronics_cell_field("temperature")
        if self.params.temperature_ic == "heat":
            raw = self._gather_heat_field("temperature")
            if self._is_heat_root:
                projected = project_to_cells(raw, self.mapping)
                values = np.where(self.mapping.populated, projected, values)
            self.partition.broadcast_array(values, root=self.partition.heat_root)
            self._set_neutronics_field("temperature", values)
        self.exchange.temperature = FieldSnapshot("temperature", "cells", values)

    def _init_densities(self):
        """Seed current and previous density from the configured source."""
        values = self._neutronics_cell_field("density")
        if self.params.density_ic == "heat":
            raw = self._gather_heat_field("density")
            if self._is_heat_root:
                projected = project_to_cells(raw, self.mapping, mask=self.mapping.elem_fluid_mask)
                values = np.where(self.mapping.cell_fluid_mask, projected, values)
            self.partition.broadcast_array(values, root=self.partition.heat_root)
            self._set_neutronics_field("density", values)
        self.exchange.density = FieldSnapshot("density", "cells", values)

    def _init_boron(self):
        """Apply the search's starting concentration before the first neutronics step."""
        ppm = float(self.criticality.ppm) if self._is_neutronics_root else None
        self.state.boron_ppm = self.partition.bcast(ppm, root=self.partition.neutronics_root)
        self._set_boron(self.state.boron_ppm)

    def _set_boron(self, ppm: float):
        if self.partition.is_neutronics:
            fluid_cells = self.mapping.cells[self.mapping.cell_fluid_mask]
            self.neutronics.set_boron_ppm(ppm, fluid_cells)

    def _set_neutronics_field(self, name: str, values: np.ndarray):
        if self.partition.is_neutronics:
            self.neutronics.set_field(name, values[self._cell_rows])

    # ------------------------------------------------------------------
    # Field updates
    # ------------------------------------------------------------------

    def update_heat_source(self, relax: bool):
        """Send the neutronics heat source to the heat/fluids solver.

        Parameters
        ----------
        relax : bool
            Apply relaxation against the previous heat source.
        """
        p = self.partition
        values = np.empty(self.mapping.n_elements)
        if self._is_neutronics_root:
            raw = np.zeros(self.mapping.n_cells)
            raw[self._cell_rows] = self.neutronics.heat_source(self.params.power)
            values[:] = self.exchange.relaxed_heat_source(raw, relax)
        p.broadcast_array(values, root=p.neutronics_root)
        self.exchange.heat_source.commit(values)
        p.barrier()

        if p.is_heat:
            self.heat.set_field("heat_source", values[self.mapping.local_elements(p.rank)])

    def update_temperature(self, relax: bool):
        """Send heat/fluids temperatures to the neutronics solver."""
        p = self.partition
        raw = self._gather_heat_field("temperature")
        values = np.empty(self.mapping.n_cells)
        if self._is_heat_root:
            values[:] = self.exchange.relaxed_temperature(raw, relax)
        p.broadcast_array(values, root=p.heat_root)
        self.exchange.temperature.commit(values)
        p.barrier()
        self._set_neutronics_field("temperature", values)

    def update_density(self, relax: bool):
        """Send heat/fluids densities of fluid cells to the neutronics solver."""
        p = self.partition
        raw = self._gather_heat_field("density")
        values = np.empty(self.mapping.n_cells)
        if self._is_heat_root:
            values[:] = self.exchange.relaxed_density(raw, relax)
        p.broadcast_array(values, root=p.heat_root)
        self.exchange.density.commit(values)
        p.barrier()
        self._set_neutronics_field("density", values)

    def _update_boron(self):
        """Secant update of the boron concentration from the latest k_eff."""
        s = self.state
        if not self.params.criticality_search or math.isnan(s.k_eff):
            return

        ppm = None
        if self._is_neutronics_root:
            first_pass = math.isnan(s.k_eff_prev)
            ppm = self.criticality.solve_ppm(first_pass, s.k_eff, s.k_eff_prev)
        s.boron_ppm = self.partition.bcast(ppm, root=self.partition.neutronics_root)
        self._set_boron(s.boron_ppm)

    def _collect_k_eff(self):
        k_eff = None
        if self._is_neutronics_root:
            k_eff = float(self.neutronics.diagnostics().get("k_eff", math.nan))
        self.state.k_eff_prev = self.state.k_eff
        self.state.k_eff = self.partition.bcast(k_eff, root=self.partition.neutronics_root)

    # ------------------------------------------------------------------
    # Convergence
    # ------------------------------------------------------------------

    def temperature_norm(self, norm: Optional[str] = None) -> float:
        """Norm of the temperature change over cells with mapped volume."""
        t = self.exchange.temperature
        return iterate_norm(
            t.current, t.previous, norm or self.params.norm, mask=self.mapping.populated
        )

    def is_converged(self) -> bool:
        """Check convergence of the current Picard iteration.

        The first iteration is never converged. With criticality search
        enabled the boron search must have converged as well.
        """
        s = self.state
        s.temperature_norm = self.temperature_norm()
        converged = s.temperature_norm < self.params.epsilon and not self.is_first_iteration()

        if self.params.criticality_search:
            flag = self.criticality.is_converged() if self._is_neutronics_root else None
            s.boron_converged = bool(self.partition.bcast(flag, root=self.partition.neutronics_root))
            converged = converged and s.boron_converged
        return converged

    # ------------------------------------------------------------------
    # Iteration loop
    # ------------------------------------------------------------------

    def _run_neutronics(self):
        if self.partition.is_neutronics:
            self.neutronics.init_step()
            self.neutronics.step()
            self.neutronics.finalize_step()

    def _run_heat(self):
        if self.partition.is_heat:
            self.heat.init_step()
            self.heat.step()
            self.heat.finalize_step()

    def _write_step(self):
        s = self.state
        if self.partition.is_neutronics:
            self.neutronics.write_step(s.i_timestep, s.i_picard)
        if self.partition.is_heat:
            self.heat.write_step(s.i_timestep, s.i_picard)

    def picard_iteration(self) -> bool:
        """Run one Picard iteration at the current indices; returns convergence."""
        s = self.state
        s.phase = Phase.PICARD_ACTIVE
        self.exchange.advance(s.i_picard)

        self._update_boron()
        self._run_neutronics()
        self._collect_k_eff()
        self.partition.barrier()

        relax = not self.is_first_iteration()
        self.update_heat_source(relax)
        self._run_heat()
        self.partition.barrier()

        self.update_temperature(relax)
        self.update_density(relax)

        if self.params.checkpoint:
            self._write_step()

        converged = self.is_converged()
        s.n_iterations += 1
        self._record()
        return converged

    def solve_timestep(self) -> bool:
        """Iterate the current time step until convergence or the iteration limit."""
        s = self.state
        s.phase = Phase.TIMESTEP_ACTIVE
        for i_picard in range(self.params.max_picard_iter):
            s.i_picard = i_picard
            if self.picard_iteration():
                s.phase = Phase.CONVERGED
                if self.partition.rank == 0:
                    log.info(f"Timestep {s.i_timestep} converged at Picard iteration {i_picard}")
                return True

        s.phase = Phase.MAX_ITER_REACHED
        message = (
            f"Timestep {s.i_timestep}: Picard iteration did not converge in "
            f"{self.params.max_picard_iter} iterations "
            f"(||dT||_{self.params.norm} = {s.temperature_norm:.3e}, epsilon = {self.params.epsilon:.1e})"
        )
        if self.partition.rank == 0:
            log.warning(message)
        warnings.warn(message, ConvergenceWarning, stacklevel=2)
        return False

    def execute(self) -> Metrics:
        """Run all time steps.

        Stores results in solver attributes:
        - self.time_series : TimeSeries with the Picard history
        - self.metrics : Metrics with final values
        """
        s = self.state
        time_start = time.time()
        self._mlflow_time = 0.0
        unconverged = 0
        converged = False

        for i_timestep in range(self.params.max_timesteps):
            s.i_timestep = i_timestep
            converged = self.solve_timestep()
            if not converged:
                unconverged += 1

        wall_time = time.time() - time_start - self._mlflow_time
        if self.partition.rank == 0:
            log.info(
                f"Coupled run finished: {s.n_iterations} Picard iterations in "
                f"{self.params.max_timesteps} timestep(s), {wall_time:.2f} s"
            )

        self.time_series = s.time_series
        self.metrics = Metrics(
            timesteps=self.params.max_timesteps,
            picard_iterations=s.n_iterations,
            converged=converged,
            unconverged_timesteps=unconverged,
            final_temperature_norm=s.temperature_norm,
            final_k_eff=s.k_eff,
            final_boron_ppm=s.boron_ppm,
            wall_time_seconds=wall_time,
        )
        return self.metrics

    def _record(self):
        """Append the current iteration to the history and log it."""
        s = self.state
        ts = s.time_series
        factors = self.exchange.factors()
        ts.timestep.append(s.i_timestep)
        ts.picard.append(s.i_picard)
        ts.temperature_norm.append(s.temperature_norm)
        ts.alpha.append(factors["heat_source"])
        ts.alpha_T.append(factors["temperature"])
        ts.alpha_rho.append(factors["density"])
        if not math.isnan(s.k_eff):
            ts.k_eff = (ts.k_eff or []) + [s.k_eff]
        if self.params.criticality_search:
            ts.boron_ppm = (ts.boron_ppm or []) + [s.boron_ppm]

        if self.partition.rank != 0:
            return

        log.info(
            f"Timestep {s.i_timestep}, Picard {s.i_picard}: "
            f"||dT||_{self.params.norm}={s.temperature_norm:.6e}, k_eff={s.k_eff:.5f}"
        )

        # Live MLflow logging (timed separately)
        if mlflow.active_run():
            t_log_start = time.time()
            live_metrics = {
                "temperature_norm": s.temperature_norm,
                "alpha": factors["heat_source"],
                "alpha_T": factors["temperature"],
                "alpha_rho": factors["density"],
            }
            if not math.isnan(s.k_eff):
                live_metrics["k_eff"] = s.k_eff
            if self.params.criticality_search:
                live_metrics["boron_ppm"] = s.boron_ppm
            mlflow.log_metrics(live_metrics, step=s.n_iterations - 1)
            self._mlflow_time += time.time() - t_log_start

    def comm_layout(self) -> list:
        """Rank/role/host table of the communicator layout (collective).

        Returns the rows on parent rank 0 and an empty list elsewhere.
        """
        p = self.partition
        row = {"rank": p.rank, "host": MPI.Get_processor_name(), "roles": p.roles(p.rank)}
        rows = p.gather(row, root=0)
        return rows if p.rank == 0 else []
