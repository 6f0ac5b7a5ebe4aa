"""Field transfer between discretizations and under-relaxation.

Projection:
    elements -> cells : volume-weighted average over the cell's elements;
                        cells with no mapped volume get 0.
    cells -> elements : the owning cell's value is copied to every element
                        (no disaggregation by element volume or position).

Relaxation:
    x_relaxed = alpha * x_raw + (1 - alpha) * x_prev

with either a constant ``alpha`` in (0, 1] or the Robbins-Monro schedule
``alpha_n = 1 / (n + 1)``.

All functions return new arrays; inputs are never modified.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import numpy as np

from .datastructures import ROBBINS_MONRO, parse_relaxation_factor
from .mapping import CellElementMap

log = logging.getLogger(__name__)


class Direction(str, Enum):
    ELEMENTS_TO_CELLS = "elements_to_cells"
    CELLS_TO_ELEMENTS = "cells_to_elements"


# -----------------------------------------------------------------------------
# Projection
# -----------------------------------------------------------------------------


def project_to_cells(
    values: np.ndarray, mapping: CellElementMap, mask: Optional[np.ndarray] = None
) -> np.ndarray:
    """Volume-weighted average of element values per cell.

    Parameters
    ----------
    values : np.ndarray
        Field on global elements.
    mapping : CellElementMap
    mask : np.ndarray, optional
        Element mask; only masked elements contribute (e.g. fluid elements for
        density). Cells without contributing volume get 0.
    """
    values = np.asarray(values, dtype=np.float64)
    weights = mapping.elem_volumes if mask is None else mapping.elem_volumes * mask
    total = np.bincount(mapping.elem_to_cell, weights=weights * values, minlength=mapping.n_cells)
    volume = np.bincount(mapping.elem_to_cell, weights=weights, minlength=mapping.n_cells)
    return np.divide(total, volume, out=np.zeros(mapping.n_cells), where=volume > 0.0)


def project_to_elements(values: np.ndarray, mapping: CellElementMap) -> np.ndarray:
    """Broadcast each cell value to all of its elements."""
    return np.asarray(values, dtype=np.float64)[mapping.elem_to_cell]


def project(field_values: np.ndarray, mapping: CellElementMap, direction) -> np.ndarray:
    """Transfer a field between discretizations in the given direction."""
    direction = Direction(direction)
    if direction is Direction.ELEMENTS_TO_CELLS:
        return project_to_cells(field_values, mapping)
    return project_to_elements(field_values, mapping)


def normalize_heat_source(deposition: np.ndarray, volumes: np.ndarray, power: float) -> np.ndarray:
    """Convert per-cell energy deposition into a volumetric heat source.

    q_i = P * e_i / (sum(e) * V_i); zero-volume cells and an all-zero
    deposition give 0.
    """
    deposition = np.asarray(deposition, dtype=np.float64)
    total = deposition.sum()
    if total <= 0.0:
        return np.zeros_like(deposition)
    denom = total * np.asarray(volumes, dtype=np.float64)
    return np.divide(power * deposition, denom, out=np.zeros_like(deposition), where=denom > 0.0)


# -----------------------------------------------------------------------------
# Relaxation
# -----------------------------------------------------------------------------


def relax(current_raw: np.ndarray, previous_relaxed: np.ndarray, factor: float) -> np.ndarray:
    """Under-relax ``current_raw`` against ``previous_relaxed``."""
    current_raw = np.asarray(current_raw, dtype=np.float64)
    if factor == 1.0:
        return current_raw.copy()
    return factor * current_raw + (1.0 - factor) * np.asarray(previous_relaxed, dtype=np.float64)


def update_robbins_monro(prev_factor: float, iteration_index: int) -> float:
    """Robbins-Monro step size 1 / (n + 1) for Picard iteration ``n``.

    ``prev_factor`` is not used in the result; it is accepted so callers can
    pass the factor being replaced.
    """
    if iteration_index < 0:
        raise ValueError(f"iteration_index must be non-negative, got {iteration_index}")
    return 1.0 / (iteration_index + 1)


@dataclass
class RelaxationState:
    """Relaxation factor in use for one field.

    For the adaptive schedule ``factor`` is recomputed each iteration and the
    preceding value is kept in ``previous_factor``.
    """

    configured: float
    factor: float = 1.0
    previous_factor: float = 1.0
    iteration: int = 0

    def __post_init__(self):
        self.configured = parse_relaxation_factor("relaxation", self.configured)
        if not self.adaptive:
            self.factor = self.configured

    @property
    def adaptive(self) -> bool:
        return self.configured == ROBBINS_MONRO

    def update(self, iteration_index: int) -> float:
        """Set and return the factor for Picard iteration ``iteration_index``."""
        self.previous_factor = self.factor
        self.iteration = iteration_index
        if self.adaptive:
            self.factor = update_robbins_monro(self.previous_factor, iteration_index)
        return self.factor


# -----------------------------------------------------------------------------
# Snapshots
# -----------------------------------------------------------------------------


@dataclass
class FieldSnapshot:
    """Current and previous relaxed iterate of one field."""

    name: str
    on: str  # "cells" or "elements"
    current: np.ndarray
    previous: np.ndarray = None

    def __post_init__(self):
        self.current = np.asarray(self.current, dtype=np.float64).copy()
        if self.previous is None:
            self.previous = self.current.copy()

    def commit(self, values: np.ndarray):
        """Store a newly relaxed iterate as ``current``."""
        values = np.asarray(values, dtype=np.float64)
        if values.shape != self.current.shape:
            raise ValueError(
                f"{self.name}: shape {values.shape} does not match snapshot {self.current.shape}"
            )
        self.current = values.copy()

    def advance(self):
        """Start a new Picard iteration: previous <- current."""
        self.previous = self.current.copy()


@dataclass
class FieldExchange:
    """Owns the field snapshots and relaxation state of a coupled run."""

    mapping: CellElementMap
    alpha: float = 1.0
    alpha_T: float = 1.0
    alpha_rho: float = 1.0
    heat_source: FieldSnapshot = None
    temperature: FieldSnapshot = None
    density: FieldSnapshot = None
    relaxation: dict = field(default_factory=dict)

    def __post_init__(self):
        m = self.mapping
        if self.heat_source is None:
            self.heat_source = FieldSnapshot("heat_source", "elements", np.zeros(m.n_elements))
        if self.temperature is None:
            self.temperature = FieldSnapshot("temperature", "cells", np.zeros(m.n_cells))
        if self.density is None:
            self.density = FieldSnapshot("density", "cells", np.zeros(m.n_cells))
        self.relaxation = {
            "heat_source": RelaxationState(self.alpha),
            "temperature": RelaxationState(self.alpha_T),
            "density": RelaxationState(self.alpha_rho),
        }

    def snapshots(self):
        return (self.heat_source, self.temperature, self.density)

    def advance(self, iteration_index: int):
        """Begin Picard iteration ``iteration_index``.

        Copies every current snapshot into previous and updates the
        relaxation factors.
        """
        for snapshot in self.snapshots():
            snapshot.advance()
        for state in self.relaxation.values():
            state.update(iteration_index)

    def factors(self) -> dict:
        return {name: state.factor for name, state in self.relaxation.items()}

    def relaxed_heat_source(self, raw_on_cells: np.ndarray, relax_field: bool = True) -> np.ndarray:
        """Project a per-cell heat source to elements and relax it."""
        raw = project_to_elements(raw_on_cells, self.mapping)
        factor = self.relaxation["heat_source"].factor if relax_field else 1.0
        return relax(raw, self.heat_source.previous, factor)

    def relaxed_temperature(self, raw_on_elements: np.ndarray, relax_field: bool = True) -> np.ndarray:
        """Project element temperatures to cells and relax them.

        Cells outside the heat/fluids mesh keep their previous temperature.
        """
        raw = project_to_cells(raw_on_elements, self.mapping)
        raw = np.where(self.mapping.populated, raw, self.temperature.previous)
        factor = self.relaxation["temperature"].factor if relax_field else 1.0
        return relax(raw, self.temperature.previous, factor)

    def relaxed_density(self, raw_on_elements: np.ndarray, relax_field: bool = True) -> np.ndarray:
        """Project fluid element densities to fluid cells and relax them.

        Non-fluid cells keep their previous density.
        """
        mask = self.mapping.cell_fluid_mask
        raw = project_to_cells(raw_on_elements, self.mapping, mask=self.mapping.elem_fluid_mask)
        factor = self.relaxation["density"].factor if relax_field else 1.0
        relaxed = relax(raw, self.density.previous, factor)
        return np.where(mask, relaxed, self.density.previous)
