"""Coupled neutronics / thermal-hydraulics Picard iteration.

This package couples a neutron transport solver (working on cells) with a
thermal-hydraulics solver (working on mesh elements) running on disjoint or
overlapping groups of MPI ranks.

Driver Hierarchy:
-----------------
SolverDriver (abstract base - entities, fields, step lifecycle)
├── NeutronicsDriver (cells, point location, heat source)
│   └── SlabNeutronics (axial slab surrogate)
└── HeatFluidsDriver (elements, temperature and density)
    └── ChannelHeatFluids (single channel surrogate)

CoupledDriver runs the Picard loop over one neutronics and one heat/fluids
driver, with an optional CriticalitySearch (SecantBoronSearch) for boron.
"""

from .comm import CommPartition, partition_comm
from .datastructures import (
    ROBBINS_MONRO,
    CouplingParameters,
    EntityTable,
    Metrics,
    TimeSeries,
)
from .driver import CoupledDriver, CoupledIterationState, Phase
from .drivers import (
    ChannelHeatFluids,
    CriticalitySearch,
    HeatFluidsDriver,
    NeutronicsDriver,
    SecantBoronSearch,
    SlabNeutronics,
    SolverDriver,
)
from .errors import (
    CollectiveFailure,
    ConfigurationError,
    ConvergenceWarning,
    CouplingError,
    MappingError,
)
from .exchange import FieldExchange, FieldSnapshot, RelaxationState, project, relax
from .mapping import CellElementMap, DiscretizationMapper, ElementRecord, reduce_gathered
from .norms import iterate_norm

__all__ = [
    # Communicators
    "CommPartition",
    "partition_comm",
    # Data structures
    "ROBBINS_MONRO",
    "CouplingParameters",
    "EntityTable",
    "Metrics",
    "TimeSeries",
    # Mapping and exchange
    "CellElementMap",
    "DiscretizationMapper",
    "ElementRecord",
    "reduce_gathered",
    "FieldExchange",
    "FieldSnapshot",
    "RelaxationState",
    "project",
    "relax",
    "iterate_norm",
    # Drivers
    "CoupledDriver",
    "CoupledIterationState",
    "Phase",
    "SolverDriver",
    "NeutronicsDriver",
    "HeatFluidsDriver",
    "SlabNeutronics",
    "ChannelHeatFluids",
    "CriticalitySearch",
    "SecantBoronSearch",
    # Errors
    "CouplingError",
    "ConfigurationError",
    "MappingError",
    "CollectiveFailure",
    "ConvergenceWarning",
]
