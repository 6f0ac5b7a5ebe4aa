"""Solver adapters and the boron criticality search."""

from .base import HeatFluidsDriver, NeutronicsDriver, SolverDriver
from .boron import CriticalitySearch, SecantBoronSearch
from .surrogate import ChannelHeatFluids, SlabNeutronics

__all__ = [
    "SolverDriver",
    "NeutronicsDriver",
    "HeatFluidsDriver",
    "CriticalitySearch",
    "SecantBoronSearch",
    "SlabNeutronics",
    "ChannelHeatFluids",
]
