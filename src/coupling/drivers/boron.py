"""Boron criticality search.

The search adjusts the soluble boron concentration so that k-eff approaches
a target (1.0 by default) using the secant method:

    ppm_{n+1} = ppm_n - (k_n - k_target) * (ppm_n - ppm_{n-1}) / (k_n - k_{n-1})

The first pass has no secant and uses an assumed boron worth instead.
"""

import logging
from abc import ABC, abstractmethod

from ..errors import ConfigurationError

log = logging.getLogger(__name__)


class CriticalitySearch(ABC):
    """Scalar search driven once per Picard iteration."""

    ppm = 0.0

    @abstractmethod
    def solve_ppm(self, first_pass: bool, k_eff: float, k_eff_prev: float) -> float:
        """Return the updated boron concentration [ppm]."""
        pass

    @abstractmethod
    def is_converged(self) -> bool:
        pass


class SecantBoronSearch(CriticalitySearch):
    """Secant-method boron search.

    Parameters
    ----------
    ppm : float
        Initial boron concentration [ppm].
    epsilon : float
        Relative ppm change below which the search is converged.
    target_k_eff : float
        Target multiplication factor.
    boron_worth : float
        Assumed reactivity per ppm (dk/ppm, negative) for the first pass.
    """

    def __init__(self, ppm=0.0, epsilon=1e-3, target_k_eff=1.0, boron_worth=-1.0e-4):
        if epsilon <= 0:
            raise ConfigurationError(f"Boron tolerance must be positive, got {epsilon}")
        if boron_worth == 0:
            raise ConfigurationError("Boron worth must be nonzero")
        self.ppm = float(ppm)  # concentration that produced the latest k_eff
        self.ppm_prev = float(ppm)  # concentration that produced the previous k_eff
        self.epsilon = float(epsilon)
        self.target_k_eff = float(target_k_eff)
        self.boron_worth = float(boron_worth)
        self.updates = 0

    def solve_ppm(self, first_pass: bool, k_eff: float, k_eff_prev: float) -> float:
        slope = self.boron_worth
        if not first_pass and self.ppm != self.ppm_prev and k_eff != k_eff_prev:
            slope = (k_eff - k_eff_prev) / (self.ppm - self.ppm_prev)

        ppm = max(0.0, self.ppm - (k_eff - self.target_k_eff) / slope)
        self.ppm_prev, self.ppm = self.ppm, ppm
        self.updates += 1
        log.info(f"Boron search: k_eff={k_eff:.5f}, {self.ppm_prev:.2f} -> {self.ppm:.2f} ppm")
        return self.ppm

    def is_converged(self) -> bool:
        if self.updates == 0:
            return False
        return abs(self.ppm - self.ppm_prev) <= self.epsilon * max(abs(self.ppm), 1.0)
