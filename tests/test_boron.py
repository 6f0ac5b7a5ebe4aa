"""Tests for the secant boron criticality search."""

import pytest

from coupling.drivers.boron import SecantBoronSearch
from coupling.errors import ConfigurationError


def linear_core(ppm, k0=1.05, worth=-1.0e-4):
    """k_eff of a core with constant boron worth."""
    return k0 + worth * ppm


class TestSecantBoronSearch:
    """Tests for the boron concentration update and convergence flag."""

    def test_first_pass_uses_boron_worth(self):
        search = SecantBoronSearch(boron_worth=-1.0e-4)
        ppm = search.solve_ppm(True, 1.02, float("nan"))
        assert ppm == pytest.approx(200.0)

    def test_not_converged_before_update(self):
        assert not SecantBoronSearch().is_converged()

    def test_exact_worth_converges_in_two_updates(self):
        """With the true worth the first pass lands on the critical concentration."""
        search = SecantBoronSearch(epsilon=1e-3, boron_worth=-1.0e-4)
        k_prev = float("nan")
        k = linear_core(search.ppm)
        search.solve_ppm(True, k, k_prev)
        assert not search.is_converged()

        k_prev, k = k, linear_core(search.ppm)
        search.solve_ppm(False, k, k_prev)
        assert search.is_converged()
        assert search.ppm == pytest.approx(500.0)

    def test_secant_corrects_wrong_worth(self):
        """A poor initial worth guess is corrected by the secant slope."""
        search = SecantBoronSearch(epsilon=1e-6, boron_worth=-5.0e-5)
        k_prev = float("nan")
        first = True
        for _ in range(10):
            k = linear_core(search.ppm)
            search.solve_ppm(first, k, k_prev)
            first, k_prev = False, k
            if search.is_converged():
                break
        assert search.is_converged()
        assert search.ppm == pytest.approx(500.0, rel=1e-6)

    def test_concentration_not_negative(self):
        search = SecantBoronSearch()
        assert search.solve_ppm(True, 0.95, float("nan")) == 0.0

    def test_target_k_eff(self):
        search = SecantBoronSearch(target_k_eff=1.01)
        assert search.solve_ppm(True, 1.02, float("nan")) == pytest.approx(100.0)

    @pytest.mark.parametrize("kwargs", [{"epsilon": 0.0}, {"boron_worth": 0.0}])
    def test_invalid(self, kwargs):
        with pytest.raises(ConfigurationError):
            SecantBoronSearch(**kwargs)
