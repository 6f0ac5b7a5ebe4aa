"""End-to-end tests with the slab neutronics and channel heat/fluids surrogates."""

import logging

import numpy as np
import pytest

from coupling.driver import CoupledDriver
from coupling.drivers.boron import SecantBoronSearch
from coupling.drivers.surrogate import ChannelHeatFluids, SlabNeutronics


@pytest.fixture
def slab():
    return SlabNeutronics(n_cells=10, n_reflector=1)


@pytest.fixture
def channel():
    return ChannelHeatFluids(n_axial=20)


class TestSlabNeutronics:
    def test_locate(self, slab):
        z = np.array([0.0, 40.0, 365.9, 380.0, 500.0, -1.0])
        points = np.column_stack([np.zeros(6), np.zeros(6), z])
        assert slab.locate(points).tolist() == [0, 1, 9, 10, -1, -1]

    def test_step_shape(self, slab):
        """Cosine power shape, peaked at mid-height, zero in the reflector."""
        slab.step()
        e = slab.get_field("heat_source")
        assert e[-1] == 0.0
        assert np.argmax(e[:10]) in (4, 5)
        assert np.allclose(e[:10], e[:10][::-1])

    def test_doppler_feedback(self, slab):
        slab.step()
        k_cold = slab.k_eff
        slab.set_field("temperature", np.full(11, 700.0))
        slab.step()
        assert slab.k_eff < k_cold

    def test_boron_feedback(self, slab):
        slab.step()
        k0 = slab.k_eff
        slab.set_boron_ppm(100.0, np.arange(10))
        slab.step()
        assert slab.k_eff == pytest.approx(k0 - 1.0e-2)

    def test_rejects_heat_source(self, slab):
        with pytest.raises(KeyError):
            slab.set_field("heat_source", np.zeros(11))


class TestChannelHeatFluids:
    def test_entities(self, channel):
        table = channel.enumerate_entities()
        assert len(table) == 40
        assert table.fluid.tolist()[:4] == [False, True, False, True]
        assert table.volumes.sum() == pytest.approx(1.6 * 366.0)

    def test_energy_balance(self, channel):
        """Coolant heats up by P / (m cp) over the channel."""
        volumes = channel.enumerate_entities().volumes
        power = 1.0e4
        channel.set_field("heat_source", np.full(40, power / volumes.sum()))
        channel.step()

        T = channel.get_field("temperature")
        T_coolant = T[1::2]
        half_level = 0.5 * power / 20 / (channel.mass_flow * channel.cp)
        assert T_coolant[-1] + half_level == pytest.approx(channel.T_inlet + power / (channel.mass_flow * channel.cp))
        assert np.all(np.diff(T_coolant) > 0)
        assert np.all(T[0::2] > T_coolant)

    def test_density_decreases_with_temperature(self, channel):
        channel.set_field("heat_source", np.full(40, 10.0))
        channel.step()
        rho = channel.get_field("density")
        assert np.all(np.diff(rho[1::2]) < 0)
        assert np.allclose(rho[0::2], channel.rho_fuel)


class TestCoupledSurrogates:
    """Full coupled runs on a single rank."""

    def test_converges(self, partition, slab, channel):
        driver = CoupledDriver(partition, slab, channel, power=6.5e4, max_picard_iter=20)
        metrics = driver.execute()

        assert metrics.converged
        assert 1 < metrics.picard_iterations < 20
        assert np.isfinite(metrics.final_k_eff)

    def test_power_conserved(self, partition, slab, channel):
        """Heat source integrated over elements equals the requested power."""
        driver = CoupledDriver(partition, slab, channel, power=6.5e4, max_picard_iter=5)
        driver.execute()
        hs = driver.exchange.heat_source.current
        assert np.sum(hs * driver.mapping.elem_volumes) == pytest.approx(6.5e4)

    def test_reflector_outside_mesh(self, partition, slab, channel):
        driver = CoupledDriver(partition, slab, channel, power=6.5e4)
        m = driver.mapping
        assert m.n_cells == 11
        assert m.cell_volumes[m.cell_index[10]] == 0.0

    def test_fissionable_reflector_warns(self, partition, channel, caplog):
        slab = SlabNeutronics(n_cells=10, n_reflector=1, fissionable_reflector=True)
        with caplog.at_level(logging.WARNING):
            CoupledDriver(partition, slab, channel)
        assert "fissionable cell" in caplog.text

    def test_relaxed_run(self, partition, slab, channel):
        driver = CoupledDriver(partition, slab, channel, power=6.5e4, alpha=0.7, norm="l2", max_picard_iter=30)
        assert driver.execute().converged

    def test_criticality_search(self, partition, slab, channel):
        driver = CoupledDriver(
            partition,
            slab,
            channel,
            power=6.5e4,
            max_picard_iter=30,
            criticality_search=True,
            criticality=SecantBoronSearch(epsilon=1e-3, boron_worth=-1.0e-4),
        )
        metrics = driver.execute()
        assert metrics.converged
        assert metrics.final_boron_ppm > 0.0
        assert metrics.final_k_eff == pytest.approx(1.0, abs=1e-3)
