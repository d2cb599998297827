"""
tests/test_growth.py - Domain growth and cell repositioning.
"""

import numpy as np
import pytest

from crestflow.crestflow_core import (
    Cell,
    growth_exponents,
    growth_multiplier,
    integrate_growth_map,
    growth_rate,
    segment_index,
    stable_timestep,
    strain_rate_profile,
)


class TestGrowthExponents:
    """The two strain segments must stretch the domain to the target length."""

    @pytest.mark.parametrize("theta,first_part_grows", [(1.0, True), (0.5, True), (0.5, False)])
    def test_final_length_is_reached(self, theta, first_part_grows):
        length_x, final_length, final_time = 100, 150.0, 1.0
        alpha1, alpha2 = growth_exponents(length_x, final_length, final_time, 2.0, theta, first_part_grows)
        strain = strain_rate_profile(length_x, theta, alpha1, alpha2)
        gamma = integrate_growth_map(growth_multiplier(strain, final_time), 1.0)
        assert gamma[-1] == pytest.approx(final_length, rel=0.02)

    def test_faster_segment_ratio(self):
        alpha1, alpha2 = growth_exponents(100, 150.0, 1.0, 2.0, 0.5, True)
        assert np.exp(alpha1) / np.exp(alpha2) == pytest.approx(2.0)

    def test_profile_is_split_at_theta(self):
        strain = strain_rate_profile(10, 0.3, 1.0, 0.5)
        assert list(strain[:3]) == [1.0, 1.0, 1.0]
        assert np.all(strain[3:] == 0.5)


class TestGrowthMap:

    def test_column_zero_is_pinned(self):
        gamma = integrate_growth_map(np.full(5, 3.0), 1.0)
        assert gamma[0] == 0.0
        assert list(gamma) == [0.0, 3.0, 6.0, 9.0, 12.0]

    def test_unit_multiplier_gives_grid_coordinates(self):
        gamma = integrate_growth_map(np.ones(6), 1.0)
        assert np.array_equal(gamma, np.arange(6, dtype=float))

    def test_growth_rate_is_time_derivative(self):
        rate = growth_rate(np.array([0.0, 1.5, 3.0]), np.array([0.0, 1.0, 2.0]), 0.5)
        assert np.allclose(rate, [0.0, 1.0, 2.0])

    def test_map_non_decreasing_every_step(self, make_sim):
        sim = make_sim(insertion_freq=0)
        for _ in range(20):
            sim.run_simulation(steps=1)
            assert sim.gamma[0] == 0.0
            assert np.all(np.diff(sim.gamma) >= 0)

    def test_domain_grows(self, make_sim):
        sim = make_sim(insertion_freq=0)
        start = sim.domain_length
        sim.run_simulation(steps=10)
        assert sim.domain_length > start


class TestSegmentIndex:
    """Index is the largest boundary not exceeding x."""

    gamma_old = np.array([0.0, 1.0, 2.0, 3.0])

    def test_exact_boundary_selects_that_segment(self):
        assert segment_index(self.gamma_old, 1.0) == 1

    def test_between_boundaries(self):
        assert segment_index(self.gamma_old, 1.5) == 1

    def test_clamped_to_grid(self):
        assert segment_index(self.gamma_old, -0.1) == 0
        assert segment_index(self.gamma_old, 10.0) == 3


class TestRepositioning:

    def test_cells_shift_by_growth_of_their_segment(self, make_sim):
        sim = make_sim(initial_setup_type='empty', insertion_freq=0)
        for x in (10.5, 30.0, 50.2, 80.9):
            sim.add_cell((x, 60.0), Cell.LEADER)
        before = sim.positions()
        gamma_before = sim.gamma.copy()

        sim.t = 0.5
        sim._grow_domain()
        sim._reposition_cells()

        for cell, (x, y) in zip(sim.cells, before):
            value = segment_index(gamma_before, x)
            assert cell.scaling == value
            assert cell.position[0] == x + (sim.gamma[value] - gamma_before[value])
            assert cell.position[1] == y
        assert sim.cells[1].scaling == 30

    def test_gamma_old_tracks_gamma(self, make_sim):
        sim = make_sim(insertion_freq=0)
        sim.run_simulation(steps=3)
        assert np.array_equal(sim.gamma_old, sim.gamma)


class TestStability:

    def test_stable_timestep(self):
        assert stable_timestep(2.0, 1.0, 1.0) == pytest.approx(0.125)
        assert stable_timestep(0.0, 1.0, 1.0) == np.inf

    def test_growth_relaxes_the_limit(self):
        assert stable_timestep(2.0, 1.0, 1.0, gamma_x_min=2.0) > stable_timestep(2.0, 1.0, 1.0)

    def test_warning_when_dt_too_large(self, make_sim, capsys):
        make_sim(dt=0.2, final_time=2.0)
        assert "WARNING" in capsys.readouterr().out
