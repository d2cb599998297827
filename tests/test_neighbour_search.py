"""
tests/test_neighbour_search.py - Radius queries and snapshot staleness.
"""

import numpy as np
import pytest

from crestflow.neighbour_search import NeighbourSearch


@pytest.fixture
def index():
    search = NeighbourSearch((0.0, 0.0), (100.0, 100.0))
    search.refresh(np.array([[10.0, 10.0], [20.0, 10.0], [10.0, 24.0], [50.0, 50.0]]))
    return search


class TestQuery:

    def test_returns_neighbours_with_offsets(self, index):
        indices, offsets = index.query((12.0, 10.0), 15.0)
        assert list(indices) == [0, 1, 2]
        assert np.allclose(offsets, [[-2.0, 0.0], [8.0, 0.0], [-2.0, 14.0]])

    def test_radius_is_strict(self, index):
        indices, _ = index.query((10.0, 10.0), 10.0)
        assert list(indices) == [0]

    def test_empty_result(self, index):
        indices, offsets = index.query((90.0, 90.0), 5.0)
        assert len(indices) == 0
        assert offsets.shape == (0, 2)

    def test_empty_index(self):
        search = NeighbourSearch((0.0, 0.0), (10.0, 10.0))
        search.refresh(np.zeros((0, 2)))
        indices, _ = search.query((1.0, 1.0), 5.0)
        assert len(indices) == 0
        assert search.is_free((1.0, 1.0), 5.0)

    def test_is_free_ignores_excluded_entry(self, index):
        assert not index.is_free((10.0, 10.0), 5.0)
        assert index.is_free((10.0, 10.0), 5.0, exclude=0)


class TestSnapshot:

    def test_moves_after_refresh_are_not_seen(self):
        search = NeighbourSearch((0.0, 0.0), (100.0, 100.0))
        positions = np.array([[5.0, 5.0]])
        search.refresh(positions)
        positions[0] = [50.0, 50.0]
        assert search.is_free((50.0, 50.0), 1.0)
        assert not search.is_free((5.0, 5.0), 1.0)

    def test_update_makes_single_move_visible(self, index):
        index.update(3, np.array([80.0, 80.0]))
        indices, _ = index.query((80.0, 80.0), 1.0)
        assert list(indices) == [3]
        assert index.is_free((50.0, 50.0), 1.0)

    def test_several_updates_before_a_query(self, index):
        index.update(0, np.array([90.0, 90.0]))
        index.update(1, np.array([90.0, 70.0]))
        indices, offsets = index.query((90.0, 80.0), 11.0)
        assert list(indices) == [0, 1]
        assert np.allclose(offsets, [[0.0, 10.0], [0.0, -10.0]])
        assert index.is_free((10.0, 10.0), 5.0)

    def test_positions_outside_domain_rejected(self):
        search = NeighbourSearch((0.0, 0.0), (10.0, 10.0))
        with pytest.raises(ValueError):
            search.refresh(np.array([[11.0, 1.0]]))
