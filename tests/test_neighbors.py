"""
Tests for the nearest-neighbor collaborator in ccmatch.
"""

import pytest

from ccmatch.neighbors import build_index, nearest


def test_nearest_ascending_by_distance():
    index = build_index([[0.0, 0.0], [3.0, 4.0], [1.0, 0.0]])
    found = nearest(index, [0.0, 0.0], 3)

    assert [pos for pos, _ in found] == [0, 2, 1]
    assert [d for _, d in found] == pytest.approx([0.0, 1.0, 5.0])


def test_ties_broken_by_insertion_order():
    points = [[1.0], [-1.0], [1.0], [-1.0], [0.5]]
    index = build_index(points)

    found = nearest(index, [0.0], 3)
    assert [pos for pos, _ in found] == [4, 0, 1]


def test_tie_cut_at_k_uses_insertion_order():
    points = [[2.0], [1.0], [-1.0], [1.0]]
    index = build_index(points)

    found = nearest(index, [0.0], 2)
    assert [pos for pos, _ in found] == [1, 2]


def test_k_larger_than_index():
    index = build_index([[1.0], [2.0]])
    assert len(nearest(index, [0.0], 10)) == 2


def test_empty_index():
    index = build_index([])
    assert index.size == 0
    assert nearest(index, [0.0], 3) == []


def test_zero_dimensional_vectors():
    index = build_index([[], [], []])
    assert nearest(index, [], 2) == [(0, 0.0), (1, 0.0)]
