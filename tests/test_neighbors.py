import math

import numpy as np
import pytest

from defect_topo.neighbors import PeriodicNeighborIndex, compute_num_images, create_image_cloud
from defect_topo.structure import Structure


HALF_BODY_DIAGONAL = 5.0 * math.sqrt(3.0) / 2.0


def _two_atom_cubic():
	return Structure(np.eye(3) * 5.0, [[0.0, 0.0, 0.0], [0.5, 0.5, 0.5]], [0, 1])


def _triclinic():
	lattice = np.array([[4.0, 0.0, 0.0], [1.0, 3.6, 0.0], [0.5, 0.7, 4.2]])
	frac = [[0.0, 0.0, 0.0], [0.31, 0.62, 0.17], [0.77, 0.12, 0.58]]
	return Structure(lattice, frac, [0, 1, 1])


def test_num_images_uses_shortest_lattice_vector():
	lattice = np.diag([5.0, 8.0, 12.0])

	assert compute_num_images(lattice, 4.5) == 2
	assert compute_num_images(lattice, 10.0) == 3
	assert compute_num_images(lattice, 10.5) == 4


def test_image_cloud_tracks_original_atoms():
	structure = _two_atom_cubic()

	cloud, original = create_image_cloud(structure, 1)

	assert cloud.shape == (27 * 2, 3)
	assert original.tolist() == [0, 1] * 27
	# The first image is (-1, -1, -1), the zero image sits in the middle.
	np.testing.assert_allclose(cloud[0], [-5.0, -5.0, -5.0])
	np.testing.assert_allclose(cloud[2 * 13], structure.cart_coords[0])


def test_two_atom_cell_has_no_neighbors_inside_four_angstrom():
	index = PeriodicNeighborIndex(_two_atom_cubic(), r_cutoff=4.0, max_neighbors=10)

	assert index.neighbors(0) == ()
	assert index.neighbors(1) == ()


def test_two_atom_cell_body_diagonal_neighbors():
	index = PeriodicNeighborIndex(_two_atom_cubic(), r_cutoff=4.5, max_neighbors=10)

	for i, other in ((0, 1), (1, 0)):
		neighbors = index.neighbors(i)
		assert len(neighbors) == 8
		assert all(n.index == other for n in neighbors)
		assert all(n.distance == pytest.approx(HALF_BODY_DIAGONAL) for n in neighbors)
		signs = {tuple(np.sign(n.displacement).astype(int)) for n in neighbors}
		assert len(signs) == 8
		for n in neighbors:
			np.testing.assert_allclose(np.abs(n.displacement), [2.5, 2.5, 2.5])


def test_two_atom_cell_truncates_to_max_neighbors():
	structure = _two_atom_cubic()

	truncated = PeriodicNeighborIndex(structure, r_cutoff=5.5, max_neighbors=10)
	full = PeriodicNeighborIndex(structure, r_cutoff=5.5, max_neighbors=None)

	assert len(full.neighbors(0)) == 14
	assert len(truncated.neighbors(0)) == 10
	distances = [n.distance for n in truncated.neighbors(0)]
	assert distances[:8] == pytest.approx([HALF_BODY_DIAGONAL] * 8)
	assert distances[8:] == pytest.approx([5.0, 5.0])
	assert [n.index for n in truncated.neighbors(0)[8:]] == [0, 0]
	for a, b in zip(truncated.neighbors(0), full.neighbors(0)[:10]):
		assert a.index == b.index
		assert a.distance == b.distance
		np.testing.assert_array_equal(a.displacement, b.displacement)


def test_small_cell_keeps_periodic_self_images():
	structure = Structure(np.eye(3) * 3.0, [[0.2, 0.2, 0.2]], [0])

	index = PeriodicNeighborIndex(structure, r_cutoff=4.0, max_neighbors=20)
	neighbors = index.neighbors(0)

	assert len(neighbors) == 6
	assert all(n.index == 0 for n in neighbors)
	assert all(n.distance == pytest.approx(3.0) for n in neighbors)
	assert all(np.linalg.norm(n.displacement) > 0 for n in neighbors)


def test_images_exactly_on_the_cutoff_are_excluded():
	structure = Structure(np.eye(3) * 5.0, [[0.0, 0.0, 0.0]], [0])

	on_sphere = PeriodicNeighborIndex(structure, r_cutoff=5.0, max_neighbors=None)
	just_outside = PeriodicNeighborIndex(structure, r_cutoff=5.0 + 1e-9, max_neighbors=None)

	assert on_sphere.neighbors(0) == ()
	assert len(just_outside.neighbors(0)) == 6


def test_zero_displacement_self_match_is_excluded():
	structure = _triclinic()
	index = PeriodicNeighborIndex(structure, r_cutoff=6.0, max_neighbors=None)

	for i in range(len(structure)):
		for n in index.neighbors(i):
			assert n.distance > 0
			assert not (n.index == i and np.allclose(n.displacement, 0.0))


def test_neighbor_lists_are_sorted_and_within_cutoff():
	index = PeriodicNeighborIndex(_triclinic(), r_cutoff=6.3, max_neighbors=None)

	for i in range(3):
		indices, distances, displacements = index.neighbor_arrays(i)
		assert np.all(np.diff(distances) >= 0)
		assert np.all(distances <= 6.3 + 1e-9)
		np.testing.assert_allclose(np.linalg.norm(displacements, axis=1), distances)
		assert len(indices) == len(index.neighbors(i))


def test_neighbor_relation_is_symmetric_under_periodicity():
	structure = _triclinic()
	index = PeriodicNeighborIndex(structure, r_cutoff=6.3, max_neighbors=None)

	for i in range(len(structure)):
		for n in index.neighbors(i):
			reverse = [
				m for m in index.neighbors(n.index)
				if m.index == i and np.allclose(m.displacement, -n.displacement, atol=1e-9)
			]
			assert len(reverse) == 1
			assert reverse[0].distance == pytest.approx(n.distance)


def test_larger_cutoff_keeps_every_smaller_cutoff_neighbor():
	structure = _triclinic()
	small = PeriodicNeighborIndex(structure, r_cutoff=4.0, max_neighbors=None)
	large = PeriodicNeighborIndex(structure, r_cutoff=6.0, max_neighbors=None)

	def _keys(idx, i):
		return {(n.index, tuple(np.round(n.displacement, 8))) for n in idx.neighbors(i)}

	for i in range(len(structure)):
		assert _keys(small, i) <= _keys(large, i)
		assert len(large.neighbors(i)) >= len(small.neighbors(i))


def test_neighbor_search_is_deterministic():
	structure = _triclinic()
	first = PeriodicNeighborIndex(structure, r_cutoff=6.0, max_neighbors=12)
	second = PeriodicNeighborIndex(structure, r_cutoff=6.0, max_neighbors=12)

	for i in range(len(structure)):
		for a, b in zip(first.neighbor_arrays(i), second.neighbor_arrays(i)):
			np.testing.assert_array_equal(a, b)


def test_out_of_range_query_raises():
	index = PeriodicNeighborIndex(_two_atom_cubic(), r_cutoff=4.5)

	with pytest.raises(IndexError):
		index.neighbors(2)
	with pytest.raises(IndexError):
		index.neighbor_arrays(-1)


@pytest.mark.parametrize("r_cutoff", [0.0, -1.0, float("inf")])
def test_invalid_cutoff_is_rejected(r_cutoff):
	with pytest.raises(ValueError):
		PeriodicNeighborIndex(_two_atom_cubic(), r_cutoff=r_cutoff)


def test_edge_table_flattens_all_lists():
	index = PeriodicNeighborIndex(_two_atom_cubic(), r_cutoff=4.5, max_neighbors=None)

	df = index.to_dataframe()

	assert list(df.columns) == ["source", "target", "distance", "dx", "dy", "dz"]
	assert len(df) == 16
	assert df["source"].tolist() == [0] * 8 + [1] * 8
	assert df["target"].tolist() == [1] * 8 + [0] * 8
	assert df["distance"].to_numpy() == pytest.approx(np.full(16, HALF_BODY_DIAGONAL))


def test_edge_table_is_empty_without_neighbors():
	index = PeriodicNeighborIndex(_two_atom_cubic(), r_cutoff=4.0)

	df = index.to_dataframe()

	assert df.empty
	assert "distance" in df.columns
