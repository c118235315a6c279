# =================================================================================================
# Module Imports
# =================================================================================================
import itertools
import logging
import math
from typing import List, NamedTuple, Optional, Tuple

import numpy as np
import pandas as pd
from scipy.spatial import cKDTree

from .structure import DegenerateLatticeError, Structure


logger = logging.getLogger(__name__)


# =================================================================================================
# Data Model
# =================================================================================================

class Neighbor(NamedTuple):
	"""
	One entry of a neighbor list.

	Attributes:
		index (int): Index of the neighboring atom in the original cell.
		distance (float): Euclidean distance to the neighbor's periodic image.
		displacement (np.ndarray): Image position minus source position, in cartesian space.
	"""
	index: int
	distance: float
	displacement: np.ndarray


# =================================================================================================
# Periodic Image Helpers
# =================================================================================================

def compute_num_images(lattice: np.ndarray, r_cutoff: float) -> int:
	"""
	Returns the number of periodic replicas to generate on each side of the cell.

	One conservative count, `ceil(r_cutoff / shortest_lattice_vector) + 1`, is applied to all
	three lattice directions.
	"""
	l_min = float(np.min(np.linalg.norm(lattice, axis=1)))
	if l_min <= 0.0:
		raise DegenerateLatticeError("Lattice has a zero-length vector")
	return int(math.ceil(r_cutoff / l_min)) + 1


def image_offsets(lattice: np.ndarray, num_images: int) -> np.ndarray:
	"""
	Returns the cartesian translation of every image `(na, nb, nc)` in `[-k, k]^3`.

	Offsets are enumerated with `na` outermost and `nc` innermost; this fixed order is what
	makes tie-breaking in the neighbor lists deterministic.
	"""
	span = range(-num_images, num_images + 1)
	triples = np.array(list(itertools.product(span, span, span)), dtype=float)
	return triples @ np.asarray(lattice, dtype=float)


def create_image_cloud(structure: Structure, num_images: int) -> Tuple[np.ndarray, np.ndarray]:
	"""
	Materializes the expanded point cloud of all periodic images of a structure.

	Returns:
		Tuple[np.ndarray, np.ndarray]: The (M, 3) cartesian points and, for each point, the
									   index of the original atom it images. Points are grouped
									   by image, atoms in structure order within each image.
	"""
	offsets = image_offsets(structure.lattice, num_images)
	positions = structure.cart_coords
	cloud = (offsets[:, None, :] + positions[None, :, :]).reshape(-1, 3)
	original = np.tile(np.arange(structure.num_atoms), len(offsets))
	return cloud, original


# =================================================================================================
# Periodic Neighbor Index
# =================================================================================================

class PeriodicNeighborIndex:
	"""
	Exact periodic neighbor search up to a cutoff radius.

	All periodic images within the conservative replica range are indexed in one k-d tree,
	then every atom issues a radius query against it. Multiple images of the same atom are
	kept as separate neighbors, which matters whenever the cell is small compared to the
	cutoff. Only images strictly closer than `r_cutoff` count as neighbors. The zero-displacement
	self match is dropped; nonzero self images are kept.

	Each neighbor list is sorted by ascending distance with a stable sort over the tree
	matches taken in cloud order, so ties keep the image enumeration order. Lists are then
	truncated to `max_neighbors` entries (`None` keeps every match).

	Args:
		structure (Structure): The periodic structure to index.
		r_cutoff (float, optional): Neighbor search radius. Defaults to 10.0.
		max_neighbors (Optional[int], optional): Maximum list length. Defaults to 20.
		epsilon (float, optional): Distance below which a match of an atom with its own image
								   counts as the atom itself. Defaults to 1e-10.
	"""

	def __init__(
		self,
		structure: Structure,
		r_cutoff: float = 10.0,
		max_neighbors: Optional[int] = 20,
		epsilon: float = 1e-10,
	):
		if not np.isfinite(r_cutoff) or r_cutoff <= 0:
			raise ValueError(f"r_cutoff must be a positive finite number, got {r_cutoff}")
		if max_neighbors is not None and max_neighbors < 0:
			raise ValueError(f"max_neighbors must be non-negative, got {max_neighbors}")
		if epsilon < 0:
			raise ValueError(f"epsilon must be non-negative, got {epsilon}")

		self.structure = structure
		self.r_cutoff = float(r_cutoff)
		self.max_neighbors = max_neighbors
		self.epsilon = float(epsilon)

		self.num_images = compute_num_images(structure.lattice, self.r_cutoff)
		self._indices: List[np.ndarray] = []
		self._distances: List[np.ndarray] = []
		self._displacements: List[np.ndarray] = []
		self._neighbor_lists: List[Tuple[Neighbor, ...]] = []
		self.num_cloud_points = 0

		self._build_with_pbc()

	def _build_with_pbc(self) -> None:
		structure = self.structure
		cloud, original = create_image_cloud(structure, self.num_images)
		self.num_cloud_points = len(cloud)
		logger.debug(
			f"Neighbor search: {structure.num_atoms} atoms, {self.num_images} images per side, "
			f"{len(cloud)} cloud points, r_cutoff={self.r_cutoff}"
		)

		if structure.num_atoms == 0:
			return

		tree = cKDTree(cloud)
		matches = tree.query_ball_point(structure.cart_coords, r=self.r_cutoff, return_sorted=True)

		for i, match in enumerate(matches):
			match = np.asarray(match, dtype=np.intp)
			delta = cloud[match] - structure.cart_coords[i]
			dist = np.sqrt(np.einsum("ij,ij->i", delta, delta))
			orig = original[match]

			# Matches exactly on the cutoff sphere are excluded.
			keep = (dist < self.r_cutoff) & ~((orig == i) & (dist < self.epsilon))
			orig, dist, delta = orig[keep], dist[keep], delta[keep]

			order = np.argsort(dist, kind="stable")
			if self.max_neighbors is not None:
				order = order[: self.max_neighbors]

			indices = orig[order]
			distances = dist[order]
			displacements = delta[order]
			for arr in (indices, distances, displacements):
				arr.setflags(write=False)

			self._indices.append(indices)
			self._distances.append(distances)
			self._displacements.append(displacements)
			self._neighbor_lists.append(
				tuple(
					Neighbor(int(j), float(d), v)
					for j, d, v in zip(indices, distances, displacements)
				)
			)

	def __len__(self) -> int:
		return self.structure.num_atoms

	def _check_index(self, atom_idx: int) -> int:
		if not 0 <= atom_idx < self.structure.num_atoms:
			raise IndexError(
				f"Atom index {atom_idx} out of range for structure with {self.structure.num_atoms} atoms"
			)
		return atom_idx

	def neighbors(self, atom_idx: int) -> Tuple[Neighbor, ...]:
		"""Returns the sorted, truncated neighbor list of one atom."""
		return self._neighbor_lists[self._check_index(atom_idx)]

	def neighbor_arrays(self, atom_idx: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
		"""
		Returns the neighbor list of one atom as read-only arrays.

		Returns:
			Tuple[np.ndarray, np.ndarray, np.ndarray]: Neighbor indices (K,), distances (K,) and
													   displacement vectors (K, 3).
		"""
		self._check_index(atom_idx)
		return self._indices[atom_idx], self._distances[atom_idx], self._displacements[atom_idx]

	def to_dataframe(self) -> pd.DataFrame:
		"""
		Flattens all neighbor lists into one edge table.

		Returns:
			pd.DataFrame: One row per (source, neighbor) pair with columns `source`, `target`,
						  `distance`, `dx`, `dy`, `dz`, in source order then list order.
		"""
		n_edges = [len(idx) for idx in self._indices]
		if sum(n_edges) == 0:
			return pd.DataFrame(
				{
					"source": pd.Series(dtype=int),
					"target": pd.Series(dtype=int),
					"distance": pd.Series(dtype=float),
					"dx": pd.Series(dtype=float),
					"dy": pd.Series(dtype=float),
					"dz": pd.Series(dtype=float),
				}
			)
		displacements = np.concatenate(self._displacements)
		return pd.DataFrame(
			{
				"source": np.repeat(np.arange(len(n_edges)), n_edges),
				"target": np.concatenate(self._indices),
				"distance": np.concatenate(self._distances),
				"dx": displacements[:, 0],
				"dy": displacements[:, 1],
				"dz": displacements[:, 2],
			}
		)
