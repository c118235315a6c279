"""
Persistent homology of local point clouds.

Thin adapter around ripser's Vietoris-Rips persistence. Callers only see
`PersistenceResult`, one (K, 2) birth/death array per homology dimension, with
death equal to +inf for classes still alive at the threshold.
"""

# =================================================================================================
# Module Imports
# =================================================================================================
from dataclasses import dataclass
from typing import List

import numpy as np
from ripser import ripser
from scipy.spatial.distance import pdist, squareform


MAX_HOMOLOGY_DIM = 2


# =================================================================================================
# Data Model
# =================================================================================================

def _empty_diagram() -> np.ndarray:
	return np.empty((0, 2), dtype=float)


@dataclass(frozen=True)
class PersistenceResult:
	"""
	Persistence diagrams for homology dimensions 0, 1 and 2.

	Attributes:
		dim0 (np.ndarray): (K0, 2) birth/death pairs of connected components.
		dim1 (np.ndarray): (K1, 2) birth/death pairs of loops.
		dim2 (np.ndarray): (K2, 2) birth/death pairs of voids.
	"""
	dim0: np.ndarray
	dim1: np.ndarray
	dim2: np.ndarray

	def diagram(self, dim: int) -> np.ndarray:
		if dim not in (0, 1, 2):
			raise ValueError(f"Homology dimension must be 0, 1 or 2, got {dim}")
		return (self.dim0, self.dim1, self.dim2)[dim]


def persistence(diagram: np.ndarray) -> np.ndarray:
	"""Returns death minus birth for every pair of a diagram."""
	diagram = np.asarray(diagram, dtype=float).reshape(-1, 2)
	return diagram[:, 1] - diagram[:, 0]


# =================================================================================================
# Persistence Computation
# =================================================================================================

def _to_result(diagrams: List[np.ndarray]) -> PersistenceResult:
	padded = [np.asarray(d, dtype=float).reshape(-1, 2) for d in diagrams[: MAX_HOMOLOGY_DIM + 1]]
	while len(padded) < MAX_HOMOLOGY_DIM + 1:
		padded.append(_empty_diagram())
	return PersistenceResult(dim0=padded[0], dim1=padded[1], dim2=padded[2])


def compute_persistence_from_distances(
	distance_matrix: np.ndarray,
	threshold: float,
	max_dim: int = MAX_HOMOLOGY_DIM,
) -> PersistenceResult:
	"""
	Computes Vietoris-Rips persistence from a symmetric distance matrix.

	Edges longer than `threshold` never enter the filtration, so classes that would only
	die past it are reported with an infinite death. Components are born at 0.

	Args:
		distance_matrix (np.ndarray): (N, N) symmetric distance matrix.
		threshold (float): Maximum edge length of the Rips filtration.
		max_dim (int, optional): Highest homology dimension, at most 2. Defaults to 2.

	Returns:
		PersistenceResult: Diagrams for dimensions 0-2; dimensions above `max_dim` are empty.
	"""
	if not 0 <= max_dim <= MAX_HOMOLOGY_DIM:
		raise ValueError(f"max_dim must be between 0 and {MAX_HOMOLOGY_DIM}, got {max_dim}")

	distance_matrix = np.asarray(distance_matrix, dtype=float)
	if distance_matrix.ndim != 2 or distance_matrix.shape[0] != distance_matrix.shape[1]:
		raise ValueError(f"Distance matrix must be square, got shape {distance_matrix.shape}")

	n_points = distance_matrix.shape[0]
	if n_points == 0:
		return _to_result([])
	if n_points == 1:
		return _to_result([np.array([[0.0, np.inf]])])

	result = ripser(distance_matrix, maxdim=max_dim, thresh=float(threshold), distance_matrix=True)
	return _to_result(result["dgms"])


def compute_persistence(
	point_cloud: np.ndarray,
	threshold: float,
	max_dim: int = MAX_HOMOLOGY_DIM,
) -> PersistenceResult:
	"""
	Computes Vietoris-Rips persistence of a cartesian point cloud.

	The pairwise euclidean distance matrix is built first and handed to
	`compute_persistence_from_distances`.
	"""
	point_cloud = np.asarray(point_cloud, dtype=float)
	if point_cloud.ndim != 2:
		raise ValueError(f"Point cloud must be a 2-D array, got shape {point_cloud.shape}")
	if len(point_cloud) < 2:
		return compute_persistence_from_distances(np.zeros((len(point_cloud), len(point_cloud))), threshold, max_dim)
	return compute_persistence_from_distances(squareform(pdist(point_cloud)), threshold, max_dim)
