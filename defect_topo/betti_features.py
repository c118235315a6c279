# =================================================================================================
# Module Imports
# =================================================================================================
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from . import persistence as persistence_module
from .neighbors import PeriodicNeighborIndex
from .structure import Structure


logger = logging.getLogger(__name__)


# =================================================================================================
# Constants
# =================================================================================================
# Fixed layout of the per-atom descriptor: death statistics of the H0 diagram, then
# persistence/birth/death statistics of the H1 and H2 diagrams, five statistics each.

STATISTIC_NAMES = ("mean", "std", "max", "min", "weighted_sum")
BETTI_FEATURE_DIM = 35

# Little-endian on-disk layout of a feature matrix: int32 rows, int32 cols, float64 row-major.
_HEADER_DTYPE = np.dtype("<i4")
_VALUE_DTYPE = np.dtype("<f8")


# =================================================================================================
# Statistics
# =================================================================================================

class StatisticType(Enum):
	"""Scalar projection of a persistence pair used to build one block of statistics."""
	BIRTH = "birth"
	DEATH = "death"
	PERSISTENCE = "persistence"

	def project(self, diagram: np.ndarray) -> np.ndarray:
		diagram = np.asarray(diagram, dtype=float).reshape(-1, 2)
		if self is StatisticType.BIRTH:
			return diagram[:, 0]
		if self is StatisticType.DEATH:
			return diagram[:, 1]
		return persistence_module.persistence(diagram)


# (homology dimension, projection) blocks in feature order.
FEATURE_LAYOUT: Tuple[Tuple[int, StatisticType], ...] = (
	(0, StatisticType.DEATH),
	(1, StatisticType.PERSISTENCE),
	(1, StatisticType.BIRTH),
	(1, StatisticType.DEATH),
	(2, StatisticType.PERSISTENCE),
	(2, StatisticType.BIRTH),
	(2, StatisticType.DEATH),
)


@dataclass(frozen=True)
class BettiStatistics:
	"""Summary statistics of one projection of one persistence diagram."""
	mean: float = 0.0
	std: float = 0.0
	max: float = 0.0
	min: float = 0.0
	weighted_sum: float = 0.0

	def as_array(self) -> np.ndarray:
		return np.array([self.mean, self.std, self.max, self.min, self.weighted_sum], dtype=float)


def compute_statistics(diagram: np.ndarray, stat_type: StatisticType, weight: float = 1.0) -> BettiStatistics:
	"""
	Reduces one projection of a persistence diagram to five statistics.

	Pairs with an infinite death are skipped before projecting. An empty diagram, or one
	with only infinite pairs, yields all-zero statistics. The standard deviation is the
	population one and the weighted sum is the plain sum times `weight`.

	Args:
		diagram (np.ndarray): (K, 2) birth/death pairs.
		stat_type (StatisticType): Which scalar of each pair to summarize.
		weight (float, optional): Multiplier of the summed values. Defaults to 1.0.

	Returns:
		BettiStatistics: mean, std, max, min and weighted sum of the projected values.
	"""
	diagram = np.asarray(diagram, dtype=float).reshape(-1, 2)
	finite = diagram[np.isfinite(diagram[:, 1])]
	if len(finite) == 0:
		return BettiStatistics()

	values = stat_type.project(finite)
	return BettiStatistics(
		mean=float(np.mean(values)),
		std=float(np.std(values)),
		max=float(np.max(values)),
		min=float(np.min(values)),
		weighted_sum=float(np.sum(values) * weight),
	)


def feature_names() -> List[str]:
	"""Column names of the 35-length feature vector, in feature order."""
	return [
		f"h{dim}_{stat_type.value}_{stat}"
		for dim, stat_type in FEATURE_LAYOUT
		for stat in STATISTIC_NAMES
	]


# =================================================================================================
# Feature Extraction
# =================================================================================================

def local_point_cloud(structure: Structure, atom_idx: int, neighbor_index: PeriodicNeighborIndex) -> np.ndarray:
	"""
	Returns the local cloud of one atom: its own position first, then every neighbor image.
	"""
	center = structure.cart_coords[atom_idx]
	_, _, displacements = neighbor_index.neighbor_arrays(atom_idx)
	return np.vstack([center[None, :], center[None, :] + displacements])


def compute_atom_betti_features(
	structure: Structure,
	atom_idx: int,
	r_cutoff: float,
	neighbor_index: PeriodicNeighborIndex,
) -> np.ndarray:
	"""
	Computes the 35-length topological descriptor of one atom.

	The local point cloud (center plus every neighbor image within the index cutoff) goes
	through Vietoris-Rips persistence with `r_cutoff` as the filtration threshold. Each
	statistics block uses `1 / population of the center atom's element` as the weight of
	its weighted sum.

	Args:
		structure (Structure): The structure the atom belongs to.
		atom_idx (int): Index of the center atom.
		r_cutoff (float): Persistence threshold, normally the neighbor index cutoff.
		neighbor_index (PeriodicNeighborIndex): Neighbor index of `structure`.

	Returns:
		np.ndarray: Feature vector of length `BETTI_FEATURE_DIM`.
	"""
	if not 0 <= atom_idx < structure.num_atoms:
		raise IndexError(f"Atom index {atom_idx} out of range for structure with {structure.num_atoms} atoms")

	weight = 1.0 / structure.count(structure.atoms[atom_idx].element)
	cloud = local_point_cloud(structure, atom_idx, neighbor_index)
	result = persistence_module.compute_persistence(cloud, r_cutoff)

	features = np.empty(BETTI_FEATURE_DIM, dtype=float)
	for block, (dim, stat_type) in enumerate(FEATURE_LAYOUT):
		stats = compute_statistics(result.diagram(dim), stat_type, weight)
		features[5 * block: 5 * block + 5] = stats.as_array()
	return features


def compute_structure_betti_features(
	structure: Structure,
	r_cutoff: float = 10.0,
	num_workers: int = 1,
	neighbor_index: Optional[PeriodicNeighborIndex] = None,
) -> np.ndarray:
	"""
	Computes the descriptor of every atom of a structure as an (N, 35) matrix.

	The neighbor index is built once, untruncated, with radius `r_cutoff`. Atoms only read the
	shared structure and index and each writes its own row, so `num_workers > 1` spreads
	atoms over a thread pool without changing the result.

	Args:
		structure (Structure): The structure to describe.
		r_cutoff (float, optional): Neighbor radius and persistence threshold. Defaults to 10.0.
		num_workers (int, optional): Threads used across atoms. Defaults to 1.
		neighbor_index (Optional[PeriodicNeighborIndex], optional): A prebuilt index to reuse.
			It must have been built with `r_cutoff` and no truncation.

	Returns:
		np.ndarray: Feature matrix with one row per atom.
	"""
	if num_workers < 1:
		raise ValueError(f"num_workers must be at least 1, got {num_workers}")
	if neighbor_index is None:
		neighbor_index = PeriodicNeighborIndex(structure, r_cutoff=r_cutoff, max_neighbors=None)

	features = np.zeros((structure.num_atoms, BETTI_FEATURE_DIM), dtype=float)

	def _fill_row(i: int) -> None:
		features[i] = compute_atom_betti_features(structure, i, r_cutoff, neighbor_index)

	if num_workers == 1 or structure.num_atoms < 2:
		for i in range(structure.num_atoms):
			_fill_row(i)
	else:
		with ThreadPoolExecutor(max_workers=num_workers) as executor:
			# list() re-raises the first worker exception, if any.
			list(executor.map(_fill_row, range(structure.num_atoms)))

	logger.debug(f"Computed Betti features for {structure.num_atoms} atoms (r_cutoff={r_cutoff})")
	return features


class BettiFeatureExtractor:
	"""
	Per-atom topological descriptors with a fixed cutoff and worker count.

	Args:
		r_cutoff (float, optional): Neighbor radius and persistence threshold. Defaults to 10.0.
		num_workers (int, optional): Threads used across atoms of one structure. Defaults to 1.
	"""

	def __init__(self, r_cutoff: float = 10.0, num_workers: int = 1):
		if not np.isfinite(r_cutoff) or r_cutoff <= 0:
			raise ValueError(f"r_cutoff must be a positive finite number, got {r_cutoff}")
		if num_workers < 1:
			raise ValueError(f"num_workers must be at least 1, got {num_workers}")
		self.r_cutoff = float(r_cutoff)
		self.num_workers = num_workers

	def build_index(self, structure: Structure) -> PeriodicNeighborIndex:
		return PeriodicNeighborIndex(structure, r_cutoff=self.r_cutoff, max_neighbors=None)

	def atom_features(
		self,
		structure: Structure,
		atom_idx: int,
		neighbor_index: Optional[PeriodicNeighborIndex] = None,
	) -> np.ndarray:
		if neighbor_index is None:
			neighbor_index = self.build_index(structure)
		return compute_atom_betti_features(structure, atom_idx, self.r_cutoff, neighbor_index)

	def structure_features(
		self,
		structure: Structure,
		neighbor_index: Optional[PeriodicNeighborIndex] = None,
	) -> np.ndarray:
		return compute_structure_betti_features(
			structure,
			r_cutoff=self.r_cutoff,
			num_workers=self.num_workers,
			neighbor_index=neighbor_index,
		)


def features_to_dataframe(features: np.ndarray, element_symbols: Optional[Sequence[str]] = None) -> pd.DataFrame:
	"""
	Wraps an (N, 35) feature matrix in a DataFrame with named columns.

	Args:
		features (np.ndarray): Feature matrix.
		element_symbols (Optional[Sequence[str]], optional): Per-atom element symbols to add as
			a leading `element` column.
	"""
	features = np.asarray(features, dtype=float)
	if features.ndim != 2 or features.shape[1] != BETTI_FEATURE_DIM:
		raise ValueError(f"Expected a feature matrix with {BETTI_FEATURE_DIM} columns, got shape {features.shape}")
	df = pd.DataFrame(features, columns=feature_names())
	if element_symbols is not None:
		df.insert(0, "element", list(element_symbols))
	return df


# =================================================================================================
# Binary Feature Files
# =================================================================================================

def save_betti_features(path: str, features: np.ndarray) -> None:
	"""
	Writes a feature matrix as int32 rows, int32 cols, then row-major float64 values.
	"""
	features = np.asarray(features, dtype=float)
	if features.ndim != 2:
		raise ValueError(f"Feature matrix must be 2-D, got shape {features.shape}")
	out_dir = os.path.dirname(path)
	if out_dir:
		os.makedirs(out_dir, exist_ok=True)
	with open(path, "wb") as f:
		f.write(np.array(features.shape, dtype=_HEADER_DTYPE).tobytes())
		f.write(np.ascontiguousarray(features, dtype=_VALUE_DTYPE).tobytes())


def load_betti_features(path: str) -> np.ndarray:
	"""
	Reads a feature matrix written by `save_betti_features`.

	Raises:
		FileNotFoundError: If the file does not exist.
		ValueError: If the file is shorter than its header implies.
	"""
	with open(path, "rb") as f:
		payload = f.read()

	header_size = 2 * _HEADER_DTYPE.itemsize
	if len(payload) < header_size:
		raise ValueError(f"Truncated feature file {path}: missing header")
	rows, cols = (int(v) for v in np.frombuffer(payload, dtype=_HEADER_DTYPE, count=2))
	if rows < 0 or cols < 0:
		raise ValueError(f"Corrupt feature file {path}: negative shape ({rows}, {cols})")

	n_values = rows * cols
	if n_values == 0:
		return np.zeros((rows, cols), dtype=float)
	if len(payload) < header_size + n_values * _VALUE_DTYPE.itemsize:
		raise ValueError(
			f"Truncated feature file {path}: expected {n_values} values for shape ({rows}, {cols})"
		)
	values = np.frombuffer(payload, dtype=_VALUE_DTYPE, count=n_values, offset=header_size)
	return values.astype(float).reshape(rows, cols)
