# =================================================================================================
# Module Imports
# =================================================================================================
# Import 'os' for directory listing and 'typing' for type hints.
import os
from collections import OrderedDict
from typing import Dict, List, Tuple

import numpy as np


# =================================================================================================
# Constants
# =================================================================================================
# Defective structures are stored as "<base>_<variant>.vasp", one file per defect variant.
STRUCTURE_SUFFIX = ".vasp"


# =================================================================================================
# Dataset Discovery Functions
# =================================================================================================

def parse_structure_id(structure_id: str) -> Tuple[int, int]:
	"""
	Splits a structure id of the form "<base>_<variant>" into its integer parts.

	An id without an underscore refers to the base structure itself and maps to variant 0.

	Args:
		structure_id (str): File stem of a structure, e.g. "12_3".

	Raises:
		ValueError: If either part is not an integer.

	Returns:
		Tuple[int, int]: The (base, variant) pair.
	"""
	base, sep, variant = structure_id.partition("_")
	try:
		if not sep:
			return int(base), 0
		return int(base), int(variant)
	except ValueError:
		raise ValueError(f"Structure id '{structure_id}' is not of the form '<base>_<variant>'") from None


def discover_structures(raw_dir: str, suffix: str = STRUCTURE_SUFFIX) -> List[str]:
	"""
	Lists the structure ids in a directory, ordered by (base, variant).

	Args:
		raw_dir (str): Directory holding one structure file per defect variant.
		suffix (str, optional): File extension of structure files. Defaults to ".vasp".

	Raises:
		FileNotFoundError: If `raw_dir` does not exist.

	Returns:
		List[str]: File stems of the matching files.
	"""
	if not os.path.isdir(raw_dir):
		raise FileNotFoundError(f"Structure directory not found: {raw_dir}")

	structure_ids = [
		name[: -len(suffix)]
		for name in os.listdir(raw_dir)
		if name.endswith(suffix) and os.path.isfile(os.path.join(raw_dir, name))
	]
	return sorted(structure_ids, key=parse_structure_id)


def group_by_base(structure_ids: List[str]) -> Dict[int, int]:
	"""
	Counts the defect variants of each base structure, in first-seen order.
	"""
	counts: Dict[int, int] = OrderedDict()
	for structure_id in structure_ids:
		base, _ = parse_structure_id(structure_id)
		counts[base] = counts.get(base, 0) + 1
	return counts


def stack_feature_matrices(matrices: List[np.ndarray], n_cols: int) -> np.ndarray:
	"""
	Stacks per-structure feature matrices into one dataset-wide matrix.

	Args:
		matrices (List[np.ndarray]): One (N_i, n_cols) matrix per structure.
		n_cols (int): Expected width, used for the empty result.

	Raises:
		ValueError: If a matrix has the wrong width.
	"""
	for m in matrices:
		if m.ndim != 2 or m.shape[1] != n_cols:
			raise ValueError(f"Expected feature matrices with {n_cols} columns, got shape {m.shape}")
	if not matrices:
		return np.zeros((0, n_cols), dtype=float)
	return np.vstack(matrices)
