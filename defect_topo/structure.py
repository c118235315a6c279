# =================================================================================================
# Module Imports
# =================================================================================================
import logging
import warnings
from dataclasses import dataclass, field
from functools import cached_property
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np


logger = logging.getLogger(__name__)


# =================================================================================================
# Exceptions
# =================================================================================================

class DegenerateLatticeError(ValueError):
	"""Raised when a lattice has zero-length vectors, zero volume or non-finite entries."""


# =================================================================================================
# Helpers
# =================================================================================================

def _read_only(array: np.ndarray) -> np.ndarray:
	array.setflags(write=False)
	return array


def frac_to_cart(lattice: np.ndarray, frac_coords: np.ndarray) -> np.ndarray:
	"""
	Converts fractional coordinates to cartesian coordinates.

	Lattice vectors are the rows of `lattice`, so a single fractional row vector `f`
	maps to `f @ lattice` (equivalently `lattice.T @ f` for a column vector).
	"""
	return np.asarray(frac_coords, dtype=float) @ np.asarray(lattice, dtype=float)


def validate_lattice(lattice: np.ndarray, tol: float = 1e-8) -> np.ndarray:
	"""
	Checks that a lattice matrix describes a proper, non-degenerate cell.

	Raises:
		DegenerateLatticeError: If the matrix is not 3x3, has non-finite entries, a lattice
								vector of (near) zero length or a (near) zero cell volume.

	Returns:
		np.ndarray: The lattice as a float64 (3, 3) array.
	"""
	lattice = np.array(lattice, dtype=float)
	if lattice.shape != (3, 3):
		raise DegenerateLatticeError(f"Lattice must be a 3x3 matrix, got shape {lattice.shape}")
	if not np.all(np.isfinite(lattice)):
		raise DegenerateLatticeError("Lattice contains non-finite values")

	lengths = np.linalg.norm(lattice, axis=1)
	if np.any(lengths < tol):
		raise DegenerateLatticeError(f"Lattice has a zero-length vector (lengths: {lengths.tolist()})")

	# Compare the volume against the box spanned by the vector lengths so that the
	# check does not depend on the unit scale of the cell.
	volume = abs(np.linalg.det(lattice))
	if volume < tol * float(np.prod(lengths)):
		raise DegenerateLatticeError(f"Lattice has zero volume (|det| = {volume:.3e})")

	return lattice


# =================================================================================================
# Data Model
# =================================================================================================

@dataclass(frozen=True, eq=False)
class Atom:
	"""
	A single site of a periodic structure.

	Attributes:
		element (int): Element tag, an index into the owning structure's symbol table.
		frac_position (np.ndarray): Fractional position, not necessarily wrapped into [0, 1).
		position (np.ndarray): Cartesian position consistent with the owning lattice.
	"""
	element: int
	frac_position: np.ndarray = field(repr=False)
	position: np.ndarray = field(repr=False)


class Structure:
	"""
	Immutable periodic atomic geometry: a lattice plus an ordered list of atoms.

	Lattice vectors are the rows of the lattice matrix and may be non-orthogonal. Cartesian
	positions, the inverse lattice and the per-element population counts are derived once at
	construction; every array handed out is a read-only view, so building a modified
	structure means constructing a new instance.

	Two neighbor definitions exist in this package. The methods here use the cheap
	minimum-image convention (each fractional difference is wrapped into [-0.5, 0.5)),
	which is only exact when the cutoff of interest is below half the shortest in-cell
	width. `defect_topo.neighbors.PeriodicNeighborIndex` performs the exact periodic search
	and is the one used for topological features.
	"""

	def __init__(
		self,
		lattice: np.ndarray,
		frac_coords: np.ndarray,
		elements: Sequence[int],
		symbols: Optional[Sequence[str]] = None,
	):
		self._lattice = _read_only(validate_lattice(lattice))
		self._inv_lattice = _read_only(np.linalg.inv(self._lattice))

		frac_coords = np.array(frac_coords, dtype=float)
		if frac_coords.size == 0:
			frac_coords = frac_coords.reshape(0, 3)
		if frac_coords.ndim != 2 or frac_coords.shape[1] != 3:
			raise ValueError(f"Fractional coordinates must have shape (N, 3), got {frac_coords.shape}")
		if not np.all(np.isfinite(frac_coords)):
			raise ValueError("Fractional coordinates contain non-finite values")

		element_tags = np.array(elements, dtype=int).reshape(-1)
		if len(element_tags) != len(frac_coords):
			raise ValueError(
				f"Got {len(element_tags)} element tags for {len(frac_coords)} atoms"
			)

		self._frac_coords = _read_only(frac_coords)
		self._cart_coords = _read_only(frac_to_cart(self._lattice, frac_coords))
		self._element_tags = _read_only(element_tags)

		atoms: List[Atom] = []
		for i in range(len(frac_coords)):
			atoms.append(
				Atom(
					element=int(element_tags[i]),
					frac_position=self._frac_coords[i],
					position=self._cart_coords[i],
				)
			)
		self._atoms: Tuple[Atom, ...] = tuple(atoms)

		tags, counts = np.unique(element_tags, return_counts=True)
		self._counts: Dict[int, int] = {int(t): int(c) for t, c in zip(tags, counts)}

		if symbols is not None:
			symbols = tuple(str(s) for s in symbols)
			if len(element_tags) and (element_tags.min() < 0 or element_tags.max() >= len(symbols)):
				raise ValueError(
					f"Element tags must index the symbol table of length {len(symbols)}"
				)
		self._symbols: Optional[Tuple[str, ...]] = symbols

	# ---------------------------------------------------------------------------------------------
	# Construction from external sources
	# ---------------------------------------------------------------------------------------------

	@classmethod
	def from_pymatgen(cls, pmg_structure) -> "Structure":
		"""
		Builds a structure from a `pymatgen.core.Structure`.

		Element tags follow the order in which species first appear in the site list.
		"""
		symbols: List[str] = []
		tags: List[int] = []
		for site in pmg_structure:
			symbol = site.specie.symbol
			if symbol not in symbols:
				symbols.append(symbol)
			tags.append(symbols.index(symbol))
		return cls(
			lattice=pmg_structure.lattice.matrix,
			frac_coords=pmg_structure.frac_coords,
			elements=tags,
			symbols=symbols,
		)

	# ---------------------------------------------------------------------------------------------
	# Accessors
	# ---------------------------------------------------------------------------------------------

	@property
	def lattice(self) -> np.ndarray:
		return self._lattice

	@property
	def inv_lattice(self) -> np.ndarray:
		return self._inv_lattice

	@property
	def atoms(self) -> Tuple[Atom, ...]:
		return self._atoms

	@property
	def frac_coords(self) -> np.ndarray:
		return self._frac_coords

	@property
	def cart_coords(self) -> np.ndarray:
		return self._cart_coords

	@property
	def element_tags(self) -> np.ndarray:
		return self._element_tags

	@property
	def counts(self) -> Dict[int, int]:
		return dict(self._counts)

	@property
	def symbols(self) -> Optional[Tuple[str, ...]]:
		return self._symbols

	@property
	def num_atoms(self) -> int:
		return len(self._atoms)

	@property
	def volume(self) -> float:
		return float(abs(np.linalg.det(self._lattice)))

	@property
	def lattice_lengths(self) -> np.ndarray:
		return np.linalg.norm(self._lattice, axis=1)

	def __len__(self) -> int:
		return len(self._atoms)

	def __repr__(self) -> str:
		return f"Structure(num_atoms={self.num_atoms}, counts={self._counts})"

	def symbol(self, element: int) -> str:
		"""Returns the element symbol of a tag."""
		if self._symbols is None:
			raise ValueError("Structure was built without an element symbol table")
		if not 0 <= element < len(self._symbols):
			raise ValueError(f"Unknown element tag: {element}")
		return self._symbols[element]

	def count(self, element: int) -> int:
		"""
		Returns the number of atoms carrying an element tag.

		Raises:
			ValueError: If no atom of the structure carries the tag.
		"""
		try:
			return self._counts[int(element)]
		except KeyError:
			raise ValueError(f"Unknown element tag: {element}") from None

	# ---------------------------------------------------------------------------------------------
	# Minimum-image geometry
	# ---------------------------------------------------------------------------------------------

	def _check_index(self, idx: int) -> int:
		if not 0 <= idx < self.num_atoms:
			raise IndexError(f"Atom index {idx} out of range for structure with {self.num_atoms} atoms")
		return idx

	def displacement(self, i: int, j: int) -> np.ndarray:
		"""
		Returns the minimum-image cartesian vector pointing from atom `i` to atom `j`.

		Each fractional component of the difference is wrapped by an integer shift
		into [-0.5, 0.5) before mapping back to cartesian space.
		"""
		self._check_index(i)
		self._check_index(j)
		delta = self._frac_coords[j] - self._frac_coords[i]
		delta = delta - np.floor(delta + 0.5)
		return frac_to_cart(self._lattice, delta)

	def distance(self, i: int, j: int) -> float:
		"""Returns the minimum-image distance between atoms `i` and `j`."""
		return float(np.linalg.norm(self.displacement(i, j)))

	@cached_property
	def _distance_matrix(self) -> np.ndarray:
		delta = self._frac_coords[None, :, :] - self._frac_coords[:, None, :]
		delta -= np.floor(delta + 0.5)
		cart = delta @ self._lattice
		dist = np.linalg.norm(cart, axis=-1)
		# Minimum-image wrapping is symmetric up to rounding; enforce it exactly.
		dist = 0.5 * (dist + dist.T)
		np.fill_diagonal(dist, 0.0)
		return _read_only(dist)

	def compute_distance_matrix(self) -> np.ndarray:
		"""
		Returns the symmetric N x N minimum-image distance matrix.

		The matrix is computed on first request and cached on the instance; the returned
		array is read-only.
		"""
		return self._distance_matrix


# =================================================================================================
# Structure Loading
# =================================================================================================

def load_structure(path: str) -> Structure:
	"""
	Loads a VASP POSCAR file into a `Structure`.

	Element tags index the species line of the POSCAR file. Cartesian-mode files are converted
	to fractional coordinates by pymatgen's reader.

	Raises:
		FileNotFoundError: If the file does not exist.
	"""
	from pymatgen.io.vasp import Poscar

	with warnings.catch_warnings():
		warnings.simplefilter("ignore")
		poscar = Poscar.from_file(path)

	pmg_structure = poscar.structure
	symbols = list(poscar.site_symbols)
	counts = list(poscar.natoms)

	tags: List[int] = []
	for tag, n in enumerate(counts):
		tags.extend([tag] * int(n))
	logger.debug(f"Loaded {path}: {len(tags)} atoms, species {symbols}")
	return Structure(
		lattice=pmg_structure.lattice.matrix,
		frac_coords=pmg_structure.frac_coords,
		elements=tags,
		symbols=symbols,
	)


def try_load_structure(path: str) -> Optional[Structure]:
	"""
	Loads a structure for inspection tooling, returning None instead of raising.

	Any parse or geometry failure is logged as a warning. Core code paths use
	`load_structure` and let errors propagate.
	"""
	try:
		return load_structure(path)
	except Exception as e:
		logger.warning(f"Could not load structure from {path}: {e}")
		return None
