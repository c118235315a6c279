# =================================================================================================
# Module Imports
# =================================================================================================
import logging
import os
from typing import Optional

import numpy as np
from sklearn.decomposition import PCA
from sklearn.exceptions import NotFittedError

from .betti_features import BETTI_FEATURE_DIM


logger = logging.getLogger(__name__)

_INT_DTYPE = np.dtype("<i4")
_FLOAT_DTYPE = np.dtype("<f8")


# =================================================================================================
# Binary Reader
# =================================================================================================

class _BlobReader:
	"""Sequential reader over a little-endian model file that fails loudly on truncation."""

	def __init__(self, payload: bytes, path: str):
		self.payload = payload
		self.path = path
		self.offset = 0

	def read(self, dtype: np.dtype, count: int) -> np.ndarray:
		if count < 0:
			raise ValueError(f"Corrupt PCA model file {self.path}: negative length {count}")
		n_bytes = count * dtype.itemsize
		if self.offset + n_bytes > len(self.payload):
			raise ValueError(f"Truncated PCA model file {self.path} at byte {self.offset}")
		values = np.frombuffer(self.payload, dtype=dtype, count=count, offset=self.offset) if count else np.empty(0, dtype=dtype)
		self.offset += n_bytes
		return values

	def read_int(self) -> int:
		return int(self.read(_INT_DTYPE, 1)[0])


# =================================================================================================
# PCA Reducer
# =================================================================================================

class PCAReducer:
	"""
	Linear, variance-ranked projection of Betti feature matrices.

	The model is fitted once over the feature rows of a whole dataset with scikit-learn's
	full-SVD PCA and is immutable afterwards, apart from being replaced by `fit` or `load`.

	Attributes:
		n_components (int): Number of kept principal axes.
		mean (np.ndarray): Column means of the training matrix, shape (35,).
		components (np.ndarray): Principal axes as orthonormal columns, shape (35, n_components),
								 sorted by descending explained variance.
		explained_variance_ratio (np.ndarray): Share of the total variance per kept axis.
	"""

	def __init__(self):
		self.n_components: int = 0
		self.mean: Optional[np.ndarray] = None
		self.components: Optional[np.ndarray] = None
		self.explained_variance_ratio: Optional[np.ndarray] = None

	@property
	def is_fitted(self) -> bool:
		return self.components is not None

	def _check_fitted(self, operation: str) -> None:
		if not self.is_fitted:
			raise NotFittedError(f"PCAReducer is not fitted: call fit() or load() before {operation}()")

	def fit(self, X: np.ndarray, n_components: int = 6) -> "PCAReducer":
		"""
		Fits the projection on a feature matrix.

		Raises:
			ValueError: If `X` does not have 35 columns, has fewer than two rows or
						`n_components` is outside [1, min(rows, 35)].
		"""
		X = np.asarray(X, dtype=float)
		if X.ndim != 2 or X.shape[1] != BETTI_FEATURE_DIM:
			raise ValueError(f"Expected a feature matrix with {BETTI_FEATURE_DIM} columns, got shape {X.shape}")
		if X.shape[0] < 2:
			raise ValueError(f"PCA needs at least 2 rows, got {X.shape[0]}")
		if not 1 <= n_components <= min(X.shape):
			raise ValueError(f"n_components must be between 1 and {min(X.shape)}, got {n_components}")

		model = PCA(n_components=n_components, svd_solver="full")
		model.fit(X)

		ratio = np.asarray(model.explained_variance_ratio_, dtype=float)
		if not np.all(np.isfinite(ratio)):
			logger.warning("Feature matrix has zero total variance; explained variance ratios set to 0")
			ratio = np.zeros(n_components, dtype=float)

		self.n_components = int(n_components)
		self.mean = np.asarray(model.mean_, dtype=float)
		self.components = np.ascontiguousarray(model.components_.T, dtype=float)
		self.explained_variance_ratio = ratio
		logger.info(
			f"Fitted PCA on {X.shape[0]} rows: {n_components} components explain "
			f"{float(ratio.sum()):.4f} of the variance"
		)
		return self

	def transform(self, X: np.ndarray) -> np.ndarray:
		"""Centers `X` with the stored mean and projects it onto the stored components."""
		self._check_fitted("transform")
		X = np.asarray(X, dtype=float)
		if X.ndim != 2 or X.shape[1] != len(self.mean):
			raise ValueError(f"Expected a feature matrix with {len(self.mean)} columns, got shape {X.shape}")
		return (X - self.mean) @ self.components

	def fit_transform(self, X: np.ndarray, n_components: int = 6) -> np.ndarray:
		return self.fit(X, n_components).transform(X)

	# ---------------------------------------------------------------------------------------------
	# Persistence
	# ---------------------------------------------------------------------------------------------

	def save(self, path: str) -> None:
		"""
		Writes the model as little-endian binary.

		Layout: n_components (int32); mean length (int32) and values (float64); component
		rows and cols (int32, int32) and row-major values (float64); variance-ratio length
		(int32) and values (float64).
		"""
		self._check_fitted("save")
		out_dir = os.path.dirname(path)
		if out_dir:
			os.makedirs(out_dir, exist_ok=True)

		rows, cols = self.components.shape
		with open(path, "wb") as f:
			f.write(np.array([self.n_components, len(self.mean)], dtype=_INT_DTYPE).tobytes())
			f.write(np.ascontiguousarray(self.mean, dtype=_FLOAT_DTYPE).tobytes())
			f.write(np.array([rows, cols], dtype=_INT_DTYPE).tobytes())
			f.write(np.ascontiguousarray(self.components, dtype=_FLOAT_DTYPE).tobytes())
			f.write(np.array([len(self.explained_variance_ratio)], dtype=_INT_DTYPE).tobytes())
			f.write(np.ascontiguousarray(self.explained_variance_ratio, dtype=_FLOAT_DTYPE).tobytes())

	def load(self, path: str) -> "PCAReducer":
		"""
		Replaces this model with one read from `path`.

		Raises:
			FileNotFoundError: If the file does not exist.
			ValueError: If the file is truncated or its shapes are inconsistent.
		"""
		with open(path, "rb") as f:
			reader = _BlobReader(f.read(), path)

		n_components = reader.read_int()
		mean = reader.read(_FLOAT_DTYPE, reader.read_int())
		rows = reader.read_int()
		cols = reader.read_int()
		components = reader.read(_FLOAT_DTYPE, rows * cols).reshape(rows, cols)
		ratio = reader.read(_FLOAT_DTYPE, reader.read_int())

		if rows != len(mean) or cols != n_components or len(ratio) != n_components:
			raise ValueError(
				f"Inconsistent PCA model file {path}: mean {len(mean)}, components ({rows}, {cols}), "
				f"ratios {len(ratio)}, n_components {n_components}"
			)

		self.n_components = n_components
		self.mean = mean.astype(float)
		self.components = components.astype(float)
		self.explained_variance_ratio = ratio.astype(float)
		return self

	@classmethod
	def from_file(cls, path: str) -> "PCAReducer":
		return cls().load(path)
