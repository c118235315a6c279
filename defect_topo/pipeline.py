# =================================================================================================
# Module Imports
# =================================================================================================
import logging
import os
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from .betti_features import BETTI_FEATURE_DIM, BettiFeatureExtractor, save_betti_features
from .data_processing import discover_structures, group_by_base, parse_structure_id, stack_feature_matrices
from .pca import PCAReducer
from .structure import load_structure
from .utils import log_metrics, save_dataframe, save_explained_variance_plot


# =================================================================================================
# Preprocessing Configuration
# =================================================================================================
# All settings of one preprocessing run live in a single dataclass so the command-line entry
# point and the tests build runs the same way.
@dataclass
class PreprocessConfig:
	"""
	Settings of a dataset-wide Betti feature preprocessing run.

	Attributes:
		raw_path (str): Directory of "<base>_<variant>" structure files.
		processed_path (str): Output directory; feature files go to its "betti" subdirectory.
		r_cutoff (float): Neighbor radius and persistence threshold.
		n_pca_components (int): Number of principal components of the dataset-wide PCA.
		num_workers (int): Processes used across structures.
		atom_workers (int): Threads used across atoms of one structure.
		suffix (str): File extension of structure files.
		save_plots (bool): Whether to write an explained variance plot.
	"""
	raw_path: str = os.path.join("data", "raw", "defective_structures")
	processed_path: str = os.path.join("data", "processed")
	r_cutoff: float = 10.0
	n_pca_components: int = 6
	num_workers: int = 1
	atom_workers: int = 1
	suffix: str = ".vasp"
	save_plots: bool = False

	def resolve_workers(self, logger: Optional[logging.Logger] = None) -> "PreprocessConfig":
		"""
		Validates worker counts and keeps the two parallel levels from multiplying.

		When structures already run in parallel processes, atom-level threads are switched off.
		"""
		if self.num_workers < 1 or self.atom_workers < 1:
			raise ValueError(
				f"Worker counts must be at least 1, got num_workers={self.num_workers}, "
				f"atom_workers={self.atom_workers}"
			)
		if self.num_workers > 1 and self.atom_workers > 1:
			(logger or logging.getLogger(__name__)).warning(
				f"Both structure-level ({self.num_workers}) and atom-level ({self.atom_workers}) "
				f"workers requested; using atom_workers=1"
			)
			self.atom_workers = 1
		return self


# =================================================================================================
# Per-Structure Processing
# =================================================================================================

def process_structure(path: str, r_cutoff: float, atom_workers: int = 1) -> np.ndarray:
	"""
	Loads one structure file and returns its (N, 35) Betti feature matrix.

	Module-level so that it can be shipped to worker processes.
	"""
	structure = load_structure(path)
	extractor = BettiFeatureExtractor(r_cutoff=r_cutoff, num_workers=atom_workers)
	return extractor.structure_features(structure)


def _structure_path(config: PreprocessConfig, structure_id: str) -> str:
	return os.path.join(config.raw_path, f"{structure_id}{config.suffix}")


def _feature_path(config: PreprocessConfig, structure_id: str) -> str:
	return os.path.join(config.processed_path, "betti", f"{structure_id}.bin")


# =================================================================================================
# Dataset Driver
# =================================================================================================

def compute_dataset_features(
	config: PreprocessConfig,
	structure_ids: List[str],
	logger: logging.Logger,
) -> List[np.ndarray]:
	"""
	Computes and saves the feature matrix of every structure, in `structure_ids` order.

	Structure files are processed sequentially or by a pool of `num_workers` processes; any
	failure aborts the run.
	"""
	variants_per_base = group_by_base(structure_ids)
	results: List[Optional[np.ndarray]] = [None] * len(structure_ids)

	def _record(i: int, features: np.ndarray) -> None:
		structure_id = structure_ids[i]
		save_betti_features(_feature_path(config, structure_id), features)
		results[i] = features
		logger.debug(f"Saved {features.shape[0]} x {features.shape[1]} features for {structure_id}")

	if config.num_workers == 1:
		current_base = None
		for i, structure_id in enumerate(structure_ids):
			base, _ = parse_structure_id(structure_id)
			if base != current_base:
				current_base = base
				logger.info(
					f"[{i + 1}/{len(structure_ids)}] Processing structure {base} "
					f"({variants_per_base[base]} defects)"
				)
			_record(i, process_structure(_structure_path(config, structure_id), config.r_cutoff, config.atom_workers))
	else:
		with ProcessPoolExecutor(max_workers=config.num_workers) as executor:
			future_to_index = {
				executor.submit(
					process_structure,
					_structure_path(config, structure_id),
					config.r_cutoff,
					config.atom_workers,
				): i
				for i, structure_id in enumerate(structure_ids)
			}
			for n_done, future in enumerate(as_completed(future_to_index), start=1):
				i = future_to_index[future]
				try:
					features = future.result()
				except Exception:
					logger.error(f"Failed to process {structure_ids[i]}; cancelling remaining structures")
					executor.shutdown(wait=False, cancel_futures=True)
					raise
				_record(i, features)
				logger.info(f"[{n_done}/{len(structure_ids)}] Processed {structure_ids[i]}")

	return results


def run_preprocessing(config: PreprocessConfig, logger: Optional[logging.Logger] = None) -> Dict[str, Any]:
	"""
	Runs the whole preprocessing: per-structure Betti features, then one dataset-wide PCA.

	Outputs under `config.processed_path`:
	- betti/<id>.bin: per-structure (N, 35) feature matrices.
	- pca_model.bin: the fitted PCA model.
	- pca_explained_variance.csv: explained variance ratio per component.
	- pca_explained_variance.png: optional plot.

	Returns:
		Dict[str, Any]: Run summary with the number of structures, bases and atoms, and the
						total explained variance ratio.
	"""
	logger = logger or logging.getLogger(__name__)
	config.resolve_workers(logger)

	structure_ids = discover_structures(config.raw_path, config.suffix)
	if not structure_ids:
		raise FileNotFoundError(f"No '*{config.suffix}' structure files found in {config.raw_path}")
	variants_per_base = group_by_base(structure_ids)
	logger.info(
		f"Found {len(structure_ids)} defective structures from {len(variants_per_base)} base structures"
	)

	os.makedirs(os.path.join(config.processed_path, "betti"), exist_ok=True)
	matrices = compute_dataset_features(config, structure_ids, logger)
	all_features = stack_feature_matrices(matrices, BETTI_FEATURE_DIM)

	logger.info(f"Fitting PCA on {all_features.shape[0]} atoms...")
	pca = PCAReducer().fit(all_features, config.n_pca_components)
	pca.save(os.path.join(config.processed_path, "pca_model.bin"))

	variance_df = pd.DataFrame(
		{
			"component": np.arange(1, pca.n_components + 1),
			"explained_variance_ratio": pca.explained_variance_ratio,
			"cumulative_ratio": np.cumsum(pca.explained_variance_ratio),
		}
	)
	save_dataframe(variance_df, os.path.join(config.processed_path, "pca_explained_variance.csv"))
	if config.save_plots:
		save_explained_variance_plot(
			pca.explained_variance_ratio,
			os.path.join(config.processed_path, "pca_explained_variance.png"),
		)

	summary = {
		"n_structures": len(structure_ids),
		"n_base_structures": len(variants_per_base),
		"n_atoms": int(all_features.shape[0]),
		"explained_variance": float(np.sum(pca.explained_variance_ratio)),
	}
	log_metrics(logger, summary, prefix="preprocess")
	return summary
