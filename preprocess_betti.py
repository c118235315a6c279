# =================================================================================================
# Defect Formation Energy Dataset - Betti Feature Preprocessing
# =================================================================================================
# This script turns a directory of defective crystal structures into per-atom topological
# descriptors for the graph model:
#
# - Each "<base>_<variant>.vasp" structure gets an (N, 35) matrix of persistence statistics,
#   saved as <processed>/betti/<base>_<variant>.bin
# - One PCA model is fitted over the feature rows of all structures and saved as
#   <processed>/pca_model.bin
#
# =================================================================================================

import argparse
import os
import sys

from defect_topo.pipeline import PreprocessConfig, run_preprocessing
from defect_topo.utils import find_project_root, setup_logger


# =================================================================================================
# Command-Line Interface
# =================================================================================================

def parse_args(argv=None) -> argparse.Namespace:
	defaults = PreprocessConfig()
	parser = argparse.ArgumentParser(description="Compute Betti features and fit the dataset-wide PCA.")
	parser.add_argument("raw_path", nargs="?", default=None, help="Directory of structure files.")
	parser.add_argument("processed_path", nargs="?", default=None, help="Output directory.")
	parser.add_argument("--r-cutoff", type=float, default=defaults.r_cutoff, help="Neighbor radius and persistence threshold (Angstrom).")
	parser.add_argument("--n-components", type=int, default=defaults.n_pca_components, help="Number of PCA components.")
	parser.add_argument("--workers", type=int, default=defaults.num_workers, help="Processes used across structures.")
	parser.add_argument("--atom-workers", type=int, default=defaults.atom_workers, help="Threads used across atoms of one structure.")
	parser.add_argument("--suffix", default=defaults.suffix, help="Structure file extension.")
	parser.add_argument("--plots", action="store_true", help="Save an explained variance plot.")
	parser.add_argument("--log-file", default=None, help="Optional log file path.")
	return parser.parse_args(argv)


# =================================================================================================
# Main Execution Block
# =================================================================================================

def main(argv=None) -> int:
	args = parse_args(argv)

	if args.raw_path is None or args.processed_path is None:
		project_root = find_project_root(__file__)
		raw_path = args.raw_path or os.path.join(project_root, PreprocessConfig.raw_path)
		processed_path = args.processed_path or os.path.join(project_root, PreprocessConfig.processed_path)
	else:
		raw_path, processed_path = args.raw_path, args.processed_path

	config = PreprocessConfig(
		raw_path=raw_path,
		processed_path=processed_path,
		r_cutoff=args.r_cutoff,
		n_pca_components=args.n_components,
		num_workers=args.workers,
		atom_workers=args.atom_workers,
		suffix=args.suffix,
		save_plots=args.plots,
	)

	logger = setup_logger("defect_topo", log_file=args.log_file)
	logger.info("=" * 80)
	logger.info("Preprocessing Betti features...")
	logger.info(f"  Raw path: {config.raw_path}")
	logger.info(f"  Output path: {config.processed_path}")
	logger.info(f"  r_cutoff: {config.r_cutoff}")
	logger.info(f"  PCA components: {config.n_pca_components}")
	logger.info(f"  Workers (structures / atoms): {config.num_workers} / {config.atom_workers}")
	logger.info("=" * 80)

	run_preprocessing(config, logger)

	logger.info("Done!")
	return 0


if __name__ == "__main__":
	sys.exit(main())
