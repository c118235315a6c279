# =================================================================================================
# Module Imports
# =================================================================================================
# Import 'logging' for creating logs, 'os' for interacting with the operating system,
# 'pathlib' for object-oriented filesystem paths, and 'typing' for type hints.
import logging
import os
from pathlib import Path
from typing import Optional, Dict, Any, Sequence

# Import 'numpy' and 'pandas' for numerical operations and data manipulation.
import numpy as np
import pandas as pd

# Plotting is only used for optional diagnostic figures written by the dataset driver.
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import seaborn as sns


# =================================================================================================
# Utility Functions
# =================================================================================================
# General-purpose helpers shared by the dataset driver and the command-line entry point.

def find_project_root(start_path: Optional[str] = None, marker_file: str = "pyproject.toml") -> Path:
	"""
	Finds the project root directory by searching upwards for a specific marker file.

	Args:
		start_path (Optional[str], optional): The path to start searching from. If a file is given,
											  its parent directory is used. Defaults to the current
											  working directory.
		marker_file (str, optional): The name of the file that marks the root directory.
									 Defaults to "pyproject.toml".

	Raises:
		FileNotFoundError: If the marker file cannot be found by traversing up the directory tree.

	Returns:
		Path: A Path object representing the absolute path to the project root.
	"""
	if start_path is None:
		current = Path.cwd()
	else:
		path = Path(start_path).resolve()
		current = path.parent if path.is_file() else path

	for path in [current] + list(current.parents):
		if (path / marker_file).is_file():
			return path

	raise FileNotFoundError(
		f"Could not find '{marker_file}' in current directory or any parent directory. "
		f"Started from: {current}"
	)


def setup_logger(name: str = "defect_topo", level: int = logging.INFO, log_file: Optional[str] = None) -> logging.Logger:
	"""
	Creates and configures a logger for printing and saving preprocessing progress.

	The default name is the package name, so every module logger created with
	`logging.getLogger(__name__)` inside the package is a child of the configured logger
	and shares its handlers. Handlers are only attached once, so calling this function
	repeatedly does not duplicate output.

	Args:
		name (str, optional): The name of the logger. Defaults to "defect_topo".
		level (int, optional): The minimum logging level to capture. Defaults to logging.INFO.
		log_file (Optional[str], optional): The path to the file where logs should be saved.
											If None, logs are only printed to the console.

	Returns:
		logging.Logger: The configured logger instance.
	"""
	logger = logging.getLogger(name)
	logger.setLevel(level)
	logger.propagate = False

	if not logger.handlers:
		stream_handler = logging.StreamHandler()
		stream_handler.setLevel(level)
		formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
		stream_handler.setFormatter(formatter)
		logger.addHandler(stream_handler)

		if log_file is not None:
			log_dir = os.path.dirname(log_file)
			if log_dir:
				os.makedirs(log_dir, exist_ok=True)
			file_handler = logging.FileHandler(log_file)
			file_handler.setLevel(level)
			file_handler.setFormatter(formatter)
			logger.addHandler(file_handler)

	return logger


def log_metrics(logger: logging.Logger, metrics: Dict[str, Any], prefix: str = "") -> None:
	"""
	Logs a dictionary of metrics using a provided logger, one `key = value` line each.

	Args:
		logger (logging.Logger): The logger instance to use.
		metrics (Dict[str, Any]): The dictionary of metrics to log.
		prefix (str, optional): A string to prepend to each metric name. Defaults to "".
	"""
	for key, value in metrics.items():
		log_key = f"{prefix}.{key}" if prefix else key
		logger.info(f"{log_key} = {value}")


def save_dataframe(df: pd.DataFrame, path: str) -> None:
	"""
	Saves a pandas DataFrame to a CSV file, creating the destination directory if needed.

	Args:
		df (pd.DataFrame): The DataFrame to save.
		path (str): The full destination path for the CSV file.
	"""
	out_dir = os.path.dirname(path)
	if out_dir:
		os.makedirs(out_dir, exist_ok=True)
	df.to_csv(path, index=False)


def save_explained_variance_plot(
	explained_variance_ratio: Sequence[float],
	path: str,
	title: str = "PCA explained variance",
) -> None:
	"""
	Saves a bar plot of per-component explained variance with the cumulative curve on top.

	Plotting is a diagnostic side product of the dataset driver, so failures are logged
	rather than raised.

	Args:
		explained_variance_ratio: Variance ratio per principal component.
		path: Destination path for the plot image.
		title: Plot title.
	"""
	ratios = np.asarray(explained_variance_ratio, dtype=float)
	components = np.arange(1, len(ratios) + 1)
	try:
		plt.figure(figsize=(8, 6))
		sns.set_theme(style="whitegrid")
		plt.bar(components, ratios, color="#4C72B0", alpha=0.85, label="per component")
		plt.plot(components, np.cumsum(ratios), color="#C44E52", marker="o", label="cumulative")
		plt.xticks(components)
		plt.ylim(0.0, 1.05)
		plt.title(title)
		plt.xlabel("Principal component")
		plt.ylabel("Explained variance ratio")
		plt.legend()
		plt.tight_layout()
		out_dir = os.path.dirname(path)
		if out_dir:
			os.makedirs(out_dir, exist_ok=True)
		plt.savefig(path, dpi=300)
		plt.close()
		logging.getLogger(__name__).info(f"Explained variance plot saved to {path}")
	except Exception as e:
		plt.close("all")
		logging.getLogger(__name__).error(f"Could not generate or save explained variance plot: {e}")
