import numpy as np
import pytest
from sklearn.exceptions import NotFittedError

from defect_topo.betti_features import BETTI_FEATURE_DIM
from defect_topo.pca import PCAReducer


def _feature_matrix(n_rows=60, seed=0):
	rng = np.random.default_rng(seed)
	latent = rng.normal(size=(n_rows, 4))
	mixing = rng.normal(size=(4, BETTI_FEATURE_DIM))
	noise = 0.05 * rng.normal(size=(n_rows, BETTI_FEATURE_DIM))
	return latent @ mixing + noise + 3.0


def test_fit_produces_orthonormal_variance_ranked_components():
	X = _feature_matrix()

	pca = PCAReducer().fit(X, n_components=6)

	assert pca.n_components == 6
	assert pca.mean.shape == (BETTI_FEATURE_DIM,)
	assert pca.components.shape == (BETTI_FEATURE_DIM, 6)
	np.testing.assert_allclose(pca.components.T @ pca.components, np.eye(6), atol=1e-10)
	np.testing.assert_allclose(pca.mean, X.mean(axis=0))

	ratio = pca.explained_variance_ratio
	assert ratio.shape == (6,)
	assert np.all(ratio >= 0)
	assert ratio.sum() <= 1.0 + 1e-12
	assert np.all(np.diff(ratio) <= 1e-12)
	# Four latent directions carry nearly all the variance.
	assert ratio[:4].sum() > 0.99


def test_explained_variance_matches_singular_values():
	X = _feature_matrix(n_rows=40, seed=1)
	centered = X - X.mean(axis=0)
	singular_values = np.linalg.svd(centered, compute_uv=False)
	variance = singular_values ** 2 / (X.shape[0] - 1)

	pca = PCAReducer().fit(X, n_components=3)

	np.testing.assert_allclose(pca.explained_variance_ratio, variance[:3] / variance.sum(), rtol=1e-8)


def test_transform_centers_and_projects():
	X = _feature_matrix()
	pca = PCAReducer().fit(X, n_components=4)

	projected = pca.transform(X[:5])

	np.testing.assert_allclose(projected, (X[:5] - pca.mean) @ pca.components)
	np.testing.assert_allclose(pca.fit_transform(X, n_components=4), pca.transform(X))


def test_save_load_round_trip_reproduces_transform(tmp_path):
	X = _feature_matrix()
	pca = PCAReducer().fit(X, n_components=6)
	path = str(tmp_path / "pca_model.bin")

	pca.save(path)
	loaded = PCAReducer.from_file(path)

	assert loaded.n_components == 6
	np.testing.assert_array_equal(loaded.mean, pca.mean)
	np.testing.assert_array_equal(loaded.components, pca.components)
	np.testing.assert_array_equal(loaded.explained_variance_ratio, pca.explained_variance_ratio)
	np.testing.assert_array_equal(loaded.transform(X), pca.transform(X))


def test_model_file_layout(tmp_path):
	pca = PCAReducer().fit(_feature_matrix(), n_components=2)
	path = tmp_path / "pca_model.bin"

	pca.save(str(path))
	raw = path.read_bytes()

	assert len(raw) == 4 + 4 + 35 * 8 + 8 + 35 * 2 * 8 + 4 + 2 * 8
	assert np.frombuffer(raw[:8], dtype="<i4").tolist() == [2, 35]
	offset = 8 + 35 * 8
	assert np.frombuffer(raw[offset:offset + 8], dtype="<i4").tolist() == [35, 2]
	# Components are stored row-major: the second value is row 0, column 1.
	assert np.frombuffer(raw[offset + 16:offset + 24], dtype="<f8")[0] == pca.components[0, 1]


def test_unfitted_model_refuses_transform_and_save(tmp_path):
	pca = PCAReducer()

	with pytest.raises(NotFittedError, match="not fitted"):
		pca.transform(np.zeros((2, BETTI_FEATURE_DIM)))
	with pytest.raises(NotFittedError, match="not fitted"):
		pca.save(str(tmp_path / "model.bin"))


def test_fit_rejects_wrong_feature_width():
	with pytest.raises(ValueError):
		PCAReducer().fit(np.zeros((10, 12)), n_components=2)
	with pytest.raises(ValueError):
		PCAReducer().fit(_feature_matrix(), n_components=0)
	with pytest.raises(ValueError):
		PCAReducer().fit(_feature_matrix(n_rows=1), n_components=1)


def test_transform_rejects_wrong_feature_width():
	pca = PCAReducer().fit(_feature_matrix(), n_components=2)

	with pytest.raises(ValueError):
		pca.transform(np.zeros((3, 10)))


def test_load_rejects_truncated_and_missing_files(tmp_path):
	path = tmp_path / "pca_model.bin"
	PCAReducer().fit(_feature_matrix(), n_components=3).save(str(path))
	path.write_bytes(path.read_bytes()[:-4])

	with pytest.raises(ValueError):
		PCAReducer().load(str(path))
	with pytest.raises(FileNotFoundError):
		PCAReducer().load(str(tmp_path / "missing.bin"))


def test_constant_features_give_zero_variance_ratios():
	X = np.ones((5, BETTI_FEATURE_DIM))

	pca = PCAReducer().fit(X, n_components=2)

	np.testing.assert_array_equal(pca.explained_variance_ratio, np.zeros(2))
	np.testing.assert_allclose(pca.transform(X), np.zeros((5, 2)), atol=1e-12)
