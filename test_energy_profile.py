# Copyright 2025
# Damien Davison & Michael Maillet & Sacha Davison
# Recursive AI Devs
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at:
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Tests for eigendecomposition, energy tables and class PCA estimation.
"""

import numpy as np
import pytest

from postpca import (
    ConfigError,
    DataError,
    NumericError,
    PCATransform,
    StatisticsAccumulator,
    build_energy_table,
    decompose_covariance,
    estimate_class_pca,
)
from test_utils import _resolve_rng, create_low_rank_samples


def _statistics_for(samples):
    acc = StatisticsAccumulator()
    acc.add_matrix(0, samples)
    return acc.statistics(0)


def test_decompose_sorts_descending():
    eigenvalues, eigenvectors = decompose_covariance(np.diag([1.0, 3.0, 2.0]))

    np.testing.assert_allclose(eigenvalues, [3.0, 2.0, 1.0])
    expected = np.array([
        [0.0, 0.0, 1.0],
        [1.0, 0.0, 0.0],
        [0.0, 1.0, 0.0],
    ])
    np.testing.assert_allclose(eigenvectors, expected, atol=1e-12)


def test_decompose_is_orthonormal_and_deterministic():
    rng = _resolve_rng(seed=5)
    a = rng.standard_normal((6, 6))
    covariance = a @ a.T

    values, vectors = decompose_covariance(covariance)
    values_again, vectors_again = decompose_covariance(covariance.copy())

    np.testing.assert_allclose(vectors.T @ vectors, np.eye(6), atol=1e-10)
    np.testing.assert_allclose(vectors @ np.diag(values) @ vectors.T, covariance, atol=1e-9)
    np.testing.assert_array_equal(vectors, vectors_again)
    assert np.all(np.diff(values) <= 0.0)


def test_energy_table_thresholds():
    table = build_energy_table([3.0, 2.0, 1.0])

    assert table.shape == (101,)
    assert np.all(table[:51] == 1)
    assert np.all(table[51:84] == 2)
    assert np.all(table[84:] == 3)


def test_energy_table_monotone_and_full_rank():
    rng = _resolve_rng(seed=21)
    for n in (1, 2, 7, 40):
        values = np.sort(rng.exponential(size=n))[::-1]
        table = build_energy_table(values)
        assert np.all(np.diff(table) >= 0)
        assert table[0] >= 1
        assert table[100] == n


def test_energy_table_clips_rounding_noise():
    table = build_energy_table([2.0, 0.0, -1e-12])
    assert table[99] == 1
    assert table[100] == 3


def test_energy_table_rejects_zero_variance():
    with pytest.raises(NumericError):
        build_energy_table([0.0, 0.0])
    with pytest.raises(DataError):
        build_energy_table([])


def test_estimate_keeps_99th_percentile_columns():
    samples, basis, mean = create_low_rank_samples(n_samples=500, dim=6, rank=2, noise=1e-3, seed=2)

    transform = estimate_class_pca(_statistics_for(samples), 12)

    assert transform.class_id == 12
    assert transform.dimension == 6
    assert transform.num_stored == 2
    assert transform.energy_table[100] == 6
    np.testing.assert_allclose(transform.mean, samples.mean(axis=0), atol=1e-10)
    # Stored columns span the generating subspace.
    singular = np.linalg.svd(transform.basis.T @ basis, compute_uv=False)
    np.testing.assert_allclose(singular, 1.0, atol=1e-3)


def test_estimate_dim_cap():
    samples, _, _ = create_low_rank_samples(n_samples=300, dim=5, rank=3, noise=0.01, seed=4)
    stats = _statistics_for(samples)

    assert estimate_class_pca(stats, 0, dim=1).num_stored == 1
    with pytest.raises(ConfigError):
        estimate_class_pca(stats, 0, dim=6)


def test_normalize_variance_whitens_codes():
    samples, _, _ = create_low_rank_samples(n_samples=400, dim=4, rank=4, noise=0.0, seed=8)
    transform = estimate_class_pca(_statistics_for(samples), 0, normalize_variance=True)

    codes = transform.project(samples)
    np.testing.assert_allclose(codes.var(axis=0), 1.0, rtol=1e-6)
    np.testing.assert_allclose(transform.expand(codes), samples, atol=1e-8)


def test_affine_form_matches_projection():
    samples, _, _ = create_low_rank_samples(n_samples=100, dim=3, rank=3, noise=0.0, seed=13)
    transform = estimate_class_pca(_statistics_for(samples), 0, normalize_variance=True)

    affine = transform.affine()
    x = samples[:5]
    extended = np.hstack([x, np.ones((5, 1))])
    np.testing.assert_allclose(extended @ affine.T, transform.project(x), atol=1e-10)


def test_transform_validation():
    table = build_energy_table([1.0, 1.0])
    with pytest.raises(DataError):
        PCATransform(class_id=0, basis=[[1.0, 1.0], [0.0, 1.0]], mean=[0.0, 0.0], energy_table=table)
    with pytest.raises(DataError):
        PCATransform(class_id=0, basis=np.eye(2), mean=[0.0, 0.0], energy_table=table[:100])
    with pytest.raises(DataError):
        PCATransform(class_id=0, basis=np.eye(3), mean=[0.0, 0.0], energy_table=table)

    transform = PCATransform(class_id="5", basis=np.eye(2), mean=[0.0, 1.0], energy_table=table)
    assert transform.class_id == 5
    assert not transform.basis.flags.writeable
    assert not transform.energy_table.flags.writeable
    with pytest.raises(ValueError):
        transform.mean[0] = 3.0
