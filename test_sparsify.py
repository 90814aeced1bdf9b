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
Tests for truncating dense posteriors into sparse frames.
"""

import numpy as np
import pytest
from scipy.sparse import csr_matrix

from postpca import (
    ConfigError,
    DataError,
    NumericError,
    PolicyKind,
    SparsifyPolicy,
    csr_to_sparse,
    sparse_to_csr,
    sparsify,
    truncate,
)
from test_utils import create_alignment, create_posterior_matrix


def _as_dict(frames):
    return [dict(frame) for frame in frames]


def _densify(frames, n_classes):
    return sparse_to_csr(frames, n_classes).toarray()


def test_top_k_example():
    frames = sparsify([[0.1, 0.2, 0.7], [0.5, 0.3, 0.2]], SparsifyPolicy.top_k(1))

    assert [list(f) for f in _as_dict(frames)] == [[2], [0]]
    assert frames[0][0][1] == pytest.approx(1.0)
    assert frames[1][0][1] == pytest.approx(1.0)


def test_percentile_mass_example():
    policy = SparsifyPolicy.from_options(percentile=70)
    assert policy.kind is PolicyKind.PERCENTILE_MASS
    assert policy.value == pytest.approx(0.7)

    (frame,) = _as_dict(sparsify([[0.5, 0.3, 0.2]], policy))

    assert sorted(frame) == [0, 1]
    assert frame[0] == pytest.approx(0.625)
    assert frame[1] == pytest.approx(0.375)


def test_fixed_decimal_rounding():
    frames = _as_dict(sparsify([[0.123, 0.877], [0.004, 0.996]], SparsifyPolicy.fixed_decimal(2)))

    assert frames[0] == pytest.approx({0: 0.12, 1: 0.88})
    assert frames[1] == pytest.approx({1: 1.0})


def test_truncate_does_not_renormalize():
    out = truncate([[0.5, 0.3, 0.2]], SparsifyPolicy.top_k(2))
    np.testing.assert_allclose(out, [[0.5, 0.3, 0.0]])


def test_ties_go_to_lower_class_index():
    frames = sparsify([[0.2, 0.4, 0.4], [0.25, 0.25, 0.25, 0.25]], SparsifyPolicy.top_k(1))
    assert [f[0][0] for f in frames] == [1, 0]


def test_copy_keeps_positive_entries_unchanged():
    (frame,) = sparsify([[0.2, 0.0, 0.3]], SparsifyPolicy.copy())
    assert frame == [(0, 0.2), (2, 0.3)]


def test_mass_invariant():
    alignment = create_alignment(n_frames=50, n_classes=20, seed=0)
    posteriors = create_posterior_matrix(alignment, n_classes=20, sharpness=2.0, seed=0)

    for policy in (
        SparsifyPolicy.fixed_decimal(2),
        SparsifyPolicy.percentile_mass(0.9),
        SparsifyPolicy.top_k(3),
    ):
        for frame in sparsify(posteriors, policy):
            assert frame
            assert sum(w for _, w in frame) == pytest.approx(1.0, abs=1e-12)
            assert all(0.0 < w <= 1.0 for _, w in frame)


def test_all_zero_frame_is_empty_not_nan():
    frames = sparsify([[0.0, 0.0, 0.0], [0.001, 0.002, 0.997]], SparsifyPolicy.fixed_decimal(1))
    assert frames[0] == []
    assert _as_dict(frames)[1] == pytest.approx({2: 1.0})


def test_sparsify_is_a_fixed_point():
    examples = [
        (SparsifyPolicy.top_k(2), [[0.1, 0.2, 0.7], [0.5, 0.3, 0.2]]),
        (SparsifyPolicy.percentile_mass(0.7), [[0.5, 0.3, 0.2]]),
        (SparsifyPolicy.fixed_decimal(1), [[0.2, 0.8], [0.6, 0.4]]),
    ]
    for policy, dense in examples:
        once = sparsify(dense, policy)
        twice = sparsify(_densify(once, len(dense[0])), policy)
        assert [f for f, _ in once[0]] == [f for f, _ in twice[0]]
        np.testing.assert_allclose(_densify(twice, len(dense[0])), _densify(once, len(dense[0])), atol=1e-12)


def test_apply_exp_on_log_posteriors():
    frames = sparsify(np.log([[0.5, 0.3, 0.2]]), SparsifyPolicy.top_k(1), apply_exp=True)
    assert _as_dict(frames) == [pytest.approx({0: 1.0})]


def test_invalid_values():
    with pytest.raises(DataError) as excinfo:
        sparsify([[1.5, 0.1]], SparsifyPolicy.copy(), key="utt3")
    assert excinfo.value.key == "utt3"
    with pytest.raises(NumericError):
        sparsify([[np.nan, 0.1]], SparsifyPolicy.top_k(1))
    with pytest.raises(DataError):
        sparsify([0.5, 0.5], SparsifyPolicy.top_k(1))


def test_policy_from_options():
    assert SparsifyPolicy.from_options() == SparsifyPolicy.fixed_decimal(2)
    assert SparsifyPolicy.from_options(precision=3) == SparsifyPolicy.fixed_decimal(3)
    assert SparsifyPolicy.from_options(top_n=20) == SparsifyPolicy.top_k(20)
    assert SparsifyPolicy.from_options(round_off=False) == SparsifyPolicy.copy()
    assert SparsifyPolicy.from_options(precision=0, top_n=5) == SparsifyPolicy.top_k(5)

    with pytest.raises(ConfigError):
        SparsifyPolicy.from_options(precision=2, top_n=5)
    with pytest.raises(ConfigError):
        SparsifyPolicy.from_options(top_n=5, round_off=False)
    with pytest.raises(ConfigError):
        SparsifyPolicy.from_options(precision=0)
    with pytest.raises(ConfigError):
        SparsifyPolicy.from_options(percentile=150)
    with pytest.raises(ConfigError):
        SparsifyPolicy.from_options(top_n=-1)


def test_policy_validation():
    with pytest.raises(ConfigError):
        SparsifyPolicy.top_k(0)
    with pytest.raises(ConfigError):
        SparsifyPolicy.percentile_mass(1.5)
    with pytest.raises(ConfigError):
        SparsifyPolicy(PolicyKind.COPY, 3)
    assert not SparsifyPolicy.copy().truncates


def test_csr_packing():
    frames = [[(0, 0.25), (3, 0.75)], [], [(1, 1.0)]]
    matrix = sparse_to_csr(frames, 5)

    assert matrix.shape == (3, 5)
    assert matrix.nnz == 3
    assert csr_to_sparse(matrix) == frames
    with pytest.raises(DataError):
        sparse_to_csr(frames, 3)


def test_unpacking_leaves_input_matrix_unsorted():
    matrix = csr_matrix(
        (np.array([0.25, 0.75]), np.array([2, 0], dtype=np.int32), np.array([0, 2], dtype=np.int64)),
        shape=(1, 3),
    )

    assert csr_to_sparse(matrix) == [[(0, 0.75), (2, 0.25)]]
    np.testing.assert_array_equal(matrix.indices, [2, 0])
    np.testing.assert_array_equal(matrix.data, [0.25, 0.75])
