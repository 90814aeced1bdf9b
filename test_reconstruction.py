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
Tests for projecting live posteriors through class transforms.
"""

import math

import numpy as np
import pytest

from postpca import (
    EPSILON,
    ClassTransformRegistry,
    ConfigError,
    DataError,
    NumericError,
    ReconstructionEngine,
    ReconstructionOptions,
    build_energy_table,
    decompose_covariance,
    log_priors_from_counts,
)
from test_utils import _resolve_rng, create_alignment, create_posterior_matrix

LINEAR = ReconstructionOptions(apply_log=False, apply_exp=False)


def _full_rank_registry(class_id=1, dim=5, seed=0):
    rng = _resolve_rng(seed=seed)
    a = rng.standard_normal((dim, dim))
    eigenvalues, eigenvectors = decompose_covariance(a @ a.T)
    registry = ClassTransformRegistry()
    registry.build(
        class_id,
        mean=rng.standard_normal(dim),
        basis=eigenvectors,
        energy_table=build_energy_table(eigenvalues),
    )
    return registry.freeze()


def test_full_rank_round_trip_is_exact():
    registry = _full_rank_registry()
    engine = ReconstructionEngine(registry, LINEAR)
    rng = _resolve_rng(seed=1)

    for _ in range(5):
        v = rng.standard_normal(5)
        np.testing.assert_allclose(engine.reconstruct(v, 1, energy=100), v, atol=1e-10)


def test_round_trip_through_log_domain():
    registry = _full_rank_registry()
    engine = ReconstructionEngine(registry)
    posterior = np.array([0.05, 0.1, 0.6, 0.2, 0.05])

    np.testing.assert_allclose(engine.reconstruct(posterior, 1), posterior, rtol=1e-9)


def test_lower_energy_is_a_projection():
    registry = _full_rank_registry()
    transform = registry.lookup(1)
    engine = ReconstructionEngine(registry, ReconstructionOptions(energy=0, apply_log=False, apply_exp=False))
    v = _resolve_rng(seed=2).standard_normal(5)

    out = engine.reconstruct(v, 1)
    k = transform.num_components(0)
    assert k == transform.energy_table[0]
    basis = transform.basis[:, :k]
    expected = basis @ (basis.T @ (v - transform.mean)) + transform.mean
    np.testing.assert_allclose(out, expected, atol=1e-10)
    # Projecting twice changes nothing.
    np.testing.assert_allclose(engine.reconstruct(out, 1), out, atol=1e-10)


def test_fallback_in_probability_output():
    engine = ReconstructionEngine(ClassTransformRegistry().freeze())
    out = engine.reconstruct(np.full(4, 0.25), 2)

    expected = np.full(4, EPSILON)
    expected[2] = 1.0
    np.testing.assert_allclose(out, expected, rtol=1e-12)
    assert engine.num_fallback == 1


def test_fallback_in_log_domain():
    engine = ReconstructionEngine(
        ClassTransformRegistry().freeze(),
        ReconstructionOptions(apply_log=True, apply_exp=False),
    )
    out = engine.reconstruct(np.full(3, 1.0 / 3.0), 0)

    assert out[0] == 0.0
    np.testing.assert_allclose(out[1:], math.log(EPSILON))
    assert np.count_nonzero(out == 0.0) == 1


def test_fallback_without_log():
    engine = ReconstructionEngine(ClassTransformRegistry().freeze(), LINEAR)
    out = engine.reconstruct(np.zeros(3), 1)
    np.testing.assert_array_equal(out, [EPSILON, 1.0, EPSILON])


def test_fallback_label_outside_output():
    engine = ReconstructionEngine(ClassTransformRegistry().freeze())
    with pytest.raises(DataError):
        engine.reconstruct(np.full(3, 0.2), 3, key="utt1")


def test_non_finite_frame_is_fatal():
    engine = ReconstructionEngine(_full_rank_registry(), LINEAR)
    frame = np.ones(5)
    frame[3] = np.nan
    with pytest.raises(NumericError) as excinfo:
        engine.reconstruct(frame, 1, key="utt7")
    assert "utt7" in str(excinfo.value)


def test_dimension_mismatch_with_transform():
    engine = ReconstructionEngine(_full_rank_registry(dim=5), LINEAR)
    with pytest.raises(DataError):
        engine.reconstruct(np.ones(4), 1)


def test_prior_correction_happens_before_projection():
    registry = _full_rank_registry(dim=3)
    counts = np.array([1.0, 1.0, 2.0])
    options = ReconstructionOptions(apply_log=True, apply_exp=False)
    engine = ReconstructionEngine.with_prior_counts(registry, counts, options)
    posterior = np.array([0.2, 0.3, 0.5])

    out = engine.reconstruct(posterior, 1)

    np.testing.assert_allclose(out, np.log(posterior) - np.log([0.25, 0.25, 0.5]), atol=1e-10)


def test_log_priors_from_counts():
    np.testing.assert_allclose(log_priors_from_counts([1.0, 1.0, 2.0]), np.log([0.25, 0.25, 0.5]))
    np.testing.assert_allclose(
        log_priors_from_counts([1.0, 3.0], prior_scale=0.5), 0.5 * np.log([0.25, 0.75])
    )

    suppressed = log_priors_from_counts([0.0, 1.0])
    assert suppressed[0] == pytest.approx(float(np.sqrt(np.finfo(np.float32).max)))
    assert suppressed[1] == pytest.approx(0.0)

    with pytest.raises(NumericError):
        log_priors_from_counts([0.0, 0.0])


def test_option_validation():
    with pytest.raises(ConfigError):
        ReconstructionOptions(apply_log=True, no_softmax=True)
    with pytest.raises(ConfigError):
        ReconstructionOptions(energy=101)
    with pytest.raises(ConfigError):
        ReconstructionOptions(apply_log=False, apply_exp=True)
    with pytest.raises(ConfigError):
        ReconstructionEngine(ClassTransformRegistry(), LINEAR, log_priors=np.zeros(3))

    assert ReconstructionOptions(apply_log=False, no_softmax=True).log_domain


def test_utterance_groups_frames_by_class():
    registry = _full_rank_registry(class_id=1, dim=4)
    engine = ReconstructionEngine(registry, ReconstructionOptions(energy=50))
    alignment = create_alignment(n_frames=40, n_classes=3, seed=6)
    posteriors = create_posterior_matrix(alignment, n_classes=4, seed=6)

    out = engine.reconstruct_utterance(posteriors, alignment, key="utt0")

    assert out.shape == posteriors.shape
    frame_engine = ReconstructionEngine(registry, ReconstructionOptions(energy=50))
    for t in range(alignment.shape[0]):
        np.testing.assert_allclose(out[t], frame_engine.reconstruct(posteriors[t], alignment[t]), rtol=1e-9)
    assert engine.num_reconstructed == int(np.sum(alignment == 1))
    assert engine.num_fallback == int(np.sum(alignment != 1))


def test_utterance_alignment_length_mismatch():
    engine = ReconstructionEngine(_full_rank_registry(dim=3))
    with pytest.raises(DataError):
        engine.reconstruct_utterance(np.full((4, 3), 1.0 / 3.0), [1, 1, 1], key="utt2")
