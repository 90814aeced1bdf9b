#!/usr/bin/env python3
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
Example: per-class energy profiles and reconstruction error vs. energy.

Builds class transforms from a synthetic corpus of log-posteriors, then plots
each class's energy table and how far reconstructions drift from the input as
the energy percentile is lowered.
"""

import numpy as np
import matplotlib.pyplot as plt

from postpca import (
    ClassTransformRegistry,
    ReconstructionEngine,
    ReconstructionOptions,
    StatisticsAccumulator,
    estimate_class_pca,
)
from test_utils import create_utterances

N_CLASSES = 6
ENERGIES = (100, 99, 95, 90, 80, 60, 40, 20, 0)


def build_registry(posteriors, alignments):
    """Accumulate log-posterior statistics per aligned class and estimate transforms."""
    acc = StatisticsAccumulator(dim=N_CLASSES, num_classes=N_CLASSES)
    for key, matrix in posteriors.items():
        labels = alignments[key]
        for class_id in np.unique(labels):
            acc.add_matrix(class_id, np.log(matrix[labels == class_id]))

    registry = ClassTransformRegistry()
    for class_id in acc.keys():
        transform = registry.register(estimate_class_pca(acc.statistics(class_id), class_id))
        print(f"  class {class_id}: {acc.statistics(class_id).count} frames, "
              f"{transform.num_stored} of {transform.dimension} components stored")
    return registry.freeze()


def reconstruction_error(registry, posteriors, alignments, energy):
    engine = ReconstructionEngine(registry, ReconstructionOptions(energy=energy))
    errors = []
    for key, matrix in posteriors.items():
        out = engine.reconstruct_utterance(matrix, alignments[key], key=key)
        errors.append(np.abs(out - matrix).sum(axis=1))
    return float(np.mean(np.concatenate(errors)))


def demonstrate_energy_profiles(output_file="energy_profiles.png"):
    print("=" * 70)
    print("Per-class energy profiles")
    print("=" * 70)

    posteriors, alignments = create_utterances(
        n_utts=20, n_frames=100, n_classes=N_CLASSES, sharpness=3.0, seed=7
    )
    print(f"Created {len(posteriors)} utterances over {N_CLASSES} classes")

    registry = build_registry(posteriors, alignments)

    errors = [reconstruction_error(registry, posteriors, alignments, e) for e in ENERGIES]
    for energy, err in zip(ENERGIES, errors):
        print(f"  energy {energy:3d}%: mean L1 error {err:.4f}")

    fig, axes = plt.subplots(1, 2, figsize=(14, 5))
    fig.suptitle('Class Transform Energy Profiles', fontsize=14)

    for class_id in registry:
        table = registry.lookup(class_id).energy_table
        axes[0].step(np.arange(table.shape[0]), table, where='post', label=f'class {class_id}')
    axes[0].set_title('Components needed per energy percentile')
    axes[0].set_xlabel('Energy percentile')
    axes[0].set_ylabel('Components')
    axes[0].grid(True, alpha=0.3)
    axes[0].legend()

    axes[1].plot(ENERGIES, errors, 'o-')
    axes[1].set_title('Reconstruction error vs. energy')
    axes[1].set_xlabel('Energy percentile')
    axes[1].set_ylabel('Mean L1 error per frame')
    axes[1].invert_xaxis()
    axes[1].grid(True, alpha=0.3)

    plt.tight_layout()
    plt.savefig(output_file, dpi=150, bbox_inches='tight')
    plt.close(fig)
    print(f"\nVisualization saved: {output_file}")
    return registry, errors


if __name__ == "__main__":
    demonstrate_energy_profiles()
