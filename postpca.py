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
Per-class posterior compression and statistics.

Frame posteriors produced by a classifier over a flat inventory of output
classes are post-processed in two directions:

* offline, per-class samples are accumulated into mean/covariance statistics,
  eigendecomposed, and stored as reduced-rank PCA transforms together with an
  energy table (percentile of retained variance -> number of components);
* online, each live frame is projected through the transform of its aligned
  class and reconstructed, or replaced by a one-hot fallback when no transform
  exists for that class.

Dense posteriors can also be truncated into a compact sparse form, and sparse
posteriors summed into smoothed per-class prior counts.
"""

import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import (
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

import numpy as np
from scipy.linalg import LinAlgError, eigh
from scipy.sparse import csr_matrix

# Configure module logger
logger = logging.getLogger(__name__)

__version__ = "1.0.0"

EPSILON = 2.2204e-16
COUNT_SMOOTHING = 0.5
FRAME_RATE = 100.0
NUM_PERCENTILES = 101
STORED_PERCENTILE = 99
MIN_VARIANCE = 1.0e-15

# Cumulative energy is compared on a 0..100 scale.
_ENERGY_TOLERANCE = 1e-9
# Log-prior assigned to classes below the prior floor; subtracting it
# effectively removes the class.
_SUPPRESSED_LOG_PRIOR = float(np.sqrt(np.finfo(np.float32).max))
_ORTHONORMAL_TOLERANCE = 1e-4

ClassId = Union[int, str]
SparsePosterior = List[Tuple[int, float]]


# ----------------------------------------------------------------------
# Errors
# ----------------------------------------------------------------------


class PostPCAError(Exception):
    """Base class for all errors raised by the posterior pipeline."""


class ConfigError(PostPCAError, ValueError):
    """Invalid or mutually exclusive options; detected before any data is read."""


class DataError(PostPCAError, ValueError):
    """A problem with a single item (utterance, vector, class).

    Recoverable: callers skip the item and count it.
    """

    def __init__(self, message: str, key: Optional[ClassId] = None):
        super().__init__(message)
        self.key = key


class NumericError(PostPCAError, ArithmeticError):
    """NaN/Inf in classifier output or statistics, or a degenerate covariance."""


class ExhaustionError(PostPCAError, RuntimeError):
    """Nothing was accumulated by the end of a pass."""


@dataclass
class PassSummary:
    """Bookkeeping for one pass over a record stream."""

    num_done: int = 0
    num_skipped: int = 0
    num_frames: int = 0
    started: float = field(default_factory=time.perf_counter)

    def done(self, frames: int = 0) -> None:
        self.num_done += 1
        self.num_frames += int(frames)

    def skip(self, error: DataError) -> None:
        self.num_skipped += 1
        if error.key is not None:
            logger.warning(f"{error.key}, {error}")
        else:
            logger.warning(str(error))

    @property
    def elapsed(self) -> float:
        return time.perf_counter() - self.started

    @property
    def frames_per_second(self) -> float:
        elapsed = self.elapsed
        return self.num_frames / elapsed if elapsed > 0.0 else 0.0

    def progress(self, every: int = 100) -> None:
        if self.num_done and self.num_done % every == 0:
            logger.debug(
                f"After {self.num_done} utterances: time elapsed = {self.elapsed / 60:.2f} min; "
                f"processed {self.frames_per_second:.1f} frames per second."
            )


def normalize_class_id(class_id) -> ClassId:
    """Map class ids to ``int`` where possible so ``3``, ``np.int32(3)`` and ``"3"`` agree."""
    if isinstance(class_id, (bool, np.bool_)):
        raise DataError(f"Invalid class id {class_id!r}")
    if isinstance(class_id, (int, np.integer)):
        return int(class_id)
    text = str(class_id).strip()
    if text.lstrip("-").isdigit():
        return int(text)
    if not text:
        raise DataError("Empty class id")
    return text


def _check_finite(values, key=None, what="classifier output") -> None:
    arr = np.asarray(values)
    finite = np.isfinite(arr)
    if finite.all():
        return
    bad = tuple(int(i) for i in np.argwhere(~finite)[0])
    where = f" of {key}" if key is not None else ""
    raise NumericError(f"NaN or inf in {what}{where} at index {bad}: {arr[bad]}")


def _floored_log(values) -> np.ndarray:
    return np.log(np.maximum(np.asarray(values, dtype=np.float64), EPSILON))


# ----------------------------------------------------------------------
# Statistics accumulation
# ----------------------------------------------------------------------


@dataclass
class ClassStatistics:
    """First and second order sums for one key."""

    sum: np.ndarray
    sum_outer: np.ndarray
    count: int = 0
    weight: float = 0.0

    @classmethod
    def zeros(cls, dim: int) -> "ClassStatistics":
        return cls(
            sum=np.zeros(dim, dtype=np.float64),
            sum_outer=np.zeros((dim, dim), dtype=np.float64),
        )

    @property
    def dim(self) -> int:
        return self.sum.shape[0]

    def finalize(self, key=None) -> Tuple[np.ndarray, np.ndarray]:
        """Return ``(mean, covariance)``, normalizing by the accumulated weight."""
        if self.count == 0 or self.weight <= 0.0:
            raise ExhaustionError(f"No data accumulated for {key!r}")
        mean = self.sum / self.weight
        covariance = self.sum_outer / self.weight - np.outer(mean, mean)
        covariance = 0.5 * (covariance + covariance.T)
        _check_finite(covariance, key, "covariance")
        return mean, covariance


class StatisticsAccumulator:
    """
    Streaming mean / second-moment accumulation keyed by class, or globally.

    The dimension of a key is fixed by the first vector added for it (or by the
    ``dim`` hint); later vectors of a different length raise ``DataError`` and
    leave the statistics untouched. Keys are created on demand. With both
    ``dim`` and ``num_classes`` given, integer keys ``0..num_classes-1`` are
    pre-sized up front and further keys are still added as they appear.

    Args:
        dim: Expected vector dimension, or None to take it from the data
        num_classes: Number of integer class keys to pre-size (requires dim)
    """

    def __init__(self, dim: Optional[int] = None, num_classes: int = 0):
        if dim is not None and dim <= 0:
            raise ConfigError("dim must be positive")
        if num_classes and dim is None:
            raise ConfigError("num_classes pre-sizing requires dim")
        self.dim = dim
        self._stats: Dict[Optional[ClassId], ClassStatistics] = {}
        for class_id in range(int(num_classes)):
            self._stats[class_id] = ClassStatistics.zeros(dim)

    def __contains__(self, key) -> bool:
        stats = self._stats.get(self._key(key))
        return stats is not None and stats.count > 0

    def __len__(self) -> int:
        return sum(1 for stats in self._stats.values() if stats.count > 0)

    def keys(self) -> List[Optional[ClassId]]:
        return [key for key, stats in self._stats.items() if stats.count > 0]

    def statistics(self, key=None) -> Optional[ClassStatistics]:
        return self._stats.get(self._key(key))

    @staticmethod
    def _key(key):
        return None if key is None else normalize_class_id(key)

    def _slot(self, key, dim: int) -> ClassStatistics:
        stats = self._stats.get(key)
        if stats is None:
            expected = self.dim if self.dim is not None else dim
            if expected != dim:
                raise DataError(f"Feature dimension mismatch {expected} vs. {dim}", key)
            stats = ClassStatistics.zeros(dim)
            self._stats[key] = stats
        elif stats.dim != dim:
            raise DataError(f"Feature dimension mismatch {stats.dim} vs. {dim}", key)
        return stats

    def add(self, key, vector, weight: float = 1.0) -> None:
        """Add ``weight * vector`` and ``weight * outer(vector, vector)`` under ``key``."""
        key = self._key(key)
        vec = np.asarray(vector, dtype=np.float64)
        if vec.ndim != 1 or vec.size == 0:
            raise DataError("Empty or non 1-D input vector", key)
        if not np.isfinite(weight) or weight < 0.0:
            raise DataError(f"Invalid weight {weight}", key)
        _check_finite(vec, key, "input vector")
        stats = self._slot(key, vec.shape[0])
        stats.sum += weight * vec
        stats.sum_outer += weight * np.outer(vec, vec)
        stats.count += 1
        stats.weight += float(weight)

    def add_matrix(self, key, matrix, weights=None) -> None:
        """Add every row of ``matrix`` under ``key`` (optionally per-row weighted)."""
        key = self._key(key)
        mat = np.asarray(matrix, dtype=np.float64)
        if mat.ndim != 2 or mat.shape[0] == 0:
            raise DataError("Empty feature matrix", key)
        if weights is None:
            w = np.ones(mat.shape[0], dtype=np.float64)
        else:
            w = np.asarray(weights, dtype=np.float64).ravel()
            if w.shape[0] != mat.shape[0]:
                raise DataError(
                    f"Got {w.shape[0]} weights for {mat.shape[0]} rows", key
                )
            if not np.all(np.isfinite(w)) or np.any(w < 0.0):
                raise DataError("Row weights must be finite and non-negative", key)
        _check_finite(mat, key, "input matrix")
        stats = self._slot(key, mat.shape[1])
        stats.sum += w @ mat
        stats.sum_outer += mat.T @ (w[:, None] * mat)
        stats.count += mat.shape[0]
        stats.weight += float(w.sum())

    def merge(self, other: "StatisticsAccumulator") -> None:
        """Sum another accumulator into this one (per-worker partials)."""
        for key, theirs in other._stats.items():
            if theirs.count == 0:
                continue
            mine = self._slot(key, theirs.dim)
            mine.sum += theirs.sum
            mine.sum_outer += theirs.sum_outer
            mine.count += theirs.count
            mine.weight += theirs.weight

    def finalize(self, key=None) -> Tuple[np.ndarray, np.ndarray]:
        key = self._key(key)
        stats = self._stats.get(key)
        if stats is None:
            raise ExhaustionError(f"No data accumulated for {key!r}")
        return stats.finalize(key)


def accumulate_samples(
    items: Iterable[Tuple[str, np.ndarray]],
    *,
    apply_log: bool = False,
    read_vectors: bool = False,
) -> Tuple[StatisticsAccumulator, PassSummary]:
    """
    Accumulate global statistics from a stream of sample matrices (or vectors).

    Args:
        items: ``(key, value)`` pairs in stream order
        apply_log: Floor at ``EPSILON`` and take the log before accumulating
        read_vectors: Treat each value as a single vector instead of a matrix

    Returns:
        accumulator: Statistics under the global key (``None``)
        summary: Items accumulated / skipped
    """
    accumulator = StatisticsAccumulator()
    summary = PassSummary()
    for key, value in items:
        arr = np.asarray(value, dtype=np.float64)
        try:
            if arr.size == 0:
                raise DataError("Empty input vector" if read_vectors else "Empty feature matrix", key)
            if apply_log:
                arr = _floored_log(arr)
            if read_vectors:
                accumulator.add(None, arr.ravel())
                summary.done(1)
            else:
                accumulator.add_matrix(None, np.atleast_2d(arr))
                summary.done(arr.shape[0] if arr.ndim == 2 else 1)
        except DataError as err:
            if err.key is None:
                err.key = key
            summary.skip(err)
    what = "vectors" if read_vectors else "feature files"
    logger.info(
        f"Accumulated stats from {summary.num_done} {what}, "
        f"{summary.num_skipped} with errors; {summary.num_frames} frames."
    )
    return accumulator, summary


# ----------------------------------------------------------------------
# Energy profile
# ----------------------------------------------------------------------


def decompose_covariance(covariance) -> Tuple[np.ndarray, np.ndarray]:
    """
    Eigendecompose a symmetric covariance matrix.

    Returns eigenvalues sorted descending and the matching orthonormal
    eigenvectors as columns. Each column's sign is fixed so that its largest
    magnitude entry is positive.
    """
    cov = np.asarray(covariance, dtype=np.float64)
    if cov.ndim != 2 or cov.shape[0] != cov.shape[1] or cov.shape[0] == 0:
        raise DataError(f"Covariance must be a non-empty square matrix, got shape {cov.shape}")
    _check_finite(cov, what="covariance")
    try:
        eigenvalues, eigenvectors = eigh(0.5 * (cov + cov.T), check_finite=False)
    except LinAlgError as exc:
        raise NumericError(f"Eigendecomposition failed: {exc}") from exc

    order = np.argsort(-eigenvalues, kind="stable")
    eigenvalues = eigenvalues[order]
    eigenvectors = eigenvectors[:, order]

    pivots = np.argmax(np.abs(eigenvectors), axis=0)
    signs = np.sign(eigenvectors[pivots, np.arange(eigenvectors.shape[1])])
    signs[signs == 0.0] = 1.0
    return eigenvalues, eigenvectors * signs


def build_energy_table(eigenvalues) -> np.ndarray:
    """
    Map each percentile 0..100 to the number of leading components needed.

    Entry ``p`` is the smallest ``k >= 1`` whose top-``k`` eigenvalue mass is at
    least ``p`` percent of the total; entry 100 is always the full rank. Small
    negative eigenvalues from rounding are treated as zero.
    """
    values = np.asarray(eigenvalues, dtype=np.float64).ravel()
    if values.size == 0:
        raise DataError("No eigenvalues given")
    _check_finite(values, what="eigenvalues")
    values = np.clip(values, 0.0, None)
    total = values.sum()
    if not total > 0.0:
        raise NumericError(
            f"Sum of eigenvalues is {total}; cannot build an energy table for a zero-variance class"
        )

    cumulative = 100.0 * np.cumsum(values) / total
    percentiles = np.arange(NUM_PERCENTILES, dtype=np.float64)
    table = np.searchsorted(cumulative, percentiles - _ENERGY_TOLERANCE, side="left") + 1
    table = np.clip(table, 1, values.size)
    table[-1] = values.size
    return table.astype(np.int32)


def _validate_energy_table(table, dimension: int, key=None) -> np.ndarray:
    arr = np.asarray(table)
    if arr.shape != (NUM_PERCENTILES,):
        raise DataError(f"Energy table must have {NUM_PERCENTILES} entries, got {arr.shape}", key)
    if arr.dtype.kind == "f":
        if not np.all(np.isfinite(arr)) or not np.all(arr == np.round(arr)):
            raise DataError("Energy table entries must be integers", key)
    elif arr.dtype.kind not in "iu":
        raise DataError("Energy table entries must be integers", key)
    arr = arr.astype(np.int32)
    if np.any(np.diff(arr) < 0):
        raise DataError("Energy table is not non-decreasing", key)
    if arr[0] < 1 or arr[-1] != dimension:
        raise DataError(
            f"Energy table must run from >= 1 to the full rank {dimension}, "
            f"got {arr[0]}..{arr[-1]}",
            key,
        )
    return arr


@dataclass(frozen=True)
class PCATransform:
    """
    Reduced-rank PCA transform for one class.

    ``basis`` holds orthonormal columns (only the leading ones are kept),
    ``mean`` the class mean, ``energy_table`` the 101-entry percentile table
    for the full decomposition, and ``scale`` optional per-component factors
    applied to codes when the transform normalizes variance. Arrays are
    read-only after construction.
    """

    class_id: ClassId
    basis: np.ndarray
    mean: np.ndarray
    energy_table: np.ndarray
    scale: Optional[np.ndarray] = None

    def __post_init__(self):
        class_id = normalize_class_id(self.class_id)
        basis = np.array(self.basis, dtype=np.float64)
        mean = np.array(self.mean, dtype=np.float64).ravel()
        if basis.ndim != 2:
            raise DataError(f"Basis must be 2-D, got shape {basis.shape}", class_id)
        dimension = mean.shape[0]
        if basis.shape[0] != dimension:
            raise DataError(
                f"Basis has {basis.shape[0]} rows but the mean has dimension {dimension}",
                class_id,
            )
        if not 1 <= basis.shape[1] <= dimension:
            raise DataError(f"Basis must keep 1..{dimension} columns, got {basis.shape[1]}", class_id)
        _check_finite(basis, class_id, "basis")
        _check_finite(mean, class_id, "mean")
        gram = basis.T @ basis
        if not np.allclose(gram, np.eye(basis.shape[1]), atol=_ORTHONORMAL_TOLERANCE):
            raise DataError("Basis columns are not orthonormal", class_id)
        table = _validate_energy_table(self.energy_table, dimension, class_id)

        scale = self.scale
        if scale is not None:
            scale = np.array(scale, dtype=np.float64).ravel()
            if scale.shape[0] != basis.shape[1]:
                raise DataError(
                    f"Got {scale.shape[0]} scale factors for {basis.shape[1]} components",
                    class_id,
                )
            if not np.all(np.isfinite(scale)) or np.any(scale <= 0.0):
                raise DataError("Scale factors must be finite and positive", class_id)
            scale.setflags(write=False)

        for arr in (basis, mean, table):
            arr.setflags(write=False)
        object.__setattr__(self, "class_id", class_id)
        object.__setattr__(self, "basis", basis)
        object.__setattr__(self, "mean", mean)
        object.__setattr__(self, "energy_table", table)
        object.__setattr__(self, "scale", scale)

    @property
    def dimension(self) -> int:
        return self.mean.shape[0]

    @property
    def num_stored(self) -> int:
        return self.basis.shape[1]

    def num_components(self, energy: int = 100) -> int:
        """Components used at ``energy`` percent, capped by what was stored."""
        if not 0 <= int(energy) <= 100:
            raise ConfigError(f"Energy percentile must be in 0..100, got {energy}")
        return min(int(self.energy_table[int(energy)]), self.num_stored)

    def project(self, values, k: Optional[int] = None) -> np.ndarray:
        """Center and project rows (or one vector) onto the first ``k`` components."""
        k = self.num_stored if k is None else int(k)
        codes = (np.asarray(values, dtype=np.float64) - self.mean) @ self.basis[:, :k]
        if self.scale is not None:
            codes = codes * self.scale[:k]
        return codes

    def expand(self, codes) -> np.ndarray:
        codes = np.asarray(codes, dtype=np.float64)
        k = codes.shape[-1]
        if self.scale is not None:
            codes = codes / self.scale[:k]
        return codes @ self.basis[:, :k].T + self.mean

    def reconstruct(self, values, energy: int = 100) -> np.ndarray:
        """Rank-k round trip; exact when ``k`` equals the dimension."""
        return self.expand(self.project(values, self.num_components(energy)))

    def affine(self, k: Optional[int] = None) -> np.ndarray:
        """Affine form ``[B^T | -B^T mean]`` (k x (dim + 1)) of the projection."""
        k = self.num_stored if k is None else int(k)
        linear = self.basis[:, :k].T
        if self.scale is not None:
            linear = linear * self.scale[:k, None]
        offset = -(linear @ self.mean)
        return np.hstack([linear, offset[:, None]])


def estimate_class_pca(
    statistics: ClassStatistics,
    class_id: ClassId,
    *,
    dim: int = 0,
    normalize_variance: bool = False,
) -> PCATransform:
    """
    Turn finalized statistics into a stored PCA transform.

    Args:
        statistics: Accumulated sums for the class
        class_id: Identifier the transform is registered under
        dim: Cap on stored components (<= 0 keeps the 99th percentile point)
        normalize_variance: Scale codes to unit variance per component

    Returns:
        PCATransform keeping ``energy_table[99]`` (or ``dim``) basis columns
    """
    mean, covariance = statistics.finalize(class_id)
    full_dim = mean.shape[0]
    if dim > full_dim:
        raise ConfigError(
            f"Final dimension {dim} is greater than feature dimension {full_dim}"
        )
    eigenvalues, eigenvectors = decompose_covariance(covariance)
    table = build_energy_table(eigenvalues)

    num_stored = int(table[STORED_PERCENTILE])
    if dim > 0:
        num_stored = min(num_stored, dim)
    logger.debug(
        f"Sum of PCA eigenvalues is {eigenvalues.sum():.6g}, sum of kept "
        f"eigenvalues is {eigenvalues[:num_stored].sum():.6g}"
    )

    scale = None
    if normalize_variance:
        variances = eigenvalues[:num_stored].copy()
        for idx in np.flatnonzero(variances < MIN_VARIANCE):
            logger.warning(
                f"normalize-variance: very tiny variance {variances[idx]:.3g} encountered, "
                f"treating as {MIN_VARIANCE}"
            )
        scale = 1.0 / np.sqrt(np.maximum(variances, MIN_VARIANCE))

    return PCATransform(
        class_id=class_id,
        basis=eigenvectors[:, :num_stored],
        mean=mean,
        energy_table=table,
        scale=scale,
    )


# ----------------------------------------------------------------------
# Registry
# ----------------------------------------------------------------------


class ClassTransformRegistry:
    """Store of per-class transforms; read-only once frozen."""

    def __init__(self, transforms: Iterable[PCATransform] = ()):
        self._transforms: Dict[ClassId, PCATransform] = {}
        self._frozen = False
        for transform in transforms:
            self.register(transform)

    def __contains__(self, class_id) -> bool:
        return self.lookup(class_id) is not None

    def __len__(self) -> int:
        return len(self._transforms)

    def __iter__(self) -> Iterator[ClassId]:
        return iter(self._transforms)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(self, transform: PCATransform) -> PCATransform:
        if self._frozen:
            raise RuntimeError("Registry is read-only")
        if transform.class_id in self._transforms:
            raise DataError("Duplicate transform for class", transform.class_id)
        self._transforms[transform.class_id] = transform
        return transform

    def build(self, class_id, mean, basis, energy_table, scale=None) -> PCATransform:
        return self.register(
            PCATransform(
                class_id=class_id,
                basis=basis,
                mean=mean,
                energy_table=energy_table,
                scale=scale,
            )
        )

    def freeze(self) -> "ClassTransformRegistry":
        self._frozen = True
        self._transforms = MappingProxyType(dict(self._transforms))
        return self

    def lookup(self, class_id) -> Optional[PCATransform]:
        """Transform for ``class_id``, or None when the class has none."""
        try:
            key = normalize_class_id(class_id)
        except DataError:
            return None
        return self._transforms.get(key)


# ----------------------------------------------------------------------
# Reconstruction
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class ReconstructionOptions:
    """
    Options of the reconstruction engine.

    Args:
        energy: Percentile of variance to keep when projecting (0..100)
        apply_log: Inputs are probabilities; take the (floored) log first
        no_softmax: Inputs are pre-softmax activations, already log-like
        apply_exp: Exponentiate the reconstruction back to probabilities
        prior_scale: Scale on the log-priors subtracted for quasi-likelihoods
        prior_floor: Priors below this are suppressed
    """

    energy: int = 100
    apply_log: bool = True
    no_softmax: bool = False
    apply_exp: bool = True
    prior_scale: float = 1.0
    prior_floor: float = 1e-10

    def __post_init__(self):
        if self.apply_log and self.no_softmax:
            raise ConfigError("Nonsense option combination: apply_log and no_softmax")
        if not 0 <= int(self.energy) <= 100:
            raise ConfigError(f"Energy percentile must be in 0..100, got {self.energy}")
        if self.apply_exp and not self.log_domain:
            raise ConfigError("apply_exp needs log-domain values (apply_log or no_softmax)")
        if not np.isfinite(self.prior_scale):
            raise ConfigError("prior_scale must be finite")
        if not 0.0 <= self.prior_floor < 1.0:
            raise ConfigError("prior_floor must be in [0, 1)")

    @property
    def log_domain(self) -> bool:
        return self.apply_log or self.no_softmax


def log_priors_from_counts(counts, prior_scale: float = 1.0, prior_floor: float = 1e-10) -> np.ndarray:
    """Scaled log-priors from class counts; classes below the floor are suppressed."""
    counts = np.asarray(counts, dtype=np.float64).ravel()
    if counts.size == 0:
        raise DataError("Empty count vector")
    _check_finite(counts, what="class counts")
    if np.any(counts < 0.0):
        raise DataError("Class counts must be non-negative")
    total = counts.sum()
    if not total > 0.0:
        raise NumericError("Class counts sum to zero")
    priors = counts / total
    log_priors = np.log(np.maximum(priors, np.finfo(np.float64).tiny))
    suppressed = priors < prior_floor
    if suppressed.any():
        logger.warning(
            f"{int(suppressed.sum())} classes have priors below {prior_floor:g} and will be suppressed"
        )
        log_priors[suppressed] = _SUPPRESSED_LOG_PRIOR
    return prior_scale * log_priors


class ReconstructionEngine:
    """
    Project live posteriors through their class transform and reconstruct them.

    Frames are checked for NaN/Inf (fatal), optionally log-transformed and
    prior-corrected, then centered on the class mean, projected onto the
    leading ``k`` components and mapped back. Classes without a transform get
    a one-hot fallback on the aligned label.
    """

    def __init__(
        self,
        registry: ClassTransformRegistry,
        options: Optional[ReconstructionOptions] = None,
        log_priors=None,
    ):
        self.registry = registry
        self.options = options if options is not None else ReconstructionOptions()
        self._log_priors = None
        if log_priors is not None:
            if not self.options.log_domain:
                raise ConfigError(
                    "Prior correction needs log-domain values; use apply_log or no_softmax"
                )
            priors = np.array(log_priors, dtype=np.float64).ravel()
            _check_finite(priors, what="log-priors")
            priors.setflags(write=False)
            self._log_priors = priors
        self.num_reconstructed = 0
        self.num_fallback = 0

    @classmethod
    def with_prior_counts(cls, registry, counts, options: Optional[ReconstructionOptions] = None):
        options = options if options is not None else ReconstructionOptions()
        log_priors = log_priors_from_counts(counts, options.prior_scale, options.prior_floor)
        return cls(registry, options, log_priors)

    @property
    def log_priors(self) -> Optional[np.ndarray]:
        return self._log_priors

    def prepare(self, values, key=None) -> np.ndarray:
        """Validate, log-transform and prior-correct a frame or a matrix of frames."""
        arr = np.array(values, dtype=np.float64)
        _check_finite(arr, key)
        if self.options.apply_log:
            arr = _floored_log(arr)
        if self._log_priors is not None:
            if arr.shape[-1] != self._log_priors.shape[0]:
                raise DataError(
                    f"Prior dimension {self._log_priors.shape[0]} does not match "
                    f"output dimension {arr.shape[-1]}",
                    key,
                )
            arr = arr - self._log_priors
        return arr

    def _fallback(self, n_rows: int, dim: int, class_label, key=None) -> np.ndarray:
        label = normalize_class_id(class_label)
        if not isinstance(label, int) or not 0 <= label < dim:
            raise DataError(f"Label {class_label!r} outside output dimension {dim}", key)
        if self.options.log_domain:
            floor, certain = math.log(EPSILON), 0.0
        else:
            floor, certain = EPSILON, 1.0
        out = np.full((n_rows, dim), floor, dtype=np.float64)
        out[:, label] = certain
        return out

    def _project_rows(self, rows: np.ndarray, class_label, energy: int, key=None) -> np.ndarray:
        transform = self.registry.lookup(class_label)
        if transform is None:
            logger.debug(f"PCA for class {class_label} NOT found.")
            self.num_fallback += rows.shape[0]
            return self._fallback(rows.shape[0], rows.shape[1], class_label, key)
        if transform.dimension != rows.shape[1]:
            raise DataError(
                f"Transform for class {transform.class_id} has dimension "
                f"{transform.dimension}, frame has {rows.shape[1]}",
                key,
            )
        k = transform.num_components(energy)
        logger.debug(f"{k} principal components kept for class {transform.class_id}.")
        self.num_reconstructed += rows.shape[0]
        return transform.expand(transform.project(rows, k))

    def _finish(self, values: np.ndarray) -> np.ndarray:
        return np.exp(values) if self.options.apply_exp else values

    def reconstruct(self, frame, class_label, energy: Optional[int] = None, key=None) -> np.ndarray:
        """
        Reconstruct one frame through the transform of ``class_label``.

        Args:
            frame: Dense posterior (or activation) vector
            class_label: Aligned class of the frame
            energy: Override of the configured energy percentile
            key: Utterance id used in error messages

        Returns:
            Vector of the same dimension as ``frame``
        """
        energy = self.options.energy if energy is None else int(energy)
        values = self.prepare(frame, key)
        if values.ndim != 1:
            raise DataError(f"Frame must be 1-D, got shape {values.shape}", key)
        return self._finish(self._project_rows(values[None, :], class_label, energy, key)[0])

    def reconstruct_utterance(self, matrix, alignment, key=None) -> np.ndarray:
        """Reconstruct every frame of an utterance, grouping frames by aligned class."""
        values = self.prepare(matrix, key)
        if values.ndim != 2:
            raise DataError(f"Posterior matrix must be 2-D, got shape {values.shape}", key)
        labels = np.asarray(alignment).ravel()
        if labels.shape[0] != values.shape[0]:
            raise DataError(
                f"Alignment has {labels.shape[0]} labels for {values.shape[0]} frames", key
            )
        output = np.empty_like(values)
        for label in np.unique(labels):
            rows = labels == label
            output[rows] = self._project_rows(values[rows], label, self.options.energy, key)
        return self._finish(output)


# ----------------------------------------------------------------------
# Sparsification
# ----------------------------------------------------------------------


class PolicyKind(Enum):
    COPY = "copy"
    FIXED_DECIMAL = "fixed-decimal"
    PERCENTILE_MASS = "percentile-mass"
    TOP_K = "top-k"


@dataclass(frozen=True)
class SparsifyPolicy:
    """
    Truncation policy; exactly one kind is active.

    ``value`` is the number of decimal places (FIXED_DECIMAL), the mass
    fraction in (0, 1] (PERCENTILE_MASS) or the number of classes (TOP_K).
    Ranking ties are broken by lower class index.
    """

    kind: PolicyKind
    value: Union[int, float, None] = None

    def __post_init__(self):
        kind = self.kind
        if kind is PolicyKind.COPY:
            if self.value is not None:
                raise ConfigError("The copy policy takes no value")
        elif kind is PolicyKind.FIXED_DECIMAL or kind is PolicyKind.TOP_K:
            if isinstance(self.value, bool) or not isinstance(self.value, (int, np.integer)) or self.value < 1:
                raise ConfigError(f"{kind.value} needs a positive integer, got {self.value!r}")
        elif kind is PolicyKind.PERCENTILE_MASS:
            if self.value is None or not 0.0 < float(self.value) <= 1.0:
                raise ConfigError(f"percentile-mass needs a fraction in (0, 1], got {self.value!r}")
        else:
            raise ConfigError(f"Unknown policy {kind!r}")

    @classmethod
    def copy(cls) -> "SparsifyPolicy":
        return cls(PolicyKind.COPY)

    @classmethod
    def fixed_decimal(cls, places: int) -> "SparsifyPolicy":
        return cls(PolicyKind.FIXED_DECIMAL, places)

    @classmethod
    def percentile_mass(cls, fraction: float) -> "SparsifyPolicy":
        return cls(PolicyKind.PERCENTILE_MASS, float(fraction))

    @classmethod
    def top_k(cls, k: int) -> "SparsifyPolicy":
        return cls(PolicyKind.TOP_K, k)

    @classmethod
    def from_options(
        cls,
        precision: Optional[int] = None,
        percentile: Optional[int] = None,
        top_n: Optional[int] = None,
        round_off: bool = True,
    ) -> "SparsifyPolicy":
        """
        Resolve command-line style options into a single policy.

        ``percentile`` is given in percent. Zero means "off". With rounding on
        and no option given, two decimal places are kept.
        """
        given = {"precision": precision, "percentile": percentile, "top_n": top_n}
        explicit = {name: value for name, value in given.items() if value is not None}
        active = {name: value for name, value in explicit.items() if value}
        if not round_off:
            if active:
                raise ConfigError(
                    f"round_off is disabled but {', '.join(sorted(active))} was requested"
                )
            return cls.copy()
        if len(active) > 1:
            raise ConfigError(
                f"Only one of precision, percentile and top_n may be set, got {', '.join(sorted(active))}"
            )
        if not active:
            if explicit:
                raise ConfigError("At least one of precision, percentile and top_n must be non-zero")
            return cls.fixed_decimal(2)
        name, value = next(iter(active.items()))
        if value < 0:
            raise ConfigError(f"{name} must be non-negative, got {value}")
        if name == "precision":
            return cls.fixed_decimal(int(value))
        if name == "percentile":
            if value > 100:
                raise ConfigError(f"percentile must be at most 100, got {value}")
            return cls.percentile_mass(value / 100.0)
        return cls.top_k(int(value))

    @property
    def truncates(self) -> bool:
        return self.kind is not PolicyKind.COPY


def _descending_order(matrix: np.ndarray) -> np.ndarray:
    # Stable sort of negated values: equal entries keep ascending class order.
    return np.argsort(-matrix, axis=1, kind="stable")


def truncate(matrix, policy: SparsifyPolicy) -> np.ndarray:
    """Zero the entries ``policy`` drops (rows are frames). Does not renormalize."""
    mat = np.array(matrix, dtype=np.float64)
    if policy.kind is PolicyKind.COPY:
        return mat
    if policy.kind is PolicyKind.FIXED_DECIMAL:
        digits = 10.0 ** int(policy.value)
        # Round half away from zero.
        return np.sign(mat) * np.floor(np.abs(mat) * digits + 0.5) / digits

    n_rows, n_cols = mat.shape
    order = _descending_order(mat)
    ranked = np.take_along_axis(mat, order, axis=1)
    if policy.kind is PolicyKind.TOP_K:
        n_keep = np.full(n_rows, min(int(policy.value), n_cols))
    else:
        cumulative = np.cumsum(ranked, axis=1)
        n_keep = np.minimum((cumulative < float(policy.value)).sum(axis=1) + 1, n_cols)
    keep = np.arange(n_cols)[None, :] < n_keep[:, None]
    out = np.zeros_like(mat)
    np.put_along_axis(out, order, np.where(keep, ranked, 0.0), axis=1)
    return out


def renormalize(matrix) -> np.ndarray:
    """Divide each row by its sum plus ``EPSILON``; all-zero rows stay zero."""
    mat = np.asarray(matrix, dtype=np.float64)
    return mat / (mat.sum(axis=1, keepdims=True) + EPSILON)


def sparsify(matrix, policy: SparsifyPolicy, key=None, apply_exp: bool = False) -> List[SparsePosterior]:
    """
    Truncate and renormalize a dense posterior matrix into sparse frames.

    Args:
        matrix: Dense matrix, one row per frame
        policy: Truncation policy
        key: Utterance id used in error messages
        apply_exp: Inputs are log-posteriors; exponentiate first

    Returns:
        One list of ``(class_index, weight)`` pairs per frame, strictly positive
        weights only, in ascending class order
    """
    mat = np.array(matrix, dtype=np.float64)
    if mat.ndim != 2:
        raise DataError(f"Posterior matrix must be 2-D, got shape {mat.shape}", key)
    _check_finite(mat, key)
    if apply_exp:
        mat = np.exp(mat)
    if policy.truncates:
        mat = renormalize(truncate(mat, policy))
    _check_finite(mat, key, "sparsified posteriors")
    out_of_range = (mat < 0.0) | (mat > 1.0)
    if out_of_range.any():
        row, col = (int(i) for i in np.argwhere(out_of_range)[0])
        raise DataError(
            f"Some other than probabilities at row {row}, column {col}: {mat[row, col]}", key
        )
    frames: List[SparsePosterior] = []
    for row in mat:
        nonzero = np.flatnonzero(row > 0.0)
        frames.append([(int(c), float(row[c])) for c in nonzero])
    return frames


def sparse_to_csr(frames: Sequence[SparsePosterior], num_classes: Optional[int] = None) -> csr_matrix:
    """Pack sparse frames into a ``(frames x classes)`` CSR matrix."""
    indptr = [0]
    indices: List[int] = []
    data: List[float] = []
    for frame in frames:
        for class_index, weight in frame:
            indices.append(int(class_index))
            data.append(float(weight))
        indptr.append(len(indices))
    width = max(indices) + 1 if indices else 0
    if num_classes is not None:
        if num_classes < width:
            raise DataError(f"Class index {width - 1} does not fit {num_classes} classes")
        width = num_classes
    return csr_matrix(
        (np.asarray(data, dtype=np.float64), np.asarray(indices, dtype=np.int32), np.asarray(indptr, dtype=np.int64)),
        shape=(len(frames), width),
    )


def csr_to_sparse(matrix: csr_matrix) -> List[SparsePosterior]:
    matrix = csr_matrix(matrix, copy=True)
    matrix.sort_indices()
    frames: List[SparsePosterior] = []
    for row in range(matrix.shape[0]):
        start, stop = matrix.indptr[row], matrix.indptr[row + 1]
        frames.append(
            [(int(c), float(w)) for c, w in zip(matrix.indices[start:stop], matrix.data[start:stop]) if w > 0.0]
        )
    return frames


# ----------------------------------------------------------------------
# Prior counts
# ----------------------------------------------------------------------


class PriorCountAccumulator:
    """
    Weighted running sum of posterior mass per class.

    The count vector grows (zero-filled) whenever a larger class index shows
    up; ``counts_dim`` pre-sizes it. ``finalize`` adds the smoothing constant
    once and freezes the result.
    """

    def __init__(self, counts_dim: int = 0):
        if counts_dim < 0:
            raise ConfigError("counts_dim must be non-negative")
        self._counts = np.zeros(int(counts_dim), dtype=np.float64)
        self.num_frames = 0
        self.num_utterances = 0
        self.suspicious: List[int] = []
        self._final: Optional[np.ndarray] = None

    @property
    def dim(self) -> int:
        return self._counts.shape[0]

    @property
    def counts(self) -> np.ndarray:
        """Raw (unsmoothed) counts."""
        return self._counts.copy()

    @property
    def finalized(self) -> bool:
        return self._final is not None

    def _grow(self, size: int) -> None:
        grown = np.zeros(size, dtype=np.float64)
        grown[: self._counts.shape[0]] = self._counts
        self._counts = grown

    def _check_open(self) -> None:
        if self._final is not None:
            raise RuntimeError("Counts are already finalized")

    @staticmethod
    def _check_weight(value, what: str, key=None) -> float:
        value = float(value)
        if not np.isfinite(value) or value < 0.0:
            raise DataError(f"Invalid {what} {value}", key)
        return value

    def _weighted_frame(self, frame: SparsePosterior, scale: float, key=None) -> Tuple[np.ndarray, np.ndarray]:
        pairs = list(frame)
        indices = np.array([int(c) for c, _ in pairs], dtype=np.int64)
        masses = np.array([float(w) for _, w in pairs], dtype=np.float64)
        if indices.size and indices.min() < 0:
            raise DataError(f"Negative class index {int(indices.min())}", key)
        _check_finite(masses, key, "posterior weights")
        return indices, masses * scale

    def _apply(self, weighted: List[Tuple[np.ndarray, np.ndarray]]) -> None:
        # Only called once every frame of the item has been validated.
        top = max((int(indices.max()) + 1 for indices, _ in weighted if indices.size), default=0)
        if top > self._counts.shape[0]:
            self._grow(top)
        for indices, masses in weighted:
            np.add.at(self._counts, indices, masses)
        self.num_frames += len(weighted)

    def add(
        self,
        frame: SparsePosterior,
        frame_weight: float = 1.0,
        utt_weight: float = 1.0,
        key=None,
    ) -> None:
        """Add one frame; a rejected frame leaves the counts untouched."""
        self._check_open()
        scale = self._check_weight(frame_weight, "frame weight", key) * self._check_weight(
            utt_weight, "utterance weight", key
        )
        self._apply([self._weighted_frame(frame, scale, key)])

    def add_utterance(
        self,
        posterior: Sequence[SparsePosterior],
        frame_weights=None,
        utt_weight: float = 1.0,
        key=None,
    ) -> None:
        """Add all frames of an utterance, or none of them if any frame is rejected."""
        self._check_open()
        utt_weight = self._check_weight(utt_weight, "utterance weight", key)
        if frame_weights is None:
            frame_weights = np.ones(len(posterior), dtype=np.float64)
        else:
            frame_weights = np.asarray(frame_weights, dtype=np.float64).ravel()
            if frame_weights.shape[0] != len(posterior):
                raise DataError(
                    f"Got {frame_weights.shape[0]} frame weights for {len(posterior)} frames", key
                )
        weighted = [
            self._weighted_frame(frame, self._check_weight(weight, "frame weight", key) * utt_weight, key)
            for frame, weight in zip(posterior, frame_weights)
        ]
        self._apply(weighted)
        self.num_utterances += 1

    def merge(self, other: "PriorCountAccumulator") -> None:
        self._check_open()
        if other.dim > self.dim:
            self._grow(other.dim)
        self._counts[: other.dim] += other._counts
        self.num_frames += other.num_frames
        self.num_utterances += other.num_utterances

    def finalize(self, smoothing: float = COUNT_SMOOTHING) -> np.ndarray:
        """
        Flag zero-count classes and add ``smoothing`` to every entry.

        Returns:
            Read-only smoothed count vector
        """
        if self._final is not None:
            return self._final
        if self.num_frames == 0:
            raise ExhaustionError("No posteriors were accumulated")
        _check_finite(self._counts, what="class counts")
        self.suspicious = np.flatnonzero(self._counts == 0.0).tolist()
        for class_index in self.suspicious:
            logger.warning(f"Zero count for label {class_index}, this is suspicious.")
        final = self._counts + smoothing
        final.setflags(write=False)
        self._final = final
        return final


def accumulate_counts(
    posteriors: Iterable[Tuple[str, Sequence[SparsePosterior]]],
    frame_weights: Optional[Mapping[str, np.ndarray]] = None,
    utt_weights: Optional[Mapping[str, float]] = None,
    counts_dim: int = 0,
) -> Tuple[PriorCountAccumulator, PassSummary]:
    """Sum sparse posteriors into counts, skipping utterances whose weights are missing."""
    accumulator = PriorCountAccumulator(counts_dim)
    summary = PassSummary()
    for key, posterior in posteriors:
        try:
            utt_w = 1.0
            if utt_weights is not None:
                if key not in utt_weights:
                    raise DataError("missing per-utterance weight", key)
                utt_w = float(np.asarray(utt_weights[key]).ravel()[0])
            frame_w = None
            if frame_weights is not None:
                if key not in frame_weights:
                    raise DataError("missing per-frame weights", key)
                frame_w = frame_weights[key]
            accumulator.add_utterance(posterior, frame_w, utt_w, key=key)
        except DataError as err:
            if err.key is None:
                err.key = key
            summary.skip(err)
            continue
        summary.done(len(posterior))
    logger.info(
        f"Summed {summary.num_done} posteriors to counts, skipped {summary.num_skipped}."
    )
    return accumulator, summary


@dataclass
class CountReport:
    """Counts sorted ascending with their share of the total mass."""

    rows: List[Tuple[float, float, int, Optional[str]]]
    total: float
    frame_rate: float = FRAME_RATE

    @property
    def hours(self) -> float:
        return self.total / self.frame_rate / 3600.0

    def format(self) -> str:
        lines = ["### The sorted count table,", "count\t(norm),\tid\t(symbol):"]
        for count, fraction, class_index, name in self.rows:
            symbol = f"({name})" if name is not None else ""
            lines.append(f"{count:g}\t({fraction:.6g}),\t{class_index}\t{symbol}".rstrip())
        lines.append("")
        lines.append(f"#total {self.total:g} ({self.hours:.6g}h)")
        return "\n".join(lines)


def count_report(
    counts,
    symbol_table: Optional[Mapping[int, str]] = None,
    frame_rate: float = FRAME_RATE,
) -> CountReport:
    counts = np.asarray(counts, dtype=np.float64).ravel()
    total = float(counts.sum())
    order = np.argsort(counts, kind="stable")
    rows = []
    for class_index in order:
        count = float(counts[class_index])
        fraction = count / total if total > 0.0 else 0.0
        name = symbol_table.get(int(class_index)) if symbol_table is not None else None
        rows.append((count, fraction, int(class_index), name))
    return CountReport(rows=rows, total=total, frame_rate=frame_rate)


# ----------------------------------------------------------------------
# Class-sample collection
# ----------------------------------------------------------------------


def collect_class_samples(
    outputs: Iterable[Tuple[str, np.ndarray]],
    alignments: Mapping[str, Sequence[int]],
    class_id: int,
    *,
    data_size: int = 5000,
    correct_class: bool = True,
    apply_log: bool = False,
    no_softmax: bool = False,
    classifier: Optional[Callable[[np.ndarray], np.ndarray]] = None,
) -> Tuple[np.ndarray, PassSummary]:
    """
    Gather classifier output frames aligned to one class.

    Args:
        outputs: ``(utterance, matrix)`` pairs; classifier outputs, or inputs
            to ``classifier`` when one is given
        alignments: Per-utterance frame labels
        class_id: Class whose frames are collected
        data_size: Maximum number of frames to collect
        correct_class: Keep only frames whose arg-max is ``class_id``
        apply_log: Log-transform (floored) the collected frames
        no_softmax: Marks the outputs as pre-softmax (already log-like); frames
            are collected as given, the flag only rules out ``apply_log``
        classifier: Optional opaque forward pass

    Returns:
        samples: ``(n, dim)`` matrix of collected frames
        summary: Utterances examined / skipped
    """
    if apply_log and no_softmax:
        raise ConfigError("Nonsense option combination: apply_log and no_softmax")
    if data_size <= 0:
        raise ConfigError("data_size must be positive")
    class_id = normalize_class_id(class_id)

    collected: List[np.ndarray] = []
    num_collected = 0
    summary = PassSummary()
    for key, value in outputs:
        if num_collected >= data_size:
            break
        try:
            if key not in alignments:
                raise DataError("missing alignment", key)
            labels = np.asarray(alignments[key]).ravel()
            if not np.any(labels == class_id):
                summary.done(0)
                continue
            posteriors = np.asarray(classifier(value) if classifier is not None else value, dtype=np.float64)
            if posteriors.ndim != 2:
                raise DataError(f"Classifier output must be 2-D, got shape {posteriors.shape}", key)
            _check_finite(posteriors, key)
            if posteriors.shape[0] != labels.shape[0]:
                raise DataError(
                    f"Alignment has {labels.shape[0]} labels for {posteriors.shape[0]} frames", key
                )
        except DataError as err:
            summary.skip(err)
            continue

        logger.debug(f"Processing utterance {summary.num_done + 1}, {key}, {posteriors.shape[0]} frm")
        rows = posteriors[labels == class_id]
        if correct_class:
            rows = rows[np.argmax(rows, axis=1) == class_id]
        rows = rows[: data_size - num_collected]
        if rows.shape[0]:
            collected.append(rows)
            num_collected += rows.shape[0]
        summary.done(rows.shape[0])
        summary.progress()

    if num_collected == 0:
        raise ExhaustionError(f"No frames collected for class {class_id}")
    samples = np.vstack(collected)
    if apply_log:
        samples = _floored_log(samples)
    logger.info(
        f"Done {summary.num_done} utterances, collected {num_collected} frames for class "
        f"{class_id} in {summary.elapsed / 60:.2f} min"
    )
    return samples, summary
