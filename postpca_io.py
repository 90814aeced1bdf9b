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
Keyed record archives and transform files stored as ``.npz`` containers.

An archive holds one kind of value per key (matrices, vectors, integer
vectors, scalars or sparse posteriors) and remembers the write order, so it
serves both as a sequential record stream and as a keyed random-access store.
"""

import json
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Union

import numpy as np
from scipy.sparse import csr_matrix

from postpca import (
    ClassTransformRegistry,
    DataError,
    PCATransform,
    csr_to_sparse,
    sparse_to_csr,
)

logger = logging.getLogger(__name__)

ARCHIVE_VERSION = 1
METADATA_KEY = "__metadata__"
KINDS = ("matrix", "vector", "int_vector", "scalar", "sparse")
COUNTS_KEY = "counts"

_SPARSE_PARTS = ("data", "indices", "indptr", "shape")
_SEPARATOR = "::"

PathLike = Union[str, Path]


def _npz_path(path: PathLike) -> Path:
    path = Path(path)
    if path.suffix != ".npz":
        path = path.with_suffix(".npz")
    return path


def _float_dtype(precision) -> np.dtype:
    target_dtype = np.dtype(precision)
    if target_dtype.kind != "f":
        raise ValueError("precision must be a floating-point dtype")
    return target_dtype


class ArchiveWriter:
    """
    Buffer ``(key, value)`` records and save them as one compressed ``.npz``.

    Use as a context manager, or call ``close()``; nothing is written when the
    ``with`` block exits with an exception.
    """

    def __init__(self, path: PathLike, kind: str = "matrix", *, use_compression=True, precision=np.float32):
        if kind not in KINDS:
            raise ValueError(f"Unknown archive kind '{kind}'")
        self.path = _npz_path(path)
        self.kind = kind
        self.use_compression = use_compression
        self.precision = _float_dtype(precision)
        self._payload: Dict[str, np.ndarray] = {}
        self._keys: List[str] = []
        self._closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.close()
        else:
            self._closed = True
        return False

    @property
    def num_written(self) -> int:
        return len(self._keys)

    def write(self, key: str, value) -> None:
        if self._closed:
            raise ValueError(f"Archive {self.path} is closed")
        key = str(key)
        if not key or _SEPARATOR in key or key == METADATA_KEY:
            raise DataError(f"Invalid archive key {key!r}", key)
        if key in self._payload or f"{key}{_SEPARATOR}data" in self._payload:
            raise DataError("Duplicate key in archive", key)

        if self.kind == "sparse":
            matrix = value if isinstance(value, csr_matrix) else sparse_to_csr(value)
            parts = {
                "data": matrix.data.astype(self.precision, copy=False),
                "indices": matrix.indices.astype(np.int32, copy=False),
                "indptr": matrix.indptr.astype(np.int64, copy=False),
                "shape": np.asarray(matrix.shape, dtype=np.int64),
            }
            for part in _SPARSE_PARTS:
                self._payload[f"{key}{_SEPARATOR}{part}"] = parts[part]
        else:
            arr = np.asarray(value)
            expected_ndim = {"matrix": 2, "vector": 1, "int_vector": 1, "scalar": 0}[self.kind]
            if arr.ndim != expected_ndim:
                raise DataError(
                    f"Expected a {expected_ndim}-D value for a {self.kind} archive, got shape {arr.shape}",
                    key,
                )
            if self.kind == "int_vector":
                if arr.dtype.kind not in "iu":
                    raise DataError(f"Expected integers, got dtype {arr.dtype}", key)
                arr = arr.astype(np.int32, copy=False)
            else:
                arr = arr.astype(self.precision, copy=False)
            self._payload[key] = arr
        self._keys.append(key)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        metadata = {
            "version": ARCHIVE_VERSION,
            "kind": self.kind,
            "precision": self.precision.name,
            "keys": self._keys,
        }
        payload = dict(self._payload)
        payload[METADATA_KEY] = np.array(json.dumps(metadata), dtype=np.str_)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        saver = np.savez_compressed if self.use_compression else np.savez
        saver(self.path, **payload)
        logger.debug(f"Wrote {len(self._keys)} {self.kind} records to {self.path}")


class Archive(Mapping):
    """
    Read side of an archive.

    Iteration yields keys in write order (``items()`` is the sequential record
    stream); ``key in archive`` and ``archive[key]`` give keyed random access.
    """

    def __init__(self, path: PathLike):
        self.path = _npz_path(path)
        self._data = np.load(self.path, allow_pickle=False)
        try:
            metadata = json.loads(self._data[METADATA_KEY].item())
        except KeyError as exc:
            self._data.close()
            raise ValueError(f"{self.path} is not a record archive") from exc
        self.metadata = metadata
        self.kind = metadata["kind"]
        self._keys: List[str] = list(metadata["keys"])
        self._key_set = set(self._keys)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def close(self) -> None:
        self._data.close()

    def __len__(self) -> int:
        return len(self._keys)

    def __iter__(self) -> Iterator[str]:
        return iter(self._keys)

    def __contains__(self, key) -> bool:
        return str(key) in self._key_set

    def __getitem__(self, key):
        key = str(key)
        if key not in self._key_set:
            raise KeyError(key)
        if self.kind == "sparse":
            parts = {part: self._data[f"{key}{_SEPARATOR}{part}"] for part in _SPARSE_PARTS}
            matrix = csr_matrix(
                (parts["data"].astype(np.float64), parts["indices"], parts["indptr"]),
                shape=tuple(int(n) for n in parts["shape"]),
            )
            return csr_to_sparse(matrix)
        arr = self._data[key]
        if self.kind == "int_vector":
            return arr.astype(np.int64, copy=False)
        return arr.astype(np.float64, copy=False)


def save_counts(path: PathLike, counts) -> Path:
    with ArchiveWriter(path, "vector", precision=np.float64) as writer:
        writer.write(COUNTS_KEY, np.asarray(counts, dtype=np.float64))
    return writer.path


def load_counts(path: PathLike) -> np.ndarray:
    with Archive(path) as archive:
        if COUNTS_KEY not in archive:
            raise ValueError(f"{archive.path} holds no count vector")
        return archive[COUNTS_KEY]


def load_symbol_table(path: PathLike) -> Dict[int, str]:
    """Read ``name id`` lines into an ``id -> name`` lookup."""
    table: Dict[int, str] = {}
    with open(path, "r", encoding="utf-8") as handle:
        for line_no, line in enumerate(handle, start=1):
            fields = line.split()
            if not fields:
                continue
            if len(fields) != 2:
                raise ValueError(f"{path}:{line_no}: expected 'name id', got {line.strip()!r}")
            table[int(fields[1])] = fields[0]
    return table


# ----------------------------------------------------------------------
# Transform files
# ----------------------------------------------------------------------


def save_transform(
    path: PathLike,
    transform: PCATransform,
    *,
    include_affine: bool = False,
    use_compression: bool = True,
    precision=np.float32,
) -> Path:
    """Serialize one class transform (stored basis, mean, energy table)."""
    target_dtype = _float_dtype(precision)
    path = _npz_path(path)

    metadata = {
        "version": ARCHIVE_VERSION,
        "class_id": transform.class_id,
        "dimension": int(transform.dimension),
        "num_stored": int(transform.num_stored),
        "has_scale": transform.scale is not None,
        "precision": target_dtype.name,
    }
    payload = {
        "basis": transform.basis.astype(target_dtype, copy=False),
        # Means stay in double precision.
        "mean": transform.mean.astype(np.float64, copy=False),
        "energy_table": transform.energy_table.astype(np.int32, copy=False),
    }
    if transform.scale is not None:
        payload["scale"] = transform.scale.astype(np.float64, copy=False)
    if include_affine:
        payload["affine"] = transform.affine().astype(target_dtype, copy=False)
    payload["metadata"] = np.array(json.dumps(metadata), dtype=np.str_)

    path.parent.mkdir(parents=True, exist_ok=True)
    saver = np.savez_compressed if use_compression else np.savez
    saver(path, **payload)
    return path


def load_transform(path: PathLike) -> PCATransform:
    """Load a transform produced by ``save_transform``."""
    path = Path(path)
    with np.load(path, allow_pickle=False) as data:
        if "metadata" not in data.files:
            raise ValueError(f"{path} is not a transform file")
        metadata = json.loads(data["metadata"].item())
        scale = data["scale"] if metadata.get("has_scale", False) else None
        return PCATransform(
            class_id=metadata["class_id"],
            basis=data["basis"].astype(np.float64),
            mean=data["mean"].astype(np.float64),
            energy_table=data["energy_table"].astype(np.int32),
            scale=None if scale is None else scale.astype(np.float64),
        )


def find_transform_files(paths: Iterable[PathLike]) -> List[Path]:
    """Expand directories into their ``.npz`` files; plain files pass through."""
    found: List[Path] = []
    for entry in paths:
        entry = Path(entry)
        if entry.is_dir():
            found.extend(sorted(entry.glob("*.npz")))
        else:
            found.append(entry)
    return found


def load_registry(paths: Iterable[PathLike]) -> ClassTransformRegistry:
    """Build a frozen registry from transform files; duplicates keep the first."""
    registry = ClassTransformRegistry()
    for path in find_transform_files(paths):
        transform = load_transform(path)
        try:
            registry.register(transform)
        except DataError as err:
            logger.warning(f"{err.key}, {err} ({path} ignored)")
            continue
        logger.debug(f"Loaded transform for class {transform.class_id} from {path}")
    logger.info(f"Loaded {len(registry)} class transforms")
    return registry.freeze()


def transform_filename(class_id) -> str:
    return f"class_{class_id}.npz"
