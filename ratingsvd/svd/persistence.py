"""Binary artifact for trained serving features.

Layout (little-endian)::

    int32    factor_count
    4 x {int64 length, float32[length]}   user_factors, item_factors, user_bias, item_bias

There is no version field; readers and writers must agree on this layout.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import BinaryIO, Optional

import numpy as np

from .features import ServingFeatures


logger = logging.getLogger(__name__)

_HEADER_DTYPE = np.dtype("<i4")
_LENGTH_DTYPE = np.dtype("<i8")
_VALUE_DTYPE = np.dtype("<f4")

ARRAY_ORDER = ("user_factors", "item_factors", "user_bias", "item_bias")


class ArtifactFormatError(ValueError):
    """Raised when a features artifact is truncated or inconsistent."""


def _write_array(fh: BinaryIO, values: np.ndarray) -> None:
    values = np.ascontiguousarray(values, dtype=_VALUE_DTYPE)
    fh.write(np.array([len(values)], dtype=_LENGTH_DTYPE).tobytes())
    fh.write(values.tobytes())


def _read_exact(fh: BinaryIO, n_bytes: int, what: str) -> bytes:
    data = fh.read(n_bytes)
    if len(data) != n_bytes:
        raise ArtifactFormatError(f"truncated artifact while reading {what}: got {len(data)} of {n_bytes} bytes")
    return data


def _read_array(fh: BinaryIO, name: str) -> np.ndarray:
    (length,) = np.frombuffer(_read_exact(fh, _LENGTH_DTYPE.itemsize, f"{name} length"), dtype=_LENGTH_DTYPE)
    length = int(length)
    if length <= 0:
        raise ArtifactFormatError(f"{name} is empty (length={length})")
    n_bytes = length * _VALUE_DTYPE.itemsize
    remaining = os.fstat(fh.fileno()).st_size - fh.tell()
    if n_bytes > remaining:
        raise ArtifactFormatError(
            f"truncated artifact while reading {name}: length {length} needs {n_bytes} bytes, {remaining} left"
        )
    raw = _read_exact(fh, n_bytes, name)
    return np.frombuffer(raw, dtype=_VALUE_DTYPE).astype(np.float32)


def save_features(features: ServingFeatures, path: Path) -> Path:
    """Write `features` to `path`, creating parent directories as needed."""
    features.validate()
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("wb") as fh:
            fh.write(np.array([features.factor_count], dtype=_HEADER_DTYPE).tobytes())
            for name in ARRAY_ORDER:
                _write_array(fh, getattr(features, name))
    except OSError:
        logger.error("Error saving features to %s", path, exc_info=True)
        raise

    logger.info(
        "Saved features: K=%d users=%d items=%d path=%s",
        features.factor_count,
        features.num_users,
        features.num_items,
        path,
    )
    return path


def load_features(path: Path) -> ServingFeatures:
    """Read an artifact written by `save_features`."""
    path = Path(path)
    if not path.exists():
        logger.error("Features artifact not found: %s", path)
        raise FileNotFoundError(f"features artifact not found: {path}")

    try:
        with path.open("rb") as fh:
            (factor_count,) = np.frombuffer(
                _read_exact(fh, _HEADER_DTYPE.itemsize, "factor count"), dtype=_HEADER_DTYPE
            )
            arrays = {name: _read_array(fh, name) for name in ARRAY_ORDER}
    except OSError:
        logger.error("Error loading features from %s", path, exc_info=True)
        raise

    features = ServingFeatures(factor_count=int(factor_count), **arrays)
    try:
        features.validate()
    except ValueError as exc:
        raise ArtifactFormatError(f"{path}: {exc}") from exc

    logger.info("Loaded %d features from %s", features.factor_count, path)
    return features


def user_classes_path(artifact_path: Path) -> Path:
    """Sidecar location for the external user-id table of an artifact."""
    artifact_path = Path(artifact_path)
    return artifact_path.with_name(artifact_path.name + ".users.npy")


def save_user_classes(user_classes: np.ndarray, artifact_path: Path) -> Path:
    out = user_classes_path(artifact_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    np.save(out, np.asarray(user_classes, dtype=np.int64), allow_pickle=False)
    return out


def load_user_classes(artifact_path: Path) -> Optional[np.ndarray]:
    """Return the user-id table saved next to `artifact_path`, or None if absent."""
    sidecar = user_classes_path(artifact_path)
    if not sidecar.exists():
        return None
    return np.load(sidecar, allow_pickle=False)
