from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import pytest

from ratingsvd.store.ratings import UserIndexedRatings
from ratingsvd.svd.features import ServingFeatures
from ratingsvd.svd.persistence import (
    ArtifactFormatError,
    load_features,
    load_user_classes,
    save_features,
    user_classes_path,
)
from ratingsvd.svd.predictor import SVDPredictor
from ratingsvd.svd.train import SVDTrainConfig


def _header(k: int) -> bytes:
    return np.array([k], dtype="<i4").tobytes()


def _array(values: list[float]) -> bytes:
    return np.array([len(values)], dtype="<i8").tobytes() + np.asarray(values, dtype="<f4").tobytes()


def test_round_trip_preserves_predictions(random_observations: UserIndexedRatings, tmp_path: Path) -> None:
    predictor = SVDPredictor()
    predictor.fit(random_observations, SVDTrainConfig(factor_count=4, max_epochs=10, learning_rate=0.005))
    path = predictor.save(tmp_path / "svd" / "model.data")

    loaded = SVDPredictor.from_artifact(path)
    assert loaded.factor_count == 4

    pairs = [(0, 1), (3, 7), (19, 15), (11, 2), (5, 5)]
    for user_id, item_id in pairs:
        assert loaded.predict(user_id, item_id) == pytest.approx(predictor.predict(user_id, item_id), abs=1e-6)

    for name in ("user_factors", "item_factors", "user_bias", "item_bias"):
        np.testing.assert_array_equal(getattr(loaded.features, name), getattr(predictor.features, name))


def test_save_writes_documented_layout(tmp_path: Path) -> None:
    features = ServingFeatures(
        factor_count=2,
        user_factors=np.array([1.0, 2.0], dtype=np.float32),
        item_factors=np.array([3.0, 4.0, 5.0, 6.0], dtype=np.float32),
        user_bias=np.array([0.5], dtype=np.float32),
        item_bias=np.array([-0.5, 0.25], dtype=np.float32),
    )
    path = save_features(features, tmp_path / "model.data")

    expected = (
        _header(2)
        + _array([1.0, 2.0])
        + _array([3.0, 4.0, 5.0, 6.0])
        + _array([0.5])
        + _array([-0.5, 0.25])
    )
    assert path.read_bytes() == expected


def test_user_classes_sidecar(tmp_path: Path) -> None:
    obs = UserIndexedRatings.from_arrays(
        [0, 1, 1],
        [1, 2, 1],
        [5, 1, 3],
        user_classes=np.array([100, 250]),
    )
    predictor = SVDPredictor()
    predictor.fit(obs, SVDTrainConfig(factor_count=2, max_epochs=3))
    path = predictor.save(tmp_path / "model.data")

    assert user_classes_path(path).exists()
    np.testing.assert_array_equal(load_user_classes(path), [100, 250])

    loaded = SVDPredictor.from_artifact(path)
    assert loaded.predict(250, 2) == pytest.approx(predictor.predict(250, 2), abs=1e-6)
    with pytest.raises(KeyError):
        loaded.predict(1, 2)


def test_missing_artifact_raises(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.ERROR, logger="ratingsvd.svd.persistence"):
        with pytest.raises(FileNotFoundError):
            load_features(tmp_path / "nope.data")
    assert any("not found" in r.getMessage() for r in caplog.records)
    assert load_user_classes(tmp_path / "nope.data") is None


def test_truncated_artifact_raises(tmp_path: Path) -> None:
    path = tmp_path / "truncated.data"
    full = _header(1) + _array([1.0]) + _array([2.0]) + _array([0.0]) + _array([0.0])
    path.write_bytes(full[:-3])
    with pytest.raises(ArtifactFormatError, match="truncated"):
        load_features(path)

    path.write_bytes(_header(1) + _array([1.0]) + _array([2.0]))
    with pytest.raises(ArtifactFormatError, match="user_bias"):
        load_features(path)

    path.write_bytes(b"\x01\x00")
    with pytest.raises(ArtifactFormatError, match="factor count"):
        load_features(path)

    # A corrupt length prefix must not turn into a huge read.
    for length in (2**62, 2**40, 3):
        path.write_bytes(_header(1) + np.array([length], dtype="<i8").tobytes() + b"\x00" * 8)
        with pytest.raises(ArtifactFormatError, match="user_factors"):
            load_features(path)


def test_empty_array_raises(tmp_path: Path) -> None:
    path = tmp_path / "empty.data"
    path.write_bytes(_header(1) + _array([1.0]) + _array([]) + _array([0.0]) + _array([0.0]))
    with pytest.raises(ArtifactFormatError, match="item_factors is empty"):
        load_features(path)


def test_inconsistent_factor_count_raises(tmp_path: Path) -> None:
    path = tmp_path / "bad_k.data"
    path.write_bytes(_header(3) + _array([1.0, 2.0]) + _array([1.0, 2.0]) + _array([0.0]) + _array([0.0]))
    with pytest.raises(ArtifactFormatError, match="user_factors"):
        load_features(path)

    path.write_bytes(_header(0) + _array([1.0]) + _array([1.0]) + _array([0.0]) + _array([0.0]))
    with pytest.raises(ArtifactFormatError, match="factor_count"):
        load_features(path)


def _small_features(num_users: int) -> ServingFeatures:
    return ServingFeatures(
        factor_count=1,
        user_factors=np.ones(num_users, dtype=np.float32),
        item_factors=np.array([1.0], dtype=np.float32),
        user_bias=np.zeros(num_users, dtype=np.float32),
        item_bias=np.array([2.0], dtype=np.float32),
    )


def test_save_io_error_is_logged_and_raised(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("x")

    with caplog.at_level(logging.ERROR, logger="ratingsvd.svd.persistence"):
        with pytest.raises(OSError):
            save_features(_small_features(1), blocker / "model.data")
    assert any("Error saving features" in r.getMessage() for r in caplog.records)


def test_failed_load_keeps_current_model(tmp_path: Path) -> None:
    predictor = SVDPredictor(_small_features(2), user_classes=np.array([5, 6]))
    before = predictor.predict(6, 1)

    path = save_features(_small_features(1), tmp_path / "model.data")
    np.save(user_classes_path(path), np.array([5, 6, 7]), allow_pickle=False)

    with pytest.raises(ValueError, match="user-id table"):
        predictor.load(path)

    assert predictor.is_ready
    assert predictor.features.num_users == 2
    assert predictor.user_classes.tolist() == [5, 6]
    assert predictor.predict(6, 1) == pytest.approx(before)
    with pytest.raises(KeyError):
        predictor.predict(7, 1)
