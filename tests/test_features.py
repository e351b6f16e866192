from __future__ import annotations

import math

import numpy as np
import pytest

from ratingsvd.svd.features import ServingFeatures, TrainingFeatures


def test_initialize_centers_dot_products_on_average() -> None:
    feats = TrainingFeatures.initialize(
        4,
        num_users=6,
        num_items=5,
        init_average=3.0663,
        init_noise=0.005,
        rng=np.random.default_rng(1),
    )
    base = math.sqrt(3.0663 / 4)

    assert feats.user_factors.shape == (24,)
    assert feats.item_factors.shape == (20,)
    assert feats.user_factors.dtype == np.float64
    assert np.all(np.abs(feats.user_factors - base) <= 0.005)
    assert np.all(np.abs(feats.item_factors - base) <= 0.005)
    np.testing.assert_array_equal(feats.user_bias, np.zeros(6))
    np.testing.assert_array_equal(feats.item_bias, np.zeros(5))

    dot = float(np.dot(feats.user_factors[:4], feats.item_factors[:4]))
    assert dot == pytest.approx(3.0663, abs=0.05)


def test_initialize_rejects_bad_factor_count() -> None:
    with pytest.raises(ValueError, match="factor_count"):
        TrainingFeatures.initialize(0, 1, 1, init_average=3.0, init_noise=0.0, rng=np.random.default_rng(0))


def test_to_serving_narrows_once_and_freezes() -> None:
    feats = TrainingFeatures.initialize(
        2, 3, 2, init_average=3.0, init_noise=0.005, rng=np.random.default_rng(2)
    )
    serving = feats.to_serving()

    assert isinstance(serving, ServingFeatures)
    assert serving.factor_count == 2
    assert serving.num_users == 3
    assert serving.num_items == 2
    for name in ("user_factors", "item_factors", "user_bias", "item_bias"):
        assert getattr(serving, name).dtype == np.float32
    np.testing.assert_allclose(serving.user_factors, feats.user_factors, rtol=1e-6)
    np.testing.assert_array_equal(serving.item_row(1), serving.item_factors[2:4])

    assert feats.converted
    with pytest.raises(RuntimeError, match="already converted"):
        feats.to_serving()
    with pytest.raises(ValueError):
        feats.user_factors[0] = 1.0


def test_serving_validate_checks_shapes() -> None:
    bad = ServingFeatures(
        factor_count=3,
        user_factors=np.ones(5, dtype=np.float32),
        item_factors=np.ones(3, dtype=np.float32),
        user_bias=np.zeros(2, dtype=np.float32),
        item_bias=np.zeros(1, dtype=np.float32),
    )
    with pytest.raises(ValueError, match="user_factors"):
        bad.validate()
