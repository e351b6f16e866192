from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Sequence

import numpy as np

from ..store.ratings import UserIndexedRatings, user_index_for
from .features import ServingFeatures
from .persistence import load_features, load_user_classes, save_features, save_user_classes
from .train import SVDTrainConfig, SVDTrainResult, train_svd


logger = logging.getLogger(__name__)


class ModelNotReadyError(RuntimeError):
    """Raised when predicting or saving before a model was trained or loaded."""


class SVDPredictor:
    """Rating predictor over serving-precision biased SVD features.

    Item ids are 1-based (item id `i` lives at row `i - 1`). User ids are
    translated through `user_classes` when present, otherwise used as indexes.
    """

    def __init__(
        self,
        features: Optional[ServingFeatures] = None,
        *,
        min_rating: float = 1.0,
        max_rating: float = 5.0,
        user_classes: Optional[np.ndarray] = None,
    ) -> None:
        if float(max_rating) <= float(min_rating):
            raise ValueError(f"max_rating ({max_rating}) must exceed min_rating ({min_rating})")
        self.features = features
        self.min_rating = float(min_rating)
        self.max_rating = float(max_rating)
        self.user_classes = None if user_classes is None else np.asarray(user_classes, dtype=np.int64)
        self.train_result: Optional[SVDTrainResult] = None

    @classmethod
    def from_artifact(
        cls,
        path: Path,
        *,
        min_rating: float = 1.0,
        max_rating: float = 5.0,
    ) -> "SVDPredictor":
        """Load features (and the user-id table, if saved) written by `save`."""
        predictor = cls(min_rating=min_rating, max_rating=max_rating)
        predictor.load(path)
        return predictor

    @property
    def is_ready(self) -> bool:
        return self.features is not None

    @property
    def factor_count(self) -> int:
        return self._require_features().factor_count

    def _require_features(self) -> ServingFeatures:
        if self.features is None:
            raise ModelNotReadyError("no model available: train or load features first")
        return self.features

    def fit(
        self,
        observations: UserIndexedRatings,
        cfg: SVDTrainConfig,
        *,
        release_observations: bool = False,
    ) -> SVDTrainResult:
        result = train_svd(observations, cfg, release_observations=release_observations)
        self.features = result.features
        self.min_rating = float(cfg.min_rating)
        self.max_rating = float(cfg.max_rating)
        self.user_classes = observations.user_classes
        self.train_result = result
        return result

    def save(self, path: Path) -> Path:
        features = self._require_features()
        out = save_features(features, path)
        if self.user_classes is not None:
            save_user_classes(self.user_classes, out)
        return out

    def load(self, path: Path) -> None:
        """Replace the model with the artifact at `path`; on failure the current model is kept."""
        features = load_features(path)
        user_classes = load_user_classes(path)
        if user_classes is not None and len(user_classes) != features.num_users:
            raise ValueError(
                f"user-id table has {len(user_classes)} entries but model has {features.num_users} users"
            )
        self.features = features
        self.user_classes = None if user_classes is None else np.asarray(user_classes, dtype=np.int64)

    def _user_index(self, user_id: int, features: ServingFeatures) -> int:
        return user_index_for(self.user_classes, features.num_users, user_id)

    @staticmethod
    def _item_index(item_id: int, features: ServingFeatures) -> int:
        idx = int(item_id) - 1
        if not 0 <= idx < features.num_items:
            raise KeyError(f"Unknown item id: {int(item_id)}")
        return idx

    def _user_indexes(self, user_ids: np.ndarray, features: ServingFeatures) -> np.ndarray:
        if self.user_classes is None:
            known = (user_ids >= 0) & (user_ids < features.num_users)
            idx = user_ids
        else:
            classes = self.user_classes
            idx = np.searchsorted(classes, user_ids)
            known = idx < len(classes)
            known[known] = classes[idx[known]] == user_ids[known]
        if not known.all():
            raise KeyError(f"Unknown user id: {int(user_ids[~known][0])}")
        return idx

    @staticmethod
    def _item_indexes(item_ids: np.ndarray, features: ServingFeatures) -> np.ndarray:
        idx = item_ids - 1
        known = (idx >= 0) & (idx < features.num_items)
        if not known.all():
            raise KeyError(f"Unknown item id: {int(item_ids[~known][0])}")
        return idx

    def predict(self, user_id: int, item_id: int) -> float:
        """Predicted rating for (user_id, item_id), clamped to [min_rating, max_rating]."""
        features = self._require_features()
        u = self._user_index(user_id, features)
        i = self._item_index(item_id, features)

        user_row = features.user_row(u).astype(np.float64)
        item_row = features.item_row(i).astype(np.float64)
        score = float(np.dot(item_row, user_row))
        score += float(features.item_bias[i]) + float(features.user_bias[u])

        if score < self.min_rating:
            return self.min_rating
        if score > self.max_rating:
            return self.max_rating
        return score

    def predict_many(self, user_ids: Sequence[int], item_ids: Sequence[int]) -> np.ndarray:
        """`predict` over aligned id sequences."""
        features = self._require_features()
        user_ids = np.asarray(user_ids, dtype=np.int64)
        item_ids = np.asarray(item_ids, dtype=np.int64)
        if user_ids.shape != item_ids.shape:
            raise ValueError(f"user_ids/item_ids shape mismatch: {user_ids.shape} vs {item_ids.shape}")

        u_idx = self._user_indexes(user_ids, features)
        i_idx = self._item_indexes(item_ids, features)
        return self._scores(features, u_idx, i_idx)

    def _scores(self, features: ServingFeatures, u_idx: np.ndarray, i_idx: np.ndarray) -> np.ndarray:
        k = features.factor_count
        user_mat = features.user_factors.reshape(-1, k).astype(np.float64)
        item_mat = features.item_factors.reshape(-1, k).astype(np.float64)
        scores = np.sum(user_mat[u_idx] * item_mat[i_idx], axis=1)
        scores += features.user_bias[u_idx].astype(np.float64) + features.item_bias[i_idx].astype(np.float64)
        return np.clip(scores, self.min_rating, self.max_rating)

    def rmse(self, observations: UserIndexedRatings) -> float:
        """RMSE of clamped predictions against held-out observations.

        Observations carrying their own `user_classes` (as built by
        `ratings_from_frame`) are scored by raw user id, so their encoding need
        not match the training one. Without a table, user ids are taken as
        they are, the same way `predict` takes them. Users or items the model
        does not know raise `KeyError`.
        """
        features = self._require_features()
        if observations.num_observations == 0:
            raise ValueError("cannot evaluate on an empty rating store")

        user_ids = observations.user_ids.astype(np.int64)
        if observations.user_classes is not None:
            user_ids = observations.user_classes[user_ids]

        u_idx = self._user_indexes(user_ids, features)
        i_idx = self._item_indexes(observations.item_ids.astype(np.int64), features)
        preds = self._scores(features, u_idx, i_idx)

        err = observations.ratings.astype(np.float64) - preds
        rmse = float(np.sqrt(np.mean(err * err)))
        logger.info("Held-out RMSE over %d observations (K=%d): %.6f", len(err), features.factor_count, rmse)
        return rmse
