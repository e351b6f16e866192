from __future__ import annotations

import logging
from pathlib import Path
from typing import Tuple

import numpy as np
import pandas as pd
from sklearn.preprocessing import LabelEncoder

from .store.ratings import UserIndexedRatings


logger = logging.getLogger(__name__)

REQUIRED_COLUMNS: Tuple[str, ...] = ("userId", "itemId", "rating")

# Ratings are stored as int8.
_RATING_DTYPE_MIN = int(np.iinfo(np.int8).min)
_RATING_DTYPE_MAX = int(np.iinfo(np.int8).max)


def load_ratings_csv(
    path: Path,
    *,
    min_rating: float = 1,
    max_rating: float = 5,
) -> pd.DataFrame:
    """Load a `userId,itemId,rating` CSV and validate it against the rating scale.

    Extra columns (e.g. a date) are kept but ignored downstream.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"ratings file not found: {path}")

    ratings = pd.read_csv(path)
    validate_ratings(ratings, min_rating=min_rating, max_rating=max_rating)
    ratings = ratings.astype({"userId": "int64", "itemId": "int64", "rating": "int64"})
    logger.info(
        "Loaded %d ratings from %s (users=%d items=%d)",
        len(ratings),
        path,
        ratings["userId"].nunique(),
        ratings["itemId"].nunique(),
    )
    return ratings


def validate_ratings(
    ratings: pd.DataFrame,
    *,
    min_rating: float = 1,
    max_rating: float = 5,
) -> None:
    """Validate required columns, id ranges and the integer rating scale."""
    if min_rating < _RATING_DTYPE_MIN or max_rating > _RATING_DTYPE_MAX:
        raise ValueError(
            f"rating scale {min_rating}..{max_rating} does not fit the stored range "
            f"{_RATING_DTYPE_MIN}..{_RATING_DTYPE_MAX}"
        )

    missing = [c for c in REQUIRED_COLUMNS if c not in ratings.columns]
    if missing:
        raise ValueError(f"ratings missing columns: {missing}")

    if ratings[list(REQUIRED_COLUMNS)].isna().any().any():
        raise ValueError("ratings contain missing values")

    if (ratings["itemId"] < 1).any():
        raise ValueError("itemId values must be >= 1 (item ids are 1-based)")

    # Ratings are stored as bytes, so only whole stars in range are accepted.
    rating = ratings["rating"].astype(float)
    bad_mask = (rating != rating.round()) | ~rating.between(min_rating, max_rating)
    if bad_mask.any():
        bad_values = sorted(set(ratings.loc[bad_mask, "rating"].tolist()))
        raise ValueError(
            f"ratings has invalid rating values (expected integers {min_rating}..{max_rating}): {bad_values}"
        )

    if ratings.duplicated(subset=["userId", "itemId"]).any():
        raise ValueError("ratings contain duplicate (userId, itemId) rows")


def ratings_from_frame(
    ratings: pd.DataFrame,
    *,
    num_items: int | None = None,
    min_rating: float = 1,
    max_rating: float = 5,
    validate: bool = True,
) -> UserIndexedRatings:
    """Build training observations from a ratings frame, in row order.

    User ids are encoded to contiguous indexes; the sorted raw ids are kept as
    `user_classes` so predictions can be requested with raw ids. Pass
    `validate=False` for frames that already came through `load_ratings_csv`.
    """
    if validate:
        validate_ratings(ratings, min_rating=min_rating, max_rating=max_rating)

    le_user = LabelEncoder()
    users = le_user.fit_transform(ratings["userId"].astype(np.int64).values)
    items = ratings["itemId"].astype(np.int64).values

    if num_items is None:
        num_items = int(items.max()) if len(items) else 0

    store = UserIndexedRatings.from_arrays(
        users,
        items,
        ratings["rating"].astype(np.int64).values,
        num_users=len(le_user.classes_),
        num_items=int(num_items),
        user_classes=le_user.classes_.astype(np.int64),
    )
    logger.info(
        "Observations: n=%d users=%d items=%d",
        store.num_observations,
        store.num_users,
        store.num_items,
    )
    return store
