"""In-memory rating stores in item-indexed and user-indexed orientation.

Each entity's ratings are kept as one numpy structured array of records, so a
counterpart id and its rating can never drift apart. Reads return views; the
only mutations are in-place sorting and explicit removal.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np
from numpy.lib import recfunctions as rfn

from .sorting import merge_argsort, sort_item_index, sort_records


logger = logging.getLogger(__name__)

PAIR_DTYPE = np.dtype([("rater", np.int32), ("rating", np.int8)], align=True)
OBSERVATION_DTYPE = np.dtype(
    [("user", np.int32), ("item", np.int32), ("rating", np.int8)],
    align=True,
)

_EMPTY_RATERS = np.empty(0, dtype=np.int32)
_EMPTY_RATINGS = np.empty(0, dtype=np.int8)
_EMPTY_RATERS.flags.writeable = False
_EMPTY_RATINGS.flags.writeable = False


class ItemIndexedRatings:
    """Per-item (rater, rating) records; item index `i` holds item id `i + 1`."""

    def __init__(self, records: list[Optional[np.ndarray]], *, sorted_by_rater: bool = False) -> None:
        for i, rec in enumerate(records):
            if rec is not None and rec.dtype != PAIR_DTYPE:
                raise ValueError(f"item index {i}: expected dtype {PAIR_DTYPE}, got {rec.dtype}")
        self._records = records
        self._has_ratings = True
        self._sorted_by_rater = bool(sorted_by_rater)

    @classmethod
    def from_arrays(
        cls,
        raters_per_item: Sequence[Optional[Sequence[int]]],
        ratings_per_item: Sequence[Optional[Sequence[int]]],
    ) -> "ItemIndexedRatings":
        """Build the store from parallel per-item rater and rating lists."""
        if len(raters_per_item) != len(ratings_per_item):
            raise ValueError(
                f"raters/ratings item count mismatch: {len(raters_per_item)} vs {len(ratings_per_item)}"
            )

        records: list[Optional[np.ndarray]] = []
        for i, (raters, ratings) in enumerate(zip(raters_per_item, ratings_per_item)):
            if raters is None or ratings is None:
                records.append(None)
                continue
            if len(raters) != len(ratings):
                raise ValueError(f"item index {i}: {len(raters)} raters but {len(ratings)} ratings")
            rec = np.empty(len(raters), dtype=PAIR_DTYPE)
            rec["rater"] = np.asarray(raters, dtype=np.int32)
            rec["rating"] = np.asarray(ratings, dtype=np.int8)
            records.append(rec)
        return cls(records)

    @classmethod
    def from_observations(cls, observations: "UserIndexedRatings") -> "ItemIndexedRatings":
        """Regroup flat observations by item, keeping insertion order within an item.

        The result is sorted by rater when the observations were sorted by user.
        """
        obs = observations.observations
        if observations.num_items == 0:
            return cls([], sorted_by_rater=True)
        item_index = obs["item"].astype(np.int64) - 1
        order = merge_argsort(item_index)
        grouped = obs[order]

        counts = np.bincount(item_index, minlength=observations.num_items)
        bounds = np.cumsum(counts)[:-1]

        records: list[Optional[np.ndarray]] = []
        for chunk in np.split(grouped, bounds):
            rec = np.empty(len(chunk), dtype=PAIR_DTYPE)
            rec["rater"] = chunk["user"]
            rec["rating"] = chunk["rating"]
            records.append(rec)

        logger.info("Item index built: items=%d ratings=%d", len(records), len(grouped))
        return cls(records, sorted_by_rater=observations.is_sorted)

    @property
    def num_items(self) -> int:
        return len(self._records)

    @property
    def num_ratings(self) -> int:
        return int(sum(len(r) for r in self._records if r is not None))

    @property
    def has_ratings(self) -> bool:
        return self._has_ratings

    @property
    def is_sorted(self) -> bool:
        return self._sorted_by_rater

    @property
    def records(self) -> list[Optional[np.ndarray]]:
        """Backing per-item record arrays (shared, not copied)."""
        return self._records

    def _in_bounds(self, item_index: int) -> bool:
        return 0 <= int(item_index) < len(self._records)

    def records_for_item(self, item_index: int) -> Optional[np.ndarray]:
        if not self._in_bounds(item_index):
            return None
        return self._records[int(item_index)]

    def raters_for_item(self, item_index: int) -> np.ndarray:
        rec = self.records_for_item(item_index)
        if rec is None:
            return _EMPTY_RATERS
        return rec["rater"]

    def ratings_for_item(self, item_index: int) -> np.ndarray:
        rec = self.records_for_item(item_index)
        if rec is None or not self._has_ratings:
            return _EMPTY_RATINGS
        return rec["rating"]

    def raters_for_item_id(self, item_id: int) -> np.ndarray:
        return self.raters_for_item(int(item_id) - 1)

    def ratings_for_item_id(self, item_id: int) -> np.ndarray:
        return self.ratings_for_item(int(item_id) - 1)

    def remove_item(self, item_index: int) -> None:
        """Drop an item's records. Out-of-range indexes and repeats are no-ops."""
        if self._in_bounds(item_index):
            self._records[int(item_index)] = None

    def remove_all_ratings(self) -> None:
        """Drop the rating layer, keeping only rater ids for every item."""
        if not self._has_ratings:
            return
        for i, rec in enumerate(self._records):
            if rec is not None:
                self._records[i] = rfn.repack_fields(rec[["rater"]])
        self._has_ratings = False

    def sort(self, *, log_every: int = 1000) -> int:
        """Sort each item's records by rater id. Returns the number of items reordered."""
        changed = sort_item_index(self._records, key="rater", log_every=log_every)
        self._sorted_by_rater = True
        return changed

    def _search(self, item_index: int, user_id: int) -> tuple[np.ndarray, int]:
        if not self._sorted_by_rater:
            raise RuntimeError("store is not sorted by rater; call sort() first")
        raters = self.raters_for_item(item_index)
        return raters, int(np.searchsorted(raters, user_id))

    def rating_of(self, item_index: int, user_id: int) -> Optional[int]:
        """Binary-search a sorted item for `user_id`; None if the user did not rate it."""
        raters, pos = self._search(item_index, user_id)
        if pos >= len(raters) or int(raters[pos]) != int(user_id):
            return None
        if not self._has_ratings:
            raise RuntimeError("ratings were removed from this store")
        return int(self.ratings_for_item(item_index)[pos])

    def has_rater(self, item_index: int, user_id: int) -> bool:
        raters, pos = self._search(item_index, user_id)
        return pos < len(raters) and int(raters[pos]) == int(user_id)


class UserIndexedRatings:
    """Flat (user, item, rating) observation records used for training.

    Users are 0-based indexes; items keep their 1-based ids. When the raw data
    uses arbitrary user ids, `user_classes` holds the sorted external ids so
    `user_classes[u]` is the external id of user index `u`.
    """

    def __init__(
        self,
        observations: np.ndarray,
        *,
        num_users: int,
        num_items: int,
        user_classes: Optional[np.ndarray] = None,
    ) -> None:
        if observations.dtype != OBSERVATION_DTYPE:
            raise ValueError(f"expected dtype {OBSERVATION_DTYPE}, got {observations.dtype}")
        if user_classes is not None and len(user_classes) != int(num_users):
            raise ValueError(
                f"user_classes has {len(user_classes)} entries but num_users={int(num_users)}"
            )

        if len(observations):
            users = observations["user"]
            items = observations["item"]
            if int(users.min()) < 0 or int(users.max()) >= int(num_users):
                raise ValueError(f"user indexes must lie in [0, {int(num_users)})")
            if int(items.min()) < 1 or int(items.max()) > int(num_items):
                raise ValueError(f"item ids must lie in [1, {int(num_items)}]")

        self._observations: Optional[np.ndarray] = observations
        self.num_users = int(num_users)
        self.num_items = int(num_items)
        self.user_classes = None if user_classes is None else np.asarray(user_classes, dtype=np.int64)
        self._sorted_by_user = False

    @classmethod
    def from_arrays(
        cls,
        users: Sequence[int],
        items: Sequence[int],
        ratings: Sequence[int],
        *,
        num_users: Optional[int] = None,
        num_items: Optional[int] = None,
        user_classes: Optional[np.ndarray] = None,
    ) -> "UserIndexedRatings":
        users_a = np.asarray(users, dtype=np.int32)
        items_a = np.asarray(items, dtype=np.int32)
        ratings_a = np.asarray(ratings)
        if not (len(users_a) == len(items_a) == len(ratings_a)):
            raise ValueError(
                f"users/items/ratings length mismatch: {len(users_a)}, {len(items_a)}, {len(ratings_a)}"
            )

        obs = np.empty(len(users_a), dtype=OBSERVATION_DTYPE)
        obs["user"] = users_a
        obs["item"] = items_a
        obs["rating"] = ratings_a.astype(np.int8)

        if num_users is None:
            num_users = int(users_a.max()) + 1 if len(users_a) else 0
        if num_items is None:
            num_items = int(items_a.max()) if len(items_a) else 0
        return cls(obs, num_users=num_users, num_items=num_items, user_classes=user_classes)

    @property
    def is_released(self) -> bool:
        return self._observations is None

    @property
    def is_sorted(self) -> bool:
        return self._sorted_by_user

    @property
    def observations(self) -> np.ndarray:
        if self._observations is None:
            raise RuntimeError("observations were released; rebuild the store to train again")
        return self._observations

    @property
    def user_ids(self) -> np.ndarray:
        return self.observations["user"]

    @property
    def item_ids(self) -> np.ndarray:
        return self.observations["item"]

    @property
    def ratings(self) -> np.ndarray:
        return self.observations["rating"]

    @property
    def num_observations(self) -> int:
        return 0 if self._observations is None else int(len(self._observations))

    def mean_rating(self) -> float:
        ratings = self.ratings
        if len(ratings) == 0:
            raise ValueError("cannot compute the mean of an empty rating store")
        return float(ratings.mean(dtype=np.float64))

    def sort(self) -> bool:
        """Stable in-place reorder by user index; item order within a user is kept."""
        changed = sort_records(self.observations, "user")
        self._sorted_by_user = True
        return changed

    def ratings_for_user(self, user_index: int) -> np.ndarray:
        """Slice of records for one user. Requires `sort()` to have run."""
        if not self._sorted_by_user:
            raise RuntimeError("store is not sorted by user; call sort() first")
        if not 0 <= int(user_index) < self.num_users:
            return self.observations[:0]
        users = self.user_ids
        lo = int(np.searchsorted(users, user_index, side="left"))
        hi = int(np.searchsorted(users, user_index, side="right"))
        return self.observations[lo:hi]

    def user_index(self, user_id: int) -> int:
        """Translate an external user id to its 0-based index."""
        return user_index_for(self.user_classes, self.num_users, user_id)

    def release(self) -> None:
        """Drop the observation records once training no longer needs them."""
        if self._observations is not None:
            logger.info("Releasing %d observations", len(self._observations))
        self._observations = None
        self._sorted_by_user = False


def user_index_for(user_classes: Optional[np.ndarray], num_users: int, user_id: int) -> int:
    """Map an external user id to an index via a sorted id table (identity without one)."""
    uid = int(user_id)
    if user_classes is None:
        if not 0 <= uid < int(num_users):
            raise KeyError(f"Unknown user id: {uid}")
        return uid

    pos = int(np.searchsorted(user_classes, uid))
    if pos >= len(user_classes) or int(user_classes[pos]) != uid:
        raise KeyError(f"Unknown user id: {uid}")
    return pos
