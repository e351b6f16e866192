"""Stable merge sort of per-entity rating records by counterpart id.

Sorted rater lists let lookups such as "did user X rate item Y" run as a
binary search instead of a scan over tens of millions of observations.
"""

from __future__ import annotations

import logging
import time
from typing import Optional, Sequence

import numpy as np
from numba import njit


logger = logging.getLogger(__name__)


@njit(cache=True)
def _merge_argsort(keys: np.ndarray) -> np.ndarray:
    n = keys.shape[0]
    perm = np.arange(n)
    buf = np.empty_like(perm)

    width = 1
    while width < n:
        left = 0
        while left < n - width:
            mid = left + width
            right = min(left + 2 * width, n)

            i = left
            j = mid
            out = left
            while i < mid and j < right:
                # `<=` takes from the left run on ties, which keeps the sort stable.
                if keys[perm[i]] <= keys[perm[j]]:
                    buf[out] = perm[i]
                    i += 1
                else:
                    buf[out] = perm[j]
                    j += 1
                out += 1
            while i < mid:
                buf[out] = perm[i]
                i += 1
                out += 1
            while j < right:
                buf[out] = perm[j]
                j += 1
                out += 1

            for t in range(left, right):
                perm[t] = buf[t]
            left += 2 * width
        width *= 2
    return perm


@njit(cache=True)
def _is_sorted(keys: np.ndarray) -> bool:
    for t in range(1, keys.shape[0]):
        if keys[t - 1] > keys[t]:
            return False
    return True


def merge_argsort(keys: np.ndarray) -> np.ndarray:
    """Return the stable ascending permutation of `keys` (bottom-up merge sort)."""
    keys = np.asarray(keys)
    if keys.ndim != 1:
        raise ValueError(f"keys must be 1-D, got shape {keys.shape}")
    return _merge_argsort(keys)


def sort_records(records: np.ndarray, key: str) -> bool:
    """Sort a structured array in place by field `key`.

    Whole records are permuted, so every (id, rating) pairing survives the sort.
    Returns True if the array was reordered, False if it was already sorted.
    """
    if records.dtype.names is None or key not in records.dtype.names:
        raise KeyError(f"records have no field {key!r}")
    if len(records) < 2:
        return False

    keys = records[key]
    if _is_sorted(keys):
        return False

    perm = _merge_argsort(keys)
    records[:] = records[perm]
    return True


def sort_item_index(
    records_per_item: Sequence[Optional[np.ndarray]],
    *,
    key: str = "rater",
    log_every: int = 1000,
) -> int:
    """Sort every non-empty item's records by rater id. Returns items reordered."""
    n_sorted = 0
    start = time.perf_counter()
    for item_index, records in enumerate(records_per_item):
        if records is not None and len(records) > 0:
            if sort_records(records, key):
                n_sorted += 1

        if log_every > 0 and item_index > 0 and item_index % log_every == 0:
            logger.info(
                "Sorted %d items (last %d took %.2fs)",
                item_index,
                log_every,
                time.perf_counter() - start,
            )
            start = time.perf_counter()

    logger.debug("Sort pass finished: items=%d reordered=%d", len(records_per_item), n_sorted)
    return n_sorted
