from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure `import ratingsvd...` works when pytest uses importlib import mode.
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from ratingsvd.store.ratings import ItemIndexedRatings, UserIndexedRatings  # noqa: E402


@pytest.fixture
def item_store() -> ItemIndexedRatings:
    """Three items with unsorted raters; item index 2 has no ratings."""
    return ItemIndexedRatings.from_arrays(
        [[7, 3, 11, 0], [5, 2], []],
        [[4, 1, 5, 3], [2, 5], []],
    )


@pytest.fixture
def rank_one_observations() -> UserIndexedRatings:
    """3 users x 3 items, every rating equal to a[u] * b[i] with no noise."""
    a = [1, 1, 2]
    b = [1, 2, 2]
    users, items, ratings = [], [], []
    for u, a_u in enumerate(a):
        for i, b_i in enumerate(b):
            users.append(u)
            items.append(i + 1)
            ratings.append(a_u * b_i)
    return UserIndexedRatings.from_arrays(users, items, ratings, num_users=3, num_items=3)


@pytest.fixture
def random_observations() -> UserIndexedRatings:
    rng = np.random.default_rng(7)
    n_users, n_items = 20, 15
    pairs = rng.choice(n_users * n_items, size=120, replace=False)
    users = pairs // n_items
    items = pairs % n_items + 1
    ratings = rng.integers(1, 6, size=len(pairs))
    return UserIndexedRatings.from_arrays(users, items, ratings, num_users=n_users, num_items=n_items)
