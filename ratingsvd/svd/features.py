"""Latent factor and bias matrices in training (float64) and serving (float32) form."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import numpy as np


logger = logging.getLogger(__name__)

TRAINING_DTYPE = np.float64
SERVING_DTYPE = np.float32


@dataclass(frozen=True)
class ServingFeatures:
    """Reduced-precision model used for predictions and persisted to disk.

    Factor rows are flattened: user `u` owns `user_factors[u*K:(u+1)*K]`.
    """

    factor_count: int
    user_factors: np.ndarray
    item_factors: np.ndarray
    user_bias: np.ndarray
    item_bias: np.ndarray

    @property
    def num_users(self) -> int:
        return int(len(self.user_bias))

    @property
    def num_items(self) -> int:
        return int(len(self.item_bias))

    def user_row(self, user_index: int) -> np.ndarray:
        k = self.factor_count
        return self.user_factors[user_index * k : (user_index + 1) * k]

    def item_row(self, item_index: int) -> np.ndarray:
        k = self.factor_count
        return self.item_factors[item_index * k : (item_index + 1) * k]

    def validate(self) -> None:
        """Raise ValueError if the arrays disagree with each other or with K."""
        k = int(self.factor_count)
        if k <= 0:
            raise ValueError(f"factor_count must be > 0, got {k}")
        if len(self.user_factors) != self.num_users * k:
            raise ValueError(
                f"user_factors has {len(self.user_factors)} values, expected {self.num_users} x {k}"
            )
        if len(self.item_factors) != self.num_items * k:
            raise ValueError(
                f"item_factors has {len(self.item_factors)} values, expected {self.num_items} x {k}"
            )


class TrainingFeatures:
    """Double-precision working matrices mutated in place by SGD."""

    def __init__(
        self,
        factor_count: int,
        user_factors: np.ndarray,
        item_factors: np.ndarray,
        user_bias: np.ndarray,
        item_bias: np.ndarray,
    ) -> None:
        self.factor_count = int(factor_count)
        self.user_factors = user_factors
        self.item_factors = item_factors
        self.user_bias = user_bias
        self.item_bias = item_bias
        self._converted = False

    @classmethod
    def initialize(
        cls,
        factor_count: int,
        num_users: int,
        num_items: int,
        *,
        init_average: float,
        init_noise: float,
        rng: np.random.Generator,
    ) -> "TrainingFeatures":
        """Seed factors at sqrt(avg / K) plus uniform noise in [-r, r); biases at zero.

        With every factor near sqrt(avg / K), each dot product starts near `avg`.
        """
        k = int(factor_count)
        if k <= 0:
            raise ValueError(f"factor_count must be > 0, got {k}")
        if init_average < 0:
            raise ValueError(f"init_average must be >= 0, got {init_average}")

        base = math.sqrt(float(init_average) / k)
        r = float(init_noise)
        user_factors = base + rng.uniform(-r, r, size=int(num_users) * k)
        item_factors = base + rng.uniform(-r, r, size=int(num_items) * k)

        logger.info(
            "Initialized features: K=%d users=%d items=%d base=%.4f noise=%.4f",
            k,
            int(num_users),
            int(num_items),
            base,
            r,
        )
        return cls(
            k,
            user_factors.astype(TRAINING_DTYPE, copy=False),
            item_factors.astype(TRAINING_DTYPE, copy=False),
            np.zeros(int(num_users), dtype=TRAINING_DTYPE),
            np.zeros(int(num_items), dtype=TRAINING_DTYPE),
        )

    @property
    def converted(self) -> bool:
        return self._converted

    def to_serving(self) -> ServingFeatures:
        """Narrow every array to float32. Allowed once; the float64 arrays freeze afterwards."""
        if self._converted:
            raise RuntimeError("training features were already converted to serving precision")

        serving = ServingFeatures(
            factor_count=self.factor_count,
            user_factors=self.user_factors.astype(SERVING_DTYPE),
            item_factors=self.item_factors.astype(SERVING_DTYPE),
            user_bias=self.user_bias.astype(SERVING_DTYPE),
            item_bias=self.item_bias.astype(SERVING_DTYPE),
        )
        for arr in (self.user_factors, self.item_factors, self.user_bias, self.item_bias):
            arr.flags.writeable = False
        self._converted = True
        return serving
