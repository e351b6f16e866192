"""Biased matrix factorization trained by per-observation SGD.

The model predicts `user_bias[u] + item_bias[i] + dot(P[u], Q[i])`. Bias updates
are regularized towards a fixed global mean `mu` instead of towards zero, as in
section 3.3 of Paterek's "Improving regularized singular value decomposition
for collaborative filtering".
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from numba import njit

from ..store.ratings import UserIndexedRatings
from ..utils import ReproducibilityConfig, make_rng
from .features import ServingFeatures, TrainingFeatures


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SVDTrainConfig:
    factor_count: int = 10
    max_epochs: int = 100
    learning_rate: float = 0.001
    reg_user: float = 0.011
    reg_item: float = 0.011
    reg_bias: float = 0.05
    min_improvement: float = 1e-5
    # None means "use the mean rating of the training observations".
    global_mean: Optional[float] = 3.6033
    init_average: Optional[float] = 3.0663
    init_noise: float = 0.005
    min_rating: float = 1.0
    max_rating: float = 5.0
    seed: int = 42

    def validate(self) -> None:
        if int(self.factor_count) <= 0:
            raise ValueError(f"factor_count must be > 0, got {self.factor_count}")
        if int(self.max_epochs) <= 0:
            raise ValueError(f"max_epochs must be > 0, got {self.max_epochs}")
        if float(self.learning_rate) <= 0.0:
            raise ValueError(f"learning_rate must be > 0, got {self.learning_rate}")
        if float(self.max_rating) <= float(self.min_rating):
            raise ValueError(
                f"max_rating ({self.max_rating}) must exceed min_rating ({self.min_rating})"
            )

    @classmethod
    def from_mapping(cls, raw: dict[str, Any], **overrides: Any) -> "SVDTrainConfig":
        """Build from a YAML section; unknown keys are rejected, None overrides ignored."""
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(raw) - known)
        if unknown:
            raise ValueError(f"unknown svd config keys: {unknown}")
        values = dict(raw)
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SVDTrainResult:
    features: ServingFeatures
    rmse_history: list[float] = field(default_factory=list)
    stopped_early: bool = False
    global_mean: float = 0.0

    @property
    def epochs(self) -> int:
        return len(self.rmse_history)

    @property
    def final_rmse(self) -> float:
        return self.rmse_history[-1] if self.rmse_history else float("nan")


@njit(cache=True)
def _sgd_epoch(
    users,
    items,
    ratings,
    user_factors,
    item_factors,
    user_bias,
    item_bias,
    k,
    lr,
    reg_user,
    reg_item,
    reg_bias,
    mu,
):
    sq_err = 0.0
    for n in range(users.shape[0]):
        u = users[n]
        i = items[n] - 1
        u0 = u * k
        i0 = i * k

        p = 0.0
        for f in range(k):
            p += item_factors[i0 + f] * user_factors[u0 + f]
        p += item_bias[i] + user_bias[u]

        err = ratings[n] - p
        sq_err += err * err

        for f in range(k):
            uf = user_factors[u0 + f]
            mf = item_factors[i0 + f]
            user_factors[u0 + f] += lr * (err * mf - reg_user * uf)
            item_factors[i0 + f] += lr * (err * uf - reg_item * mf)

        # Both bias updates see the pre-update sum.
        pull = user_bias[u] + item_bias[i] - mu
        item_bias[i] += lr * (err - reg_bias * pull)
        user_bias[u] += lr * (err - reg_bias * pull)
    return sq_err


def run_epochs(
    observations: UserIndexedRatings,
    features: TrainingFeatures,
    cfg: SVDTrainConfig,
    *,
    global_mean: float,
) -> tuple[list[float], bool]:
    """Run SGD epochs in stored order until `max_epochs` or the improvement drops below threshold.

    Returns (per-epoch RMSE, stopped_early).
    """
    users = observations.user_ids
    items = observations.item_ids
    ratings = observations.ratings
    n_obs = len(users)

    # Seeded with the widest possible error so the first epoch always counts as progress.
    rmse_last = float(cfg.max_rating) - float(cfg.min_rating)
    history: list[float] = []
    stopped_early = False

    for epoch in range(int(cfg.max_epochs)):
        start = time.perf_counter()
        sq_err = _sgd_epoch(
            users,
            items,
            ratings,
            features.user_factors,
            features.item_factors,
            features.user_bias,
            features.item_bias,
            features.factor_count,
            float(cfg.learning_rate),
            float(cfg.reg_user),
            float(cfg.reg_item),
            float(cfg.reg_bias),
            float(global_mean),
        )
        rmse = math.sqrt(sq_err / n_obs)
        history.append(rmse)
        logger.info("SVD epoch=%d rmse=%.6f took=%.2fs", epoch + 1, rmse, time.perf_counter() - start)

        improvement = rmse_last - rmse
        if improvement < float(cfg.min_improvement):
            logger.info("Early stopping after epoch %d: improvement=%.3g", epoch + 1, improvement)
            stopped_early = True
            break
        rmse_last = rmse

    return history, stopped_early


def train_svd(
    observations: UserIndexedRatings,
    cfg: SVDTrainConfig,
    *,
    release_observations: bool = False,
) -> SVDTrainResult:
    """Train biased SVD features and return them in serving precision.

    The float64 working matrices exist only inside this call. With
    `release_observations=True` the observation records are dropped as well.
    """
    cfg.validate()
    if observations.is_released:
        raise RuntimeError("cannot train: observations were released")
    if observations.num_observations == 0:
        raise RuntimeError("cannot train: rating store is empty")

    global_mean = observations.mean_rating() if cfg.global_mean is None else float(cfg.global_mean)
    init_average = global_mean if cfg.init_average is None else float(cfg.init_average)

    rng = make_rng(ReproducibilityConfig(seed=int(cfg.seed)))
    features = TrainingFeatures.initialize(
        int(cfg.factor_count),
        observations.num_users,
        observations.num_items,
        init_average=init_average,
        init_noise=float(cfg.init_noise),
        rng=rng,
    )

    logger.info(
        "SVD training: observations=%d K=%d max_epochs=%d lr=%g mu=%.4f",
        observations.num_observations,
        features.factor_count,
        int(cfg.max_epochs),
        float(cfg.learning_rate),
        global_mean,
    )
    start = time.perf_counter()
    history, stopped_early = run_epochs(observations, features, cfg, global_mean=global_mean)
    logger.info("Feature calculation took %.2f minutes", (time.perf_counter() - start) / 60.0)

    if release_observations:
        observations.release()

    return SVDTrainResult(
        features=features.to_serving(),
        rmse_history=history,
        stopped_early=stopped_early,
        global_mean=global_mean,
    )
