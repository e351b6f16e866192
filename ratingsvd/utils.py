from __future__ import annotations

import logging
import os
import random
from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class ReproducibilityConfig:
    seed: int = 42


def setup_logging(level: int | str = "INFO") -> None:
    """Configure stdlib logging with a consistent, project-wide format."""
    root_logger = logging.getLogger()
    if root_logger.handlers:
        # Avoid duplicate handlers if called multiple times (e.g., tests + CLI).
        root_logger.setLevel(level)
        return

    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def make_rng(cfg: ReproducibilityConfig) -> np.random.Generator:
    """Seed the global RNG sources and return a dedicated numpy Generator.

    Feature initialization draws from the returned generator only, so two runs
    with the same seed start from identical matrices.
    """
    random.seed(cfg.seed)
    np.random.seed(cfg.seed)
    os.environ["PYTHONHASHSEED"] = str(cfg.seed)
    return np.random.default_rng(cfg.seed)
