from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any

import yaml

from ..data import load_ratings_csv, ratings_from_frame
from ..paths import ProjectPaths, get_repo_root
from ..svd.predictor import SVDPredictor
from ..svd.train import SVDTrainConfig
from ..utils import setup_logging


logger = logging.getLogger(__name__)


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Train biased SVD features and save the model artifact.")
    p.add_argument("--config", type=Path, default=Path("config.yaml"), help="Path to config YAML.")
    p.add_argument("--out", type=Path, default=None, help="Output artifact path")
    p.add_argument("--factor-count", type=int, default=None, help="Override number of latent features")
    p.add_argument("--max-epochs", type=int, default=None, help="Override epoch cap")
    p.add_argument("--lr", type=float, default=None, help="Override learning rate")
    p.add_argument("--min-improvement", type=float, default=None, help="Override early-stop threshold")
    p.add_argument("--seed", type=int, default=None, help="Override initialization seed")
    return p


def _section(cfg_yaml: dict[str, Any], name: str) -> dict[str, Any]:
    value = cfg_yaml.get(name, {})
    return value if isinstance(value, dict) else {}


def run_svd_build(args: argparse.Namespace) -> Path:
    """Load ratings, train, and write the artifact plus `svd_meta.json`. Returns the artifact path."""
    repo_root = get_repo_root()
    config_path = Path(args.config)
    if not config_path.is_absolute():
        config_path = (repo_root / config_path).resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    cfg_yaml = yaml.safe_load(config_path.read_text())
    if not isinstance(cfg_yaml, dict):
        raise ValueError("config.yaml must be a mapping")

    dataset_cfg = _section(cfg_yaml, "dataset")
    artifacts_cfg = _section(cfg_yaml, "artifacts")
    paths = ProjectPaths.from_repo_root(
        repo_root,
        raw_dir=Path(str(dataset_cfg.get("raw_dir", "data/raw"))),
        artifacts_dir=Path(str(artifacts_cfg.get("dir", "artifacts"))),
    )

    cfg = SVDTrainConfig.from_mapping(
        _section(cfg_yaml, "svd"),
        factor_count=args.factor_count,
        max_epochs=args.max_epochs,
        learning_rate=args.lr,
        min_improvement=args.min_improvement,
        seed=args.seed,
    )

    ratings_path = paths.raw_dir / str(dataset_cfg.get("ratings_file", "ratings.csv"))
    ratings = load_ratings_csv(ratings_path, min_rating=cfg.min_rating, max_rating=cfg.max_rating)
    observations = ratings_from_frame(ratings, num_items=dataset_cfg.get("num_items"), validate=False)
    del ratings
    if bool(dataset_cfg.get("sort_by_user", True)):
        observations.sort()

    predictor = SVDPredictor(min_rating=cfg.min_rating, max_rating=cfg.max_rating)
    result = predictor.fit(observations, cfg, release_observations=True)

    out_path = Path(args.out) if args.out is not None else paths.svd_artifact(cfg.factor_count)
    if not out_path.is_absolute():
        out_path = (repo_root / out_path).resolve()

    logger.info("Saving SVD artifact to %s", out_path)
    predictor.save(out_path)

    meta = {
        "factor_count": int(cfg.factor_count),
        "epochs": result.epochs,
        "stopped_early": bool(result.stopped_early),
        "final_rmse": float(result.final_rmse),
        "rmse_history": [float(x) for x in result.rmse_history],
        "global_mean": float(result.global_mean),
        "num_users": result.features.num_users,
        "num_items": result.features.num_items,
        "train_config": cfg.to_dict(),
    }
    meta_path = out_path.with_name("svd_meta.json")
    meta_path.write_text(json.dumps(meta, indent=2, sort_keys=True) + "\n")
    return out_path


def main(argv: list[str] | None = None) -> None:
    setup_logging("INFO")
    args = build_arg_parser().parse_args(argv)
    run_svd_build(args)


if __name__ == "__main__":
    main()
