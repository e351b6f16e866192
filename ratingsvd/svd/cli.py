from __future__ import annotations

import argparse
from pathlib import Path

from ..paths import ProjectPaths, get_repo_root
from ..utils import setup_logging
from .predictor import SVDPredictor


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Predict a rating with a trained biased SVD model")
    p.add_argument("--user-id", type=int, required=True, help="Raw user id as it appears in the ratings file")
    p.add_argument("--item-id", type=int, required=True, help="1-based item id")
    p.add_argument("--artifact", type=Path, default=None, help="Model artifact; defaults to artifacts/svd/")
    p.add_argument("--factor-count", type=int, default=10, help="Used to locate the default artifact")
    p.add_argument("--min-rating", type=float, default=1.0)
    p.add_argument("--max-rating", type=float, default=5.0)
    return p


def main(argv: list[str] | None = None) -> None:
    setup_logging("INFO")
    args = build_arg_parser().parse_args(argv)

    artifact = args.artifact
    if artifact is None:
        paths = ProjectPaths.from_repo_root(get_repo_root())
        artifact = paths.svd_artifact(int(args.factor_count))

    predictor = SVDPredictor.from_artifact(
        Path(artifact),
        min_rating=float(args.min_rating),
        max_rating=float(args.max_rating),
    )
    rating = predictor.predict(int(args.user_id), int(args.item_id))
    print(f"userId={int(args.user_id)} itemId={int(args.item_id)} predicted_rating={rating:.4f}")


if __name__ == "__main__":
    main()
