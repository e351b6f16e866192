"""Biased SVD rating prediction over a sorted in-memory rating index."""
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("ratingsvd")
except PackageNotFoundError:  # pragma: no cover - fallback when running from a checkout
    __version__ = "0.0.0"

__all__ = ["__version__"]
