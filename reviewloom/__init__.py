"""ReviewLoom - multi-level pull request analysis service."""

__version__ = "0.1.0"
