"""Verified block-header storage, waiting by height, and syncing from an exchange."""

__version__ = "0.1.0"

__all__ = [
    "batch",
    "datastore",
    "heightsub",
    "interface",
    "local",
    "ranges",
    "request",
    "store",
    "syncer",
]