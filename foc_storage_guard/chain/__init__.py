"""Chain and storage collaborators."""

from .base import CatalogReader, ChainReader, ChainWriter, FileStore
from .filecoin import NETWORKS, FilecoinClient

__all__ = [
    "CatalogReader",
    "ChainReader",
    "ChainWriter",
    "FileStore",
    "FilecoinClient",
    "NETWORKS",
]
