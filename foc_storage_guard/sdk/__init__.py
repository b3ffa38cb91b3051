"""
SDK for FOC Storage Guard.

Provides programmatic access to balance checks, payments, uploads and the
wallet's datasets.
"""

from .client import (
    BalanceCheckResponse,
    DatasetCreationResponse,
    DatasetResponse,
    DatasetsResponse,
    PaymentResponse,
    ProvidersResponse,
    StorageGuardClient,
)

__all__ = [
    "BalanceCheckResponse",
    "DatasetCreationResponse",
    "DatasetResponse",
    "DatasetsResponse",
    "PaymentResponse",
    "ProvidersResponse",
    "StorageGuardClient",
]
