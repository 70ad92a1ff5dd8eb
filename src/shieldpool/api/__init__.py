"""
API module for shieldpool.

Provides FastAPI routes and models for exposing the spend engine as a REST API.
"""

from shieldpool.api.models import (
    BalanceResponse,
    NoteResponse,
    PaymentNote,
    RelayerStatusResponse,
    SpendRequest,
    SpendResponse,
)

__all__ = [
    "BalanceResponse",
    "NoteResponse",
    "PaymentNote",
    "RelayerStatusResponse",
    "SpendRequest",
    "SpendResponse",
]
