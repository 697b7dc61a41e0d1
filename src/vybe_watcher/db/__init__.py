"""Database layer."""

from .models import SCHEMA
from .repository import (
    LimitExceededError,
    NotFoundError,
    PriceAlert,
    RankedKol,
    Repository,
    TrackedWallet,
)

__all__ = [
    "SCHEMA",
    "Repository",
    "TrackedWallet",
    "PriceAlert",
    "RankedKol",
    "LimitExceededError",
    "NotFoundError",
]
