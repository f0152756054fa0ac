"""
Data models for storage layer.

Defines parsed usage records and persisted exchange-rate rows.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from ccost.core.token_counter import TokenUsage

# Model name emitted by producers for non-billable internal entries
SYNTHETIC_MODEL = "<synthetic>"


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of one log entry's usage.

    Created per parse call and discarded after classification.
    Identifier fields may be missing depending on the producer version.
    """
    timestamp: datetime
    project: str
    model: str
    usage: TokenUsage
    message_id: Optional[str] = None
    request_id: Optional[str] = None
    session_id: Optional[str] = None
    embedded_cost: Optional[Decimal] = None

    @property
    def is_synthetic(self) -> bool:
        """True for non-billable internal entries."""
        return self.model == SYNTHETIC_MODEL


@dataclass(frozen=True)
class ExchangeRateRow:
    """A persisted exchange rate for one (base, target) pair."""
    base: str
    target: str
    rate: Decimal
    fetched_at: datetime
