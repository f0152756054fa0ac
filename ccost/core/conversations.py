"""
Per-session conversation grouping.

A conversation is every accepted record sharing one session id. Records
without a session id belong to no conversation but still count towards the
bucketed totals.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Set

from ccost.core.pricing import (
    PRICING_TABLE,
    CostMode,
    PricingTable,
    ResolvedCost,
    resolve_cost,
)
from ccost.core.token_counter import TokenUsage
from ccost.storage.models import UsageRecord


class ConversationSortBy(Enum):
    """Orderings for conversation listings (largest or latest first)."""
    COST = "cost"
    TOKENS = "tokens"
    MESSAGES = "messages"
    DURATION = "duration"
    START_TIME = "start-time"


def _utc(timestamp: datetime) -> datetime:
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)


@dataclass
class Conversation:
    """Running totals for one session."""
    session_id: str
    project: str
    start_time: datetime
    end_time: datetime
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    cost: Decimal = field(default_factory=lambda: Decimal("0"))
    record_count: int = 0
    cost_unavailable: bool = False
    models: Set[str] = field(default_factory=set)

    @classmethod
    def start(cls, record: UsageRecord) -> "Conversation":
        timestamp = _utc(record.timestamp)
        return cls(
            session_id=record.session_id,
            project=record.project,
            start_time=timestamp,
            end_time=timestamp,
        )

    @property
    def usage(self) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cache_creation_tokens=self.cache_creation_tokens,
            cache_read_tokens=self.cache_read_tokens,
        )

    @property
    def total_tokens(self) -> int:
        return self.usage.total_tokens

    @property
    def duration_minutes(self) -> float:
        return (self.end_time - self.start_time).total_seconds() / 60

    def add(self, record: UsageRecord, resolved: ResolvedCost) -> None:
        timestamp = _utc(record.timestamp)
        if (timestamp, record.project) < (self.start_time, self.project):
            self.project = record.project
        self.start_time = min(self.start_time, timestamp)
        self.end_time = max(self.end_time, timestamp)
        usage = record.usage
        self.input_tokens += usage.input_tokens
        self.output_tokens += usage.output_tokens
        self.cache_creation_tokens += usage.cache_creation_tokens
        self.cache_read_tokens += usage.cache_read_tokens
        self.cost += resolved.amount
        self.record_count += 1
        self.models.add(record.model)
        if not resolved.cost_available:
            self.cost_unavailable = True

    def merge(self, other: "Conversation") -> None:
        # The project is the one of the earliest record in the session
        if (other.start_time, other.project) < (self.start_time, self.project):
            self.project = other.project
        self.start_time = min(self.start_time, other.start_time)
        self.end_time = max(self.end_time, other.end_time)
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cache_creation_tokens += other.cache_creation_tokens
        self.cache_read_tokens += other.cache_read_tokens
        self.cost += other.cost
        self.record_count += other.record_count
        self.models |= other.models
        self.cost_unavailable = self.cost_unavailable or other.cost_unavailable

    @classmethod
    def empty_like(cls, other: "Conversation") -> "Conversation":
        """Empty conversation for the same session and project as ``other``."""
        return cls(
            session_id=other.session_id,
            project=other.project,
            start_time=other.start_time,
            end_time=other.start_time,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "project": self.project,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration_minutes": round(self.duration_minutes, 2),
            "models": sorted(self.models),
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_creation_tokens": self.cache_creation_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "total_tokens": self.total_tokens,
            "cost": str(self.cost),
            "records": self.record_count,
            "cost_unavailable": self.cost_unavailable,
        }


def track_conversation(
    conversations: Dict[str, Conversation],
    record: UsageRecord,
    resolved: ResolvedCost,
) -> None:
    """Add a priced record to its session's conversation, if it has a session."""
    if not record.session_id:
        return
    conversation = conversations.get(record.session_id)
    if conversation is None:
        conversation = Conversation.start(record)
        conversations[record.session_id] = conversation
    conversation.add(record, resolved)


def group_into_conversations(
    records: Iterable[UsageRecord],
    pricing: PricingTable = PRICING_TABLE,
    mode: CostMode = CostMode.AUTO,
) -> Dict[str, Conversation]:
    """Group already-deduplicated records by session id.

    Args:
        records: Records that should each be counted once
        pricing: Table used to price records
        mode: Cost mode used to price records

    Returns:
        Conversations keyed by session id
    """
    conversations: Dict[str, Conversation] = {}
    for record in records:
        track_conversation(conversations, record, resolve_cost(record, pricing, mode))
    return conversations


def sort_conversations(
    conversations: Iterable[Conversation],
    sort_by: ConversationSortBy = ConversationSortBy.COST,
) -> List[Conversation]:
    """Order conversations; ties fall back to session id."""
    by_id = sorted(conversations, key=lambda c: c.session_id)
    if sort_by is ConversationSortBy.COST:
        return sorted(by_id, key=lambda c: c.cost, reverse=True)
    if sort_by is ConversationSortBy.TOKENS:
        return sorted(by_id, key=lambda c: c.total_tokens, reverse=True)
    if sort_by is ConversationSortBy.MESSAGES:
        return sorted(by_id, key=lambda c: c.record_count, reverse=True)
    if sort_by is ConversationSortBy.DURATION:
        return sorted(by_id, key=lambda c: c.end_time - c.start_time, reverse=True)
    return sorted(by_id, key=lambda c: c.start_time, reverse=True)
