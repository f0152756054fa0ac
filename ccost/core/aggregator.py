"""
Usage aggregation by project, date and model.

Only records the deduplicator accepted are priced and added to buckets (and
to their session's conversation).
Derived views (per project, date, model, grand total) are always computed
from the buckets, so each view equals the sum of its buckets.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Dict, Hashable, Iterable, Optional, Tuple

from ccost.core.conversations import Conversation, track_conversation
from ccost.core.dedup import Classification, DedupStats
from ccost.core.parser import ParseStats
from ccost.core.pricing import BASE_CURRENCY, PRICING_TABLE, CostMode, PricingTable, resolve_cost
from ccost.core.timezone import DateBucketer
from ccost.core.token_counter import TokenUsage
from ccost.storage.models import UsageRecord

BucketKey = Tuple[str, date, str]


@dataclass
class AggregateBucket:
    """Running totals for one (project, date, model) combination."""
    project: str
    date: date
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    cost: Decimal = field(default_factory=lambda: Decimal("0"))
    record_count: int = 0
    cost_unavailable: bool = False

    @property
    def key(self) -> BucketKey:
        return (self.project, self.date, self.model)

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

    def add(self, usage: TokenUsage, cost: Decimal, cost_available: bool = True) -> None:
        self.input_tokens += usage.input_tokens
        self.output_tokens += usage.output_tokens
        self.cache_creation_tokens += usage.cache_creation_tokens
        self.cache_read_tokens += usage.cache_read_tokens
        self.cost += cost
        self.record_count += 1
        if not cost_available:
            self.cost_unavailable = True

    def merge(self, other: "AggregateBucket") -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cache_creation_tokens += other.cache_creation_tokens
        self.cache_read_tokens += other.cache_read_tokens
        self.cost += other.cost
        self.record_count += other.record_count
        self.cost_unavailable = self.cost_unavailable or other.cost_unavailable


@dataclass
class UsageTotals:
    """Totals over a group of buckets."""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    cost: Decimal = field(default_factory=lambda: Decimal("0"))
    record_count: int = 0
    cost_unavailable: bool = False

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
        )

    def add_bucket(self, bucket: AggregateBucket) -> None:
        self.input_tokens += bucket.input_tokens
        self.output_tokens += bucket.output_tokens
        self.cache_creation_tokens += bucket.cache_creation_tokens
        self.cache_read_tokens += bucket.cache_read_tokens
        self.cost += bucket.cost
        self.record_count += bucket.record_count
        self.cost_unavailable = self.cost_unavailable or bucket.cost_unavailable

    def to_dict(self) -> Dict[str, Any]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_creation_tokens": self.cache_creation_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "total_tokens": self.total_tokens,
            "cost": str(self.cost),
            "records": self.record_count,
            "cost_unavailable": self.cost_unavailable,
        }


@dataclass
class UsageSummary:
    """Aggregated report handed to formatters.

    Holds buckets plus the statistics a reader needs to judge how much of
    the input was counted.
    """
    buckets: Dict[BucketKey, AggregateBucket]
    dedup_stats: DedupStats
    parse_stats: ParseStats
    cost_mode: CostMode
    timezone_name: str
    currency: str = BASE_CURRENCY
    conversations: Dict[str, Conversation] = field(default_factory=dict)

    def _group(self, key_fn: Callable[[AggregateBucket], Hashable]) -> Dict[Hashable, UsageTotals]:
        groups: Dict[Hashable, UsageTotals] = {}
        for bucket in self.buckets.values():
            groups.setdefault(key_fn(bucket), UsageTotals()).add_bucket(bucket)
        return dict(sorted(groups.items(), key=lambda item: str(item[0])))

    def by_project(self) -> Dict[str, UsageTotals]:
        return self._group(lambda b: b.project)

    def by_date(self) -> Dict[date, UsageTotals]:
        return self._group(lambda b: b.date)

    def by_model(self) -> Dict[str, UsageTotals]:
        return self._group(lambda b: b.model)

    def grand_total(self) -> UsageTotals:
        total = UsageTotals()
        for bucket in self.buckets.values():
            total.add_bucket(bucket)
        return total

    def sorted_buckets(self) -> Iterable[AggregateBucket]:
        return sorted(self.buckets.values(), key=lambda b: (b.date, b.project, b.model))

    @property
    def is_empty(self) -> bool:
        return not self.buckets

    def to_dict(self) -> Dict[str, Any]:
        """Plain representation for formatters (costs as decimal strings)."""
        return {
            "currency": self.currency,
            "cost_mode": self.cost_mode.value,
            "timezone": self.timezone_name,
            "buckets": [
                {
                    "project": b.project,
                    "date": b.date.isoformat(),
                    "model": b.model,
                    "input_tokens": b.input_tokens,
                    "output_tokens": b.output_tokens,
                    "cache_creation_tokens": b.cache_creation_tokens,
                    "cache_read_tokens": b.cache_read_tokens,
                    "cost": str(b.cost),
                    "records": b.record_count,
                    "cost_unavailable": b.cost_unavailable,
                }
                for b in self.sorted_buckets()
            ],
            "by_project": {k: v.to_dict() for k, v in self.by_project().items()},
            "by_date": {k.isoformat(): v.to_dict() for k, v in self.by_date().items()},
            "by_model": {k: v.to_dict() for k, v in self.by_model().items()},
            "total": self.grand_total().to_dict(),
            "dedup": {
                "total": self.dedup_stats.total,
                "accepted": self.dedup_stats.accepted,
                "duplicates": self.dedup_stats.duplicates,
                "excluded_synthetic": self.dedup_stats.excluded_synthetic,
                "excluded_no_key": self.dedup_stats.excluded_no_key,
                "duplicate_rate": round(self.dedup_stats.duplicate_rate, 4),
            },
            "parse": {
                "lines": self.parse_stats.total_lines,
                "parsed": self.parse_stats.parsed,
                "malformed": self.parse_stats.malformed,
            },
        }


class Aggregator:
    """Accumulates classified records into (project, date, model) buckets.

    One aggregator per worker; merge them once deduplication has finished
    for every contributing record.
    """

    def __init__(
        self,
        pricing: PricingTable = PRICING_TABLE,
        mode: CostMode = CostMode.AUTO,
        bucketer: Optional[DateBucketer] = None,
    ):
        self.pricing = pricing
        self.mode = mode
        self.bucketer = bucketer or DateBucketer()
        self.buckets: Dict[BucketKey, AggregateBucket] = {}
        self.conversations: Dict[str, Conversation] = {}
        self.dedup_stats = DedupStats()
        self.parse_stats = ParseStats()

    def add(self, record: UsageRecord, classification: Classification) -> None:
        """Count a classified record; price and bucket it if it was accepted.

        Raises:
            PricingUnavailableError: In calculate mode for an unpriced model
                when the table has no default tier
        """
        if classification is Classification.ACCEPTED:
            resolved = resolve_cost(record, self.pricing, self.mode)
            day = self.bucketer.bucket_date(record.timestamp)
            key = (record.project, day, record.model)
            bucket = self.buckets.get(key)
            if bucket is None:
                bucket = AggregateBucket(project=record.project, date=day, model=record.model)
                self.buckets[key] = bucket
            bucket.add(record.usage, resolved.amount, resolved.cost_available)
            track_conversation(self.conversations, record, resolved)
        self.dedup_stats.record(classification)

    def merge(self, other: "Aggregator") -> None:
        """Add another aggregator's buckets and statistics into this one."""
        for key, bucket in other.buckets.items():
            mine = self.buckets.get(key)
            if mine is None:
                mine = AggregateBucket(project=bucket.project, date=bucket.date, model=bucket.model)
                self.buckets[key] = mine
            mine.merge(bucket)
        for session_id, conversation in other.conversations.items():
            mine = self.conversations.get(session_id)
            if mine is None:
                mine = Conversation.empty_like(conversation)
                self.conversations[session_id] = mine
            mine.merge(conversation)
        self.dedup_stats.merge(other.dedup_stats)
        self.parse_stats.merge(other.parse_stats)

    def summary(self) -> UsageSummary:
        return UsageSummary(
            buckets=dict(self.buckets),
            dedup_stats=self.dedup_stats,
            parse_stats=self.parse_stats,
            cost_mode=self.mode,
            timezone_name=self.bucketer.timezone_name,
            conversations=dict(self.conversations),
        )
