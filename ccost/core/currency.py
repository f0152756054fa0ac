"""
Exchange-rate cache and currency conversion.

Each (base, target) pair moves through
MISSING -> FRESH -> STALE -> REFRESHING -> FRESH | STALE.

Freshness is decided at lookup time by comparing the stored fetch time with
"now"; there are no background timers. A failed refresh of a stale pair
still returns the old rate (with a warning). A failed refresh of a missing
pair raises, since there is nothing to fall back on.
"""

import asyncio
import re
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Callable, Dict, Iterable, Optional, Tuple, Union

import httpx

from ccost.config.logger import get_logger
from ccost.core.aggregator import AggregateBucket, UsageSummary
from ccost.core.errors import (
    RateNetworkError,
    RateParseError,
    RateSourceError,
    RateUnavailableError,
)
from ccost.storage.repository import MemoryExchangeRateStore

LOGGER = get_logger("ccost.currency")

ECB_DAILY_URL = "https://www.ecb.europa.eu/stats/eurofxref/eurofxref-daily.xml"
ECB_BASE_CURRENCY = "EUR"
DEFAULT_TTL = timedelta(hours=24)
DEFAULT_TIMEOUT_SECONDS = 10.0

_ECB_RATE_PATTERN = re.compile(r"currency=['\"]([A-Z]{3})['\"]\s+rate=['\"]([0-9.]+)['\"]")

Pair = Tuple[str, str]


class RateState(Enum):
    """Freshness state of one currency pair."""
    MISSING = "missing"
    FRESH = "fresh"
    STALE = "stale"
    REFRESHING = "refreshing"


@dataclass(frozen=True)
class RateLookup:
    """Result of a rate lookup, annotated when it had to fall back."""
    base: str
    target: str
    rate: Decimal
    state: RateState
    fetched_at: datetime
    warning: Optional[str] = None

    @property
    def is_stale(self) -> bool:
        return self.state is RateState.STALE


class EcbRateSource:
    """Daily reference rates published by the European Central Bank.

    Rates are quoted per 1 EUR.
    """

    base_currency = ECB_BASE_CURRENCY

    def __init__(
        self,
        url: str = ECB_DAILY_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.url = url
        self._client = client
        self._timeout = timeout

    async def fetch_rates(self) -> Dict[str, Decimal]:
        """Fetch the currency -> rate map relative to EUR.

        Raises:
            RateNetworkError: On transport failures or non-success status
            RateParseError: If the response contains no usable rates
        """
        try:
            if self._client is not None:
                response = await self._client.get(self.url)
            else:
                async with httpx.AsyncClient(
                    timeout=httpx.Timeout(self._timeout),
                    follow_redirects=True,
                    headers={"User-Agent": "ccost"},
                ) as client:
                    response = await client.get(self.url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise RateNetworkError(f"Failed to fetch exchange rates from {self.url}: {e}") from e

        return parse_ecb_rates(response.text)


def parse_ecb_rates(xml_text: str) -> Dict[str, Decimal]:
    """Extract ``currency='XXX' rate='N'`` pairs from the ECB daily XML.

    Raises:
        RateParseError: If no rate could be read
    """
    rates: Dict[str, Decimal] = {ECB_BASE_CURRENCY: Decimal("1")}
    for currency, raw_rate in _ECB_RATE_PATTERN.findall(xml_text):
        try:
            rate = Decimal(raw_rate)
        except InvalidOperation as e:
            raise RateParseError(f"Invalid rate {raw_rate!r} for {currency}") from e
        if rate <= 0:
            raise RateParseError(f"Non-positive rate {raw_rate!r} for {currency}")
        rates[currency] = rate
    if len(rates) == 1:
        raise RateParseError("No exchange rates found in response")
    return rates


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExchangeRateCache:
    """Time-bounded exchange-rate cache with stale fallback.

    Concurrent lookups of the same pair share one in-flight refresh. A pair
    is refreshed at most once per cache instance (one run); after a failed
    refresh later lookups reuse the stale value or fail immediately.
    """

    def __init__(
        self,
        source,
        store=None,
        ttl: timedelta = DEFAULT_TTL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """Initialize the cache.

        Args:
            source: Rate source with ``async fetch_rates()`` and ``base_currency``
            store: Persistent get/put store; in-memory when omitted
            ttl: Age after which a cached rate is stale
            timeout: Seconds to wait for one refresh
            clock: Returns the current aware datetime
        """
        if ttl <= timedelta(0):
            raise ValueError("ttl must be positive")
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.source = source
        self.store = store if store is not None else MemoryExchangeRateStore()
        self.ttl = ttl
        self.timeout = timeout
        self.clock = clock
        self._inflight: Dict[Pair, asyncio.Task] = {}
        self._failed: Dict[Pair, Exception] = {}

    def state(self, base: str, target: str) -> RateState:
        """Current state of a pair, evaluated against the clock now."""
        pair = (base.upper(), target.upper())
        if pair in self._inflight:
            return RateState.REFRESHING
        row = self.store.get(*pair)
        if row is None:
            return RateState.MISSING
        return RateState.FRESH if self._is_fresh(row.fetched_at) else RateState.STALE

    async def get_rate(self, base: str, target: str) -> RateLookup:
        """Look up a rate, refreshing it if missing or stale.

        Raises:
            RateUnavailableError: If no rate is cached and the refresh fails or times out
        """
        base, target = base.upper(), target.upper()
        if base == target:
            return RateLookup(base, target, Decimal("1"), RateState.FRESH, self.clock())

        pair = (base, target)
        row = self.store.get(base, target)
        if row is not None and self._is_fresh(row.fetched_at):
            return RateLookup(base, target, row.rate, RateState.FRESH, row.fetched_at)

        error = self._failed.get(pair)
        if error is None:
            try:
                rate, fetched_at = await self._await_refresh(pair)
            except RateSourceError as e:
                error = e
                self._failed[pair] = e
            else:
                return RateLookup(base, target, rate, RateState.FRESH, fetched_at)

        if row is None:
            raise RateUnavailableError(base, target, error)

        warning = (
            f"Using stale {base}->{target} rate from {row.fetched_at.isoformat()}: {error}"
        )
        LOGGER.warning(warning)
        return RateLookup(base, target, row.rate, RateState.STALE, row.fetched_at, warning)

    async def convert(self, amount: Decimal, base: str, target: str) -> Tuple[Decimal, RateLookup]:
        lookup = await self.get_rate(base, target)
        return amount * lookup.rate, lookup

    async def _await_refresh(self, pair: Pair) -> Tuple[Decimal, datetime]:
        task = self._inflight.get(pair)
        if task is None:
            task = asyncio.ensure_future(self._refresh(*pair))
            self._inflight[pair] = task
            task.add_done_callback(lambda done, key=pair: self._finish_refresh(key, done))
        try:
            return await asyncio.wait_for(asyncio.shield(task), self.timeout)
        except asyncio.TimeoutError as e:
            raise RateNetworkError(
                f"Exchange rate refresh for {pair[0]}->{pair[1]} timed out after {self.timeout}s"
            ) from e

    def _finish_refresh(self, pair: Pair, task: asyncio.Task) -> None:
        self._inflight.pop(pair, None)
        if not task.cancelled() and task.exception() is not None:
            LOGGER.info(
                "Exchange rate refresh failed",
                extra={"pair": f"{pair[0]}->{pair[1]}", "error": str(task.exception())},
            )

    async def _refresh(self, base: str, target: str) -> Tuple[Decimal, datetime]:
        LOGGER.info("Exchange rate refresh start", extra={"pair": f"{base}->{target}"})
        rates = await self.source.fetch_rates()
        rate = cross_rate(rates, base, target)
        fetched_at = self.clock()
        self.store.put(base, target, rate, fetched_at)
        LOGGER.info("Exchange rate refreshed", extra={"pair": f"{base}->{target}", "rate": str(rate)})
        return rate, fetched_at

    def _is_fresh(self, fetched_at: datetime) -> bool:
        if fetched_at.tzinfo is None:
            fetched_at = fetched_at.replace(tzinfo=timezone.utc)
        return self.clock() - fetched_at <= self.ttl


def cross_rate(rates: Dict[str, Decimal], base: str, target: str) -> Decimal:
    """Rate for converting ``base`` into ``target`` from a map quoted against one currency.

    Raises:
        RateParseError: If either currency is absent from the map
    """
    missing = [code for code in (base, target) if code not in rates]
    if missing:
        raise RateParseError(f"Currency not found in rate data: {', '.join(missing)}")
    return rates[target] / rates[base]


@dataclass
class ConvertedSummary:
    """A usage summary whose costs are expressed in another currency."""
    summary: UsageSummary
    lookup: RateLookup

    @property
    def currency(self) -> str:
        return self.summary.currency

    @property
    def warning(self) -> Optional[str]:
        return self.lookup.warning

    def rate_info(self) -> dict:
        return {
            "base": self.lookup.base,
            "target": self.lookup.target,
            "rate": str(self.lookup.rate),
            "state": self.lookup.state.value,
            "fetched_at": self.lookup.fetched_at.isoformat(),
            "warning": self.lookup.warning,
        }

    def to_dict(self) -> dict:
        data = self.summary.to_dict()
        data["exchange_rate"] = self.rate_info()
        return data


async def convert_summary(
    summary: UsageSummary,
    currency: str,
    cache: ExchangeRateCache,
) -> ConvertedSummary:
    """Convert every bucket and conversation cost of a summary into ``currency``.

    Views of the converted summary are recomputed from converted buckets, so
    they still equal the sum of their buckets.

    Raises:
        RateUnavailableError: If no rate can be obtained for the pair
    """
    lookup = await cache.get_rate(summary.currency, currency)
    buckets: Dict[tuple, AggregateBucket] = {
        key: replace(bucket, cost=bucket.cost * lookup.rate)
        for key, bucket in summary.buckets.items()
    }
    conversations = {
        session_id: replace(
            conversation,
            cost=conversation.cost * lookup.rate,
            models=set(conversation.models),
        )
        for session_id, conversation in summary.conversations.items()
    }
    converted = replace(
        summary,
        buckets=buckets,
        conversations=conversations,
        currency=currency.upper(),
    )
    return ConvertedSummary(summary=converted, lookup=lookup)


async def convert_summary_many(
    summary: UsageSummary,
    currencies: Iterable[str],
    cache: ExchangeRateCache,
) -> Dict[str, Union[ConvertedSummary, RateUnavailableError]]:
    """Convert a summary into several currencies concurrently.

    A failure for one currency is returned in place of its result and does
    not affect the others.
    """
    codes = list(dict.fromkeys(code.upper() for code in currencies))
    results = await asyncio.gather(
        *(convert_summary(summary, code, cache) for code in codes),
        return_exceptions=True,
    )
    converted: Dict[str, Union[ConvertedSummary, RateUnavailableError]] = {}
    for code, result in zip(codes, results):
        if isinstance(result, RateUnavailableError):
            converted[code] = result
        elif isinstance(result, BaseException):
            raise result
        else:
            converted[code] = result
    return converted
