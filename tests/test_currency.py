"""
Tests for the exchange-rate cache and currency conversion.

Uses a fake rate source and an injected clock so freshness can be
controlled without real time passing or network access.
"""

import asyncio
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest

from ccost.core.aggregator import Aggregator
from ccost.core.currency import (
    EcbRateSource,
    ExchangeRateCache,
    RateState,
    convert_summary,
    convert_summary_many,
    cross_rate,
    parse_ecb_rates,
)
from ccost.core.dedup import Classification
from ccost.core.errors import RateNetworkError, RateParseError, RateUnavailableError
from ccost.core.token_counter import TokenUsage
from ccost.storage.models import UsageRecord
from ccost.storage.repository import MemoryExchangeRateStore

T0 = datetime(2025, 6, 9, 12, 0, tzinfo=timezone.utc)

ECB_XML = """<?xml version="1.0" encoding="UTF-8"?>
<gesmes:Envelope xmlns:gesmes="http://www.gesmes.org/xml/2002-08-01">
  <Cube>
    <Cube time='2025-06-09'>
      <Cube currency='USD' rate='1.1400'/>
      <Cube currency='JPY' rate='164.50'/>
      <Cube currency='GBP' rate='0.8420'/>
    </Cube>
  </Cube>
</gesmes:Envelope>
"""


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeSource:
    """Rate source returning fixed EUR-based rates or raising."""
    base_currency = "EUR"

    def __init__(self, rates=None, error=None, delay: float = 0):
        self.rates = rates if rates is not None else {
            "EUR": Decimal("1"),
            "USD": Decimal("2"),
            "GBP": Decimal("0.8"),
        }
        self.error = error
        self.delay = delay
        self.calls = 0

    async def fetch_rates(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.rates


def _summary(cost: Decimal):
    aggregator = Aggregator()
    aggregator.add(
        UsageRecord(
            timestamp=T0,
            project="webapp",
            model="claude-sonnet-4-20250514",
            usage=TokenUsage(input_tokens=10),
            message_id="m1",
            request_id="r1",
            session_id="s1",
            embedded_cost=cost,
        ),
        Classification.ACCEPTED,
    )
    return aggregator.summary()


class TestExchangeRateCache:
    """Test the per-pair freshness state machine."""

    def setup_method(self):
        """Set up a cache with an in-memory store and a fixed clock."""
        self.clock = FakeClock(T0)
        self.store = MemoryExchangeRateStore()

    def _cache(self, source, **kwargs):
        return ExchangeRateCache(source, store=self.store, clock=self.clock, **kwargs)

    @pytest.mark.asyncio
    async def test_missing_pair_fetched(self):
        """Verify a missing pair is fetched and stored fresh."""
        source = FakeSource()
        cache = self._cache(source)
        assert cache.state("USD", "EUR") is RateState.MISSING

        lookup = await cache.get_rate("USD", "EUR")

        assert lookup.rate == Decimal("0.5")
        assert lookup.state is RateState.FRESH
        assert lookup.fetched_at == T0
        assert cache.state("USD", "EUR") is RateState.FRESH
        assert self.store.get("USD", "EUR").rate == Decimal("0.5")

    @pytest.mark.asyncio
    async def test_fresh_pair_not_refetched(self):
        source = FakeSource()
        cache = self._cache(source)
        await cache.get_rate("USD", "EUR")

        self.clock.now = T0 + timedelta(hours=23)
        lookup = await cache.get_rate("USD", "EUR")

        assert lookup.state is RateState.FRESH
        assert source.calls == 1

    @pytest.mark.asyncio
    async def test_stale_pair_refreshed(self):
        """Verify a rate older than the TTL is refreshed."""
        self.store.put("USD", "EUR", Decimal("0.9"), T0)
        source = FakeSource()
        cache = self._cache(source)

        self.clock.now = T0 + timedelta(hours=25)
        assert cache.state("USD", "EUR") is RateState.STALE
        lookup = await cache.get_rate("USD", "EUR")

        assert source.calls == 1
        assert lookup.rate == Decimal("0.5")
        assert lookup.fetched_at == T0 + timedelta(hours=25)
        assert cache.state("USD", "EUR") is RateState.FRESH

    @pytest.mark.asyncio
    async def test_failed_refresh_falls_back_to_stale(self):
        """Verify a failed refresh returns the old rate and stays stale."""
        self.store.put("USD", "EUR", Decimal("0.9"), T0)
        source = FakeSource(error=RateNetworkError("connection refused"))
        cache = self._cache(source)

        self.clock.now = T0 + timedelta(hours=25)
        lookup = await cache.get_rate("USD", "EUR")

        assert lookup.rate == Decimal("0.9")
        assert lookup.fetched_at == T0
        assert lookup.is_stale
        assert "connection refused" in lookup.warning
        assert cache.state("USD", "EUR") is RateState.STALE

    @pytest.mark.asyncio
    async def test_failed_refresh_without_cache_raises(self):
        """Verify a missing pair with a failing source is unavailable."""
        cache = self._cache(FakeSource(error=RateNetworkError("offline")))

        with pytest.raises(RateUnavailableError) as exc_info:
            await cache.get_rate("USD", "EUR")
        assert exc_info.value.kind == "exchange_rate"
        assert isinstance(exc_info.value.cause, RateNetworkError)

    @pytest.mark.asyncio
    async def test_failed_pair_not_retried_in_same_run(self):
        """Verify one failed refresh is not repeated for later lookups."""
        self.store.put("USD", "EUR", Decimal("0.9"), T0)
        source = FakeSource(error=RateNetworkError("offline"))
        cache = self._cache(source)
        self.clock.now = T0 + timedelta(hours=25)

        await cache.get_rate("USD", "EUR")
        second = await cache.get_rate("USD", "EUR")

        assert source.calls == 1
        assert second.is_stale

    @pytest.mark.asyncio
    async def test_concurrent_lookups_share_refresh(self):
        """Verify concurrent lookups of a pair trigger one fetch."""
        source = FakeSource(delay=0.05)
        cache = self._cache(source)

        lookups = await asyncio.gather(*(cache.get_rate("USD", "EUR") for _ in range(5)))

        assert source.calls == 1
        assert {lookup.rate for lookup in lookups} == {Decimal("0.5")}

    @pytest.mark.asyncio
    async def test_refreshing_state_visible(self):
        source = FakeSource(delay=0.05)
        cache = self._cache(source)

        pending = asyncio.ensure_future(cache.get_rate("USD", "EUR"))
        await asyncio.sleep(0)
        assert cache.state("USD", "EUR") is RateState.REFRESHING
        await pending
        assert cache.state("USD", "EUR") is RateState.FRESH

    @pytest.mark.asyncio
    async def test_timeout_falls_back_to_stale(self):
        """Verify a refresh slower than the timeout uses the cached rate."""
        self.store.put("USD", "EUR", Decimal("0.9"), T0)
        source = FakeSource(delay=0.3)
        cache = self._cache(source, timeout=0.05)
        self.clock.now = T0 + timedelta(hours=25)

        lookup = await cache.get_rate("USD", "EUR")

        assert lookup.is_stale
        assert lookup.rate == Decimal("0.9")
        assert "timed out" in lookup.warning
        # Let the abandoned fetch complete before the loop closes
        await asyncio.sleep(0.4)

    @pytest.mark.asyncio
    async def test_same_currency_is_identity(self):
        source = FakeSource()
        lookup = await self._cache(source).get_rate("usd", "USD")
        assert lookup.rate == Decimal("1")
        assert source.calls == 0

    def test_invalid_settings_rejected(self):
        with pytest.raises(ValueError):
            ExchangeRateCache(FakeSource(), ttl=timedelta(0))
        with pytest.raises(ValueError):
            ExchangeRateCache(FakeSource(), timeout=0)


class TestEcbRateSource:
    """Test fetching and parsing the ECB daily feed."""

    def test_parse_rates(self):
        rates = parse_ecb_rates(ECB_XML)
        assert rates["EUR"] == Decimal("1")
        assert rates["USD"] == Decimal("1.1400")
        assert rates["JPY"] == Decimal("164.50")

    def test_parse_without_rates_fails(self):
        with pytest.raises(RateParseError):
            parse_ecb_rates("<html>maintenance</html>")

    def test_cross_rate(self):
        rates = {"EUR": Decimal("1"), "USD": Decimal("2"), "GBP": Decimal("0.8")}
        assert cross_rate(rates, "USD", "GBP") == Decimal("0.4")
        assert cross_rate(rates, "EUR", "USD") == Decimal("2")

    def test_cross_rate_unknown_currency(self):
        with pytest.raises(RateParseError, match="XYZ"):
            cross_rate({"EUR": Decimal("1")}, "EUR", "XYZ")

    @pytest.mark.asyncio
    async def test_fetch_through_client(self):
        """Verify rates are read from an HTTP response."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text=ECB_XML)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            rates = await EcbRateSource(client=client).fetch_rates()

        assert rates["GBP"] == Decimal("0.8420")

    @pytest.mark.asyncio
    async def test_http_error_is_network_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="unavailable")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(RateNetworkError):
                await EcbRateSource(client=client).fetch_rates()


class TestConvertSummary:
    """Test conversion of whole reports."""

    @pytest.mark.asyncio
    async def test_convert_summary(self):
        """Verify bucket costs and views are converted together."""
        cache = ExchangeRateCache(FakeSource(), clock=FakeClock(T0))

        converted = await convert_summary(_summary(Decimal("2")), "eur", cache)

        assert converted.currency == "EUR"
        assert converted.warning is None
        assert converted.summary.grand_total().cost == Decimal("1.0")
        data = converted.to_dict()
        assert data["currency"] == "EUR"
        assert data["by_date"][date(2025, 6, 9).isoformat()]["cost"] == data["total"]["cost"]
        assert data["exchange_rate"]["state"] == "fresh"

    @pytest.mark.asyncio
    async def test_original_summary_unchanged(self):
        summary = _summary(Decimal("2"))
        cache = ExchangeRateCache(FakeSource(), clock=FakeClock(T0))

        await convert_summary(summary, "GBP", cache)

        assert summary.currency == "USD"
        assert summary.grand_total().cost == Decimal("2")
        assert summary.conversations["s1"].cost == Decimal("2")

    @pytest.mark.asyncio
    async def test_conversation_costs_converted(self):
        """Verify conversation costs use the same rate as buckets."""
        cache = ExchangeRateCache(FakeSource(), clock=FakeClock(T0))

        converted = await convert_summary(_summary(Decimal("2")), "EUR", cache)

        conversation = converted.summary.conversations["s1"]
        assert conversation.cost == Decimal("1.0")
        assert conversation.cost == converted.summary.grand_total().cost
        assert converted.rate_info()["rate"] == "0.5"

    @pytest.mark.asyncio
    async def test_one_failed_currency_isolated(self):
        """Verify a failure for one currency leaves the others converted."""
        cache = ExchangeRateCache(FakeSource(), clock=FakeClock(T0))

        results = await convert_summary_many(_summary(Decimal("2")), ["EUR", "JPY", "GBP"], cache)

        assert isinstance(results["JPY"], RateUnavailableError)
        assert results["EUR"].summary.grand_total().cost == Decimal("1.0")
        assert results["GBP"].summary.grand_total().cost == Decimal("0.8")
