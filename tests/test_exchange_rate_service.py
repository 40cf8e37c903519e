"""
LedgerClose - Exchange Rate Service Tests

Tests for rate lookup, provider fallback, throttled sync and the
ECB provider's EUR routing. HTTP calls are mocked with respx.
"""

import uuid
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest
import respx

from ledgerclose.config import settings
from ledgerclose.models.fx import RateType
from ledgerclose.services import exchange_rate_service
from ledgerclose.services.exchange_rate_service import (
    ECBProvider,
    ExchangeRateProvider,
    ExchangeRateService,
    ManualProvider,
)
from ledgerclose.utils.error_handling import ProviderError


ECB_URL = "https://ecb.test"
RATE_DATE = date(2026, 10, 16)


class FixedProvider(ExchangeRateProvider):
    """Provider returning a fixed rate, failing for the listed currencies."""

    name = "FIXED"

    def __init__(self, rate="1.25", failing=()):
        self.rate = Decimal(rate)
        self.failing = set(failing)
        self.calls = []

    async def fetch_rate(self, from_currency, to_currency, rate_date):
        self.calls.append((from_currency, to_currency, rate_date))
        if to_currency in self.failing or from_currency in self.failing:
            raise ProviderError(self.name, f"No rate for {from_currency}/{to_currency}")
        return self.rate


class TestECBProvider:
    """Test ECB rate fetching and EUR cross rates."""

    @pytest.mark.asyncio
    async def test_eur_base_rate(self):
        with respx.mock(base_url=ECB_URL) as router:
            route = router.get("/2026-10-16").mock(
                return_value=httpx.Response(200, json={"base": "EUR", "rates": {"USD": 1.0842}})
            )
            rate = await ECBProvider(base_url=ECB_URL).fetch_rate("EUR", "USD", RATE_DATE)

        assert rate == Decimal("1.0842")
        assert route.called
        assert route.calls.last.request.url.params["symbols"] == "USD"

    @pytest.mark.asyncio
    async def test_rate_into_eur_is_inverted(self):
        with respx.mock(base_url=ECB_URL) as router:
            router.get("/2026-10-16").mock(
                return_value=httpx.Response(200, json={"rates": {"GBP": 0.8}})
            )
            rate = await ECBProvider(base_url=ECB_URL).fetch_rate("GBP", "EUR", RATE_DATE)

        assert rate == Decimal("1.25")

    @pytest.mark.asyncio
    async def test_cross_rate_routes_through_eur(self):
        with respx.mock(base_url=ECB_URL) as router:
            route = router.get("/2026-10-16").mock(
                return_value=httpx.Response(200, json={"rates": {"GBP": 0.86, "USD": 1.08}})
            )
            rate = await ECBProvider(base_url=ECB_URL).fetch_rate("GBP", "USD", RATE_DATE)

        assert rate == Decimal("1.08") / Decimal("0.86")
        assert route.calls.last.request.url.params["base"] == "EUR"

    @pytest.mark.asyncio
    async def test_http_error_raises_provider_error(self):
        with respx.mock(base_url=ECB_URL) as router:
            router.get("/2026-10-16").mock(return_value=httpx.Response(503))
            with pytest.raises(ProviderError):
                await ECBProvider(base_url=ECB_URL).fetch_rate("EUR", "USD", RATE_DATE)

    @pytest.mark.asyncio
    async def test_missing_symbol_raises_provider_error(self):
        with respx.mock(base_url=ECB_URL) as router:
            router.get("/2026-10-16").mock(return_value=httpx.Response(200, json={"rates": {}}))
            with pytest.raises(ProviderError):
                await ECBProvider(base_url=ECB_URL).fetch_rate("EUR", "JPY", RATE_DATE)

    @pytest.mark.asyncio
    async def test_network_error_raises_provider_error(self):
        with respx.mock(base_url=ECB_URL) as router:
            router.get("/2026-10-16").mock(side_effect=httpx.ConnectError("connection refused"))
            with pytest.raises(ProviderError):
                await ECBProvider(base_url=ECB_URL).fetch_rate("EUR", "USD", RATE_DATE)


class TestGetExchangeRate:
    """Test the lookup order: stored rate, provider, manual fallback."""

    @pytest.mark.asyncio
    async def test_same_currency_is_one(self, db_session, tenant_id, cache):
        provider = FixedProvider()
        service = ExchangeRateService(db_session, providers={"ECB": provider}, cache=cache)

        assert await service.get_exchange_rate(tenant_id, "gbp", "GBP", RATE_DATE) == Decimal("1")
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_fetched_rate_is_persisted(self, db_session, tenant_id, cache):
        with respx.mock(base_url=ECB_URL) as router:
            router.get("/2026-10-16").mock(
                return_value=httpx.Response(200, json={"rates": {"USD": 1.0842}})
            )
            service = ExchangeRateService(
                db_session, providers={"ECB": ECBProvider(base_url=ECB_URL)}, cache=cache,
            )
            rate = await service.get_exchange_rate(tenant_id, "EUR", "USD", RATE_DATE)

        assert rate == Decimal("1.0842")
        stored = await service.get_stored_rate(tenant_id, "EUR", "USD", RATE_DATE)
        assert stored == Decimal("1.0842")

    @pytest.mark.asyncio
    async def test_stored_rate_skips_provider(self, db_session, tenant_id, cache):
        provider = FixedProvider(rate="9.99")
        service = ExchangeRateService(db_session, providers={"ECB": provider}, cache=cache)
        await service.store_exchange_rate(tenant_id, "GBP", "EUR", RATE_DATE, Decimal("1.17"), source="manual")

        rate = await service.get_exchange_rate(tenant_id, "GBP", "EUR", RATE_DATE)

        assert rate == Decimal("1.17")
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_force_refresh_goes_to_provider(self, db_session, tenant_id, cache):
        provider = FixedProvider(rate="1.19")
        service = ExchangeRateService(db_session, providers={"ECB": provider}, cache=cache)
        await service.store_exchange_rate(tenant_id, "GBP", "EUR", RATE_DATE, Decimal("1.17"), source="manual")

        rate = await service.get_exchange_rate(tenant_id, "GBP", "EUR", RATE_DATE, force_refresh=True)

        assert rate == Decimal("1.19")
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_provider_failure_falls_back_to_manual_rate(self, db_session, tenant_id, cache):
        service = ExchangeRateService(
            db_session, providers={"ECB": FixedProvider(failing={"EUR"})}, cache=cache,
        )
        await service.store_exchange_rate(tenant_id, "GBP", "EUR", RATE_DATE, Decimal("1.16"), source="manual")

        rate = await service.get_exchange_rate(tenant_id, "GBP", "EUR", RATE_DATE, force_refresh=True)

        assert rate == Decimal("1.16")

    @pytest.mark.asyncio
    async def test_all_providers_failing_raises(self, db_session, tenant_id, cache):
        service = ExchangeRateService(
            db_session, providers={"ECB": FixedProvider(failing={"EUR"})}, cache=cache,
        )

        with pytest.raises(ProviderError):
            await service.get_exchange_rate(tenant_id, "GBP", "EUR", RATE_DATE)

    @pytest.mark.asyncio
    async def test_unknown_provider_uses_manual_rate(self, db_session, tenant_id, cache):
        service = ExchangeRateService(db_session, providers={"ECB": FixedProvider()}, cache=cache)
        await service.store_exchange_rate(tenant_id, "USD", "GBP", RATE_DATE, Decimal("0.79"), source="manual")

        rate = await service.get_exchange_rate(
            tenant_id, "USD", "GBP", RATE_DATE, provider="NOPE", force_refresh=True,
        )

        assert rate == Decimal("0.79")

    @pytest.mark.asyncio
    async def test_manual_rates_are_tenant_scoped(self, db_session, tenant_id, cache):
        service = ExchangeRateService(db_session, providers={"ECB": FixedProvider()}, cache=cache)
        await service.store_exchange_rate(uuid.uuid4(), "USD", "GBP", RATE_DATE, Decimal("0.79"), source="manual")

        with pytest.raises(ProviderError):
            await ManualProvider(db_session, tenant_id).fetch_rate("USD", "GBP", RATE_DATE)

    @pytest.mark.asyncio
    async def test_store_replaces_rate_for_same_key(self, db_session, tenant_id, cache):
        service = ExchangeRateService(db_session, providers={}, cache=cache)
        await service.store_exchange_rate(tenant_id, "GBP", "USD", RATE_DATE, Decimal("1.30"))
        await service.store_exchange_rate(tenant_id, "GBP", "USD", RATE_DATE, Decimal("1.31"))

        assert await service.get_stored_rate(tenant_id, "GBP", "USD", RATE_DATE) == Decimal("1.31")
        assert await service.get_stored_rate(
            tenant_id, "GBP", "USD", RATE_DATE, RateType.AVERAGE,
        ) is None


class TestBatchAndSync:
    """Test batch lookups and date-range sync."""

    @pytest.mark.asyncio
    async def test_batch_lookup_omits_failed_pairs(self, db_session, tenant_id, cache):
        service = ExchangeRateService(
            db_session, providers={"ECB": FixedProvider(failing={"XXX"})}, cache=cache,
        )

        rates = await service.get_exchange_rates(tenant_id, [
            ("GBP", "EUR", RATE_DATE),
            ("GBP", "XXX", RATE_DATE),
            ("EUR", "EUR", RATE_DATE),
        ])

        assert rates == {
            "GBP_EUR_2026-10-16": Decimal("1.25"),
            "EUR_EUR_2026-10-16": Decimal("1"),
        }

    @pytest.mark.asyncio
    async def test_sync_counts_synced_and_failed(self, db_session, tenant_id, cache):
        provider = FixedProvider(failing={"XXX"})
        service = ExchangeRateService(db_session, providers={"ECB": provider}, cache=cache)

        result = await service.sync_exchange_rates(
            tenant_id, "GBP", ["EUR", "XXX"], date(2026, 10, 15), date(2026, 10, 16),
        )

        assert result == {"synced": 2, "failed": 2}
        assert await service.get_stored_rate(tenant_id, "GBP", "EUR", date(2026, 10, 15)) == Decimal("1.25")

    @pytest.mark.asyncio
    async def test_sync_pauses_between_batches(self, db_session, tenant_id, cache, monkeypatch):
        sleep = AsyncMock()
        monkeypatch.setattr(exchange_rate_service.asyncio, "sleep", sleep)
        monkeypatch.setattr(settings, "fx_sync_batch_size", 2)
        service = ExchangeRateService(db_session, providers={"ECB": FixedProvider()}, cache=cache)

        result = await service.sync_exchange_rates(
            tenant_id, "GBP", ["EUR", "USD", "JPY"], RATE_DATE, RATE_DATE,
        )

        assert result["synced"] == 3
        sleep.assert_any_await(settings.fx_sync_batch_delay_seconds)

    @pytest.mark.asyncio
    async def test_convert_amount(self, db_session, tenant_id, cache):
        service = ExchangeRateService(db_session, providers={"ECB": FixedProvider(rate="1.2345")}, cache=cache)

        result = await service.convert_amount(tenant_id, Decimal("100.00"), "GBP", "EUR", RATE_DATE)

        assert result["converted_amount"] == Decimal("123.45")
        assert result["exchange_rate"] == Decimal("1.2345")
