"""
LedgerClose - Exchange Rate Service

Resolves exchange rates for a tenant:
- Redis cache, then the persisted spot rate for the date
- Named provider (ECB by default), persisted on success
- Manually entered rate as the fallback when the provider fails
- Throttled batch lookups and date-range sync
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Tuple

import httpx
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerclose.config import settings
from ledgerclose.models.fx import ExchangeRate, RateType
from ledgerclose.services.cache_service import CacheService, get_cache_service
from ledgerclose.utils.db_helpers import dialect_insert
from ledgerclose.utils.error_handling import ProviderError

logger = logging.getLogger(__name__)

ONE = Decimal("1")


# =============================================================================
# PROVIDERS
# =============================================================================

class ExchangeRateProvider(ABC):
    """A source of exchange rates."""

    name: str = "provider"

    @abstractmethod
    async def fetch_rate(self, from_currency: str, to_currency: str, rate_date: date) -> Decimal:
        """Return the rate converting one unit of from_currency into to_currency."""
        pass


class ECBProvider(ExchangeRateProvider):
    """
    ECB reference rates, served through the exchangerate.host API.

    ECB publishes everything against EUR, so a pair with no EUR leg is
    computed from two EUR quotes.
    """

    name = "ECB"

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or settings.ecb_api_url).rstrip("/")
        self.timeout = timeout or settings.fx_request_timeout_seconds

    async def _get_rates(self, rate_date: date, base: str, symbols: List[str]) -> Dict[str, Decimal]:
        url = f"{self.base_url}/{rate_date.isoformat()}"
        params = {"base": base, "symbols": ",".join(symbols)}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url, params=params)
        except httpx.TimeoutException as e:
            raise ProviderError(self.name, f"ECB request timed out for {base}/{','.join(symbols)}", e)
        except httpx.RequestError as e:
            raise ProviderError(self.name, f"ECB network error: {e}", e)

        if response.status_code != 200:
            raise ProviderError(self.name, f"ECB returned HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderError(self.name, "Invalid JSON response from ECB", e)

        rates = payload.get("rates") or {}
        result = {}
        for symbol in symbols:
            value = rates.get(symbol)
            if value is None:
                raise ProviderError(self.name, f"ECB has no {base}/{symbol} rate for {rate_date}")
            result[symbol] = Decimal(str(value))
        return result

    async def fetch_rate(self, from_currency: str, to_currency: str, rate_date: date) -> Decimal:
        if from_currency == to_currency:
            return ONE

        if from_currency == "EUR":
            rates = await self._get_rates(rate_date, "EUR", [to_currency])
            return rates[to_currency]

        if to_currency == "EUR":
            rates = await self._get_rates(rate_date, "EUR", [from_currency])
            eur_to_from = rates[from_currency]
            if eur_to_from == 0:
                raise ProviderError(self.name, f"ECB returned a zero EUR/{from_currency} rate")
            return ONE / eur_to_from

        # Cross rate through EUR
        rates = await self._get_rates(rate_date, "EUR", [from_currency, to_currency])
        if rates[from_currency] == 0:
            raise ProviderError(self.name, f"ECB returned a zero EUR/{from_currency} rate")
        return rates[to_currency] / rates[from_currency]


class OANDAProvider(ExchangeRateProvider):
    """OANDA exchange rates API (requires an API key)."""

    name = "OANDA"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.oanda_api_key
        self.base_url = (base_url or settings.oanda_api_url).rstrip("/")
        self.timeout = timeout or settings.fx_request_timeout_seconds

    async def fetch_rate(self, from_currency: str, to_currency: str, rate_date: date) -> Decimal:
        if from_currency == to_currency:
            return ONE
        if not self.api_key:
            raise ProviderError(self.name, "OANDA API key is not configured")

        url = f"{self.base_url}/rates/spot.json"
        params = {
            "base": from_currency,
            "quote": to_currency,
            "date_time": rate_date.isoformat(),
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url, params=params, headers=headers)
        except httpx.TimeoutException as e:
            raise ProviderError(self.name, f"OANDA request timed out for {from_currency}/{to_currency}", e)
        except httpx.RequestError as e:
            raise ProviderError(self.name, f"OANDA network error: {e}", e)

        if response.status_code != 200:
            raise ProviderError(self.name, f"OANDA returned HTTP {response.status_code}")

        try:
            quotes = response.json().get("quotes") or []
            return Decimal(str(quotes[0]["midpoint"]))
        except (ValueError, KeyError, IndexError, InvalidOperation) as e:
            raise ProviderError(self.name, f"OANDA returned no quote for {from_currency}/{to_currency}", e)


class ManualProvider(ExchangeRateProvider):
    """Rates keyed in by users and stored with source 'manual'."""

    name = "manual"

    def __init__(self, db: AsyncSession, tenant_id: uuid.UUID):
        self.db = db
        self.tenant_id = tenant_id

    async def fetch_rate(self, from_currency: str, to_currency: str, rate_date: date) -> Decimal:
        if from_currency == to_currency:
            return ONE
        result = await self.db.execute(
            select(ExchangeRate.rate)
            .where(and_(
                ExchangeRate.tenant_id == self.tenant_id,
                ExchangeRate.from_currency == from_currency,
                ExchangeRate.to_currency == to_currency,
                ExchangeRate.rate_date == rate_date,
                ExchangeRate.rate_type == RateType.SPOT,
                ExchangeRate.source == "manual",
            ))
            .limit(1)
        )
        rate = result.scalar_one_or_none()
        if rate is None:
            raise ProviderError(
                self.name,
                f"Manual rate not found: {from_currency} to {to_currency} for {rate_date}",
            )
        return Decimal(rate)


# =============================================================================
# SERVICE
# =============================================================================

class ExchangeRateService:
    """Service for exchange rate lookup, storage and sync."""

    def __init__(
        self,
        db: AsyncSession,
        providers: Optional[Dict[str, ExchangeRateProvider]] = None,
        cache: Optional[CacheService] = None,
    ):
        self.db = db
        if providers is None:
            providers = {"ECB": ECBProvider(), "OANDA": OANDAProvider()}
        self.providers = {name.upper(): provider for name, provider in providers.items()}
        self.cache = cache or get_cache_service()

    # =========================================================================
    # LOOKUP
    # =========================================================================

    async def get_stored_rate(
        self,
        tenant_id: uuid.UUID,
        from_currency: str,
        to_currency: str,
        rate_date: date,
        rate_type: RateType = RateType.SPOT,
    ) -> Optional[Decimal]:
        """Persisted rate for the exact date, any source."""
        result = await self.db.execute(
            select(ExchangeRate.rate)
            .where(and_(
                ExchangeRate.tenant_id == tenant_id,
                ExchangeRate.from_currency == from_currency,
                ExchangeRate.to_currency == to_currency,
                ExchangeRate.rate_date == rate_date,
                ExchangeRate.rate_type == rate_type,
            ))
            .limit(1)
        )
        rate = result.scalar_one_or_none()
        return Decimal(rate) if rate is not None else None

    async def get_exchange_rate(
        self,
        tenant_id: uuid.UUID,
        from_currency: str,
        to_currency: str,
        rate_date: Optional[date] = None,
        provider: Optional[str] = None,
        force_refresh: bool = False,
    ) -> Decimal:
        """
        Get the spot rate converting from_currency into to_currency.

        Same-currency pairs return 1 without touching storage or providers.
        Raises ProviderError when the provider and the manual fallback both fail.
        """
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        if from_currency == to_currency:
            return ONE

        if rate_date is None:
            rate_date = date.today()

        if not force_refresh:
            cached = await self.cache.get_fx_rate(tenant_id, from_currency, to_currency, rate_date)
            if cached is not None:
                logger.debug(f"Cache hit for FX rate {from_currency}/{to_currency} on {rate_date}")
                return cached

            stored = await self.get_stored_rate(tenant_id, from_currency, to_currency, rate_date)
            if stored is not None:
                await self.cache.set_fx_rate(tenant_id, from_currency, to_currency, rate_date, stored)
                return stored

        provider_name = (provider or settings.fx_default_provider).upper()
        rate_provider = self.providers.get(provider_name)

        logger.info(
            f"Fetching {from_currency}/{to_currency} for {rate_date} from {provider_name} "
            f"(tenant {tenant_id})"
        )

        try:
            if rate_provider is None:
                raise ProviderError(provider_name, f"Unknown exchange rate provider {provider_name}")
            rate = await rate_provider.fetch_rate(from_currency, to_currency, rate_date)
        except ProviderError as e:
            logger.warning(
                f"Provider {provider_name} failed for {from_currency}/{to_currency} "
                f"on {rate_date}: {e.message}; trying manual rate"
            )
            try:
                rate = await ManualProvider(self.db, tenant_id).fetch_rate(
                    from_currency, to_currency, rate_date
                )
            except ProviderError as manual_error:
                raise ProviderError(
                    provider_name,
                    f"No exchange rate available for {from_currency}/{to_currency} on {rate_date}",
                    original_error=manual_error,
                )
            await self.cache.set_fx_rate(tenant_id, from_currency, to_currency, rate_date, rate)
            return rate

        await self.store_exchange_rate(
            tenant_id=tenant_id,
            from_currency=from_currency,
            to_currency=to_currency,
            rate_date=rate_date,
            rate=rate,
            rate_type=RateType.SPOT,
            source=rate_provider.name,
        )
        await self.cache.set_fx_rate(tenant_id, from_currency, to_currency, rate_date, rate)
        return rate

    async def get_exchange_rates(
        self,
        tenant_id: uuid.UUID,
        pairs: List[Tuple[str, str, date]],
        provider: Optional[str] = None,
        force_refresh: bool = False,
    ) -> Dict[str, Decimal]:
        """
        Look up many (from, to, date) pairs in throttled batches.

        Returns rates keyed "FROM_TO_YYYY-MM-DD"; failed pairs are omitted.
        """
        rates: Dict[str, Decimal] = {}
        for batch_start, batch in self._batches(pairs):
            for from_currency, to_currency, rate_date in batch:
                key = f"{from_currency.upper()}_{to_currency.upper()}_{rate_date.isoformat()}"
                try:
                    rates[key] = await self.get_exchange_rate(
                        tenant_id, from_currency, to_currency, rate_date,
                        provider=provider, force_refresh=force_refresh,
                    )
                except ProviderError as e:
                    logger.error(f"Failed to fetch rate for {key}: {e.message}")
            if batch_start + settings.fx_sync_batch_size < len(pairs):
                await asyncio.sleep(settings.fx_sync_batch_delay_seconds)
        return rates

    async def sync_exchange_rates(
        self,
        tenant_id: uuid.UUID,
        base_currency: str,
        target_currencies: List[str],
        start_date: date,
        end_date: date,
        provider: Optional[str] = None,
    ) -> Dict[str, int]:
        """
        Fetch and store base→target rates for every day in the range.

        Pairs are processed sequentially in batches with a pause between
        batches. A failing pair is counted and skipped.
        """
        pairs: List[Tuple[str, str, date]] = []
        current = start_date
        while current <= end_date:
            for target in target_currencies:
                pairs.append((base_currency, target, current))
            current += timedelta(days=1)

        synced = 0
        failed = 0
        for batch_start, batch in self._batches(pairs):
            for from_currency, to_currency, rate_date in batch:
                try:
                    await self.get_exchange_rate(
                        tenant_id, from_currency, to_currency, rate_date, provider=provider,
                    )
                    synced += 1
                except ProviderError as e:
                    logger.error(
                        f"Failed to sync {from_currency}/{to_currency} for {rate_date}: {e.message}"
                    )
                    failed += 1
            if batch_start + settings.fx_sync_batch_size < len(pairs):
                await asyncio.sleep(settings.fx_sync_batch_delay_seconds)

        logger.info(
            f"Exchange rate sync completed for tenant {tenant_id}: "
            f"{base_currency}->{','.join(target_currencies)} {start_date}..{end_date}, "
            f"synced={synced}, failed={failed}"
        )
        return {"synced": synced, "failed": failed}

    @staticmethod
    def _batches(items: List[Any]):
        size = settings.fx_sync_batch_size
        for i in range(0, len(items), size):
            yield i, items[i:i + size]

    # =========================================================================
    # STORAGE
    # =========================================================================

    async def store_exchange_rate(
        self,
        tenant_id: uuid.UUID,
        from_currency: str,
        to_currency: str,
        rate_date: date,
        rate: Decimal,
        rate_type: RateType = RateType.SPOT,
        source: str = "manual",
    ) -> None:
        """Insert or update the rate for (tenant, pair, date, rate type)."""
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        stmt = dialect_insert(self.db, ExchangeRate.__table__).values(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            from_currency=from_currency,
            to_currency=to_currency,
            rate_date=rate_date,
            rate=Decimal(rate),
            rate_type=rate_type,
            source=source,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id", "from_currency", "to_currency", "rate_date", "rate_type"],
            set_={"rate": stmt.excluded.rate, "source": stmt.excluded.source},
        )
        await self.db.execute(stmt)
        await self.db.commit()
        await self.cache.invalidate_fx_rate(tenant_id, from_currency, to_currency, rate_date)

    async def convert_amount(
        self,
        tenant_id: uuid.UUID,
        amount: Decimal,
        from_currency: str,
        to_currency: str,
        rate_date: Optional[date] = None,
    ) -> Dict[str, Any]:
        """Convert an amount at the spot rate for the date."""
        rate = await self.get_exchange_rate(tenant_id, from_currency, to_currency, rate_date)
        converted = (Decimal(amount) * rate).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        return {
            "original_amount": Decimal(amount),
            "from_currency": from_currency.upper(),
            "to_currency": to_currency.upper(),
            "exchange_rate": rate,
            "converted_amount": converted,
            "rate_date": rate_date or date.today(),
        }
