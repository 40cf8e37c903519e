"""
LedgerClose - Cache Service

Redis-based read cache. Provides caching for:
- Ledger entry listings (per tenant)
- Account balances (per tenant)
- Exchange rates (per tenant)

The ledger never depends on the cache: every Redis failure is logged
and treated as a miss.
"""

import hashlib
import json
import logging
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional

import redis.asyncio as redis

from ledgerclose.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()


class CacheService:
    """Redis-based caching service."""

    # Cache key prefixes
    PREFIX_LEDGER_ENTRIES = "ledger:entries"
    PREFIX_BALANCE = "ledger:balance"
    PREFIX_FX_RATE = "fx:rate"

    def __init__(self, redis_url: Optional[str] = None, enabled: Optional[bool] = None):
        self.redis_url = redis_url or settings.redis_url
        self.enabled = settings.cache_enabled if enabled is None else enabled
        self._client: Optional[redis.Redis] = None

    async def get_client(self) -> redis.Redis:
        """Get or create Redis client."""
        if self._client is None:
            self._client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    async def close(self):
        """Close Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # =========================================================================
    # GENERIC CACHE OPERATIONS
    # =========================================================================

    async def get(self, key: str) -> Optional[str]:
        """Get a value from cache."""
        if not self.enabled:
            return None
        try:
            client = await self.get_client()
            return await client.get(key)
        except Exception as e:
            logger.warning(f"Cache get failed for {key}: {e}")
            return None

    async def set(
        self,
        key: str,
        value: str,
        ttl: Optional[int] = None,
    ) -> bool:
        """Set a value in cache with optional TTL."""
        if not self.enabled:
            return False
        try:
            client = await self.get_client()
            if ttl:
                await client.setex(key, ttl, value)
            else:
                await client.set(key, value)
            return True
        except Exception as e:
            logger.warning(f"Cache set failed for {key}: {e}")
            return False

    async def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a pattern."""
        if not self.enabled:
            return 0
        try:
            client = await self.get_client()
            keys = []
            async for key in client.scan_iter(match=pattern):
                keys.append(key)
            if keys:
                return await client.delete(*keys)
            return 0
        except Exception as e:
            logger.warning(f"Cache delete_pattern failed for {pattern}: {e}")
            return 0

    async def get_json(self, key: str) -> Optional[Dict[str, Any]]:
        """Get a JSON value from cache."""
        value = await self.get(key)
        if value is not None:
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                logger.warning(f"Invalid JSON in cache for {key}")
        return None

    async def set_json(
        self,
        key: str,
        value: Dict[str, Any],
        ttl: Optional[int] = None,
    ) -> bool:
        """Set a JSON value in cache."""
        try:
            return await self.set(key, json.dumps(value, default=str), ttl)
        except (TypeError, ValueError) as e:
            logger.warning(f"Cache set_json failed for {key}: {e}")
            return False

    # =========================================================================
    # LEDGER CACHING
    # =========================================================================

    @staticmethod
    def params_hash(params: Dict[str, Any]) -> str:
        """Stable short hash of query parameters."""
        payload = json.dumps(params, sort_keys=True, default=str)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]

    def ledger_entries_key(self, tenant_id: Any, params: Dict[str, Any]) -> str:
        return f"{self.PREFIX_LEDGER_ENTRIES}:{tenant_id}:{self.params_hash(params)}"

    def balance_key(self, tenant_id: Any, account_code: str, as_of_date: Optional[date]) -> str:
        as_of = as_of_date.isoformat() if as_of_date is not None else "latest"
        return f"{self.PREFIX_BALANCE}:{tenant_id}:{account_code}:{as_of}"

    async def invalidate_ledger(self, tenant_id: Any) -> int:
        """Drop every cached entry listing and balance for a tenant."""
        count = await self.delete_pattern(f"{self.PREFIX_LEDGER_ENTRIES}:{tenant_id}:*")
        count += await self.delete_pattern(f"{self.PREFIX_BALANCE}:{tenant_id}:*")
        if count:
            logger.debug(f"Invalidated {count} ledger cache keys for tenant {tenant_id}")
        return count

    # =========================================================================
    # FX RATE CACHING
    # =========================================================================

    def _fx_rate_key(
        self,
        tenant_id: Any,
        from_currency: str,
        to_currency: str,
        rate_date: date,
    ) -> str:
        """Generate cache key for FX rate."""
        return f"{self.PREFIX_FX_RATE}:{tenant_id}:{from_currency}:{to_currency}:{rate_date.isoformat()}"

    async def get_fx_rate(
        self,
        tenant_id: Any,
        from_currency: str,
        to_currency: str,
        rate_date: date,
    ) -> Optional[Decimal]:
        """Get cached FX rate."""
        value = await self.get(self._fx_rate_key(tenant_id, from_currency, to_currency, rate_date))
        if value is not None:
            try:
                return Decimal(value)
            except ArithmeticError:
                logger.warning(f"Invalid cached FX rate for {from_currency}/{to_currency}: {value}")
        return None

    async def set_fx_rate(
        self,
        tenant_id: Any,
        from_currency: str,
        to_currency: str,
        rate_date: date,
        rate: Decimal,
        ttl: Optional[int] = None,
    ) -> bool:
        """Cache an FX rate."""
        key = self._fx_rate_key(tenant_id, from_currency, to_currency, rate_date)
        return await self.set(key, str(rate), ttl or settings.cache_ttl_fx_rate)

    async def invalidate_fx_rate(
        self,
        tenant_id: Any,
        from_currency: str,
        to_currency: str,
        rate_date: date,
    ) -> int:
        return await self.delete_pattern(self._fx_rate_key(tenant_id, from_currency, to_currency, rate_date))


# =========================================================================
# GLOBAL CACHE INSTANCE
# =========================================================================

_cache_service: Optional[CacheService] = None


def get_cache_service() -> CacheService:
    """Get global cache service instance."""
    global _cache_service
    if _cache_service is None:
        _cache_service = CacheService()
    return _cache_service


async def close_cache_service():
    """Close the global cache connection."""
    global _cache_service
    if _cache_service is not None:
        await _cache_service.close()
        _cache_service = None
