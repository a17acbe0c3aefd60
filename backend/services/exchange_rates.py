"""
Exchange rates - HTTP provider plus a shared TTL cache.

The cache is shared by every worker in the process. Concurrent misses for
the same base currency coalesce into a single upstream request
(single-flight); every waiter receives the same rates or the same error.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, Optional, Protocol, Tuple

import httpx

from services.exceptions import RateUnavailableError
from services.retry import retry_async

logger = logging.getLogger("ExpenseFlow.ExchangeRates")


class ExchangeRateProvider(Protocol):
    async def get_rates(self, base_currency: str) -> Dict[str, Decimal]:
        """Current rates relative to ``base_currency``: {currency: rate}."""
        ...


class _UpstreamUnavailable(Exception):
    """Retryable provider failure (5xx)."""


class HttpExchangeRateProvider:
    """
    Third-party rates API returning ``{"rates": {"EUR": 0.92, ...}}`` for
    ``GET {api_url}/{base}``. Transport errors, timeouts and 5xx responses
    are retried with bounded exponential backoff.
    """

    def __init__(
        self,
        api_url: str,
        timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        backoff_max_seconds: float = 8.0,
        client: Optional[httpx.AsyncClient] = None,
        sleep=asyncio.sleep,
    ):
        self.api_url = api_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self._client = client
        self._sleep = sleep

    async def get_rates(self, base_currency: str) -> Dict[str, Decimal]:
        base = base_currency.upper()
        try:
            data = await retry_async(
                lambda: self._fetch(base),
                attempts=self.max_attempts,
                base_delay=self.backoff_seconds,
                max_delay=self.backoff_max_seconds,
                retry_on=(httpx.TransportError, _UpstreamUnavailable),
                label=f"rate fetch {base}",
                sleep=self._sleep,
            )
        except (httpx.TransportError, _UpstreamUnavailable) as e:
            raise RateUnavailableError(
                f"Exchange rate provider unavailable for base {base}: {e}",
                from_currency=base,
            ) from e

        rates = data.get("rates") if isinstance(data, dict) else None
        if not isinstance(rates, dict):
            raise RateUnavailableError(f"Malformed rate response for base {base}", from_currency=base)

        parsed: Dict[str, Decimal] = {}
        for code, value in rates.items():
            try:
                rate = Decimal(str(value))
            except (InvalidOperation, ValueError):
                logger.warning(f"⚠️ Skipping unparseable rate {code}={value!r}")
                continue
            if rate > 0:
                parsed[code.upper()] = rate
        return parsed

    async def _fetch(self, base: str) -> dict:
        url = f"{self.api_url}/{base}"
        if self._client is not None:
            resp = await self._client.get(url, timeout=self.timeout_seconds)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                resp = await client.get(url)

        if resp.status_code >= 500:
            raise _UpstreamUnavailable(f"HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise RateUnavailableError(
                f"Rate provider rejected base {base}: HTTP {resp.status_code}",
                from_currency=base,
            )
        return resp.json()


class CachedRate:
    """A rate for one (from, to) pair with its fetch time."""

    def __init__(self, rate: Decimal, fetched_at: datetime, expires_at: float):
        self.rate = rate
        self.fetched_at = fetched_at
        self.expires_at = expires_at  # monotonic deadline


class ExchangeRateCache:
    """Shared rate cache with TTL expiry and single-flight misses."""

    def __init__(
        self,
        provider: ExchangeRateProvider,
        ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._rates: Dict[Tuple[str, str], CachedRate] = {}
        self._in_flight: Dict[str, asyncio.Future] = {}
        self.upstream_calls = 0

    async def get_rate(self, from_currency: str, to_currency: str) -> CachedRate:
        src, dst = from_currency.upper(), to_currency.upper()
        if src == dst:
            return CachedRate(Decimal("1"), datetime.now(timezone.utc), float("inf"))

        cached = self._fresh(src, dst)
        if cached is not None:
            return cached

        logger.info(f"💱 Rate cache miss {src}->{dst}")
        try:
            await self._fetch_coalesced(src)
        except RateUnavailableError:
            raise
        except Exception as e:
            raise RateUnavailableError(
                f"Exchange rate provider failed for {src}->{dst}: {e}",
                from_currency=src,
                to_currency=dst,
            ) from e

        cached = self._fresh(src, dst)
        if cached is None:
            raise RateUnavailableError(
                f"No rate for {src}->{dst} in provider response",
                from_currency=src,
                to_currency=dst,
            )
        return cached

    def invalidate(self, from_currency: Optional[str] = None):
        if from_currency is None:
            self._rates.clear()
            return
        src = from_currency.upper()
        for pair in [p for p in self._rates if p[0] == src]:
            del self._rates[pair]

    def _fresh(self, src: str, dst: str) -> Optional[CachedRate]:
        entry = self._rates.get((src, dst))
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            return None
        return entry

    async def _fetch_coalesced(self, base: str):
        future = self._in_flight.get(base)
        if future is None:
            future = asyncio.ensure_future(self._fetch_and_store(base))
            self._in_flight[base] = future

            def _clear(done, base=base):
                if self._in_flight.get(base) is done:
                    del self._in_flight[base]

            future.add_done_callback(_clear)
        else:
            logger.debug(f"Joining in-flight rate fetch for {base}")
        # Shielded so one cancelled waiter does not cancel the shared fetch
        await asyncio.shield(future)

    async def _fetch_and_store(self, base: str):
        self.upstream_calls += 1
        rates = await self.provider.get_rates(base)
        fetched_at = datetime.now(timezone.utc)
        expires_at = self._clock() + self.ttl_seconds
        for code, rate in rates.items():
            self._rates[(base, code.upper())] = CachedRate(Decimal(str(rate)), fetched_at, expires_at)
        logger.info(f"💱 Cached {len(rates)} rates for base {base} (ttl {self.ttl_seconds:.0f}s)")
