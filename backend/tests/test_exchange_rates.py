import asyncio
from decimal import Decimal

import httpx
import pytest

from conftest import FakeClock, FakeRateProvider, no_sleep
from services.exceptions import RateUnavailableError
from services.exchange_rates import ExchangeRateCache, HttpExchangeRateProvider


@pytest.mark.asyncio
async def test_concurrent_misses_share_one_upstream_fetch():
    provider = FakeRateProvider()
    provider.gate.clear()
    cache = ExchangeRateCache(provider, ttl_seconds=60, clock=FakeClock())

    tasks = [asyncio.create_task(cache.get_rate("EUR", "USD")) for _ in range(10)]
    await asyncio.sleep(0)
    provider.gate.set()
    results = await asyncio.gather(*tasks)

    assert provider.calls == 1
    assert cache.upstream_calls == 1
    assert len({r.rate for r in results}) == 1


@pytest.mark.asyncio
async def test_concurrent_waiters_all_receive_the_same_error():
    provider = FakeRateProvider()
    provider.fail = True
    provider.gate.clear()
    cache = ExchangeRateCache(provider, ttl_seconds=60, clock=FakeClock())

    tasks = [asyncio.create_task(cache.get_rate("EUR", "USD")) for _ in range(5)]
    await asyncio.sleep(0)
    provider.gate.set()
    results = await asyncio.gather(*tasks, return_exceptions=True)

    assert provider.calls == 1
    assert all(isinstance(r, RateUnavailableError) for r in results)


@pytest.mark.asyncio
async def test_rates_are_refetched_only_after_ttl():
    provider = FakeRateProvider()
    clock = FakeClock()
    cache = ExchangeRateCache(provider, ttl_seconds=60, clock=clock)

    await cache.get_rate("USD", "EUR")
    clock.advance(59)
    await cache.get_rate("USD", "EUR")
    # Every pair from one response is cached together
    await cache.get_rate("USD", "JPY")
    assert provider.calls == 1

    clock.advance(1)
    await cache.get_rate("USD", "EUR")
    assert provider.calls == 2


@pytest.mark.asyncio
async def test_same_currency_needs_no_provider():
    provider = FakeRateProvider()
    cache = ExchangeRateCache(provider)
    quote = await cache.get_rate("usd", "USD")
    assert quote.rate == Decimal("1")
    assert provider.calls == 0


@pytest.mark.asyncio
async def test_missing_target_currency_is_rate_unavailable():
    cache = ExchangeRateCache(FakeRateProvider(), clock=FakeClock())
    with pytest.raises(RateUnavailableError):
        await cache.get_rate("USD", "XYZ")


@pytest.mark.asyncio
async def test_unexpected_provider_errors_become_rate_unavailable():
    class Broken:
        async def get_rates(self, base_currency):
            raise ValueError("bad payload")

    cache = ExchangeRateCache(Broken())
    with pytest.raises(RateUnavailableError):
        await cache.get_rate("EUR", "USD")


@pytest.mark.asyncio
async def test_http_provider_retries_server_errors():
    responses = iter([
        httpx.Response(503),
        httpx.Response(502),
        httpx.Response(200, json={"base": "EUR", "rates": {"USD": 1.0834, "GBP": "0.85"}}),
    ])
    seen = []

    def handler(request):
        seen.append(str(request.url))
        return next(responses)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        provider = HttpExchangeRateProvider(
            "https://rates.test/latest/", max_attempts=3, backoff_seconds=0, client=client, sleep=no_sleep,
        )
        rates = await provider.get_rates("eur")

    assert rates == {"USD": Decimal("1.0834"), "GBP": Decimal("0.85")}
    assert seen == ["https://rates.test/latest/EUR"] * 3


@pytest.mark.asyncio
async def test_http_provider_gives_up_after_retry_budget():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        provider = HttpExchangeRateProvider(
            "https://rates.test/latest", max_attempts=2, backoff_seconds=0, client=client, sleep=no_sleep,
        )
        with pytest.raises(RateUnavailableError):
            await provider.get_rates("USD")

    assert len(calls) == 2


@pytest.mark.asyncio
async def test_http_provider_does_not_retry_client_errors():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(404, json={"error": "unsupported base"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        provider = HttpExchangeRateProvider(
            "https://rates.test/latest", max_attempts=3, backoff_seconds=0, client=client, sleep=no_sleep,
        )
        with pytest.raises(RateUnavailableError):
            await provider.get_rates("ABC")

    assert len(calls) == 1
