"""Tests for TON price quotes."""

import httpx
import pytest

from pricing import PriceService, PriceUnavailableError, format_price_message


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def service_with(handler, clock=None):
    transport = httpx.MockTransport(handler)
    return PriceService(
        url="https://prices.test/simple/price",
        cache_ttl=300,
        fallback_price=2.5,
        client=httpx.AsyncClient(transport=transport),
        clock=clock or FakeClock(),
    )


def quote(price):
    return httpx.Response(200, json={"the-open-network": {"usd": price}})


class TestPriceService:
    @pytest.mark.asyncio
    async def test_fetches_ton_price(self):
        requests = []

        def handler(request):
            requests.append(request)
            return quote(5.0)

        service = service_with(handler)

        assert await service.get_ton_price_usd() == 5.0
        assert requests[0].url.params["ids"] == "the-open-network"
        assert requests[0].url.params["vs_currencies"] == "usd"

    @pytest.mark.asyncio
    async def test_price_cached_until_ttl(self):
        prices = iter([4.0, 8.0])
        clock = FakeClock()
        service = service_with(lambda request: quote(next(prices)), clock)

        assert await service.get_ton_price_usd() == 4.0
        clock.now += 299
        assert await service.get_ton_price_usd() == 4.0
        clock.now += 1
        assert await service.get_ton_price_usd() == 8.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(429, json={"status": "rate limited"}),
            httpx.Response(200, json={}),
            httpx.Response(200, text="not json"),
            quote(0),
            quote(-1.5),
        ],
        ids=["http-error", "missing-coin", "not-json", "zero", "negative"],
    )
    async def test_unusable_quote(self, response):
        service = service_with(lambda request: response)

        with pytest.raises(PriceUnavailableError):
            await service.get_ton_price_usd()

    @pytest.mark.asyncio
    async def test_amount_for_usd(self):
        service = service_with(lambda request: quote(4.0))

        assert await service.get_ton_amount_for_usd(1.0) == pytest.approx(0.25)

    @pytest.mark.asyncio
    async def test_amount_uses_fallback_price(self):
        service = service_with(lambda request: httpx.Response(503))

        assert await service.get_ton_amount_for_usd(1.0) == pytest.approx(0.4)

    @pytest.mark.asyncio
    async def test_transport_failure_uses_fallback_price(self):
        def handler(request):
            raise httpx.ConnectError("no route to host")

        service = service_with(handler)

        assert await service.get_ton_amount_for_usd(5.0) == pytest.approx(2.0)


def test_price_message_lists_both_rails():
    text = format_price_message(0.4, 1.0)

    assert "0.4000 TON" in text
    assert "1 USDT" in text
