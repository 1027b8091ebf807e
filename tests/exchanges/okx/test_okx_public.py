import httpx
import pytest

from exchanges.okx.public import OkxClientError, OkxPublicClient


def _client(handler):
    return OkxPublicClient(base_url="https://okx.test", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_fetch_candles_passes_query():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        return httpx.Response(
            200,
            json={"code": "0", "msg": "", "data": [["1700003600000", "101", "102", "100", "101.5", "12"]]},
        )

    client = _client(handler)
    candles = await client.fetch_candles("BTC-USDT-SWAP", bar="1H", limit=5)
    await client.aclose()
    assert seen == {"path": "/api/v5/market/candles", "params": {"instId": "BTC-USDT-SWAP", "bar": "1H", "limit": "5"}}
    assert candles == [["1700003600000", "101", "102", "100", "101.5", "12"]]


@pytest.mark.asyncio
async def test_fetch_funding_rate_and_server_time():
    def handler(request):
        if request.url.path == "/api/v5/public/funding-rate":
            return httpx.Response(200, json={"code": "0", "data": [{"instId": "ETH-USDT-SWAP", "fundingRate": "-0.00042"}]})
        return httpx.Response(200, json={"code": "0", "data": [{"ts": "1700000000123"}]})

    client = _client(handler)
    assert await client.fetch_funding_rate("ETH-USDT-SWAP") == pytest.approx(-0.00042)
    assert await client.fetch_server_time() == 1_700_000_000_123
    await client.aclose()


@pytest.mark.asyncio
async def test_error_code_raises():
    def handler(request):
        return httpx.Response(200, json={"code": "51001", "msg": "Instrument ID does not exist", "data": []})

    client = _client(handler)
    with pytest.raises(OkxClientError, match="OKX error 51001: Instrument ID does not exist") as excinfo:
        await client.fetch_funding_rate("NOPE-USDT-SWAP")
    assert excinfo.value.payload["code"] == "51001"


@pytest.mark.asyncio
async def test_empty_data_raises():
    client = _client(lambda request: httpx.Response(200, json={"code": "0", "data": []}))
    with pytest.raises(OkxClientError, match="empty data"):
        await client.fetch_server_time()


@pytest.mark.asyncio
async def test_invalid_funding_rate_raises():
    client = _client(lambda request: httpx.Response(200, json={"code": "0", "data": [{"fundingRate": "n/a"}]}))
    with pytest.raises(OkxClientError, match="Invalid funding rate for BTC-USDT-SWAP"):
        await client.fetch_funding_rate("BTC-USDT-SWAP")


@pytest.mark.asyncio
async def test_http_error_propagates():
    client = _client(lambda request: httpx.Response(503, json={"code": "50001"}))
    with pytest.raises(httpx.HTTPStatusError):
        await client.fetch_candles("BTC-USDT-SWAP")


@pytest.mark.asyncio
async def test_aclose_is_idempotent():
    client = _client(lambda request: httpx.Response(200, json={"code": "0", "data": []}))
    assert await client.fetch_candles("BTC-USDT-SWAP") == []
    await client.aclose()
    await client.aclose()
