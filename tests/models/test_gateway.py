import asyncio

import pytest

from models.errors import ConfigError, GenerationErrorKind, ParseError, ProviderError, SchemaError
from models.gateway import GatewayConfig, GenerationGateway
from models.registry import ProviderRegistry
from models.schemas import GenerationRequest, GenerationResult

SCHEMA = {"type": "object", "properties": {"action": {"type": "string"}}}


class FakeAdapter:
    def __init__(self, provider, responses=None, *, model="fake-model", delay=0.0):
        self.provider = provider
        self.model = model
        self.responses = list(responses or [])
        self.calls = []
        self.delay = delay
        self.closed = False

    async def generate(self, request):
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.responses.pop(0) if self.responses else '{"action": "HOLD"}'
        if isinstance(outcome, Exception):
            raise outcome
        return GenerationResult(
            text=outcome,
            finish_reason="STOP",
            provider=self.provider,
            request_id=f"req_{len(self.calls)}",
            model=request.model or self.model,
        )

    async def aclose(self):
        self.closed = True


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _gateway(*adapters, clock=None, **config):
    registry = ProviderRegistry()
    for adapter in adapters:
        registry.register_factory(adapter.provider, lambda adapter=adapter: adapter)
    return GenerationGateway(registry, GatewayConfig(**config), clock=clock or FakeClock())


def _request(prompt="Analyse BTC", **overrides):
    return GenerationRequest(prompt=prompt, schema=SCHEMA, **overrides)


@pytest.mark.asyncio
async def test_cache_hit_returns_same_payload_with_new_request_id():
    gemini = FakeAdapter("gemini", ['{"action": "BUY"}'])
    gateway = _gateway(gemini)

    first = await gateway.generate(_request())
    second = await gateway.generate(_request())

    assert len(gemini.calls) == 1
    assert second.text == first.text
    assert second.cached is True
    assert second.request_id != first.request_id
    assert gateway.stats()["hits"] == 1
    assert gateway.stats()["misses"] == 1


@pytest.mark.asyncio
async def test_entry_expires_after_ttl():
    clock = FakeClock()
    gemini = FakeAdapter("gemini")
    gateway = _gateway(gemini, clock=clock, cache_ttl_seconds=300)

    await gateway.generate(_request())
    clock.now = 301
    await gateway.generate(_request())
    assert len(gemini.calls) == 2


@pytest.mark.asyncio
async def test_bypass_cache_always_calls_provider():
    gemini = FakeAdapter("gemini")
    gateway = _gateway(gemini)
    await gateway.generate(_request())
    await gateway.generate(_request(bypass_cache=True))
    assert len(gemini.calls) == 2


@pytest.mark.asyncio
async def test_concurrent_identical_misses_share_one_call():
    gemini = FakeAdapter("gemini", delay=0.01)
    gateway = _gateway(gemini)
    results = await asyncio.gather(*(gateway.generate(_request()) for _ in range(4)))
    assert len(gemini.calls) == 1
    assert len({result.text for result in results}) == 1


@pytest.mark.asyncio
async def test_fallback_result_is_cached():
    gemini = FakeAdapter("gemini", [ProviderError("boom", provider="gemini")])
    openrouter = FakeAdapter("openrouter", ['{"action": "SELL"}'])
    gateway = _gateway(gemini, openrouter)

    result = await gateway.generate(_request(model="gemini-pro"))
    again = await gateway.generate(_request(model="gemini-pro"))

    assert result.provider == "openrouter"
    assert openrouter.calls[0].model is None
    assert again.cached and again.text == '{"action": "SELL"}'
    assert gateway.stats()["fallbacks"] == 1


@pytest.mark.asyncio
async def test_failed_fallback_reraises_original_error():
    original = ProviderError("gemini quota", kind=GenerationErrorKind.RATE_LIMIT, provider="gemini", retry_after=3)
    gemini = FakeAdapter("gemini", [original])
    openrouter = FakeAdapter("openrouter", [ParseError("garbage", provider="openrouter")])
    gateway = _gateway(gemini, openrouter)

    with pytest.raises(ProviderError) as excinfo:
        await gateway.generate(_request())
    assert excinfo.value is original
    assert excinfo.value.is_rate_limit and excinfo.value.retry_after == 3
    assert gateway.stats()["errors"] == 1
    assert gateway.stats()["cache_size"] == 0


@pytest.mark.asyncio
async def test_no_fallback_when_hybrid_routing_disabled():
    gemini = FakeAdapter("gemini", [ProviderError("down", provider="gemini")])
    openrouter = FakeAdapter("openrouter")
    gateway = _gateway(gemini, openrouter, hybrid_routing=False)
    with pytest.raises(ProviderError):
        await gateway.generate(_request())
    assert openrouter.calls == []


@pytest.mark.asyncio
async def test_request_validation():
    gateway = _gateway(FakeAdapter("gemini"))
    with pytest.raises(SchemaError, match="Prompt is required"):
        await gateway.generate(_request(prompt="   "))
    with pytest.raises(SchemaError):
        await gateway.generate(GenerationRequest(prompt="x", schema={"type": "blob"}))
    with pytest.raises(ConfigError):
        await gateway.generate(_request(provider="mystery"))


@pytest.mark.asyncio
async def test_initialization_failure_is_not_cached():
    attempts = 0
    adapter = FakeAdapter("gemini")

    def factory():
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise ConfigError("GEMINI_API_KEY not configured", provider="gemini")
        return adapter

    registry = ProviderRegistry()
    registry.register_factory("gemini", factory)
    gateway = GenerationGateway(registry, GatewayConfig(hybrid_routing=False))

    with pytest.raises(ProviderError) as excinfo:
        await gateway.generate(_request())
    assert excinfo.value.kind is GenerationErrorKind.INITIALIZATION

    result = await gateway.generate(_request())
    assert result.provider == "gemini"
    assert attempts == 2


@pytest.mark.asyncio
async def test_concurrent_first_use_constructs_adapter_once():
    constructed = []

    def factory():
        adapter = FakeAdapter("gemini", delay=0.01)
        constructed.append(adapter)
        return adapter

    registry = ProviderRegistry()
    registry.register_factory("gemini", factory)
    adapters = await asyncio.gather(*(registry.acquire("gemini") for _ in range(5)))
    assert len(constructed) == 1
    assert all(adapter is constructed[0] for adapter in adapters)


@pytest.mark.asyncio
async def test_unconfigured_provider_is_a_config_error():
    registry = ProviderRegistry()
    with pytest.raises(ProviderError) as excinfo:
        await registry.acquire("openrouter")
    assert excinfo.value.kind is GenerationErrorKind.CONFIG


@pytest.mark.asyncio
async def test_sweep_reset_and_close():
    clock = FakeClock()
    gemini = FakeAdapter("gemini")
    gateway = _gateway(gemini, clock=clock, cache_ttl_seconds=10)
    await gateway.generate(_request("one"))
    await gateway.generate(_request("two"))
    clock.now = 11
    assert gateway.sweep() == 2

    await gateway.generate(_request("three"))
    gateway.reset()
    assert gateway.stats() == {"hits": 0, "misses": 0, "fallbacks": 0, "errors": 0, "cache_size": 0, "in_flight": 0}

    gateway.start_sweeper()
    await gateway.aclose()
    assert gemini.closed


def test_gateway_config_from_settings():
    config = GatewayConfig.from_settings(
        {"provider": "openrouter", "hybrid_routing": False, "cache_capacity": 5, "cache_ttl_seconds": 30}
    )
    assert config.default_provider == "openrouter"
    assert config.hybrid_routing is False
    assert config.cache_capacity == 5
    with pytest.raises(ConfigError):
        GatewayConfig(cache_capacity=0)


@pytest.mark.asyncio
async def test_timed_out_caller_does_not_cancel_joined_callers():
    gemini = FakeAdapter("gemini", ['{"action": "SELL"}'], delay=0.2)
    gateway = _gateway(gemini)

    impatient = asyncio.create_task(asyncio.wait_for(gateway.generate(_request()), 0.05))
    await asyncio.sleep(0)
    patient = asyncio.create_task(gateway.generate(_request()))

    with pytest.raises(asyncio.TimeoutError):
        await impatient
    result = await patient

    assert result.text == '{"action": "SELL"}'
    assert len(gemini.calls) == 1
    assert gateway.stats()["in_flight"] == 0
    # the shared call still filled the cache
    assert (await gateway.generate(_request())).cached is True
