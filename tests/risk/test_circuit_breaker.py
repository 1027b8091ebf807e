import asyncio

import pytest
from flaky import flaky

from models.errors import ConfigError
from risk.circuit_breaker import CircuitBreakerConfig, MarketCircuitBreaker
from risk.schemas import RiskLevel

HOUR_MS = 3_600_000


def _candles(start: float, end: float, count: int = 5):
    """Newest-first OHLCV rows moving linearly from `start` to `end`."""
    rows = []
    for i in range(count):
        price = start + (end - start) * i / (count - 1)
        ts = 1_700_000_000_000 + i * HOUR_MS
        rows.append([str(ts), str(price), str(price), str(price), str(price), "10"])
    return list(reversed(rows))


class FakeProbe:
    name = "fake"

    def __init__(self, *, end=99_000.0, funding=0.0001, candles=None, server_error=None, delay=0.0):
        self.candles = candles if candles is not None else _candles(100_000.0, end)
        self.funding = funding
        self.server_error = server_error
        self.delay = delay
        self.candle_calls = 0
        self.funding_calls = 0
        self.server_time_calls = 0
        self.closed = False

    async def fetch_candles(self, instrument_id, bar="1H", limit=5):
        self.candle_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(self.candles, Exception):
            raise self.candles
        return self.candles

    async def fetch_funding_rate(self, instrument_id):
        self.funding_calls += 1
        if isinstance(self.funding, Exception):
            raise self.funding
        return self.funding

    async def fetch_server_time(self):
        self.server_time_calls += 1
        if self.server_error is not None:
            raise self.server_error
        return 1_700_000_000_000

    async def aclose(self):
        self.closed = True


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _breaker(probe, clock=None, timer=None, **config):
    kwargs = {"clock": clock or FakeClock()}
    if timer is not None:
        kwargs["timer"] = timer
    return MarketCircuitBreaker(probe, CircuitBreakerConfig(**config), **kwargs)


@pytest.mark.asyncio
async def test_calm_market_is_normal():
    status = await _breaker(FakeProbe()).check()
    assert status.level is RiskLevel.NONE
    assert status.reason == "All systems normal"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "end, level, note",
    [
        (89_000.0, RiskLevel.YELLOW, "YELLOW ALERT: reduce risk"),
        (84_000.0, RiskLevel.ORANGE, "ORANGE ALERT: major risk reduction"),
    ],
)
async def test_reference_drop_levels(end, level, note):
    status = await _breaker(FakeProbe(end=end)).check()
    drop = (100_000.0 - end) / 1000
    assert status.level is level
    assert status.reason == f"BTC dropped {drop:.1f}% in 4 hours ({note})"
    assert status.btc_drop_4h == pytest.approx(-drop)


@pytest.mark.asyncio
async def test_red_drop_short_circuits_other_checks():
    probe = FakeProbe(end=79_000.0, funding=0.01)
    status = await _breaker(probe).check()
    assert status.level is RiskLevel.RED
    assert status.reason == "BTC dropped 21.0% in 4 hours (RED ALERT: liquidation cascade risk)"
    assert probe.funding_calls == 0
    assert probe.server_time_calls == 0


@pytest.mark.asyncio
async def test_funding_extremes_use_absolute_percent():
    orange = await _breaker(FakeProbe(funding=-0.005)).check()
    assert orange.level is RiskLevel.ORANGE
    assert orange.reason == "Extreme funding rate: 0.500% (ORANGE ALERT: crowd positioning extreme)"
    assert orange.funding_rate_extreme == pytest.approx(0.005)

    yellow = await _breaker(FakeProbe(funding=0.003)).check()
    assert yellow.level is RiskLevel.YELLOW
    assert yellow.reason == "High funding rate: 0.300% (YELLOW ALERT: crowded positioning)"


@pytest.mark.asyncio
async def test_worst_level_wins():
    status = await _breaker(FakeProbe(end=89_000.0, funding=0.005)).check()
    assert status.level is RiskLevel.ORANGE
    assert status.reason.startswith("Extreme funding rate")


@pytest.mark.asyncio
async def test_failed_funding_fetch_counts_as_zero():
    status = await _breaker(FakeProbe(funding=RuntimeError("offline"))).check()
    assert status.level is RiskLevel.NONE


@pytest.mark.asyncio
async def test_exchange_error_is_orange():
    status = await _breaker(FakeProbe(server_error=RuntimeError("502 bad gateway"))).check()
    assert status.level is RiskLevel.ORANGE
    assert status.reason == "Exchange API error: 502 bad gateway"
    assert status.exchange_issue is True


@pytest.mark.asyncio
async def test_slow_exchange_is_yellow():
    ticks = iter([10.0, 16.0])
    status = await _breaker(FakeProbe(), timer=lambda: next(ticks)).check()
    assert status.level is RiskLevel.YELLOW
    assert status.reason == "Exchange API slow (6000ms response time)"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "candles",
    [RuntimeError("candles down"), [], _candles(100_000.0, 50_000.0)[:3]],
)
async def test_unusable_candles_skip_drop_check(candles):
    status = await _breaker(FakeProbe(candles=candles)).check()
    assert status.level is RiskLevel.NONE


@pytest.mark.asyncio
async def test_unexpected_failure_fails_safe_to_yellow(mocker):
    breaker = _breaker(FakeProbe())
    mocker.patch.object(breaker, "_check_funding_extremes", side_effect=RuntimeError("probe exploded"))
    status = await breaker.check()
    assert status.level is RiskLevel.YELLOW
    assert status.reason == "Circuit breaker check error: probe exploded"


@pytest.mark.asyncio
async def test_status_cached_until_duration_elapses():
    probe = FakeProbe()
    clock = FakeClock()
    breaker = _breaker(probe, clock=clock)
    first = await breaker.check()
    clock.now = 59.0
    assert await breaker.check() is first
    assert probe.candle_calls == 1

    clock.now = 60.0
    await breaker.check()
    assert probe.candle_calls == 2

    breaker.clear_cache()
    await breaker.check()
    assert probe.candle_calls == 3


@flaky(max_runs=3)
@pytest.mark.asyncio
async def test_concurrent_checks_share_one_probe_run():
    probe = FakeProbe(delay=0.01)
    breaker = _breaker(probe)
    statuses = await asyncio.gather(*(breaker.check() for _ in range(5)))
    assert probe.candle_calls == 1
    assert all(status is statuses[0] for status in statuses)


def test_leverage_caps_and_actions():
    breaker = _breaker(FakeProbe())
    assert breaker.get_max_leverage(RiskLevel.RED) == 1
    assert breaker.get_max_leverage(RiskLevel.ORANGE) == 2
    assert breaker.get_max_leverage(RiskLevel.YELLOW) == 3
    assert breaker.get_max_leverage(RiskLevel.NONE) == 5
    assert breaker.get_recommended_action(RiskLevel.RED).startswith("Close ALL leveraged positions")
    assert breaker.get_recommended_action(RiskLevel.NONE) == "Normal trading operations"


@pytest.mark.asyncio
async def test_aclose_closes_probe():
    probe = FakeProbe()
    await _breaker(probe).aclose()
    assert probe.closed is True


@pytest.mark.parametrize(
    "overrides",
    [
        {"yellow_drop_pct": 16.0},
        {"orange_funding_pct": 0.1},
        {"red_max_leverage": 0},
        {"yellow_max_leverage": 6},
        {"drop_window_candles": 3},
        {"cache_duration_seconds": 0},
    ],
)
def test_invalid_config_rejected(overrides):
    with pytest.raises(ConfigError):
        CircuitBreakerConfig(**overrides)


def test_config_from_settings_ignores_unknown_keys():
    config = CircuitBreakerConfig.from_settings(
        {"funding_symbols": ("SOL-USDT-SWAP",), "yellow_drop_pct": 8, "unrelated": True}
    )
    assert config.funding_symbols == ["SOL-USDT-SWAP"]
    assert config.yellow_drop_pct == 8
