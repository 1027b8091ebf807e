import pytest

from data_pipeline.indicators import atr_percent, candles_to_frame, window_change_pct


def _row(ts, open_, high, low, close, volume="1"):
    return [str(ts), str(open_), str(high), str(low), str(close), str(volume)]


CANDLES = [
    # newest first, as OKX returns them
    _row(1_700_014_400_000, 94, 95, 88, 90),
    _row(1_700_010_800_000, 97, 98, 93, 94),
    _row(1_700_007_200_000, 99, 100, 96, 97),
    _row(1_700_003_600_000, 100, 101, 98, 99),
]


def test_frame_is_sorted_oldest_first():
    df = candles_to_frame(CANDLES)
    assert list(df.columns) == ["timestamp", "open", "high", "low", "close", "volume"]
    assert df["open"].tolist() == [100.0, 99.0, 97.0, 94.0]
    assert df["timestamp"].is_monotonic_increasing


def test_malformed_rows_skipped():
    df = candles_to_frame([["1"], _row(1, 1, 1, 1, 1), ["x", "a", "b", "c", "d", "e"]])
    assert len(df) == 1
    assert candles_to_frame([]).empty


def test_window_change_pct():
    assert window_change_pct(CANDLES) == pytest.approx(-10.0)
    assert window_change_pct(CANDLES[:3]) is None
    assert window_change_pct(CANDLES[:3], min_candles=3) == pytest.approx(-9.0909, rel=1e-4)


def test_window_change_requires_positive_open():
    rows = [_row(i, 0, 1, 0, 1) for i in range(4)]
    assert window_change_pct(rows) is None


def test_atr_percent():
    # true ranges after the first bar: 4, 5, 7 -> mean 5.333 over a last close of 90
    assert atr_percent(CANDLES) == pytest.approx(5.3333 / 90 * 100, rel=1e-3)
    assert atr_percent(CANDLES, period=1) == pytest.approx(7 / 90 * 100)
    assert atr_percent(CANDLES[:1]) is None
