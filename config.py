"""
Runtime configuration for the decision engine.

Values are read from the environment with sensible defaults. Credentials are
never stored here; export GEMINI_API_KEY / OPENROUTER_API_KEY instead.
"""

import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(float(raw))


GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")

OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY", "")
OPENROUTER_MODEL = os.getenv("OPENROUTER_MODEL", "deepseek/deepseek-chat")
OPENROUTER_BASE_URL = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
OPENROUTER_REFERER = os.getenv("OPENROUTER_REFERER", "https://github.com/nof1-arena/decision-engine")
OPENROUTER_TITLE = os.getenv("OPENROUTER_TITLE", "nof1 decision engine")

# Public OKX REST host used for circuit breaker probes.
OKX_BASE_URL = os.getenv("OKX_BASE_URL", "https://www.okx.com")

GENERATION_SETTINGS = {
    "provider": os.getenv("AI_PROVIDER", "gemini"),
    "hybrid_routing": _env_bool("AI_HYBRID_ROUTING", True),
    "temperature": _env_float("AI_TEMPERATURE", 0.8),
    "max_output_tokens": _env_int("AI_MAX_OUTPUT_TOKENS", 8192),
    "timeout_seconds": _env_float("AI_TIMEOUT_SECONDS", 60.0),
    "cache_capacity": _env_int("AI_CACHE_CAPACITY", 100),
    "cache_ttl_seconds": _env_float("AI_CACHE_TTL_SECONDS", 300.0),
    "cache_sweep_interval_seconds": _env_float("AI_CACHE_SWEEP_SECONDS", 60.0),
    "structured_outputs": _env_bool("OPENROUTER_STRUCTURED_OUTPUTS", True),
}

ANALYST_SETTINGS = {
    "strategy": os.getenv("ANALYST_STRATEGY", "combined"),
    "max_retries": _env_int("ANALYST_MAX_RETRIES", 3),
    "retry_base_delay_seconds": _env_float("ANALYST_RETRY_DELAY_SECONDS", 1.0),
    "analysis_timeout_seconds": _env_float("ANALYST_TIMEOUT_SECONDS", 90.0),
    "individual_retry_timeout_seconds": _env_float("ANALYST_INDIVIDUAL_TIMEOUT_SECONDS", 60.0),
    "temperature": _env_float("ANALYST_TEMPERATURE", 0.8),
    "template_dir": os.getenv("ANALYST_TEMPLATE_DIR") or None,
}

JUDGE_SETTINGS = {
    "temperature": _env_float("JUDGE_TEMPERATURE", 0.3),
    "max_retries": _env_int("JUDGE_MAX_RETRIES", 3),
    "retry_base_delay_seconds": _env_float("JUDGE_RETRY_DELAY_SECONDS", 1.0),
    "absolute_max_leverage": _env_float("JUDGE_ABSOLUTE_MAX_LEVERAGE", 20.0),
    "high_leverage_threshold": _env_float("JUDGE_HIGH_LEVERAGE_THRESHOLD", 15.0),
    "stop_margin_ratio": _env_float("JUDGE_STOP_MARGIN_RATIO", 0.8),
    "max_warnings": _env_int("JUDGE_MAX_WARNINGS", 20),
    "tournament_timeout_seconds": _env_float("TOURNAMENT_TIMEOUT_SECONDS", 45.0),
}

# MAX_DAILY_TRADES is the single source for the daily trade limit.
MAX_DAILY_TRADES = _env_int("MAX_DAILY_TRADES", 20)

ANTI_CHURN_SETTINGS = {
    "cooldown_after_trade_seconds": _env_float("ANTI_CHURN_COOLDOWN_SECONDS", 900.0),
    "cooldown_before_flip_seconds": _env_float("ANTI_CHURN_FLIP_COOLDOWN_SECONDS", 1800.0),
    "hysteresis_multiplier": _env_float("ANTI_CHURN_HYSTERESIS", 1.2),
    "max_daily_trades": MAX_DAILY_TRADES,
    "funding_periods_per_day": _env_int("ANTI_CHURN_FUNDING_PERIODS", 3),
    "funding_threshold_atr": 0.25,
    "max_trades_per_symbol_per_hour": _env_int("ANTI_CHURN_MAX_PER_SYMBOL_HOUR", 3),
    "max_state_entries": 100,
}

CIRCUIT_BREAKER_SETTINGS = {
    "cache_duration_seconds": _env_float("CIRCUIT_BREAKER_CACHE_SECONDS", 60.0),
    "reference_symbol": "BTC-USDT-SWAP",
    "funding_symbols": ["BTC-USDT-SWAP", "ETH-USDT-SWAP"],
    "drop_window_bar": "1H",
    "drop_window_candles": 5,
    "yellow_drop_pct": 10.0,
    "orange_drop_pct": 15.0,
    "red_drop_pct": 20.0,
    "yellow_funding_pct": 0.25,
    "orange_funding_pct": 0.4,
    "latency_threshold_ms": 5000.0,
    "max_safe_leverage": 5,
    "yellow_max_leverage": 3,
    "orange_max_leverage": 2,
    "red_max_leverage": 1,
}

LEVERAGE_SETTINGS = {
    "min_leverage": 3,
    "max_leverage": 10,
    "base_leverage": 5,
    "atr_low_threshold": 2.0,
    "atr_high_threshold": 5.0,
    "funding_moderate_threshold": 0.0005,
    "funding_high_threshold": 0.001,
    "maintenance_margin_rate": 0.005,
    "config_max_leverage": _env_float("MAX_LEVERAGE", 10.0),
}

# Instruments the analysts may recommend.
TRADABLE_INSTRUMENTS = [
    "BTC-USDT-SWAP",
    "ETH-USDT-SWAP",
    "SOL-USDT-SWAP",
    "XRP-USDT-SWAP",
    "DOGE-USDT-SWAP",
    "BNB-USDT-SWAP",
    "LTC-USDT-SWAP",
    "ADA-USDT-SWAP",
]

SETTINGS_STORE_PATH = os.getenv("SETTINGS_STORE_PATH", "data/app_settings.json")

LOGGING_FORMAT = "%(asctime)s | %(levelname)s %(name)s | %(message)s"
LOGGING_DATEFMT = "%Y-%m-%d %H:%M:%S"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
