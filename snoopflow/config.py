"""
SnoopFlow Configuration
Uses Pydantic BaseSettings for validated, typed config with .env auto-loading.
"""
from pathlib import Path
from functools import lru_cache
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    POLYGON_API_KEY: str = ""
    HOST: str = "127.0.0.1"
    PORT: int = 8000
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Cache TTLs (seconds)
    CACHE_TTL_CONTRACTS: int = 3600   # 1 hour – listed contracts rarely change
    CACHE_TTL_AGGREGATES: int = 30    # daily bars, refreshed during the session
    CACHE_TTL_SNAPSHOTS: int = 5      # live chain snapshots
    CACHE_TTL_PRICES: int = 30
    CACHE_TTL_RATINGS: int = 300     # analyst ratings, a few updates per day

    # Polygon request budget (0 disables the limiter)
    RATE_LIMIT_MAX_REQUESTS: int = 0
    RATE_LIMIT_WINDOW_SECONDS: float = 60.0
    SYMBOL_DELAY_SECONDS: float = 0.5

    DEFAULT_SYMBOLS: list[str] = [
        "AAPL", "TSLA", "NVDA", "MSFT", "AMZN", "GOOGL", "META", "SPY", "QQQ",
    ]
    MAX_CONTRACTS_PER_SYMBOL: int = 50

    # Classification thresholds
    UNUSUAL_MIN_VOLUME: int = 100
    UNUSUAL_MIN_PREMIUM: float = 10_000
    BLOCK_MIN_VOLUME: int = 250
    BLOCK_MIN_PREMIUM: float = 25_000

    # Live WebSocket feed
    LIVE_FEED_ENABLED: bool = False
    LIVE_FEED_DELAYED: bool = True
    LIVE_BUFFER_SIZE: int = 200

    # Sweep monitor
    SWEEP_MONITOR_ENABLED: bool = False
    SWEEP_MONITOR_INTERVAL: int = 300   # 5 min
    SWEEP_LOOKBACK_MINUTES: int = 5
    SWEEP_MIN_SIZE: int = 100

    # Analyst ideas
    IDEAS_LOOKBACK_DAYS: int = 4

    model_config = {
        "env_file": str(Path(__file__).parent.parent / ".env"),
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
