"""
Configuration loaded from environment variables and .env. Fail-fast on invalid values.
"""

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

SUPPORTED_ASSETS = ("BTC", "ETH", "SOL")


class Config(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "frozen": True, "extra": "ignore"}

    # API endpoints
    binance_ws_url: str = "wss://stream.binance.com:9443"
    gamma_host: str = "https://gamma-api.polymarket.com"
    clob_host: str = "https://clob.polymarket.com"

    # Position sizing ($)
    base_position_size: float = Field(default=200.0, gt=0)
    max_position_size: float = Field(default=500.0, gt=0)

    # Risk limits
    max_total_exposure: float = Field(default=1500.0, gt=0)
    max_simultaneous_positions: int = Field(default=3, ge=1)
    daily_loss_limit: float = Field(default=100.0, gt=0)
    max_daily_trades: int = Field(default=20, ge=1)
    cooldown_minutes: float = Field(default=5.0, ge=0)

    # Exit rules (fractions: 0.15 = +15%)
    max_hold_time_seconds: float = Field(default=120.0, gt=0)
    profit_target_pct: float = Field(default=0.15, gt=0)
    stop_loss_pct: float = Field(default=0.05, gt=0)

    # Signal + discovery
    min_gap_percent: float = Field(default=0.20, gt=0)
    min_volume: float = Field(default=50_000.0, ge=0)
    min_resolution_hours: float = Field(default=24.0, ge=0)
    discovery_interval_minutes: float = Field(default=5.0, gt=0)

    # Price feed
    tracked_assets: list[str] = Field(default_factory=lambda: list(SUPPORTED_ASSETS))
    # Absolute 1-minute change that counts as a significant move (0.01 = 1%)
    significant_move_pct: float = Field(default=0.01, gt=0)
    reconnect_delay_sec: float = Field(default=5.0, gt=0)
    reconnect_backoff_factor: float = Field(default=1.5, ge=1.0)
    reconnect_max_delay_sec: float = Field(default=120.0, gt=0)
    max_reconnect_attempts: int = Field(default=10, ge=0)
    heartbeat_interval_sec: float = Field(default=30.0, gt=0)
    connect_timeout_sec: float = Field(default=10.0, gt=0)

    # Timers
    price_cache_ttl_sec: float = Field(default=10.0, gt=0)
    exit_check_interval_sec: float = Field(default=1.0, gt=0)

    # Storage + logging
    db_path: str = "trader.db"
    pnl_ledger_path: str = "pnl_ledger.json"
    log_level: str = "INFO"

    @field_validator("tracked_assets")
    @classmethod
    def _known_assets(cls, value: list[str]) -> list[str]:
        assets = [a.strip().upper() for a in value if a.strip()]
        unknown = [a for a in assets if a not in SUPPORTED_ASSETS]
        if unknown:
            raise ValueError(f"Unsupported assets: {unknown} (supported: {list(SUPPORTED_ASSETS)})")
        if not assets:
            raise ValueError("tracked_assets must not be empty")
        return assets

    @model_validator(mode="after")
    def _sizes_consistent(self) -> "Config":
        if self.base_position_size > self.max_position_size:
            raise ValueError("base_position_size must not exceed max_position_size")
        if self.max_position_size > self.max_total_exposure:
            raise ValueError("max_position_size must not exceed max_total_exposure")
        return self


def load_config() -> Config:
    """Load and validate config from environment. Raises on invalid fields."""
    return Config()
