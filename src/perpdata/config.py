"""Configuration system using pydantic-settings with environment variable loading."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class FetchSettings(BaseSettings):
    """Fetch pipeline behaviour shared by every platform.

    ``concurrency`` overrides the per-platform worker ceiling for all
    platforms; ``concurrency_overrides`` overrides it for single platforms,
    e.g. FETCH_CONCURRENCY_OVERRIDES='{"bybit": 4}'.
    """

    model_config = SettingsConfigDict(env_prefix="FETCH_")

    lookback_hours: int = 480  # 20 days of hourly history
    max_retries: int = 3
    retry_base_delay: float = 1.0  # seconds, doubled per attempt
    page_delay: float = 0.1  # seconds between follow-up pages of one symbol
    concurrency: int | None = None
    concurrency_overrides: dict[str, int] = {}


class ExchangeSettings(BaseSettings):
    """Public REST endpoints of the supported exchanges."""

    model_config = SettingsConfigDict(env_prefix="EXCHANGE_")

    hyperliquid_url: str = "https://api.hyperliquid.xyz"
    binance_url: str = "https://fapi.binance.com"
    bybit_url: str = "https://api.bybit.com"
    okx_url: str = "https://www.okx.com"
    dydx_url: str = "https://indexer.dydx.trade"
    aster_url: str = "https://fapi.asterdex.com"
    request_timeout: float = 30.0  # seconds, total per request


class DatabaseSettings(BaseSettings):
    """SQLite storage location."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_")

    path: str = "data/perpdata.db"


class ApiSettings(BaseSettings):
    """Run control and progress stream HTTP server."""

    model_config = SettingsConfigDict(env_prefix="API_")

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080
    heartbeat_interval: float = 15.0  # seconds between SSE keep-alive comments
    subscriber_queue_size: int = 256


class SchedulerSettings(BaseSettings):
    """Periodic incremental fetch configuration.

    An empty ``platforms`` list means every supported platform.
    """

    model_config = SettingsConfigDict(env_prefix="SCHEDULER_")

    enabled: bool = False
    interval_minutes: int = 60
    run_on_start: bool = False
    platforms: list[str] = []


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    log_format: str = "console"
    fetch: FetchSettings = FetchSettings()
    exchange: ExchangeSettings = ExchangeSettings()
    database: DatabaseSettings = DatabaseSettings()
    api: ApiSettings = ApiSettings()
    scheduler: SchedulerSettings = SchedulerSettings()
