"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Predatory Signal Engine, loading and validating environment variables
once at startup. Components never read the environment directly; the
engine converts these settings into frozen per-component configs.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

DEFAULT_WHALE_WATCHLIST = (
    "0x28c6c06298d514db089934071355e5743bf21d60",  # Binance 14
    "0x3f5ce5fbfe3e9af3971dd833d26ba9b5c936f0be",  # Binance hot wallet
    "0xa910f92acdaf488fa6ef02174fb86208ad7722ba",  # Coinbase cold wallet
)

DEFAULT_EXCHANGE_ADDRESSES = {
    "0x3f5ce5fbfe3e9af3971dd833d26ba9b5c936f0be": "BINANCE",
    "0xd551234ae421e3bcba99a0da6d736074f22192ff": "BINANCE",
    "0x28c6c06298d514db089934071355e5743bf21d60": "BINANCE",
    "0xa910f92acdaf488fa6ef02174fb86208ad7722ba": "COINBASE",
    "0x71660c4005ba85c37ccec55d0c4493e66fe775d3": "COINBASE",
    "0x6cc5f688a315f3dc28a7781717a9a798a59fda7b": "OKEX",
}


def _split_csv(v: object, *, name: str) -> tuple[str, ...]:
    if v is None:
        raise ValueError(f"{name} must be set")
    if isinstance(v, str):
        return tuple(p.strip() for p in v.split(",") if p.strip())
    if isinstance(v, (list, tuple, set)):
        return tuple(str(x).strip() for x in v if str(x).strip())
    raise TypeError(f"Invalid {name} type")


class ClassifierSettings(BaseSettings):
    """Microstructure classifier thresholds."""

    model_config = SettingsConfigDict(env_prefix="CLASSIFIER_", extra="ignore")

    pressure_threshold: float = Field(
        default=3.0,
        alias="CLASSIFIER_PRESSURE_THRESHOLD",
        gt=0.0,
        description="Ask/bid pressure ratio that must be strictly exceeded",
    )
    liquidity_threshold: float = Field(
        default=100_000.0,
        alias="CLASSIFIER_LIQUIDITY_THRESHOLD",
        gt=0.0,
        description="High liquidity band (L_high); the low band is half of it",
    )
    strong_momentum_threshold: float = Field(
        default=-0.3,
        alias="CLASSIFIER_STRONG_MOMENTUM_THRESHOLD",
        lt=0.0,
        description="Momentum (percent) that a cascade must fall strictly below",
    )
    neutral_momentum_band: float = Field(
        default=0.1,
        alias="CLASSIFIER_NEUTRAL_MOMENTUM_BAND",
        gt=0.0,
        description="Half-width of the open neutral momentum band (percent)",
    )
    top_levels: int = Field(
        default=50,
        alias="CLASSIFIER_TOP_LEVELS",
        ge=1,
        le=5000,
        description="Order-book levels per side used for volume sums",
    )
    price_history_size: int = Field(
        default=300,
        alias="CLASSIFIER_PRICE_HISTORY_SIZE",
        ge=2,
        le=100_000,
        description="Rolling price samples used to derive momentum",
    )

    @model_validator(mode="after")
    def validate_bands(self) -> ClassifierSettings:
        """Keep the neutral band disjoint from the cascade momentum region."""
        if -self.neutral_momentum_band < self.strong_momentum_threshold:
            raise ValueError(
                "CLASSIFIER_NEUTRAL_MOMENTUM_BAND must be narrower than "
                "|CLASSIFIER_STRONG_MOMENTUM_THRESHOLD|"
            )
        return self


class LiquiditySettings(BaseSettings):
    """Dynamic liquidity score settings."""

    model_config = SettingsConfigDict(env_prefix="LIQUIDITY_", extra="ignore")

    history_size: int = Field(
        default=1440,
        alias="LIQUIDITY_HISTORY_SIZE",
        ge=10,
        le=1_000_000,
        description="Rolling score samples kept for percentile ranking",
    )
    min_samples: int = Field(
        default=10,
        alias="LIQUIDITY_MIN_SAMPLES",
        ge=1,
        le=10_000,
        description="Samples required before percentiles leave the neutral 50",
    )
    signal_percentile: float = Field(
        default=75.0,
        alias="LIQUIDITY_SIGNAL_PERCENTILE",
        ge=0.0,
        le=100.0,
        description="Percentile a score must reach to be valid for signal use",
    )
    high_confidence_percentile: float = Field(
        default=90.0,
        alias="LIQUIDITY_HIGH_CONFIDENCE_PERCENTILE",
        ge=0.0,
        le=100.0,
        description="Percentile at or above which a high-liquidity regime event is published",
    )
    low_warning_percentile: float = Field(
        default=25.0,
        alias="LIQUIDITY_LOW_WARNING_PERCENTILE",
        ge=0.0,
        le=100.0,
        description="Percentile at or below which a low-liquidity warning is published",
    )
    impact_notional_usd: float = Field(
        default=10_000.0,
        alias="LIQUIDITY_IMPACT_NOTIONAL_USD",
        gt=0.0,
        description="Notional walked through the book for the market-impact sub-score",
    )
    depth_reference: float = Field(
        default=1_000_000.0,
        alias="LIQUIDITY_DEPTH_REFERENCE",
        gt=0.0,
        description="Total book quantity that maps to a full depth sub-score",
    )
    volume_reference_usd: float = Field(
        default=1_000_000.0,
        alias="LIQUIDITY_VOLUME_REFERENCE_USD",
        gt=0.0,
        description="Recent traded notional that maps to a full volume sub-score",
    )
    density_scale: float = Field(
        default=10.0,
        alias="LIQUIDITY_DENSITY_SCALE",
        gt=0.0,
        description="Multiplier applied to average quantity per level near mid",
    )


class WhaleSettings(BaseSettings):
    """Whale watchlist, intent and hunt-mode settings."""

    model_config = SettingsConfigDict(env_prefix="WHALE_", extra="ignore")

    watchlist: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_WHALE_WATCHLIST,
        alias="WHALE_WATCHLIST",
        description="Watched whale addresses (comma-separated)",
    )
    exchange_addresses: Annotated[dict[str, str], NoDecode] = Field(
        default_factory=lambda: dict(DEFAULT_EXCHANGE_ADDRESSES),
        alias="WHALE_EXCHANGE_ADDRESSES",
        description="Exchange deposit addresses as address:NAME pairs (comma-separated)",
    )
    hunt_trigger_threshold: Decimal = Field(
        default=Decimal("3000000"),
        alias="WHALE_HUNT_TRIGGER_THRESHOLD",
        description="Token amount a single exchange deposit must reach to start a hunt",
    )
    hunt_mode_duration_hours: float = Field(
        default=12.0,
        alias="WHALE_HUNT_MODE_DURATION_HOURS",
        gt=0.0,
        le=24 * 30,
        description="How long hunt mode stays open after a trigger",
    )
    dump_validity_hours: float = Field(
        default=6.0,
        alias="WHALE_DUMP_VALIDITY_HOURS",
        gt=0.0,
        le=24 * 30,
        description="How long a recorded dump counts toward trigger evaluation",
    )
    hunt_retrigger_policy: Literal["ignore", "extend"] = Field(
        default="ignore",
        alias="WHALE_HUNT_RETRIGGER_POLICY",
        description="What a fresh qualifying dump does while already hunting",
    )
    min_transfer_usd: Decimal = Field(
        default=Decimal("100000"),
        alias="WHALE_MIN_TRANSFER_USD",
        description="Transactions below this USD estimate are ignored",
    )
    large_transfer_usd: Decimal = Field(
        default=Decimal("1000000"),
        alias="WHALE_LARGE_TRANSFER_USD",
        description="USD estimate above which a plain transfer is a LARGE_TRANSFER",
    )
    native_price_usd: Decimal = Field(
        default=Decimal("3500"),
        alias="WHALE_NATIVE_PRICE_USD",
        description="USD price used to value native-coin pending transactions",
    )
    token_price_usd: Decimal = Field(
        default=Decimal("1"),
        alias="WHALE_TOKEN_PRICE_USD",
        description="USD price used to value watched-token transfers",
    )
    history_size: int = Field(
        default=100,
        alias="WHALE_STATE_HISTORY_SIZE",
        ge=1,
        le=100_000,
        description="State transitions kept in the bounded history log",
    )
    dedup_size: int = Field(
        default=10_000,
        alias="WHALE_DEDUP_SIZE",
        ge=1,
        le=10_000_000,
        description="Processed transaction hashes remembered for deduplication",
    )
    dedup_ttl_seconds: int = Field(
        default=3600,
        alias="WHALE_DEDUP_TTL_SECONDS",
        ge=1,
        le=7 * 24 * 3600,
        description="How long a processed transaction hash is remembered",
    )

    @field_validator("watchlist", mode="before")
    @classmethod
    def _parse_watchlist(cls, v: object) -> tuple[str, ...]:
        return tuple(a.lower() for a in _split_csv(v, name="WHALE_WATCHLIST"))

    @field_validator("exchange_addresses", mode="before")
    @classmethod
    def _parse_exchanges(cls, v: object) -> dict[str, str]:
        if isinstance(v, dict):
            return {str(k).lower(): str(name).upper() for k, name in v.items()}
        parsed: dict[str, str] = {}
        for pair in _split_csv(v, name="WHALE_EXCHANGE_ADDRESSES"):
            address, sep, name = pair.partition(":")
            if not sep or not address.strip() or not name.strip():
                raise ValueError(f"Invalid exchange mapping {pair!r}; expected address:NAME")
            parsed[address.strip().lower()] = name.strip().upper()
        return parsed

    @field_validator(
        "hunt_trigger_threshold",
        "min_transfer_usd",
        "large_transfer_usd",
        "native_price_usd",
        "token_price_usd",
    )
    @classmethod
    def validate_positive(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("Whale thresholds and prices must be > 0")
        return v


class SpoofSettings(BaseSettings):
    """Spoof-wall detector settings."""

    model_config = SettingsConfigDict(env_prefix="SPOOF_", extra="ignore")

    wall_threshold: float = Field(
        default=300_000.0,
        alias="SPOOF_WALL_THRESHOLD",
        gt=0.0,
        description="Level quantity above which a level is tracked as a wall",
    )
    min_dwell_seconds: float = Field(
        default=5.0,
        alias="SPOOF_MIN_DWELL_SECONDS",
        ge=0.0,
        description="Minimum wall lifetime before its disappearance counts",
    )
    detection_window_seconds: float = Field(
        default=10.0,
        alias="SPOOF_DETECTION_WINDOW_SECONDS",
        gt=0.0,
        description="Maximum wall lifetime for its disappearance to count",
    )
    max_spoof_count: int = Field(
        default=3,
        alias="SPOOF_MAX_SPOOF_COUNT",
        ge=1,
        le=1000,
        description="Spoofs within the window that activate the spoofing flag",
    )
    spoof_window_seconds: float = Field(
        default=300.0,
        alias="SPOOF_WINDOW_SECONDS",
        gt=0.0,
        description="Quiet period after which the spoof counter decays to zero",
    )
    stale_wall_seconds: float = Field(
        default=60.0,
        alias="SPOOF_STALE_WALL_SECONDS",
        gt=0.0,
        description="Walls not seen for this long are purged",
    )

    @model_validator(mode="after")
    def validate_window(self) -> SpoofSettings:
        if self.detection_window_seconds <= self.min_dwell_seconds:
            raise ValueError("SPOOF_DETECTION_WINDOW_SECONDS must exceed SPOOF_MIN_DWELL_SECONDS")
        return self


class WashTradeSettings(BaseSettings):
    """Wash-trade detector settings."""

    model_config = SettingsConfigDict(env_prefix="WASH_", extra="ignore")

    window_seconds: float = Field(
        default=300.0,
        alias="WASH_WINDOW_SECONDS",
        gt=0.0,
        description="Rolling trade-tape window",
    )
    threshold: float = Field(
        default=75.0,
        alias="WASH_THRESHOLD",
        ge=0.0,
        le=100.0,
        description="Wash score above which trading is disabled (0 disables on any trade)",
    )
    rapid_trade_ms: float = Field(
        default=100.0,
        alias="WASH_RAPID_TRADE_MS",
        ge=0.0,
        description="Gap below which consecutive trades count as rapid",
    )
    analysis_interval_seconds: float = Field(
        default=30.0,
        alias="WASH_ANALYSIS_INTERVAL_SECONDS",
        ge=0.0,
        description="Minimum time between score recomputations",
    )
    min_trades: int = Field(
        default=10,
        alias="WASH_MIN_TRADES",
        ge=1,
        le=100_000,
        description="Trades required before a non-zero score is produced",
    )
    price_epsilon: float = Field(
        default=0.0001,
        alias="WASH_PRICE_EPSILON",
        ge=0.0,
        description="Relative price change treated as unchanged",
    )
    max_trades: int = Field(
        default=50_000,
        alias="WASH_MAX_TRADES",
        ge=10,
        le=10_000_000,
        description="Hard cap on trades held in the window",
    )


class DecisionSettings(BaseSettings):
    """Quality grading and sizing settings."""

    model_config = SettingsConfigDict(env_prefix="DECISION_", extra="ignore")

    quality_high_volume: float = Field(
        default=800_000.0,
        alias="DECISION_QUALITY_HIGH_VOLUME",
        gt=0.0,
        description="Bid volume at or above which a signal grades HIGH",
    )
    quality_medium_volume: float = Field(
        default=600_000.0,
        alias="DECISION_QUALITY_MEDIUM_VOLUME",
        gt=0.0,
        description="Bid volume at or above which a signal grades MEDIUM",
    )
    quality_low_volume: float = Field(
        default=400_000.0,
        alias="DECISION_QUALITY_LOW_VOLUME",
        gt=0.0,
        description="Bid volume at or above which a signal grades LOW (below is REJECT)",
    )
    max_concurrent_positions: int = Field(
        default=3,
        alias="DECISION_MAX_CONCURRENT_POSITIONS",
        ge=1,
        le=1000,
        description="Open positions at which exposure scaling reaches its floor",
    )
    min_exposure_factor: float = Field(
        default=0.2,
        alias="DECISION_MIN_EXPOSURE_FACTOR",
        ge=0.0,
        le=1.0,
        description="Floor of the exposure scaling factor",
    )

    @model_validator(mode="after")
    def validate_breakpoints(self) -> DecisionSettings:
        if not (self.quality_low_volume <= self.quality_medium_volume <= self.quality_high_volume):
            raise ValueError("Quality breakpoints must satisfy LOW <= MEDIUM <= HIGH")
        return self


class MempoolSettings(BaseSettings):
    """Pending-transaction stream settings."""

    model_config = SettingsConfigDict(env_prefix="MEMPOOL_", extra="ignore")

    enabled: bool = Field(
        default=False,
        alias="MEMPOOL_ENABLED",
        description="Enable the pending-transaction websocket feed",
    )
    provider_urls: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(),
        alias="MEMPOOL_PROVIDER_URLS",
        description="Websocket providers in priority order (comma-separated)",
    )
    max_reconnect_attempts: int = Field(
        default=10,
        alias="MEMPOOL_MAX_RECONNECT_ATTEMPTS",
        ge=1,
        le=1000,
        description="Consecutive failed connections before a provider is abandoned",
    )
    initial_reconnect_delay: float = Field(
        default=1.0,
        alias="MEMPOOL_INITIAL_RECONNECT_DELAY",
        gt=0.0,
        description="First reconnect backoff (seconds)",
    )
    max_reconnect_delay: float = Field(
        default=30.0,
        alias="MEMPOOL_MAX_RECONNECT_DELAY",
        gt=0.0,
        description="Reconnect backoff cap (seconds)",
    )
    ping_interval: int = Field(
        default=30,
        alias="MEMPOOL_PING_INTERVAL",
        ge=1,
        le=600,
        description="Websocket keepalive ping interval (seconds)",
    )
    stale_after_seconds: float = Field(
        default=120.0,
        alias="MEMPOOL_STALE_AFTER_SECONDS",
        gt=0.0,
        description="Data drought after which the feed is reported stale",
    )
    health_check_interval_seconds: float = Field(
        default=30.0,
        alias="MEMPOOL_HEALTH_CHECK_INTERVAL_SECONDS",
        gt=0.0,
        description="How often the feed checks for a data drought",
    )

    @field_validator("provider_urls", mode="before")
    @classmethod
    def _parse_provider_urls(cls, v: object) -> tuple[str, ...]:
        urls = _split_csv(v or (), name="MEMPOOL_PROVIDER_URLS")
        for url in urls:
            if not url.startswith(("ws://", "wss://")):
                raise ValueError("Mempool provider URLs must start with ws:// or wss://")
        return urls


class ChainSettings(BaseSettings):
    """Token-transfer polling settings."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    enabled: bool = Field(
        default=False,
        alias="CHAIN_ENABLED",
        description="Enable the ERC-20 transfer poller",
    )
    rpc_url: str = Field(
        default="https://eth.llamarpc.com",
        alias="CHAIN_RPC_URL",
        description="Primary JSON-RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="CHAIN_FALLBACK_RPC_URL",
        description="Fallback JSON-RPC endpoint",
    )
    token_address: str | None = Field(
        default=None,
        alias="CHAIN_TOKEN_ADDRESS",
        description="Watched token contract address",
    )
    token_decimals: int = Field(
        default=18,
        alias="CHAIN_TOKEN_DECIMALS",
        ge=0,
        le=36,
        description="Decimals of the watched token",
    )
    poll_interval_seconds: float = Field(
        default=15.0,
        alias="CHAIN_POLL_INTERVAL_SECONDS",
        gt=0.0,
        description="Delay between eth_getLogs polls",
    )
    max_blocks_per_poll: int = Field(
        default=500,
        alias="CHAIN_MAX_BLOCKS_PER_POLL",
        ge=1,
        le=100_000,
        description="Block range cap per eth_getLogs call",
    )
    failure_threshold: int = Field(
        default=3,
        alias="CHAIN_FAILURE_THRESHOLD",
        ge=1,
        le=1000,
        description="Consecutive failed polls after which the poller reports FAILED",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v


class RedisSettings(BaseSettings):
    """Redis event mirror settings."""

    model_config = SettingsConfigDict(env_prefix="REDIS_", extra="ignore")

    enabled: bool = Field(
        default=False,
        alias="REDIS_ENABLED",
        description="Mirror published events into Redis streams",
    )
    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )
    stream_prefix: str = Field(
        default="predatory",
        alias="REDIS_STREAM_PREFIX",
        description="Prefix for Redis stream keys",
    )
    stream_maxlen: int = Field(
        default=10_000,
        alias="REDIS_STREAM_MAXLEN",
        ge=100,
        le=10_000_000,
        description="Approximate max entries retained per stream",
    )
    password: SecretStr | None = Field(
        default=None,
        alias="REDIS_PASSWORD",
        description="Optional Redis password",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from predatory_signal_engine.config import get_settings

        settings = get_settings()
        print(settings.classifier.pressure_threshold)
        print(settings.log_level)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    classifier: ClassifierSettings = Field(
        default_factory=lambda: ClassifierSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    liquidity: LiquiditySettings = Field(
        default_factory=lambda: LiquiditySettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    whale: WhaleSettings = Field(
        default_factory=lambda: WhaleSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    spoof: SpoofSettings = Field(
        default_factory=lambda: SpoofSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    wash: WashTradeSettings = Field(
        default_factory=lambda: WashTradeSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    decision: DecisionSettings = Field(
        default_factory=lambda: DecisionSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    mempool: MempoolSettings = Field(
        default_factory=lambda: MempoolSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    # Application settings
    symbol: str = Field(
        default="SPKUSDT",
        alias="SYMBOL",
        description="Asset symbol the engine decides on",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "symbol": self.symbol,
            "classifier": {
                "pressure_threshold": str(self.classifier.pressure_threshold),
                "liquidity_threshold": str(self.classifier.liquidity_threshold),
                "strong_momentum_threshold": str(self.classifier.strong_momentum_threshold),
                "top_levels": str(self.classifier.top_levels),
            },
            "liquidity": {
                "history_size": str(self.liquidity.history_size),
                "signal_percentile": str(self.liquidity.signal_percentile),
            },
            "whale": {
                "watchlist_size": str(len(self.whale.watchlist)),
                "exchange_addresses": str(len(self.whale.exchange_addresses)),
                "hunt_trigger_threshold": str(self.whale.hunt_trigger_threshold),
                "hunt_mode_duration_hours": str(self.whale.hunt_mode_duration_hours),
                "hunt_retrigger_policy": self.whale.hunt_retrigger_policy,
            },
            "spoof": {
                "wall_threshold": str(self.spoof.wall_threshold),
                "max_spoof_count": str(self.spoof.max_spoof_count),
            },
            "wash": {
                "threshold": str(self.wash.threshold),
                "window_seconds": str(self.wash.window_seconds),
            },
            "mempool": {
                "enabled": str(self.mempool.enabled),
                "providers": str(len(self.mempool.provider_urls)),
            },
            "chain": {
                "enabled": str(self.chain.enabled),
                "rpc_url": self._redact_url(self.chain.rpc_url),
                "fallback_rpc_url": (
                    self._redact_url(self.chain.fallback_rpc_url)
                    if self.chain.fallback_rpc_url
                    else "(not set)"
                ),
                "token_address": self.chain.token_address or "(not set)",
            },
            "redis_enabled": str(self.redis.enabled),
            "redis_url": self._redact_url(self.redis.url),
            "redis_password": "(set)" if self.redis.password else "(not set)",
            "log_level": self.log_level,
        }

    def validate_requirements(self) -> None:
        """Validate that enabled feeds are fully configured.

        This is strict: an enabled feed without its endpoints must refuse
        to start rather than silently run without whale evidence.
        """
        if self.mempool.enabled and not self.mempool.provider_urls:
            raise ValueError("MEMPOOL_PROVIDER_URLS is required when MEMPOOL_ENABLED is set")
        if self.chain.enabled and not self.chain.token_address:
            raise ValueError("CHAIN_TOKEN_ADDRESS is required when CHAIN_ENABLED is set")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password or API key segments from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Uses LRU cache to ensure settings are loaded only once and
    reused across the application.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when environment variables change.
    """
    get_settings.cache_clear()
