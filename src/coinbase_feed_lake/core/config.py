from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from coinbase_feed_lake.core.models import Channel
from coinbase_feed_lake.core.throttle import CONNECT_MIN_INTERVAL_SECONDS

KNOWN_VISITORS = frozenset({"persist", "metrics"})


class Settings(BaseSettings):
    products: list[str] = Field(default_factory=lambda: ["BTC-USD", "ETH-USD"])
    channels: list[str] = Field(default_factory=lambda: [Channel.MATCHES.value])

    websocket_url: str = Field(default="wss://ws-feed.exchange.coinbase.com")
    rest_base_url: str = Field(default="https://api.exchange.coinbase.com")

    sink: Literal["sqlite", "jsonl"] = Field(default="sqlite")
    store_path: Path = Field(default=Path("./state/feed_lake.sqlite"))
    jsonl_dir: Path = Field(default=Path("./data/jsonl"))
    visitors: list[str] = Field(default_factory=lambda: ["persist", "metrics"])

    connect_min_interval_seconds: float = Field(default=CONNECT_MIN_INTERVAL_SECONDS, ge=CONNECT_MIN_INTERVAL_SECONDS)
    initial_connect_deadline_seconds: float = Field(default=15.0, gt=0)
    subscribe_ack_timeout_seconds: float = Field(default=5.0, gt=0)
    reconcile_debounce_seconds: float = Field(default=0.1, ge=0)
    ws_open_timeout_seconds: float = Field(default=10.0, gt=0)
    ws_ping_interval_seconds: float = Field(default=20.0, gt=0)

    reconnect_initial_seconds: float = Field(default=0.5, ge=CONNECT_MIN_INTERVAL_SECONDS)
    reconnect_max_seconds: float = Field(default=30.0, ge=CONNECT_MIN_INTERVAL_SECONDS)
    reconnect_multiplier: float = Field(default=2.0, ge=1.0)
    reconnect_jitter: float = Field(default=0.2, ge=0, le=1)

    rest_timeout_seconds: int = Field(default=20, ge=1)
    rest_max_retries: int = Field(default=3, ge=1)
    backfill_max_attempts: int = Field(default=5, ge=1)
    backfill_page_limit: int = Field(default=1000, ge=1, le=1000)
    backfill_retry_initial_seconds: float = Field(default=1.0, gt=0)
    backfill_retry_max_seconds: float = Field(default=30.0, gt=0)

    discovery_enabled: bool = Field(default=False)
    discovery_interval_seconds: float = Field(default=300.0, gt=0)
    discovery_quote_currencies: list[str] = Field(default_factory=lambda: ["USD"])

    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=True)

    model_config = SettingsConfigDict(
        env_prefix="CFL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("products")
    @classmethod
    def _normalize_products(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(item.strip().upper() for item in value if item.strip()))

    @field_validator("channels")
    @classmethod
    def _validate_channels(cls, value: list[str]) -> list[str]:
        channels = list(dict.fromkeys(Channel.parse(item).value for item in value))
        if not channels:
            raise ValueError("at least one channel is required")
        return channels

    @field_validator("visitors")
    @classmethod
    def _validate_visitors(cls, value: list[str]) -> list[str]:
        normalized = [item.strip().lower() for item in value if item.strip()]
        unknown = sorted(set(normalized) - KNOWN_VISITORS)
        if unknown:
            raise ValueError(f"Unknown visitors: {', '.join(unknown)}")
        return normalized
