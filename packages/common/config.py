from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import Any, Dict

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .constants import BASE_INTERVAL, GLOBAL_START_DATE, UPSTOX_HISTORICAL_URL, UPSTOX_ORIGIN_URL
from .timeframes import parse_interval


class ApiConfig(BaseModel):
    base_url: str = UPSTOX_HISTORICAL_URL
    origin_url: str = UPSTOX_ORIGIN_URL  # handshake target

    # Credential produced by the login flow (either or both)
    access_token: str = ""
    cookies: Dict[str, str] = Field(default_factory=dict)

    request_timeout_s: float = 30.0
    user_agent: str = "watchlist-backfill/1.0"

    @field_validator("request_timeout_s")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("api.request_timeout_s must be > 0")
        return v


class FetcherConfig(BaseModel):
    concurrent_requests: int = 10
    client_refresh_threshold: int = 250
    max_retries: int = 3

    rate_limit_backoff_min_s: float = 2.0
    rate_limit_backoff_max_s: float = 4.0
    handshake_pause_s: float = 5.0

    @field_validator("concurrent_requests", "client_refresh_threshold")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @field_validator("max_retries")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @model_validator(mode="after")
    def _backoff_window(self) -> "FetcherConfig":
        if self.rate_limit_backoff_min_s < 0 or self.rate_limit_backoff_max_s < self.rate_limit_backoff_min_s:
            raise ValueError("fetcher.rate_limit_backoff_* must satisfy 0 <= min <= max")
        return self


class HistoryConfig(BaseModel):
    start_date: date = GLOBAL_START_DATE
    interval: str = BASE_INTERVAL

    @field_validator("interval")
    @classmethod
    def _valid_interval(cls, v: str) -> str:
        parse_interval(v)
        return v.strip()


class DataConfig(BaseModel):
    root_path: str = "data/candles"
    save_concurrency: int = 8

    @field_validator("save_concurrency")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("data.save_concurrency must be >= 1")
        return v


class BackfillConfig(BaseModel):
    api: ApiConfig = Field(default_factory=ApiConfig)
    fetcher: FetcherConfig = Field(default_factory=FetcherConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    data: DataConfig = Field(default_factory=DataConfig)


def _maybe_load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text())
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML structure in {path}")
    return data


def load_backfill_config(path: Path = Path("config/backfill.yaml"), *, required: bool = False) -> BackfillConfig:
    if required and not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")

    raw = _maybe_load_yaml(path)
    return BackfillConfig.model_validate(raw) if raw else BackfillConfig()
