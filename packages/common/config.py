from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .constants import (
    AVAILABLE_GRANULARITIES,
    DEFAULT_DATAPOINTS,
    DEFAULT_GRANULARITY,
    DEFAULT_PRODUCT,
)


def normalize_product(product: str) -> str:
    p = product.strip().upper()
    if "-" not in p:
        raise ValueError(f"product must look like 'BTC-EUR' (got {product!r})")
    base, quote = p.split("-", 1)
    if not base or not quote:
        raise ValueError(f"product must look like 'BTC-EUR' (got {product!r})")
    return f"{base}-{quote}"


class ProviderConfig(BaseModel):
    base_url: str = "https://api.pro.coinbase.com"
    request_timeout_s: float = Field(default=10.0, gt=0)
    user_agent: str = "CPTB Client"


class LimiterConfig(BaseModel):
    # Token bucket
    reservoir: int = Field(default=30, ge=0)           # permits available at start
    max_slots: int = Field(default=30, ge=1)           # bucket never refills past this
    refill_amount: int = Field(default=100, ge=1)
    refill_interval_s: float = Field(default=30.0, gt=0)

    # Hard caps layered on top of the bucket
    max_concurrent: int = Field(default=1, ge=1)
    min_spacing_s: float = Field(default=1.0, ge=0)

    @model_validator(mode="after")
    def _clamp_reservoir(self) -> "LimiterConfig":
        if self.reservoir > self.max_slots:
            raise ValueError(f"reservoir ({self.reservoir}) must be <= max_slots ({self.max_slots})")
        return self


class RetryPolicy(BaseModel):
    """
    Transient-failure policy. max_attempts=None retries a range forever, so the
    drain signal waits for true exhaustion.
    """

    max_attempts: Optional[int] = Field(default=None, ge=1)
    backoff_s: float = Field(default=0.0, ge=0)
    max_backoff_s: float = Field(default=60.0, ge=0)

    def delay_for(self, attempt: int) -> float:
        if self.backoff_s <= 0:
            return 0.0
        return min(self.backoff_s * (2 ** max(attempt - 1, 0)), self.max_backoff_s)

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts is not None and attempt >= self.max_attempts


class ImportDefaults(BaseModel):
    product: str = DEFAULT_PRODUCT
    datapoints: int = Field(default=DEFAULT_DATAPOINTS, ge=1)
    granularity: int = DEFAULT_GRANULARITY
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    @field_validator("product")
    @classmethod
    def _validate_product(cls, v: str) -> str:
        return normalize_product(v)

    @field_validator("granularity")
    @classmethod
    def _validate_granularity(cls, v: int) -> int:
        if v not in AVAILABLE_GRANULARITIES:
            raise ValueError(f"granularity must be one of {list(AVAILABLE_GRANULARITIES)} (got {v})")
        return v


class DataConfig(BaseModel):
    db_path: str = "data/database.sqlite"
    dedupe_candles: bool = False


class CPTBConfig(BaseModel):
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    limiter: LimiterConfig = Field(default_factory=LimiterConfig)
    importer: ImportDefaults = Field(default_factory=ImportDefaults)
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


def load_cptb_config(
    provider_path: Path = Path("config/provider.yaml"),
    limiter_path: Path = Path("config/limiter.yaml"),
    importer_path: Path = Path("config/importer.yaml"),
    data_path: Path = Path("config/data.yaml"),
) -> CPTBConfig:
    # Every file is optional; missing ones fall back to defaults.
    provider_raw = _maybe_load_yaml(provider_path)
    limiter_raw = _maybe_load_yaml(limiter_path)
    importer_raw = _maybe_load_yaml(importer_path)
    data_raw = _maybe_load_yaml(data_path)

    provider = ProviderConfig.model_validate(provider_raw) if provider_raw else ProviderConfig()
    limiter = LimiterConfig.model_validate(limiter_raw) if limiter_raw else LimiterConfig()
    importer = ImportDefaults.model_validate(importer_raw) if importer_raw else ImportDefaults()
    data_cfg = DataConfig.model_validate(data_raw) if data_raw else DataConfig()

    if not data_cfg.db_path.strip():
        raise ValueError("data.db_path must be set (e.g. 'data/database.sqlite')")

    return CPTBConfig(
        provider=provider,
        limiter=limiter,
        importer=importer,
        data=data_cfg,
    )
