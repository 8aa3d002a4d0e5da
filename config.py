from __future__ import annotations

from functools import lru_cache
from typing import Dict, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: Optional[str] = None
    DATABASE_NAME: Optional[str] = None

    JWT_SECRET: str = "dev-secret-change-me"
    JWT_EXPIRES_MIN: int = 60

    TAX_RATE: float = 0.08
    SHIPPING_RATES: Dict[str, float] = {
        "standard": 5.99,
        "express": 12.99,
        "overnight": 24.99,
    }
    SHIPPING_WEIGHT_THRESHOLD: float = 5.0
    SHIPPING_SURCHARGE_PER_LB: float = 2.0
    UNIT_WEIGHT_LB: float = 1.0  # one pair of shoes

    MAX_VARIANT_STOCK: int = 100_000
    ORDER_NUMBER_RETRIES: int = 5
    RELEASE_RETRIES: int = 3

    ENABLE_SWEEPS: bool = False
    SWEEP_INTERVAL_SECONDS: int = 60

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False


@lru_cache
def get_settings() -> Settings:
    return Settings()
