# app/config.py
from __future__ import annotations

import os
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings

APP_VERSION = os.getenv("APP_VERSION", "1.0.0")


class Settings(BaseSettings):
    # --- Identity / Build ---
    APP_NAME: str = Field(default="GenAI Guardrail Firewall")
    VERSION: str = Field(default=APP_VERSION)

    # --- Limits ---
    MAX_PROMPT_CHARS: int = Field(default=20000, ge=1)
    MAX_IMAGE_PIXELS: int = Field(default=16_000_000, ge=1)

    # --- Timeouts (seconds); a timeout counts as a failure of that call ---
    GATE1_TIMEOUT_S: float = Field(default=2.0, gt=0)
    DOWNSTREAM_TIMEOUT_S: float = Field(default=30.0, gt=0)
    GATE2_BUDGET_S: float = Field(default=5.0, gt=0)
    AUDIT_WRITE_TIMEOUT_S: float = Field(default=1.0, gt=0)
    REGISTRY_READ_TIMEOUT_S: float = Field(default=2.0, gt=0)

    # --- Circuit-breaker thresholds (violation iff score > threshold) ---
    THRESHOLD_JAILBREAK: float = Field(default=0.75, ge=0.0, le=1.0)
    THRESHOLD_IP_MIMICRY: float = Field(default=0.80, ge=0.0, le=1.0)

    # --- Style registry cache ---
    REGISTRY_REFRESH_INTERVAL_S: float = Field(default=30.0, gt=0)

    # --- Audit buffering / retry ---
    AUDIT_BUFFER_CAPACITY: int = Field(default=1000, ge=1)
    AUDIT_DEAD_LETTER_CAPACITY: int = Field(default=1000, ge=1)
    AUDIT_BACKOFF_BASE_S: float = Field(default=0.5, gt=0)
    AUDIT_BACKOFF_CAP_S: float = Field(default=30.0, gt=0)
    AUDIT_MAX_ATTEMPTS: int = Field(default=8, ge=1)
    AUDIT_RETENTION_DAYS: int = Field(default=365, ge=1)

    # --- Durable store ---
    STORE_BACKEND: Literal["memory", "redis"] = Field(default="memory")
    REDIS_URL: Optional[str] = None  # e.g. redis://localhost:6379/0
    REDIS_NAMESPACE: str = Field(default="guardrail")

    # --- External capabilities; empty URL selects the local adapters ---
    SCORE_ORACLE_URL: str = Field(default="")
    SCORE_ORACLE_API_KEY: str = Field(default="")
    VISION_ORACLE_URL: str = Field(default="")
    VISION_ORACLE_API_KEY: str = Field(default="")
    GENERATIVE_BACKEND_URL: str = Field(default="")

    # --- Optional breaker in front of the HTTP oracle adapters ---
    ORACLE_CB_ENABLED: bool = Field(default=False)
    ORACLE_CB_FAILURE_THRESHOLD: int = Field(default=5, ge=1)
    ORACLE_CB_RECOVERY_SECONDS: int = Field(default=30, ge=1)

    # --- Header names ---
    API_KEY_HEADER: str = Field(default="X-API-Key")

    # --- Logging ---
    LOG_JSON: bool = Field(default=True)
    LOG_LEVEL: str = Field(default="INFO")

    model_config = {
        "extra": "ignore",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


def get_settings() -> Settings:
    return Settings()
