"""
Runtime configuration for the Cargo Scan API.

Values are read from environment variables once, when this module is
imported. There is no runtime reconfiguration; restart the process to pick
up changes.
"""

import os
from dataclasses import dataclass, field
from typing import List


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _split_origins(value: str) -> List[str]:
    return [o.strip() for o in value.split(",") if o.strip()]


@dataclass
class Settings:
    """Application settings loaded from environment variables."""

    project_name: str = os.getenv("PROJECT_NAME", "Cargo Scan API")
    api_version: str = os.getenv("API_VERSION", "1.0.0")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    port: int = int(os.getenv("PORT", "8000"))

    database_url: str = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
    database_name: str = os.getenv("DATABASE_NAME", "cargo")
    collection_name: str = os.getenv("CARGO_COLLECTION", "cargo")
    mongo_timeout_ms: int = int(os.getenv("MONGO_TIMEOUT_MS", "5000"))

    # Insert the sample shipments when the collection is empty at startup.
    seed_sample_data: bool = _as_bool(os.getenv("SEED_SAMPLE_DATA", "true"))

    cors_origins: List[str] = field(
        default_factory=lambda: _split_origins(os.getenv("CORS_ORIGINS", "*"))
    )

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


settings = Settings()
