from typing import List, Literal, Optional

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Server
    host: str = "0.0.0.0"
    port: int = 8080
    public_url: str = "http://localhost:8080"
    product_name: str = "Meetd"
    cors_origins: List[str] = ["http://localhost:5173", "http://127.0.0.1:5173"]
    allow_open_registration: bool = False

    # Secrets at rest are sealed with a key derived from this value
    server_secret: SecretStr

    # Storage
    storage: Literal["sqlite", "memory"] = "sqlite"
    database_path: str = "meetd.db"

    # Proposals
    proposal_ttl_days: int = 7
    max_proposal_lifetime_days: int = 7
    sweep_interval_seconds: float = 60.0
    key_directory_url: Optional[str] = None

    # Credentials: "interactive" | "moderate" | "sensitive" | "min" (tests only)
    credential_hash_strength: Literal["min", "interactive", "moderate", "sensitive"] = "interactive"

    # Availability
    slot_granularity_minutes: int = 30
    work_day_start_hour: int = 9
    work_day_end_hour: int = 17
    default_timezone: str = "UTC"
    min_lead_minutes: int = 240
    max_lead_days: int = 14
    max_slots: int = 20

    # Webhooks
    webhook_timeout_seconds: float = 10.0
    webhook_max_attempts: int = 5
    webhook_backoff_base_seconds: float = 0.5
    webhook_backoff_max_seconds: float = 30.0
    webhook_workers: int = 2

    # Logging
    log_level: str = "INFO"
    log_format: Literal["text", "json"] = "text"

    model_config = SettingsConfigDict(
        env_prefix="MEETD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def signature_header(self) -> str:
        return f"X-{self.product_name}-Signature"
