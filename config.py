"""
Configuration module for the appointment slot engine.
Loads environment variables and provides typed configuration.
"""

from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file
env_path = Path(__file__).parent / ".env"
load_dotenv(dotenv_path=env_path)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""

    # Telegram notifications (disabled when no token is configured)
    bot_token: Optional[str] = None

    # Stripe
    stripe_secret_key: str = ""
    currency: str = "eur"
    stripe_webhook_secret: Optional[str] = (
        None  # Required in production for webhook verification
    )

    # Scheduling
    timezone: str = "Europe/Paris"
    generation_batch_size: int = 500
    reminder_hours_before: int = 24
    reaper_interval_minutes: int = 60
    scheduler_enabled: bool = True

    # Trusted operators may move/reassign a slot over an existing conflict
    allow_operator_conflict_override: bool = False

    # Timeouts and retries
    backing_store_timeout_seconds: float = 10.0
    notification_timeout_seconds: float = 5.0
    secondary_retry_delay_seconds: float = 0.5

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    environment: str = "development"  # development, staging, production

    # Logging
    log_level: str = "INFO"
    log_dir: str = "logs"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def notifications_enabled(self) -> bool:
        return bool(self.bot_token)

    def validate_all_required(self) -> None:
        """
        Validate that all required settings are present.

        Raises:
            ValueError: If required fields are missing or invalid
        """
        required_fields = [
            "supabase_url",
            "supabase_key",
        ]
        if self.environment == "production":
            required_fields += ["stripe_secret_key", "stripe_webhook_secret"]

        missing = []
        for field in required_fields:
            value = getattr(self, field, None)

            if not value:
                missing.append(field)
                continue

            # Placeholder values copied from .env.example
            if str(value).lower().startswith("your_"):
                missing.append(field)

        if self.generation_batch_size <= 0:
            missing.append("generation_batch_size")

        if missing:
            raise ValueError(
                f"Missing or invalid required configuration: "
                f"{', '.join(missing)}. "
                f"Please check your .env file and ensure all required "
                f"values are set."
            )


# Global settings instance
settings = Settings()
