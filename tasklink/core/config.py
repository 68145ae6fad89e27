"""Configuration management for tasklink."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # SQLite Configuration
    sqlite_db_path: str = Field(default="data/tasklink.db", description="Path to the SQLite database file")

    # Pydantic Logfire Configuration (optional)
    logfire_token: str | None = Field(default=None, description="Pydantic Logfire token for observability")
    environment: str = Field(default="development", description="Deployment environment reported to Logfire")

    # Push Notification Configuration
    enable_push_notifications: bool = Field(
        default=False, description="Deliver push notifications in addition to in-app notifications"
    )
    expo_push_url: str = Field(
        default="https://exp.host/--/api/v2/push/send", description="Expo push notification endpoint"
    )
    expo_access_token: str | None = Field(default=None, description="Expo access token (optional)")

    # Trust Scoring Configuration
    trust_count_duplicate_levels: bool = Field(
        default=True,
        description="Count every approved artifact at a level (True) or at most one per level (False)",
    )

    # Matching & Calendar Configuration
    match_distance_cutoff_km: float = Field(
        default=20.0, description="Distance at which the distance factor of the match score reaches zero"
    )
    availability_window_days: int = Field(
        default=14, description="Number of days covered by a provider's available-slot view"
    )

    def require_credential(self, field_name: str, service_name: str) -> str:
        """Validate that a required credential is set, raising a clear error if missing.

        Args:
            field_name: Name of the field to check
            service_name: Human-readable service name for error message

        Returns:
            The credential value

        Raises:
            ValueError: If the credential is None or empty
        """
        value = getattr(self, field_name)
        if not value:
            raise ValueError(
                f"{service_name} credential not configured. "
                f"Set {field_name.upper()} environment variable or add to .env file."
            )
        return value


# Application Constants
class Constants:
    """Application-wide constants."""

    # API Configuration
    API_TIMEOUT_SECONDS: int = 30

    # Trust Scoring
    TRUST_LEVEL_WEIGHTS: dict[int, int] = {1: 20, 2: 25, 3: 30, 4: 40}  # noqa: RUF012
    CLIENT_POINTS_PER_ARTIFACT: int = 50
    TRUST_SCORE_MAX: int = 100
    VERIFICATION_APPROVAL_CONFIDENCE: int = 85  # Minimum verifier confidence for approval

    # Match Score Weights (sum to 1.0)
    MATCH_WEIGHT_DISTANCE: float = 0.25
    MATCH_WEIGHT_TRUST: float = 0.20
    MATCH_WEIGHT_RATING: float = 0.20
    MATCH_WEIGHT_PRICE: float = 0.15
    MATCH_WEIGHT_SKILLS: float = 0.10
    MATCH_WEIGHT_LANGUAGE: float = 0.05
    MATCH_WEIGHT_AVAILABILITY: float = 0.05
    MAX_RATING: float = 5.0

    # Calendar
    SLOT_LENGTH_HOURS: int = 2
    SCHEDULE_GENERATION_DAYS: int = 30

    # Document Expiry (days)
    EXPIRY_DAYS_IDENTITY: int = 5 * 365
    EXPIRY_DAYS_ADDRESS: int = 90
    EXPIRY_DAYS_DEFAULT: int = 365

    # Pagination Defaults
    DEFAULT_PER_PAGE_LIMIT: int = 100

    # Paths
    PROJECT_ROOT: Path = Path(__file__).parent.parent.parent


def get_settings() -> Settings:
    """Get application settings (singleton pattern)."""
    return Settings()


# Global settings instance
settings = get_settings()
constants = Constants()
