"""
Runtime configuration for CoachLink.

Everything comes from the environment (or a local .env). Plan limits,
code lifetime and lead throttling live here too, so they can change per
deployment; coaching_policy() hands them to the core services.
"""

from datetime import timedelta
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..core.coaching.models import SubscriptionTier
from ..core.coaching.policy import CoachingPolicy


class Settings(BaseSettings):
    """Environment-backed settings. List-valued settings are comma-separated strings."""

    # API Configuration
    api_title: str = "CoachLink API"
    api_version: str = "v1"
    api_keys: str = Field(
        default="dev-key-1,dev-key-2",
        description="Comma-separated API keys. Using a list enables key rotation without downtime."
    )
    admin_user_ids: str = Field(
        default="",
        description="Comma-separated user IDs allowed to list and update coaching leads."
    )

    # Snowflake Configuration
    snowflake_account: str = Field(
        default="",
        description="Snowflake account identifier"
    )
    snowflake_user: str = Field(
        default="",
        description="Snowflake service account username"
    )
    snowflake_password: str = Field(
        default="",
        description="Snowflake service account password"
    )
    snowflake_private_key_path: Optional[str] = Field(
        default=None,
        description="Path to RSA private key file for key-pair authentication"
    )
    snowflake_private_key_base64: Optional[str] = Field(
        default=None,
        description="Base64-encoded private key (for deployment, alternative to file path)"
    )
    snowflake_database: str = Field(
        default="COACHLINK",
        description="Snowflake database name"
    )
    snowflake_schema: str = Field(
        default="CONNECTIONS",
        description="Snowflake schema name"
    )
    snowflake_warehouse: str = Field(
        default="COMPUTE_WH",
        description="Snowflake warehouse for query execution"
    )
    snowflake_role: Optional[str] = Field(
        default=None,
        description="Snowflake role to use (optional)"
    )
    snowflake_mock_mode: bool = Field(
        default=False,
        description="Use in-memory stores instead of Snowflake. Enables local dev without DB."
    )
    mock_profiles: str = Field(
        default="demo-coach:coach@coachlink.dev:Demo Coach,demo-client:client@coachlink.dev:Demo Client",
        description="Comma-separated user_id:email:name profiles loaded into the mock-mode directory."
    )

    # Email Configuration
    smtp_host: str = Field(
        default="",
        description="SMTP relay host for invite codes and lead notifications"
    )
    smtp_port: int = Field(
        default=587,
        description="SMTP relay port"
    )
    smtp_username: str = Field(
        default="",
        description="SMTP username. Leave empty for relays without auth."
    )
    smtp_password: str = Field(
        default="",
        description="SMTP password"
    )
    smtp_use_tls: bool = Field(
        default=True,
        description="Issue STARTTLS before sending"
    )
    email_from: str = Field(
        default="noreply@coachlink.app",
        description="From address on outgoing email"
    )
    messaging_mock_mode: bool = Field(
        default=False,
        description="Keep outgoing email in memory instead of sending it."
    )

    # Plans and capacity
    tier_limit_starter: int = Field(
        default=10,
        description="Client seats included in the starter plan"
    )
    tier_limit_growth: int = Field(
        default=30,
        description="Client seats included in the growth plan"
    )
    tier_limit_pro: int = Field(
        default=100,
        description="Client seats included in the pro plan"
    )
    max_extra_clients: int = Field(
        default=5,
        description="Maximum overflow seats a coach can buy on top of the plan"
    )

    # Invite codes
    invite_code_ttl_hours: int = Field(
        default=48,
        description="How long an invite code stays valid after approval"
    )
    invite_code_max_attempts: int = Field(
        default=5,
        description="Wrong guesses allowed before a code is revoked"
    )

    # Reminders and leads
    reminder_message_max_length: int = Field(
        default=500,
        description="Maximum length of the optional note on a reminder"
    )
    lead_throttle_hours: int = Field(
        default=24,
        description="Minimum hours between coaching lead submissions per user"
    )
    lead_inbox_email: str = Field(
        default="",
        description="Where new coaching lead notifications are sent. Empty disables them."
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    # CORS
    cors_origins: str = Field(
        default="http://localhost:3000",
        description="Comma-separated list of allowed CORS origins. Use * for development only."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def api_keys_list(self) -> list[str]:
        """Parse comma-separated API keys into a list."""
        return [key.strip() for key in self.api_keys.split(",") if key.strip()]

    @property
    def admin_user_ids_list(self) -> list[str]:
        """Parse comma-separated admin user IDs into a list."""
        return [uid.strip() for uid in self.admin_user_ids.split(",") if uid.strip()]

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list."""
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def mock_profiles_list(self) -> list[tuple[str, str, str]]:
        """Parse mock profiles into (user_id, email, name). The name may be left off."""
        profiles = []
        for entry in self.mock_profiles.split(","):
            parts = [part.strip() for part in entry.split(":", 2)]
            if len(parts) < 2 or not parts[0] or not parts[1]:
                continue
            name = parts[2] if len(parts) == 3 else ""
            profiles.append((parts[0], parts[1], name))
        return profiles

    def coaching_policy(self) -> CoachingPolicy:
        """Business rules for the core services, built from these settings."""
        return CoachingPolicy(
            tier_limits={
                SubscriptionTier.STARTER: self.tier_limit_starter,
                SubscriptionTier.GROWTH: self.tier_limit_growth,
                SubscriptionTier.PRO: self.tier_limit_pro,
            },
            max_extra_clients=self.max_extra_clients,
            invite_code_ttl=timedelta(hours=self.invite_code_ttl_hours),
            invite_code_max_attempts=self.invite_code_max_attempts,
            lead_throttle_window=timedelta(hours=self.lead_throttle_hours),
            reminder_message_max_length=self.reminder_message_max_length,
            lead_inbox_email=self.lead_inbox_email,
        )

    def validate_required_fields(self) -> list[str]:
        """
        Names of the environment variables that must be set but are not.

        Which ones are required depends on the mock modes, so this cannot
        be expressed as field validation.
        """
        missing = []

        if not self.snowflake_mock_mode:
            if not self.snowflake_account:
                missing.append("SNOWFLAKE_ACCOUNT")
            if not self.snowflake_user:
                missing.append("SNOWFLAKE_USER")
            # Password or key pair
            if not (
                self.snowflake_password
                or self.snowflake_private_key_path
                or self.snowflake_private_key_base64
            ):
                missing.append("SNOWFLAKE_PASSWORD or SNOWFLAKE_PRIVATE_KEY_PATH")

        if not self.messaging_mock_mode and not self.smtp_host:
            missing.append("SMTP_HOST")

        return missing


@lru_cache()
def get_settings() -> Settings:
    """Settings are read once per process. Tests call get_settings.cache_clear()."""
    return Settings()
