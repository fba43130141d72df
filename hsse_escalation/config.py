"""Configuration management for the HSSE escalation service."""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with validation."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "HSSE Escalation Service"
    VERSION: str = "0.1.0"
    DEBUG: bool = Field(default=False, description="Enable debug mode")
    ENVIRONMENT: str = Field(default="development", description="Environment")

    # API Configuration
    HOST: str = Field(default="0.0.0.0", description="Host to bind")
    PORT: int = Field(default=8000, description="Port to bind")

    # Database
    DATABASE_URL: str = Field(
        default="sqlite+aiosqlite:///./hsse_escalation.db",
        description="Database connection URL"
    )
    DB_RETRY_ATTEMPTS: int = Field(
        default=3,
        description="Attempts for transient database errors on reads"
    )

    # SMTP Configuration
    SMTP_HOST: str = Field(default="", description="SMTP server host")
    SMTP_PORT: int = Field(default=587, description="SMTP server port")
    SMTP_USER: str = Field(default="", description="SMTP username")
    SMTP_PASS: str = Field(default="", description="SMTP password")
    SMTP_USE_TLS: bool = Field(default=True, description="Issue STARTTLS")
    SMTP_FROM: str = Field(
        default="noreply@harmoni360.com",
        description="From email address"
    )
    SMTP_FROM_NAME: str = Field(
        default="HSSE Notifications",
        description="From name for emails"
    )

    # Twilio SMS
    TWILIO_ACCOUNT_SID: str = Field(default="", description="Twilio Account SID")
    TWILIO_AUTH_TOKEN: str = Field(default="", description="Twilio Auth Token")
    TWILIO_FROM_NUMBER: str = Field(default="", description="Twilio phone number")
    TWILIO_STATUS_CALLBACK_URL: Optional[str] = Field(
        default=None,
        description="Delivery status callback passed to Twilio"
    )

    # Push and in-app delivery
    PUSH_GATEWAY_URL: str = Field(default="", description="Push gateway endpoint")
    PUSH_API_KEY: str = Field(default="", description="Push gateway API key")
    IN_APP_NOTIFY_URL: str = Field(
        default="",
        description="Host application endpoint for in-app notifications"
    )
    IN_APP_API_KEY: str = Field(default="", description="In-app endpoint API key")

    # Incident collaborator
    INCIDENT_API_URL: str = Field(
        default="http://localhost:5000/api",
        description="Base URL of the host application's incident API"
    )
    INCIDENT_API_TOKEN: str = Field(default="", description="Bearer token for the incident API")
    INCIDENT_URL_BASE: str = Field(
        default="https://harmoni360.com/incidents",
        description="Base URL used for incident links in notifications"
    )

    # Escalation Configuration
    SWEEP_INTERVAL_SECONDS: int = Field(
        default=300,
        description="How often to sweep open incidents for duration rules"
    )
    SWEEP_CONCURRENCY: int = Field(
        default=8,
        description="Maximum incidents evaluated concurrently during a sweep"
    )
    ESCALATION_RULES_FILE: Optional[str] = Field(
        default=None,
        description="YAML file of rules seeded when the rule table is empty"
    )
    SEED_DEFAULT_RULES: bool = Field(
        default=True,
        description="Seed built-in rules when the rule table is empty"
    )
    CONTACTS_FILE: str = Field(
        default="hsse_escalation/escalation/contacts.json",
        description="Escalation contact directory"
    )
    MANAGEMENT_ESCALATION_TARGET: str = Field(
        default="management",
        description="Directory target notified on manual escalation"
    )
    SYSTEM_ACTOR: str = Field(
        default="system",
        description="executed_by value for automatic escalations"
    )

    # Notification dispatch
    TEMPLATES_FILE: Optional[str] = Field(
        default=None,
        description="YAML file overriding built-in notification templates"
    )
    NOTIFICATION_LANGUAGE: str = Field(
        default="en",
        description="Template language when an action does not set one"
    )
    DISPATCH_WORKERS: int = Field(default=4, description="Dispatcher worker tasks")
    DISPATCH_QUEUE_SIZE: int = Field(default=1000, description="Dispatcher queue bound")
    CHANNEL_SEND_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Per-call timeout for a channel send"
    )

    # Monitoring & Observability
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: str = Field(default="json", description="json or console")

    # Features
    ENABLE_ESCALATION: bool = Field(
        default=True,
        description="Enable automatic escalation sweeps"
    )
    ENABLE_SMS_ALERTS: bool = Field(
        default=True,
        description="Enable SMS alerts via Twilio"
    )

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalise the log level name."""
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            return "INFO"
        return level

    @field_validator("SWEEP_CONCURRENCY", "DISPATCH_WORKERS", "DISPATCH_QUEUE_SIZE")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Pool and queue sizes must be at least one."""
        return max(1, v)


# Global settings instance
settings = Settings()
