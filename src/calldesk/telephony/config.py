"""
Telephony provider configuration.

Disabled mode: when `enabled` is false or the Twilio credentials are absent,
call placement is skipped and SMS sends return a mock id, so the rest of the
system works without live credentials.
"""

from enum import Enum

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

STATUS_CALLBACK_PATH = "/webhooks/telephony/status"
RECORDING_CALLBACK_PATH = "/webhooks/telephony/recording"
VOICE_PATH = "/webhooks/telephony/voice"
INCOMING_PATH = "/webhooks/telephony/incoming"


class ProviderType(str, Enum):
    """Supported telephony provider types."""

    TWILIO = "twilio"
    MOCK = "mock"


class TelephonyConfig(BaseSettings):
    """Telephony provider configuration from environment."""

    model_config = SettingsConfigDict(
        env_prefix="TELEPHONY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Provider selection
    provider_type: ProviderType = Field(default=ProviderType.TWILIO)
    enabled: bool = Field(
        default=True,
        description="Master switch; false forces disabled mode even with credentials.",
    )

    # Provider credentials
    twilio_account_sid: str = Field(default="")
    twilio_auth_token: str = Field(default="")
    twilio_from_number: str = Field(default="")
    twilio_api_base_url: str = Field(default="https://api.twilio.com")

    # Public base URL the provider uses to reach our webhooks
    webhook_base_url: str = Field(default="http://localhost:8000")

    # Webhook authenticity; only disable for local development
    validate_signatures: bool = Field(default=True)

    # Call flow
    record_calls: bool = Field(default=True)
    agent_phone_number: str = Field(default="")
    inbound_greeting: str = Field(
        default="Thank you for calling. Please wait while we connect you to an available agent.",
    )
    outbound_greeting: str = Field(
        default="Hello, please hold while we connect your call.",
    )
    unavailable_message: str = Field(
        default="Sorry, no agent is available right now. Please try again later.",
    )

    request_timeout_seconds: float = Field(default=30.0, gt=0, le=120)

    @property
    def credentials_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_number)

    @property
    def is_enabled(self) -> bool:
        if self.provider_type == ProviderType.MOCK:
            return self.enabled
        return self.enabled and self.credentials_configured

    def get_webhook_url(self, path: str = STATUS_CALLBACK_PATH) -> str:
        base = self.webhook_base_url.rstrip("/")
        return f"{base}{path}"


def get_telephony_config() -> TelephonyConfig:
    return TelephonyConfig()
