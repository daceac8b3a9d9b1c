"""
Telephony provider factory.

Single source of truth for configuration:
- use TelephonyConfig (Pydantic Settings) which loads from OS env + .env
- never read raw os.getenv("TWILIO_*") here
"""

from __future__ import annotations

from functools import lru_cache

from calldesk.shared.logging import get_logger
from calldesk.telephony.config import ProviderType, TelephonyConfig
from calldesk.telephony.config import get_telephony_config as _load_telephony_config
from calldesk.telephony.interface import TelephonyProvider
from calldesk.telephony.mock_adapter import MockTelephonyAdapter
from calldesk.telephony.twilio_adapter import TwilioAdapter

logger = get_logger(__name__)


def _mask(s: str, keep: int = 6) -> str:
    if not s:
        return ""
    if len(s) <= keep:
        return "*" * len(s)
    return f"{s[:keep]}***"


@lru_cache(maxsize=1)
def get_telephony_config() -> TelephonyConfig:
    """Return cached TelephonyConfig loaded from OS env + .env."""
    return _load_telephony_config()


def build_telephony_provider(cfg: TelephonyConfig) -> TelephonyProvider:
    """Create the provider selected by `cfg.provider_type`."""
    logger.info(
        "Telephony config resolved",
        extra={
            "provider_type": cfg.provider_type.value,
            "enabled": cfg.is_enabled,
            "twilio_account_sid": _mask(cfg.twilio_account_sid),
            "twilio_from_number": cfg.twilio_from_number,
            "webhook_base_url": cfg.webhook_base_url,
        },
    )

    if cfg.provider_type == ProviderType.TWILIO:
        if not cfg.is_enabled:
            logger.warning(
                "Twilio credentials not configured or provider disabled; "
                "calls will be recorded but not placed",
            )
        return TwilioAdapter(cfg)

    if cfg.provider_type == ProviderType.MOCK:
        return MockTelephonyAdapter(enabled=cfg.enabled)

    raise ValueError(f"Unsupported telephony provider_type: {cfg.provider_type}")


@lru_cache(maxsize=1)
def get_telephony_provider() -> TelephonyProvider:
    """Create and cache the telephony provider using TelephonyConfig."""
    return build_telephony_provider(get_telephony_config())
