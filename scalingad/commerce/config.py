"""Configuration for the ScalingAd commerce core.

Process-wide settings (processor credentials, fee rate, timeouts) are read
once at startup and injected into the services that need them.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import FrozenSet, Optional

from dotenv import load_dotenv

from scalingad.utils import get_scalingad_home

PLATFORM_NAME = "scalingad"

CHARGE_MODEL_DESTINATION = "destination"
CHARGE_MODEL_SEPARATE = "separate"
CHARGE_MODELS = (CHARGE_MODEL_DESTINATION, CHARGE_MODEL_SEPARATE)


@dataclass(frozen=True)
class CommerceConfig:
    """Immutable settings for the escrow core."""

    # Processor
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_api_version: str = "2023-10-16"
    stripe_account_country: str = "US"
    processor_timeout_seconds: float = 20.0
    processor_max_network_retries: int = 0

    # Money
    platform_fee_rate: Decimal = Decimal("0.10")
    default_currency: str = "USD"
    charge_model: str = CHARGE_MODEL_DESTINATION

    # Orchestration
    retry_backoff_seconds: float = 0.5
    admin_actor_ids: FrozenSet[str] = field(default_factory=frozenset)

    # Storage
    db_path: Optional[Path] = None

    def __post_init__(self):
        if self.charge_model not in CHARGE_MODELS:
            raise ValueError(f"Invalid charge model: {self.charge_model}")
        rate = Decimal(str(self.platform_fee_rate))
        if rate < 0 or rate > 1:
            raise ValueError("Platform fee rate must be between 0 and 1")
        object.__setattr__(self, "platform_fee_rate", rate)
        if self.processor_timeout_seconds <= 0:
            raise ValueError("Processor timeout must be positive")

    @property
    def resolved_db_path(self) -> Path:
        """Database path, defaulting to the ScalingAd home directory."""
        return self.db_path or get_scalingad_home() / "escrow.db"

    @classmethod
    def from_env(cls, env_file: Optional[str] = ".env") -> "CommerceConfig":
        """Build configuration from environment variables (and a .env file if present)."""
        if env_file:
            load_dotenv(env_file)

        admins = os.environ.get("SCALINGAD_ADMIN_ACTOR_IDS", "")
        db_path = os.environ.get("SCALINGAD_DB_PATH")
        return cls(
            stripe_secret_key=os.environ.get("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET"),
            stripe_api_version=os.environ.get("STRIPE_API_VERSION", "2023-10-16"),
            stripe_account_country=os.environ.get("STRIPE_ACCOUNT_COUNTRY", "US"),
            processor_timeout_seconds=float(
                os.environ.get("SCALINGAD_PROCESSOR_TIMEOUT", "20")
            ),
            processor_max_network_retries=int(
                os.environ.get("SCALINGAD_PROCESSOR_MAX_RETRIES", "0")
            ),
            platform_fee_rate=Decimal(os.environ.get("SCALINGAD_PLATFORM_FEE_RATE", "0.10")),
            default_currency=os.environ.get("SCALINGAD_DEFAULT_CURRENCY", "USD").upper(),
            charge_model=os.environ.get("SCALINGAD_CHARGE_MODEL", CHARGE_MODEL_DESTINATION),
            retry_backoff_seconds=float(os.environ.get("SCALINGAD_RETRY_BACKOFF", "0.5")),
            admin_actor_ids=frozenset(a.strip() for a in admins.split(",") if a.strip()),
            db_path=Path(db_path).expanduser() if db_path else None,
        )
