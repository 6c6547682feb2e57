import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Free tier quota (rolling window, not calendar days)
    FREE_TIER_LIMIT: int = 1
    QUOTA_WINDOW_SECONDS: int = 24 * 60 * 60

    # What to do when a read-only check cannot reach the store: "open" | "closed"
    STORE_FAILURE_POLICY: str = "closed"

    # Identity linking
    HEURISTIC_LINKING_ENABLED: bool = True
    LINK_WINDOW_SECONDS: int = 0  # 0 = no limit on claim age
    PAIRING_TOKEN_TTL_SECONDS: int = 600

    # Activation codes
    ACTIVATION_CODE_MAX_ATTEMPTS: int = 5

    # Early access cohort flag on newly seen identities
    EARLY_ACCESS_ENABLED: bool = False

    # Shown in FORBIDDEN / LIMIT_EXCEEDED hints
    UPGRADE_URL: str = "/upgrade"

    # Stripe (payment collaborator)
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None

    # CORS for the activation page
    CORS_ORIGINS: str = "http://localhost:3000"  # comma-separated

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("tutorgate")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    messages = []
    missing = [key for key in ("DATABASE_URL", "STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET") if not getattr(cfg, key, None)]
    if missing:
        messages.append(f"Missing required configuration: {', '.join(missing)}")

    policy = str(getattr(cfg, "STORE_FAILURE_POLICY", "closed")).lower()
    if policy not in ("open", "closed"):
        messages.append(f"STORE_FAILURE_POLICY must be 'open' or 'closed', got {policy!r}")

    if messages and strict_mode:
        raise RuntimeError("; ".join(messages))
    for message in messages:
        log.warning(message)
    return True
