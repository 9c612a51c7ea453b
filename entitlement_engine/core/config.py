import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List, Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Persistence
    STORE_BACKEND: str = "sql"  # memory | sql | redis
    DATABASE_URL: str = "sqlite:///./entitlements.db"
    REDIS_URL: str = "redis://localhost:6379"
    STORE_KEY_PREFIX: str = ""

    # Stripe (hosted payment link hand-off only, no secret key on the client)
    STRIPE_PUBLISHABLE_KEY: str = ""
    STRIPE_PAYMENT_LINK_BETA: str = ""

    # Crypto
    CRYPTO_RECIPIENT_ADDRESS: str = ""
    SUPPORTED_CHAINS: List[int] = [1, 8453, 137]
    BETA_PRICE_USD: float = 5.0
    ETHERSCAN_API_KEY: Optional[str] = None
    EXPLORER_TIMEOUT_SECONDS: float = 5.0

    # Entitlement policy
    VERIFICATION_INTERVAL_HOURS: int = 24
    LICENSE_PERIOD_DAYS: int = 365
    SUBSCRIPTION_PERIOD_DAYS: int = 30

    # License key brute-force throttle
    RATE_LIMIT_MAX_ATTEMPTS: int = 5
    RATE_LIMIT_WINDOW_SECONDS: int = 3600

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate payment configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("entitlements")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    payment_keys = [
        "STRIPE_PAYMENT_LINK_BETA",
        "CRYPTO_RECIPIENT_ADDRESS",
    ]

    if not any(getattr(cfg, key, None) for key in payment_keys):
        message = f"No payment path configured (set one of: {', '.join(payment_keys)})"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.STORE_BACKEND not in {"memory", "sql", "redis"}:
        message = f"Unknown STORE_BACKEND: {cfg.STORE_BACKEND}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
