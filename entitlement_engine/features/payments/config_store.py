"""
Payment configuration: load with defaults, validate, persist.

Defaults come from Settings (env / .env). The operator can override them at
runtime through configure(); a write that breaks a format invariant is
rejected with ConfigurationError and the stored config stays as it was.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from entitlement_engine.core.config import Settings, settings as default_settings
from entitlement_engine.core.errors import ConfigurationError
from entitlement_engine.core.store import KeyValueStore
from entitlement_engine.models.billing import PaymentConfig


logger = logging.getLogger("entitlements")

PAYMENT_CONFIG_KEY = "billing_payment_config"

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def default_payment_config(cfg: Optional[Settings] = None) -> PaymentConfig:
    cfg = cfg or default_settings
    return PaymentConfig(
        stripe_publishable_key=cfg.STRIPE_PUBLISHABLE_KEY,
        stripe_payment_link_beta=cfg.STRIPE_PAYMENT_LINK_BETA,
        crypto_recipient_address=cfg.CRYPTO_RECIPIENT_ADDRESS,
        supported_chains=list(cfg.SUPPORTED_CHAINS),
        beta_price_usd=cfg.BETA_PRICE_USD,
        etherscan_api_key=cfg.ETHERSCAN_API_KEY or "",
    )


def is_real_crypto_address(address: Optional[str]) -> bool:
    """A well-formed address that is not the all-zero placeholder."""
    if not address or not _ADDRESS_RE.match(address):
        return False
    return address.lower() != ZERO_ADDRESS


def validate_payment_config(partial: Dict[str, Any]) -> None:
    """Check the fields present in partial. Empty strings clear a field and are allowed."""
    key = partial.get("stripe_publishable_key")
    if key and not str(key).startswith("pk_"):
        raise ConfigurationError("Invalid Stripe publishable key format")

    address = partial.get("crypto_recipient_address")
    if address:
        if not _ADDRESS_RE.match(str(address)):
            raise ConfigurationError("Invalid Ethereum address format")
        if not is_real_crypto_address(str(address)):
            raise ConfigurationError("Crypto recipient address is the zero address")

    price = partial.get("beta_price_usd")
    if price is not None:
        try:
            amount = float(price)
        except (TypeError, ValueError):
            raise ConfigurationError("Beta price must be a number")
        if amount <= 0:
            raise ConfigurationError("Beta price must be positive")


def _normalize_partial(partial: Dict[str, Any]) -> Dict[str, Any]:
    """Accept snake_case or camelCase keys; drop unknown ones."""
    fields = PaymentConfig.model_fields
    by_alias = {info.alias: name for name, info in fields.items() if info.alias}
    normalized = {}
    for key, value in partial.items():
        name = key if key in fields else by_alias.get(key)
        if name is not None:
            normalized[name] = value
    return normalized


class ConfigStore:
    def __init__(self, store: KeyValueStore, *, defaults: Optional[PaymentConfig] = None, key: str = PAYMENT_CONFIG_KEY):
        self.store = store
        self.defaults = defaults or default_payment_config()
        self.key = key

    def _merge(self, raw) -> PaymentConfig:
        merged = self.defaults.model_dump()
        if raw:
            try:
                stored = PaymentConfig.model_validate(raw)
                merged.update(stored.model_dump(exclude_unset=True))
            except PydanticValidationError:
                logger.warning("[billing] stored payment config unreadable, using defaults")
        return PaymentConfig(**merged)

    async def load(self) -> PaymentConfig:
        data = await self.store.get([self.key])
        return self._merge(data.get(self.key))

    async def configure(self, partial: Dict[str, Any]) -> PaymentConfig:
        changes = _normalize_partial(partial)
        validate_payment_config(changes)

        def mutate(raw):
            current = self._merge(raw).model_dump()
            current.update(changes)
            try:
                return PaymentConfig(**current).to_store()
            except PydanticValidationError as exc:
                raise ConfigurationError(f"Invalid payment config: {exc.errors()[0]['msg']}")

        stored = await self.store.update(self.key, mutate)
        config = self._merge(stored)
        logger.info(
            "[billing] payment config updated",
            extra={"event_type": "config.updated", "fields": sorted(changes)},
        )
        return config
