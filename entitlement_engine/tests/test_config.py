import logging

import pytest

from entitlement_engine.core.config import Settings, validate_config
from entitlement_engine.tests.mocks import RECIPIENT


def test_missing_payment_path_warns(caplog):
    logger = logging.getLogger("test.config")
    with caplog.at_level(logging.WARNING, logger="test.config"):
        assert validate_config(strict=False, settings_obj=Settings(), logger=logger) is True
    assert any("No payment path configured" in r.message for r in caplog.records)


def test_missing_payment_path_raises_in_strict_mode():
    with pytest.raises(RuntimeError):
        validate_config(strict=True, settings_obj=Settings())


def test_strict_flag_comes_from_settings():
    with pytest.raises(RuntimeError):
        validate_config(settings_obj=Settings(CONFIG_STRICT=True))


def test_unknown_store_backend_is_reported(caplog):
    cfg = Settings(CRYPTO_RECIPIENT_ADDRESS=RECIPIENT, STORE_BACKEND="mongo")
    with pytest.raises(RuntimeError):
        validate_config(strict=True, settings_obj=cfg)

    logger = logging.getLogger("test.config")
    with caplog.at_level(logging.WARNING, logger="test.config"):
        validate_config(strict=False, settings_obj=cfg, logger=logger)
    assert [r.message for r in caplog.records] == ["Unknown STORE_BACKEND: mongo"]


def test_configured_payment_path_is_quiet(caplog):
    cfg = Settings(STRIPE_PAYMENT_LINK_BETA="https://buy.stripe.com/test_abc")
    logger = logging.getLogger("test.config")
    with caplog.at_level(logging.WARNING, logger="test.config"):
        validate_config(strict=True, settings_obj=cfg, logger=logger)
    assert caplog.records == []
