import json
import logging

from entitlement_engine.core.logging import (
    JsonFormatter,
    RequestIdFilter,
    _safe_truncate,
    mask_hash,
    mask_license_key,
    request_id_ctx_var,
)


def _record(msg="hello", **extra):
    record = logging.LogRecord("entitlements", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_license_keys_are_masked():
    assert mask_license_key("ha-beta-abcdefgh-ijklmnop") == "HA-BETA-****"
    assert mask_license_key("garbage") == "****"
    assert mask_license_key(None) == "<none>"


def test_hashes_are_shortened():
    assert mask_hash("0x" + "ab" * 32) == "0xabababab..."
    assert mask_hash("0x12") == "0x12"


def test_request_id_filter_uses_context():
    token = request_id_ctx_var.set("rid-1")
    try:
        record = _record()
        RequestIdFilter().filter(record)
    finally:
        request_id_ctx_var.reset(token)
    assert record.request_id == "rid-1"


def test_json_formatter_includes_structured_fields():
    record = _record(request_id="rid-2", event_type="license.activated", plan="beta", chain_id=None)
    payload = json.loads(JsonFormatter().format(record))
    assert payload["message"] == "hello"
    assert payload["request_id"] == "rid-2"
    assert payload["event_type"] == "license.activated"
    assert payload["plan"] == "beta"
    assert "chain_id" not in payload
    assert payload["timestamp"].endswith("Z")


def test_safe_truncate():
    assert _safe_truncate("x" * 10, limit=5) == "xxxxx...<truncated>"
    assert _safe_truncate(42) == "42"
