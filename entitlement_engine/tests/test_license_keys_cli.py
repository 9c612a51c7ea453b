from entitlement_engine.features.license_keys import codec
from entitlement_engine.scripts.license_keys import main


def test_generate_prints_valid_keys(capsys):
    assert main(["generate", "--tier", "premium", "--count", "3"]) == 0
    keys = capsys.readouterr().out.split()
    assert len(keys) == 3
    assert all(codec.validate(key) and key.startswith("HA-PREMIUM-") for key in keys)


def test_check_reports_each_key(capsys):
    good = codec.generate("beta")
    assert main(["check", good]) == 0
    assert main(["check", good, "HA-GOLD-AAAAAAAA-AAAAAAAA"]) == 1

    out = capsys.readouterr().out
    assert f"{good}: valid" in out
    assert "HA-GOLD-AAAAAAAA-AAAAAAAA: invalid (tier)" in out
