import backend.config as config


def test_ttl_table_applies_base_then_per_kind_override(monkeypatch):
    monkeypatch.setenv("CHAINROLL_CHAIN_TTL_SECONDS", "12")
    monkeypatch.setenv("CHAINROLL_EXIT_CHAIN_TTL_SECONDS", "30")

    table = config._ttl_table("CHAIN", config.CHAIN_KINDS, 10)

    assert table["ENTRY"] == 12
    assert table["EXIT"] == 30
    assert set(table) == set(config.CHAIN_KINDS)


def test_ttl_table_ignores_invalid_values(monkeypatch):
    monkeypatch.setenv("CHAINROLL_BROADCAST_TTL_SECONDS", "soon")
    monkeypatch.setenv("CHAINROLL_LATE_BROADCAST_TTL_SECONDS", "-5")

    table = config._ttl_table("BROADCAST", config.BROADCAST_KINDS, 20)

    assert table == {kind: 20 for kind in config.BROADCAST_KINDS}


def test_parse_helpers():
    assert config._parse_bool("YES", False) is True
    assert config._parse_bool("off", True) is False
    assert config._parse_bool("maybe", True) is True
    assert config._parse_csv(" a, ,b ", ["x"]) == ["a", "b"]
    assert config._parse_csv("", ["x"]) == ["x"]


def test_insecure_secrets_are_reported(monkeypatch):
    monkeypatch.setattr(config, "DEVICE_SECRET", config.DEFAULT_DEVICE_SECRET)
    monkeypatch.setattr(config, "TOKEN_SECRET_GENERATED", True)
    monkeypatch.setattr(config, "SIGNING_KEY_GENERATED", False)

    warnings = config.insecure_secret_warnings()

    assert len(warnings) == 2
    assert "CHAINROLL_DEVICE_SECRET" in warnings[0]
    assert "CHAINROLL_TOKEN_SECRET" in warnings[1]


def test_configured_secrets_raise_no_warning(monkeypatch):
    monkeypatch.setattr(config, "DEVICE_SECRET", "gateway-shared-secret")
    monkeypatch.setattr(config, "TOKEN_SECRET_GENERATED", False)
    monkeypatch.setattr(config, "SIGNING_KEY_GENERATED", False)

    assert config.insecure_secret_warnings() == []
