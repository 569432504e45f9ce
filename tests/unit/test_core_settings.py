from __future__ import annotations

from decimal import Decimal

import pytest

from predarena.core.settings import SettingsError, load_settings, settings_from_dict


def test_repo_settings_load_with_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PREDARENA_REDIS_URL", "redis://cache:6379/1")
    monkeypatch.setenv("PREDARENA_IMMEDIATE_API_KEY", "secret-key")
    s = load_settings("config/settings.yaml")

    assert s.redis_url == "redis://cache:6379/1"
    assert s.immediate.api_key == "secret-key"
    assert s.orderbook.chain_id == 137
    assert s.bridge.withdrawal_min_amount == Decimal("1")
    assert s.bridge.withdrawal_fee_estimate == Decimal("0.5")
    assert s.rebalance.pending_ttl_seconds == 35 * 60
    assert s.workflow.max_steps == 100
    assert s.redis_consumer_group == "predarena"


def test_missing_required_section_is_reported() -> None:
    with pytest.raises(SettingsError, match="redis.url"):
        settings_from_dict({}, environ={})


def test_non_numeric_threshold_is_rejected() -> None:
    import yaml

    with open("config/settings.yaml", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    data["rebalance"]["bridge_amount"] = "lots"
    with pytest.raises(SettingsError, match="bridge_amount"):
        settings_from_dict(data, environ={})


def test_api_key_never_comes_from_the_file() -> None:
    import yaml

    with open("config/settings.yaml", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    data["venues"]["immediate"]["api_key"] = "from-file"
    s = settings_from_dict(data, environ={})
    assert s.immediate.api_key is None
