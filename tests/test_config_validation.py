"""
Tests for config validation.

Covers the shipped config files, schema errors and cross-field sanity checks.
"""

from pathlib import Path

import pytest
import yaml

from tools.config_validator import (
    load_validated_configs,
    validate_all_configs,
    validate_app,
    validate_policy,
)

CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


@pytest.fixture
def config_dir(tmp_path):
    """Writable copy of the shipped config directory."""
    for name in ("app.yaml", "policy.yaml"):
        (tmp_path / name).write_text((CONFIG_DIR / name).read_text())
    return tmp_path


def edit(config_dir, filename, mutate):
    path = config_dir / filename
    data = yaml.safe_load(path.read_text()) or {}
    mutate(data)
    path.write_text(yaml.safe_dump(data))


def test_shipped_configs_are_valid():
    """Repository config must always validate"""
    assert validate_all_configs(str(CONFIG_DIR)) == []


def test_defaults_filled_in_for_empty_policy(config_dir):
    (config_dir / "policy.yaml").write_text("")
    errors, app, policy = load_validated_configs(str(config_dir))
    assert errors == []
    assert policy["loop"]["tick_seconds"] == 5.0
    assert policy["exits"]["target_profit_pct"] == 200.0
    assert policy["sell_retry"]["backoff_after_failures"] is None
    assert app["state"]["positions_file"] == "data/active_positions.json"


def test_missing_file_reported(config_dir):
    (config_dir / "policy.yaml").unlink()
    errors = validate_all_configs(str(config_dir))
    assert len(errors) == 1
    assert errors[0].startswith("policy.yaml:")


def test_malformed_yaml_reported(config_dir):
    (config_dir / "app.yaml").write_text("app: [unclosed\n")
    errors = validate_app(config_dir)
    assert errors and "Invalid YAML" in errors[0]


def test_top_level_must_be_mapping(config_dir):
    (config_dir / "policy.yaml").write_text("- just\n- a list\n")
    errors = validate_policy(config_dir)
    assert errors and "mapping" in errors[0]


def test_invalid_mode_rejected(config_dir):
    edit(config_dir, "app.yaml", lambda d: d["app"].update(mode="PAPER"))
    errors = validate_app(config_dir)
    assert any("app -> mode" in e for e in errors)


def test_price_endpoint_location_required(config_dir):
    edit(config_dir, "app.yaml", lambda d: d["endpoints"].update(price={"timeout_seconds": 5}))
    errors = validate_app(config_dir)
    assert any("endpoints -> price" in e for e in errors)


@pytest.mark.parametrize("amount, ok", [("100%", True), ("50%", True), ("12.5", True), ("150%", False), ("all", False)])
def test_sell_amount(config_dir, amount, ok):
    edit(config_dir, "policy.yaml", lambda d: d["exits"].update(sell_amount=amount))
    errors = validate_policy(config_dir)
    assert (errors == []) is ok


def test_negative_threshold_rejected(config_dir):
    edit(config_dir, "policy.yaml", lambda d: d["trailing"].update(step_trigger_delta_pct=-5))
    errors = validate_policy(config_dir)
    assert any("trailing -> step_trigger_delta_pct" in e for e in errors)


def test_start_lock_must_be_below_first_step(config_dir):
    edit(config_dir, "policy.yaml", lambda d: d["trailing"].update(start_lock_pct=125))
    errors = validate_all_configs(str(config_dir))
    assert any("start_lock_pct" in e for e in errors)


def test_concentration_profit_bands_ordered(config_dir):
    edit(config_dir, "policy.yaml", lambda d: d["concentration_guard"].update(low_profit_pct=150))
    errors = validate_all_configs(str(config_dir))
    assert any("low_profit_pct" in e for e in errors)


def test_accept_dry_run_forbidden_in_live(config_dir):
    edit(config_dir, "policy.yaml", lambda d: d["sell_success"].update(accept_dry_run=True))
    assert validate_all_configs(str(config_dir)) == []

    edit(config_dir, "app.yaml", lambda d: d["app"].update(mode="LIVE"))
    errors = validate_all_configs(str(config_dir))
    assert any("accept_dry_run" in e for e in errors)


def test_errors_return_empty_configs(config_dir):
    edit(config_dir, "app.yaml", lambda d: d["app"].update(mode="PAPER"))
    errors, app, policy = load_validated_configs(str(config_dir))
    assert errors
    assert app == {} and policy == {}
