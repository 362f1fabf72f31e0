"""Tests for configuration and data loading."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from stheno.config import (
    DEFAULT_CONFIG,
    cache_dir_for,
    load_config,
    load_data,
    load_isg_settings,
    output_dir_for,
)
from stheno.errors import ConfigError, ConfigErrorCode, DataFileError
from stheno.freshness import AgingRule


def test_load_config_defaults(tmp_path):
    """Missing stheno.yaml yields the defaults."""
    assert load_config(tmp_path) == DEFAULT_CONFIG


def test_load_config_overrides(tmp_path):
    (tmp_path / "stheno.yaml").write_text("output_dir: public\nport: 8000\n")
    config = load_config(tmp_path)
    assert config["output_dir"] == "public"
    assert config["port"] == 8000
    assert config["cache_dir"] == ".stheno"
    assert output_dir_for(tmp_path, config) == tmp_path / "public"
    assert cache_dir_for(tmp_path, config) == tmp_path / ".stheno"


def test_load_data_merges_site_and_namespaces_others(tmp_path):
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    (data_dir / "site.yaml").write_text("title: My Site\n")
    (data_dir / "nav.yaml").write_text("- home\n- about\n")
    data = load_data(tmp_path)
    assert data["title"] == "My Site"
    assert data["nav"] == ["home", "about"]


def test_default_isg_settings():
    settings = load_isg_settings({})
    assert settings.enabled
    assert settings.policy.rules == ()
    assert settings.policy.default_ttl_seconds == 21600
    assert settings.policy.clock_drift_tolerance_seconds == 30
    assert settings.workers == 4
    assert settings.pending_ttl is None


def test_full_isg_section():
    settings = load_isg_settings(
        {
            "isg": {
                "ttl_seconds": 600,
                "max_age_cap_days": 365,
                "aging": [
                    {"until_days": 7, "ttl_seconds": 300},
                    {"until_days": 30, "ttl_seconds": 3600},
                ],
                "pending_ttl_days": 7,
                "workers": 2,
                "checkpoint_every": 10,
                "render_timeout_seconds": 5,
            }
        }
    )
    assert settings.policy.ttl_seconds == 600
    assert settings.policy.max_age_cap_days == 365
    assert settings.policy.rules == (AgingRule(7, 300), AgingRule(30, 3600))
    assert settings.pending_ttl == timedelta(days=7)
    assert settings.workers == 2
    assert settings.checkpoint_every == 10
    assert settings.render_timeout_seconds == 5.0


@pytest.mark.parametrize(
    "section, code",
    [
        ({"ttl_seconds": -1}, ConfigErrorCode.INVALID_TTL),
        ({"ttl_seconds": "1h"}, ConfigErrorCode.INVALID_TTL),
        ({"ttl_seconds": 400 * 24 * 3600}, ConfigErrorCode.INVALID_TTL),
        ({"max_age_cap_days": 0}, ConfigErrorCode.INVALID_MAX_AGE_CAP),
        ({"max_age_cap_days": 5000}, ConfigErrorCode.INVALID_MAX_AGE_CAP),
        ({"aging": [{"until_days": 0, "ttl_seconds": 60}]}, ConfigErrorCode.INVALID_AGING_RULE),
        ({"aging": [{"until_days": 7, "ttl_seconds": -5}]}, ConfigErrorCode.INVALID_AGING_RULE),
        ({"aging": [{"until_days": 7, "ttl_seconds": 40 * 24 * 3600}]}, ConfigErrorCode.INVALID_AGING_RULE),
        ({"aging": "weekly"}, ConfigErrorCode.INVALID_AGING_RULE),
        (
            {"aging": [{"until_days": 7, "ttl_seconds": 60}, {"until_days": 7, "ttl_seconds": 90}]},
            ConfigErrorCode.DUPLICATE_AGING_RULE,
        ),
        (
            {"aging": [{"until_days": 30, "ttl_seconds": 60}, {"until_days": 7, "ttl_seconds": 90}]},
            ConfigErrorCode.UNSORTED_AGING_RULES,
        ),
        (
            {"max_age_cap_days": 10, "aging": [{"until_days": 30, "ttl_seconds": 60}]},
            ConfigErrorCode.AGING_RULE_EXCEEDS_CAP,
        ),
        ({"workers": 0}, ConfigErrorCode.INVALID_SETTING),
        ({"checkpoint_every": -1}, ConfigErrorCode.INVALID_SETTING),
        ({"render_timeout_seconds": 0}, ConfigErrorCode.INVALID_SETTING),
        ({"clock_drift_tolerance_seconds": -1}, ConfigErrorCode.INVALID_SETTING),
    ],
)
def test_invalid_isg_settings_are_rejected(section, code):
    with pytest.raises(ConfigError) as exc_info:
        load_isg_settings({"isg": section})
    assert exc_info.value.code == code
    assert code.value in str(exc_info.value)


def test_isg_section_must_be_mapping():
    with pytest.raises(ConfigError):
        load_isg_settings({"isg": ["ttl_seconds"]})


def test_unknown_isg_key_is_rejected():
    with pytest.raises(ConfigError) as exc_info:
        load_isg_settings({"isg": {"ttl": 600}})
    assert exc_info.value.code == ConfigErrorCode.INVALID_SETTING
    assert exc_info.value.field == "isg.ttl"


def test_booleans_are_not_numbers():
    with pytest.raises(ConfigError) as exc_info:
        load_isg_settings({"isg": {"ttl_seconds": True}})
    assert exc_info.value.code == ConfigErrorCode.INVALID_TTL
    assert exc_info.value.value is True


def test_error_names_the_offending_aging_entry():
    section = {"aging": [{"until_days": 7, "ttl_seconds": 60}, {"until_days": -1, "ttl_seconds": 60}]}
    with pytest.raises(ConfigError) as exc_info:
        load_isg_settings({"isg": section})
    assert exc_info.value.code == ConfigErrorCode.INVALID_AGING_RULE
    assert exc_info.value.field == "isg.aging[1].until_days"
    assert "Example: {until_days: 7" in str(exc_info.value)


def test_null_aging_and_empty_section_use_defaults():
    assert load_isg_settings({"isg": {"aging": None}}).policy.rules == ()
    assert load_isg_settings({"isg": None}).workers == 4


def test_settings_are_immutable():
    settings = load_isg_settings({})
    with pytest.raises(ValidationError):
        settings.workers = 8


def test_load_data_reports_the_broken_file(tmp_path):
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    (data_dir / "site.yaml").write_text("title: [unclosed\n")
    with pytest.raises(DataFileError) as exc_info:
        load_data(tmp_path)
    assert exc_info.value.path == data_dir / "site.yaml"
