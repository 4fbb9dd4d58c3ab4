"""Tests for Settings validation and YAML loading."""

from pathlib import Path

import pytest

from guard.config import ConfigError, Settings, load_settings


class TestDefaults:
    def test_defaults_are_valid(self):
        s = Settings()
        assert s.rate_limit_per_minute == 60
        assert s.burst_size == 10
        assert s.ddos_requests_per_second == 100
        assert s.failure_policy == "closed"

    def test_escalation_levels_in_seconds(self):
        s = Settings(escalation_level_minutes=(15, 30, 60))
        assert s.escalation_level_seconds == (900, 1800, 3600)

    def test_settings_are_immutable(self):
        s = Settings()
        with pytest.raises(AttributeError):
            s.rate_limit_per_minute = 5


class TestValidation:
    def test_zero_threshold_rejected(self):
        with pytest.raises(ConfigError, match="rate_limit_per_minute"):
            Settings(rate_limit_per_minute=0)

    def test_negative_threshold_rejected(self):
        with pytest.raises(ConfigError):
            Settings(ddos_block_minutes=-5)

    def test_float_for_integer_setting_rejected(self):
        with pytest.raises(ConfigError, match="integer"):
            Settings(burst_size=2.5)

    def test_string_for_number_rejected(self):
        with pytest.raises(ConfigError, match="number"):
            Settings(rate_limit_per_hour="1000")

    def test_bool_for_number_rejected(self):
        with pytest.raises(ConfigError):
            Settings(rate_limit_per_hour=True)

    def test_non_bool_flag_rejected(self):
        with pytest.raises(ConfigError, match="true/false"):
            Settings(abuse_auto_block="yes")

    def test_unknown_failure_policy_rejected(self):
        with pytest.raises(ConfigError, match="failure_policy"):
            Settings(failure_policy="sometimes")

    def test_score_threshold_above_100_rejected(self):
        with pytest.raises(ConfigError, match="0-100"):
            Settings(abuse_anomaly_threshold=150)

    def test_decreasing_escalation_ladder_rejected(self):
        with pytest.raises(ConfigError, match="non-decreasing"):
            Settings(escalation_level_minutes=(30, 15))

    def test_empty_escalation_ladder_rejected(self):
        with pytest.raises(ConfigError):
            Settings(escalation_level_minutes=())


class TestFromMapping:
    def test_unknown_key_rejected(self):
        with pytest.raises(ConfigError, match="rate_limit_per_fortnight"):
            Settings.from_mapping({"rate_limit_per_fortnight": 3})

    def test_lists_become_tuples(self):
        s = Settings.from_mapping({"escalation_level_minutes": [5, 10]})
        assert s.escalation_level_minutes == (5, 10)

    def test_regions_normalized(self):
        s = Settings.from_mapping({"geo_blocked_regions": "xx, yy"})
        assert s.geo_blocked_regions == ("XX", "YY")

    def test_none_means_defaults(self):
        assert Settings.from_mapping(None) == Settings()


class TestLoadSettings:
    def test_none_path_gives_defaults(self):
        assert load_settings(None) == Settings()

    def test_loads_yaml(self, tmp_path):
        path = tmp_path / "guard.yml"
        path.write_text("rate_limit_per_minute: 30\nfailure_policy: open\n")
        s = load_settings(path)
        assert s.rate_limit_per_minute == 30
        assert s.failure_policy == "open"

    def test_guard_section(self, tmp_path):
        path = tmp_path / "guard.yml"
        path.write_text("guard:\n  burst_size: 4\n")
        assert load_settings(path).burst_size == 4

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "guard.yml"
        path.write_text("")
        assert load_settings(path) == Settings()

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_settings(tmp_path / "nope.yml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "guard.yml"
        path.write_text("rate_limit_per_minute: [1, 2\n")
        with pytest.raises(ConfigError, match="invalid YAML"):
            load_settings(path)

    def test_top_level_list_rejected(self, tmp_path):
        path = tmp_path / "guard.yml"
        path.write_text("- 1\n- 2\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_settings(path)

    def test_invalid_value_in_file(self, tmp_path):
        path = tmp_path / "guard.yml"
        path.write_text("burst_size: 0\n")
        with pytest.raises(ConfigError, match="burst_size"):
            load_settings(path)

    def test_bundled_config_matches_defaults(self):
        path = Path(__file__).resolve().parents[2] / "config" / "guard.yml"
        assert load_settings(path) == Settings()
