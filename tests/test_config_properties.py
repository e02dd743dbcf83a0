"""
Property-based tests for configuration module.

Uses Hypothesis for duration parsing and option handling, and pytest
fixtures for file and environment loading.
"""

import json
import math
from pathlib import Path

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from cloudflare_guard.config import (
    DEFAULT_IPS_ENDPOINT,
    GuardConfig,
    LoggingConfig,
    format_duration,
    load_config_from_env,
    load_config_from_file,
    parse_cidr_list,
    parse_duration,
    save_config_to_file,
)
from cloudflare_guard.exceptions import ConfigError


# Strategies for generating test data

@st.composite
def duration_strategy(draw) -> tuple[str, float]:
    """Generate duration strings with their expected length in seconds."""
    hours = draw(st.integers(min_value=0, max_value=100))
    minutes = draw(st.integers(min_value=0, max_value=59))
    seconds = draw(st.integers(min_value=0, max_value=59))
    millis = draw(st.integers(min_value=0, max_value=999))

    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if seconds:
        parts.append(f"{seconds}s")
    if millis or not parts:
        parts.append(f"{millis}ms")

    expected = hours * 3600 + minutes * 60 + seconds + millis / 1000
    return "".join(parts), expected


invalid_duration_strategy = st.sampled_from([
    "",
    "24",
    "h",
    "1d",
    "1 h",
    "1h 30m",
    "--1h",
    "1.2.3s",
    "abc",
    "5M",
])


class TestDurationParsingProperty:
    """
    Property-based tests for duration parsing.

    **Feature: cloudflare-guard, Property 7: Duration strings parse to their length**
    """

    @given(duration=duration_strategy(), negative=st.booleans())
    @settings(max_examples=200)
    def test_duration_components_sum(self, duration, negative) -> None:
        """
        Property 7: Duration strings parse to their length.

        *For any* sequence of unit-suffixed numbers, parse_duration SHALL
        return the sum of the components, negated if the string is signed so.
        """
        text, expected = duration
        if negative:
            text = "-" + text
            expected = -expected

        assert math.isclose(parse_duration(text), expected, abs_tol=1e-9)

    @given(text=invalid_duration_strategy)
    def test_invalid_durations_rejected(self, text: str) -> None:
        """
        Property 7b: Malformed durations raise ConfigError.
        """
        with pytest.raises(ConfigError) as exc_info:
            parse_duration(text)
        assert exc_info.value.code == "invalid_duration"

    @given(seconds=st.integers(min_value=-10**6, max_value=10**6))
    def test_format_duration_is_parseable(self, seconds: int) -> None:
        assert parse_duration(format_duration(seconds)) == seconds

    def test_reference_values(self) -> None:
        assert parse_duration("24h") == 86400
        assert parse_duration("5m") == 300
        assert parse_duration("0s") == 0
        assert parse_duration("0") == 0
        assert parse_duration("1.5h") == 5400
        assert parse_duration("300ms") == pytest.approx(0.3)
        assert parse_duration("-1h") == -3600
        assert parse_duration("1h30m") == 5400
        assert parse_duration("2us") == pytest.approx(2e-6)
        assert parse_duration("2µs") == pytest.approx(2e-6)

    def test_non_string_rejected(self) -> None:
        with pytest.raises(ConfigError):
            parse_duration(3600)


class TestGuardConfigProperty:
    """
    Tests for GuardConfig defaults, validation and mapping.

    **Feature: cloudflare-guard, Property 8: External option names round trip**
    """

    def test_defaults(self) -> None:
        config = GuardConfig()

        assert config.trusted_cidrs == []
        assert config.refresh_interval == "24h"
        assert config.overwrite_forwarded_for is True
        assert config.client_ip_header == "CF-Connecting-IP"
        assert config.forwarded_for_header == "X-Forwarded-For"
        assert config.ips_endpoint == DEFAULT_IPS_ENDPOINT
        assert not config.uses_static_ranges
        config.validate()

    @given(
        cidrs=st.lists(st.sampled_from(["10.0.0.0/8", "172.16.0.0/12", "2001:db8::/32"]), max_size=3),
        interval=st.sampled_from(["24h", "5m", "0s", "1h30m"]),
        overwrite=st.booleans(),
    )
    @settings(max_examples=50)
    def test_dict_round_trip(self, cidrs, interval, overwrite) -> None:
        """
        Property 8: External option names round trip.

        *For any* config, from_dict(to_dict()) SHALL reproduce it, and
        to_dict SHALL use the external option names.
        """
        config = GuardConfig(
            trusted_cidrs=cidrs,
            refresh_interval=interval,
            overwrite_forwarded_for=overwrite,
        )

        data = config.to_dict()
        assert data["trustedCIDRs"] == cidrs
        assert data["refreshInterval"] == interval
        assert data["overwriteForwardedFor"] is overwrite
        assert GuardConfig.from_dict(data) == config

    def test_from_dict_accepts_snake_case(self) -> None:
        config = GuardConfig.from_dict({
            "trusted_cidrs": ["10.0.0.0/8"],
            "overwrite_forwarded_for": False,
            "logging": {"level": "debug", "output_format": "json"},
        })

        assert config.trusted_cidrs == ["10.0.0.0/8"]
        assert config.overwrite_forwarded_for is False
        assert config.logging == LoggingConfig(level="debug", output_format="json")

    def test_from_dict_missing_interval_uses_default(self) -> None:
        config = GuardConfig.from_dict({"refreshInterval": ""})
        assert config.refresh_interval == "24h"

    @pytest.mark.parametrize("data", [
        {"trustedCIDRs": "10.0.0.0/8"},
        {"overwriteForwardedFor": "yes"},
        ["not", "an", "object"],
    ])
    def test_from_dict_rejects_bad_types(self, data) -> None:
        with pytest.raises(ConfigError):
            GuardConfig.from_dict(data)

    @pytest.mark.parametrize("config, code", [
        (GuardConfig(trusted_cidrs=["10.0.0.0/8", "bogus"]), "invalid_cidr"),
        (GuardConfig(refresh_interval="1d"), "invalid_duration"),
        (GuardConfig(ips_endpoint="http://api.cloudflare.com/client/v4/ips"), "invalid_endpoint"),
        (GuardConfig(fetch_timeout=0), "invalid_value"),
        (GuardConfig(client_ip_header=" "), "invalid_value"),
        (GuardConfig(logging=LoggingConfig(level="verbose")), "invalid_value"),
        (GuardConfig(logging=LoggingConfig(output_format="xml")), "invalid_value"),
    ])
    def test_validate_rejects(self, config: GuardConfig, code: str) -> None:
        with pytest.raises(ConfigError) as exc_info:
            config.validate()
        assert exc_info.value.code == code

    def test_static_ranges_ignore_refresh_settings(self) -> None:
        GuardConfig(trusted_cidrs=["10.0.0.0/8"], refresh_interval="bogus").validate()


class TestConfigFiles:
    """Tests for JSON file and environment loading."""

    def test_save_and_load(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "config.json"
        config = GuardConfig(trusted_cidrs=["172.16.0.0/12"], overwrite_forwarded_for=False)

        save_config_to_file(config, path)

        assert json.loads(path.read_text(encoding="utf-8"))["trustedCIDRs"] == ["172.16.0.0/12"]
        assert load_config_from_file(path) == config

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError) as exc_info:
            load_config_from_file(tmp_path / "missing.json")
        assert exc_info.value.code == "invalid_file"

    def test_malformed_json(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text("{not json", encoding="utf-8")

        with pytest.raises(ConfigError):
            load_config_from_file(path)

    def test_bad_timeout_in_file(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"fetchTimeout": "soon"}), encoding="utf-8")

        with pytest.raises(ConfigError):
            load_config_from_file(path)

    def test_load_from_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TESTGUARD_TRUSTED_CIDRS", "10.0.0.0/8, 172.16.0.0/12;2001:db8::/32")
        monkeypatch.setenv("TESTGUARD_REFRESH_INTERVAL", "1h")
        monkeypatch.setenv("TESTGUARD_OVERWRITE_FORWARDED_FOR", "false")
        monkeypatch.setenv("TESTGUARD_LOG_LEVEL", "debug")

        config = load_config_from_env(prefix="TESTGUARD_", dotenv_path=tmp_path / "absent.env")

        assert config.trusted_cidrs == ["10.0.0.0/8", "172.16.0.0/12", "2001:db8::/32"]
        assert config.refresh_interval == "1h"
        assert config.overwrite_forwarded_for is False
        assert config.logging.level == "debug"
        assert config.fetch_timeout == 10.0

    def test_load_from_dotenv_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        # Registered so that teardown removes the value the .env file sets
        monkeypatch.setenv("DOTENVGUARD_REFRESH_INTERVAL", "unset")
        monkeypatch.delenv("DOTENVGUARD_REFRESH_INTERVAL")
        env_file = tmp_path / ".env"
        env_file.write_text("DOTENVGUARD_REFRESH_INTERVAL=12h\n", encoding="utf-8")

        config = load_config_from_env(prefix="DOTENVGUARD_", dotenv_path=env_file)

        assert config.refresh_interval == "12h"
        assert config.trusted_cidrs == []

    def test_invalid_env_boolean(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("BOOLGUARD_OVERWRITE_FORWARDED_FOR", "maybe")

        with pytest.raises(ConfigError):
            load_config_from_env(prefix="BOOLGUARD_", dotenv_path=tmp_path / "absent.env")

    def test_parse_cidr_list(self) -> None:
        assert parse_cidr_list("") == []
        assert parse_cidr_list("a b,c;; d") == ["a", "b", "c", "d"]
