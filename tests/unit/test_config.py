"""Unit tests for keygate/config.py — YAML loading, validation, env overrides."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from keygate.config import (
    AutoGenerateConfig,
    Config,
    ConfigError,
    generate_encryption_key,
    load_config,
)
from keygate.timeframe import LimitWindow

_ENV_VARS = (
    "KEYGATE_CONFIG",
    "KEYGATE_ENCRYPTION_KEY",
    "KEYGATE_KEYS_DB_PATH",
    "KEYGATE_USAGE_DB_PATH",
    "KEYGATE_REDIS_URL",
    "KEYGATE_PORT",
)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """No stray env overrides, and no ./.keygate/config.yaml from the cwd."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.setattr(
        "keygate.config.DEFAULT_CONFIG_PATHS",
        [".keygate/config.yaml", str(tmp_path / "home" / ".keygate" / "config.yaml")],
    )


def _write(tmp_path: Path, text: str) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return str(path)


class TestDefaults:
    def test_no_file_returns_defaults(self) -> None:
        config = load_config()
        assert config.path is None
        assert config.policy.custom_auth_header == "X-API-KEY"
        assert config.policy.query_param == "api_key"
        assert config.policy.failure_limit == 100
        assert config.policy.max_rate_limit == 100
        assert config.policy.failure_limit_time is LimitWindow.HOUR
        assert config.policy.use_encryption is False
        assert config.cache.redis_url is None
        assert config.cache.count_ttl_s == 60

    def test_defaults_classmethod(self) -> None:
        assert Config.defaults().policy.allowed_paths == []


class TestFileLoading:
    def test_full_policy(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            """
version: 1
policy:
  custom_auth_header: X-Custom-Key
  whitelist_ips: [10.0.0.1]
  blacklist_ips: [203.0.113.7]
  allowed_paths: ["/api/*"]
  failure_limit: 5
  failure_limit_time: half_day
  max_rate_limit: 10
  max_rate_limit_time: hours_2
owners:
  "42": {display_name: alice}
""",
        )
        config = load_config(path)
        assert config.path == path
        assert config.policy.custom_auth_header == "X-Custom-Key"
        assert config.policy.whitelist_ips == ["10.0.0.1"]
        assert config.policy.blacklist_ips == ["203.0.113.7"]
        assert config.policy.allowed_paths == ["/api/*"]
        assert config.policy.failure_limit == 5
        assert config.policy.failure_limit_time is LimitWindow.HALF_DAY
        assert config.policy.max_rate_limit_time is LimitWindow.HOURS_2
        assert config.owners == {"42": {"display_name": "alice"}}

    def test_keygate_config_env_var(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KEYGATE_CONFIG", _write(tmp_path, "version: 1\npolicy:\n  failure_limit: 7\n"))
        assert load_config().policy.failure_limit == 7

    def test_missing_version_exits(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit) as exc_info:
            load_config(_write(tmp_path, "policy: {}\n"))
        assert exc_info.value.code == 1

    def test_empty_file_exits(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit):
            load_config(_write(tmp_path, ""))

    def test_unsupported_version_exits(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit):
            load_config(_write(tmp_path, "version: 2\n"))

    def test_invalid_yaml_exits(self, tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
        with pytest.raises(SystemExit):
            load_config(_write(tmp_path, "version: 1\npolicy: [unclosed\n"))
        assert "CONFIG ERROR" in capsys.readouterr().err

    @pytest.mark.parametrize(
        "policy",
        [
            "failure_limit_time: fortnight",
            "max_rate_limit: -1",
            "failure_limit: lots",
            "whitelist_ips: 10.0.0.1",
        ],
    )
    def test_invalid_policy_values_exit(self, tmp_path: Path, policy: str) -> None:
        with pytest.raises(SystemExit):
            load_config(_write(tmp_path, f"version: 1\npolicy:\n  {policy}\n"))

    def test_invalid_auto_generate_unit_exits(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit):
            load_config(_write(tmp_path, "version: 1\nauto_generate:\n  unit: years\n"))


class TestFromDict:
    def test_limits_of_zero_are_valid(self) -> None:
        config = Config.from_dict({"version": 1, "policy": {"failure_limit": 0, "max_rate_limit": 0}})
        assert config.policy.failure_limit == 0
        assert config.policy.max_rate_limit == 0

    def test_bool_is_not_a_limit(self) -> None:
        with pytest.raises(ConfigError):
            Config.from_dict({"version": 1, "policy": {"failure_limit": True}})

    def test_blank_list_entries_dropped(self) -> None:
        config = Config.from_dict({"version": 1, "policy": {"blacklist_ips": [" 1.2.3.4 ", ""]}})
        assert config.policy.blacklist_ips == ["1.2.3.4"]


class TestEnvOverrides:
    def test_overrides_win_over_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = _write(
            tmp_path,
            "version: 1\npolicy:\n  encryption_key: from-file\nstorage:\n  keys_db_path: /file/keys.db\n",
        )
        monkeypatch.setenv("KEYGATE_ENCRYPTION_KEY", "k" * 32)
        monkeypatch.setenv("KEYGATE_KEYS_DB_PATH", "/env/keys.db")
        monkeypatch.setenv("KEYGATE_USAGE_DB_PATH", "/env/usage.db")
        monkeypatch.setenv("KEYGATE_REDIS_URL", "redis://cache:6379/0")
        monkeypatch.setenv("KEYGATE_PORT", "9000")

        config = load_config(path)
        assert config.policy.encryption_key == "k" * 32
        assert config.storage.keys_db_path == "/env/keys.db"
        assert config.storage.usage_db_path == "/env/usage.db"
        assert config.cache.redis_url == "redis://cache:6379/0"
        assert config.server.port == 9000

    def test_overrides_apply_without_file(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KEYGATE_ENCRYPTION_KEY", "e" * 32)
        assert load_config().policy.encryption_key == "e" * 32

    def test_invalid_port_exits(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KEYGATE_PORT", "eighty")
        with pytest.raises(SystemExit):
            load_config()


class TestHelpers:
    def test_generated_key_is_32_bytes(self) -> None:
        key = generate_encryption_key()
        assert len(key.encode("utf-8")) == 32
        assert generate_encryption_key() != key

    def test_auto_generate_expiry(self) -> None:
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert AutoGenerateConfig(duration=0).expiry_for_new_owner(now) is None
        assert AutoGenerateConfig(duration=2, unit="weeks").expiry_for_new_owner(now) == now + timedelta(weeks=2)
        assert AutoGenerateConfig(duration=3, unit="hours").expiry_for_new_owner(now) == now + timedelta(hours=3)
        assert AutoGenerateConfig(duration=1, unit="months").expiry_for_new_owner(now) == now + timedelta(days=30)
