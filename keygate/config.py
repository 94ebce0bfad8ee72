"""Config loading for KeyGate.

Reads `.keygate/config.yaml` (or `~/.keygate/config.yaml`).
Raises SystemExit on parse errors, missing `version` field, or invalid policy values.
If no config file is found, returns default values (safe to run without config).

Config search order:
  1. `config_path` argument (if provided — for testing or explicit override)
  2. KEYGATE_CONFIG environment variable (if set)
  3. `.keygate/config.yaml` (working directory — for development)
  4. `~/.keygate/config.yaml` (home directory — for production deployments)

Environment variable overrides (win over file values):
  KEYGATE_ENCRYPTION_KEY — overrides policy.encryption_key
  KEYGATE_KEYS_DB_PATH   — overrides storage.keys_db_path
  KEYGATE_USAGE_DB_PATH  — overrides storage.usage_db_path
  KEYGATE_REDIS_URL      — overrides cache.redis_url
  KEYGATE_PORT           — overrides server.port

Example::

    version: 1
    policy:
      custom_auth_header: X-API-KEY
      blacklist_ips: [203.0.113.7]
      allowed_paths: ["/api/*"]
      failure_limit: 5
      failure_limit_time: hour
      max_rate_limit: 100
      max_rate_limit_time: hour
      use_encryption: false
    owners:
      "42": {display_name: alice, active: true}
"""

from __future__ import annotations

import os
import secrets
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

import yaml

from keygate.constants import (
    DEFAULT_AUTH_HEADER,
    DEFAULT_BACKEND_TIMEOUT_MS,
    DEFAULT_FAILURE_LIMIT,
    DEFAULT_LIMIT_WINDOW,
    DEFAULT_MAX_RATE_LIMIT,
    DEFAULT_QUERY_PARAM,
    COUNT_CACHE_TTL_S,
    ENCRYPTION_KEY_BYTES,
)
from keygate.timeframe import LimitWindow
from keygate.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1

SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

VALID_DURATION_UNITS: frozenset[str] = frozenset({"hours", "days", "weeks", "months"})

DEFAULT_CONFIG_PATHS = [
    ".keygate/config.yaml",
    os.path.expanduser("~/.keygate/config.yaml"),
]


class ConfigError(ValueError):
    """Raised by from_dict() for a structurally valid file with invalid values."""


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class PolicyConfig:
    """Access policy: IP filters, path allow-list, limits, encryption toggle.

    A limit of 0 disables the corresponding counter.
    """

    custom_auth_header: str = DEFAULT_AUTH_HEADER
    query_param: str = DEFAULT_QUERY_PARAM
    whitelist_ips: list[str] = field(default_factory=list)
    blacklist_ips: list[str] = field(default_factory=list)
    allowed_paths: list[str] = field(default_factory=list)
    use_encryption: bool = False
    encryption_key: str = ""
    failure_limit: int = DEFAULT_FAILURE_LIMIT
    failure_limit_time: LimitWindow = LimitWindow(DEFAULT_LIMIT_WINDOW)
    max_rate_limit: int = DEFAULT_MAX_RATE_LIMIT
    max_rate_limit_time: LimitWindow = LimitWindow(DEFAULT_LIMIT_WINDOW)


@dataclass
class StorageConfig:
    """SQLite locations for the key store and the usage ledger."""

    keys_db_path: str = "~/.keygate/keys.db"
    usage_db_path: str = "~/.keygate/usage.db"
    backend_timeout_ms: int = DEFAULT_BACKEND_TIMEOUT_MS


@dataclass
class CacheConfig:
    """Counter cache. redis_url unset → in-process TTL cache."""

    redis_url: Optional[str] = None
    count_ttl_s: int = COUNT_CACHE_TTL_S


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8420


@dataclass
class AutoGenerateConfig:
    """Key issuance for newly created owners.

    duration=0 means keys issued this way never expire.
    """

    enabled: bool = False
    duration: int = 0
    unit: str = "days"

    def expiry_for_new_owner(self, now: datetime) -> Optional[datetime]:
        if not self.duration:
            return None
        if self.unit == "hours":
            return now + timedelta(hours=self.duration)
        if self.unit == "weeks":
            return now + timedelta(weeks=self.duration)
        if self.unit == "months":
            return now + timedelta(days=30 * self.duration)
        return now + timedelta(days=self.duration)


@dataclass
class Config:
    """Root configuration object populated from .keygate/config.yaml.

    All fields have safe defaults — KeyGate can start without any config file.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    auto_generate: AutoGenerateConfig = field(default_factory=AutoGenerateConfig)
    owners: dict[str, dict] = field(default_factory=dict)
    """Accounts for the bundled StaticIdentityProvider: {owner_id: {display_name, active}}."""
    path: Optional[str] = None

    @classmethod
    def defaults(cls) -> "Config":
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are silently ignored.

        Raises:
            ConfigError: On invalid window labels, negative limits, or list
                         options that are not lists.
        """
        # ── Policy ────────────────────────────────────────────────────────────
        policy_raw = raw.get("policy") or {}
        try:
            failure_window = LimitWindow.parse(
                policy_raw.get("failure_limit_time", DEFAULT_LIMIT_WINDOW)
            )
            rate_window = LimitWindow.parse(
                policy_raw.get("max_rate_limit_time", DEFAULT_LIMIT_WINDOW)
            )
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc

        policy = PolicyConfig(
            custom_auth_header=policy_raw.get("custom_auth_header", DEFAULT_AUTH_HEADER),
            query_param=policy_raw.get("query_param", DEFAULT_QUERY_PARAM),
            whitelist_ips=_string_list(policy_raw, "whitelist_ips"),
            blacklist_ips=_string_list(policy_raw, "blacklist_ips"),
            allowed_paths=_string_list(policy_raw, "allowed_paths"),
            use_encryption=bool(policy_raw.get("use_encryption", False)),
            encryption_key=str(policy_raw.get("encryption_key") or ""),
            failure_limit=_non_negative(policy_raw, "failure_limit", DEFAULT_FAILURE_LIMIT),
            failure_limit_time=failure_window,
            max_rate_limit=_non_negative(policy_raw, "max_rate_limit", DEFAULT_MAX_RATE_LIMIT),
            max_rate_limit_time=rate_window,
        )

        # ── Storage ───────────────────────────────────────────────────────────
        storage_raw = raw.get("storage") or {}
        storage = StorageConfig(
            keys_db_path=storage_raw.get("keys_db_path", "~/.keygate/keys.db"),
            usage_db_path=storage_raw.get("usage_db_path", "~/.keygate/usage.db"),
            backend_timeout_ms=_non_negative(
                storage_raw, "backend_timeout_ms", DEFAULT_BACKEND_TIMEOUT_MS
            ),
        )

        # ── Cache ─────────────────────────────────────────────────────────────
        cache_raw = raw.get("cache") or {}
        cache = CacheConfig(
            redis_url=cache_raw.get("redis_url"),
            count_ttl_s=_non_negative(cache_raw, "count_ttl_s", COUNT_CACHE_TTL_S),
        )

        # ── Server ────────────────────────────────────────────────────────────
        server_raw = raw.get("server") or {}
        server = ServerConfig(
            host=server_raw.get("host", "127.0.0.1"),
            port=server_raw.get("port", 8420),
        )

        # ── Auto-generation ───────────────────────────────────────────────────
        auto_raw = raw.get("auto_generate") or {}
        unit = auto_raw.get("unit", "days")
        if unit not in VALID_DURATION_UNITS:
            raise ConfigError(
                f"Invalid auto_generate.unit: {unit!r}. "
                f"Supported values: {sorted(VALID_DURATION_UNITS)}."
            )
        auto_generate = AutoGenerateConfig(
            enabled=bool(auto_raw.get("enabled", False)),
            duration=_non_negative(auto_raw, "duration", 0),
            unit=unit,
        )

        # ── Owners ────────────────────────────────────────────────────────────
        owners_raw = raw.get("owners") or {}
        if not isinstance(owners_raw, dict):
            raise ConfigError(f"owners must be a mapping, got {type(owners_raw).__name__}")
        owners = {str(k): (v or {}) for k, v in owners_raw.items()}

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            policy=policy,
            storage=storage,
            cache=cache,
            server=server,
            auto_generate=auto_generate,
            owners=owners,
            path=path,
        )


def _string_list(section: dict, name: str) -> list[str]:
    value = section.get(name) or []
    if not isinstance(value, list):
        raise ConfigError(f"policy.{name} must be a list, got {type(value).__name__}")
    return [str(item).strip() for item in value if str(item).strip()]


def _non_negative(section: dict, name: str, default: int) -> int:
    value = section.get(name, default)
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise ConfigError(f"{name} must be a non-negative integer, got {value!r}")
    return value


# ─── Helpers ─────────────────────────────────────────────────────────────────


def generate_encryption_key() -> str:
    """Return a fresh 32-character key suitable for policy.encryption_key."""
    # 24 random bytes → exactly 32 urlsafe-base64 characters (no padding)
    return secrets.token_urlsafe(24)[:ENCRYPTION_KEY_BYTES]


# ─── Config loading ───────────────────────────────────────────────────────────


def _fail(msg: str) -> None:
    print(msg, file=sys.stderr)
    raise SystemExit(1)


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate KeyGate configuration.

    If no file is found at any search path, returns default Config (not an error).
    If a file is found but invalid, writes error to stderr and raises SystemExit(1).

    Environment overrides are applied after loading (or defaulting).

    Raises:
        SystemExit(1): On YAML parse error, missing ``version`` field, unsupported
                       version, invalid policy values, or invalid ``KEYGATE_PORT``.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("KEYGATE_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    # ── No config file found ─────────────────────────────────────────────────
    if found_path is None:
        logger.info("No config file found — using defaults", searched=search_paths)
        config = Config.defaults()
        _apply_env_overrides(config)
        return config

    # ── Parse config file ─────────────────────────────────────────────────────
    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        _fail(
            f"CONFIG ERROR: Failed to parse {found_path}: {exc}\n"
            "KeyGate refuses to start with an invalid config. "
            "Check the YAML syntax and try again."
        )
    except OSError as exc:
        _fail(f"CONFIG ERROR: Could not read {found_path}: {exc}")

    if not isinstance(raw, dict):
        if raw is None:
            _fail(
                f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        _fail(
            f"CONFIG ERROR: {found_path} is not a valid YAML mapping.\n"
            "The config file must be a YAML dictionary at the top level."
        )

    # ── Version validation ────────────────────────────────────────────────────
    version = raw.get("version")
    if version is None:
        _fail(
            f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )
    if version not in SUPPORTED_VERSIONS:
        _fail(
            f"CONFIG ERROR: Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )

    try:
        config = Config.from_dict(raw, path=found_path)
    except ConfigError as exc:
        _fail(f"CONFIG ERROR: {found_path}: {exc}")

    _apply_env_overrides(config)

    # ── Security warnings ─────────────────────────────────────────────────────
    if config.server.host == "0.0.0.0":
        logger.warning(
            "SECURITY WARNING: KeyGate is configured to bind on 0.0.0.0 (all interfaces)."
        )
    if config.policy.use_encryption and len(config.policy.encryption_key.encode()) != ENCRYPTION_KEY_BYTES:
        logger.warning(
            "use_encryption is set but encryption_key is not 32 bytes — "
            "key generation will fail until a valid key is configured"
        )

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        use_encryption=config.policy.use_encryption,
        failure_limit=config.policy.failure_limit,
        max_rate_limit=config.policy.max_rate_limit,
    )
    return config


def _apply_env_overrides(config: Config) -> None:
    """Apply environment variable overrides to a Config object in-place.

    Raises:
        SystemExit(1): If KEYGATE_PORT is set but not a valid integer.
    """
    env_key = os.environ.get("KEYGATE_ENCRYPTION_KEY")
    if env_key:
        config.policy.encryption_key = env_key

    env_keys_db = os.environ.get("KEYGATE_KEYS_DB_PATH")
    if env_keys_db:
        config.storage.keys_db_path = env_keys_db

    env_usage_db = os.environ.get("KEYGATE_USAGE_DB_PATH")
    if env_usage_db:
        config.storage.usage_db_path = env_usage_db

    env_redis = os.environ.get("KEYGATE_REDIS_URL")
    if env_redis:
        config.cache.redis_url = env_redis

    env_port = os.environ.get("KEYGATE_PORT")
    if env_port is not None:
        try:
            config.server.port = int(env_port)
        except ValueError:
            _fail(
                f"CONFIG ERROR: KEYGATE_PORT environment variable is not a valid "
                f"integer: '{env_port}'"
            )
