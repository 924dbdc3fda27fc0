"""Configuration loading utilities for the scheduled offboarding service."""
from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import yaml

from .catalog import STEPS

DEFAULT_CONFIG_PATH = Path("config/settings.yaml")
DEFAULT_TEMPLATE_PATH = Path("config/settings.example.yaml")
ENV_CONFIG_PATH = "OFFBOARD_CONFIG"
ENV_PREFIX = "OFFBOARD_"
DEFAULT_POWERSHELL_PATH = r"C:\Windows\System32\WindowsPowerShell\v1.0\powershell.exe"


@dataclass
class LDAPConfig:
    """Settings required to reach on-premises Active Directory via LDAP."""

    server_uri: str
    user_dn: str
    password: str
    base_dn: str
    use_ssl: bool = True
    mock_data_file: Optional[Path] = None


@dataclass
class M365Config:
    """Settings for the Microsoft Graph application registration."""

    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)


@dataclass
class ExchangeConfig:
    """Settings for Exchange management through PowerShell."""

    mode: str = "online"  # online or onprem
    powershell_path: str = DEFAULT_POWERSHELL_PATH
    app_id: Optional[str] = None
    cert_thumbprint: Optional[str] = None
    organization: Optional[str] = None
    server_uri: Optional[str] = None
    timeout: int = 120

    @property
    def is_configured(self) -> bool:
        if self.mode == "onprem":
            return bool(self.server_uri)
        return bool(self.app_id and self.cert_thumbprint and self.organization)


@dataclass
class NotificationConfig:
    """Settings for offboarding notification mail sent through Graph."""

    enabled: bool = True
    sender: Optional[str] = None
    subject_prefix: str = "[Offboarding]"


@dataclass
class SchedulerConfig:
    """Settings for the due-check worker and step execution."""

    worker_enabled: bool = True
    poll_interval_seconds: int = 60
    due_batch_limit: int = 5
    step_timeout_seconds: int = 180
    interrupted_after_minutes: int = 60


@dataclass
class StorageConfig:
    """Filesystem locations used by the application."""

    scheduled_offboardings_file: Path = Path("data/scheduled_offboardings.json")
    history_file: Path = Path("data/offboarding_history.json")


@dataclass
class AuthConfig:
    """Settings for Entra ID / Microsoft identity authentication."""

    enabled: bool = False
    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    redirect_uri: Optional[str] = None
    allowed_groups: tuple[str, ...] = ()
    scopes: tuple[str, ...] = ("https://graph.microsoft.com/User.Read",)

    @property
    def has_credentials(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)


@dataclass
class AppConfig:
    """Aggregate configuration for the application."""

    ldap: Optional[LDAPConfig] = None
    m365: M365Config = field(default_factory=M365Config)
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    notification: NotificationConfig = field(default_factory=NotificationConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)


class ConfigurationError(RuntimeError):
    """Raised when the configuration file or environment variables are invalid."""


def _load_from_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(
            f"Configuration file '{path}' does not exist. "
            "Create it from 'config/settings.example.yaml' or set environment variables."
        )
    try:
        with path.open("r", encoding="utf-8") as file:
            loaded = yaml.safe_load(file) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Configuration file '{path}' is not valid YAML: {exc}") from exc
    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Configuration file '{path}' must contain a mapping.")
    return loaded


def _apply_environment_overrides(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Override configuration values with environment variables."""

    overrides: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX) or key == ENV_CONFIG_PATH:
            continue
        path = key[len(ENV_PREFIX) :].lower().split("__")
        if len(path) < 2:
            continue
        node = overrides
        for part in path[:-1]:
            node = node.setdefault(part, {})
        node[path[-1]] = value

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)
    return config_dict


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            result[key] = _deep_merge(base[key], value)
        else:
            result[key] = value
    return result


def _resolve_config_path(path: Optional[Path] = None) -> Path:
    if path is not None:
        return Path(path)
    env_path = os.environ.get(ENV_CONFIG_PATH)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def ensure_default_config(
    path: Optional[Path] = None, template_path: Optional[Path] = None
) -> Path:
    """Ensure a configuration file exists, copying from the example if needed."""

    target_path = _resolve_config_path(path)
    if target_path.exists():
        return target_path

    template = Path(template_path) if template_path is not None else DEFAULT_TEMPLATE_PATH
    if not template.exists():
        raise ConfigurationError(
            "Default configuration template not found. "
            "Ensure 'config/settings.example.yaml' is present or specify a template."
        )

    target_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy(template, target_path)
    return target_path


def _load_config_dict(path: Optional[Path] = None) -> Dict[str, Any]:
    resolved_path = _resolve_config_path(path)
    if resolved_path == DEFAULT_CONFIG_PATH:
        ensure_default_config(resolved_path)

    config_dict = _load_from_file(resolved_path)
    return _apply_environment_overrides(config_dict)


def _section(config_dict: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = config_dict.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"Configuration section '{key}' must be a mapping.")
    return value


def _normalize_sequence(value: Any) -> Iterable[Any]:
    if isinstance(value, (list, tuple, set)):
        return value
    if isinstance(value, str):
        return value.split(",")
    return [value]


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _to_int(value: Any, key: str) -> int:
    try:
        if isinstance(value, str):
            return int(value.strip())
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Configuration value '{key}' must be an integer, got {value!r}.") from exc


def _optional_path(raw: Any) -> Optional[Path]:
    """Convert a raw config value to ``Path`` if set, otherwise ``None``."""

    if raw is None:
        return None
    if isinstance(raw, Path):
        return raw
    stripped = str(raw).strip()
    return Path(stripped) if stripped else None


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def _string_tuple(value: Any, default: tuple[str, ...] = ()) -> tuple[str, ...]:
    entries = tuple(filter(None, (str(entry).strip() for entry in _normalize_sequence(value or ()))))
    return entries or default


def _load_ldap(section: Dict[str, Any]) -> Optional[LDAPConfig]:
    if not section or not _optional_str(section.get("server_uri")):
        return None
    try:
        return LDAPConfig(
            server_uri=str(section["server_uri"]).strip(),
            user_dn=str(section.get("user_dn") or ""),
            password=str(section.get("password") or ""),
            base_dn=str(section["base_dn"]),
            use_ssl=_to_bool(section.get("use_ssl", True)),
            mock_data_file=_optional_path(section.get("mock_data_file")),
        )
    except KeyError as exc:
        raise ConfigurationError(f"Missing LDAP configuration key: {exc}.") from exc


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load application configuration from disk and environment variables."""

    return build_config(_load_config_dict(path))


def build_config(config_dict: Dict[str, Any]) -> AppConfig:
    """Build an :class:`AppConfig` from an already-loaded mapping."""

    m365_section = _section(config_dict, "m365")
    m365_config = M365Config(
        tenant_id=_optional_str(m365_section.get("tenant_id")),
        client_id=_optional_str(m365_section.get("client_id")),
        client_secret=_optional_str(m365_section.get("client_secret")),
    )

    exchange_section = _section(config_dict, "exchange")
    defaults = ExchangeConfig()
    mode = (_optional_str(exchange_section.get("mode")) or defaults.mode).lower()
    if mode not in {"online", "onprem"}:
        raise ConfigurationError(f"exchange.mode must be 'online' or 'onprem', got '{mode}'.")
    exchange_config = ExchangeConfig(
        mode=mode,
        powershell_path=_optional_str(exchange_section.get("powershell_path")) or defaults.powershell_path,
        app_id=_optional_str(exchange_section.get("app_id")) or m365_config.client_id,
        cert_thumbprint=_optional_str(exchange_section.get("cert_thumbprint")),
        organization=_optional_str(exchange_section.get("organization")),
        server_uri=_optional_str(exchange_section.get("server_uri")),
        timeout=_to_int(exchange_section.get("timeout", defaults.timeout), "exchange.timeout"),
    )

    notification_section = _section(config_dict, "notification")
    notification_config = NotificationConfig(
        enabled=_to_bool(notification_section.get("enabled", True)),
        sender=_optional_str(notification_section.get("sender")),
        subject_prefix=_optional_str(notification_section.get("subject_prefix"))
        or NotificationConfig().subject_prefix,
    )

    scheduler_section = _section(config_dict, "scheduler")
    scheduler_defaults = SchedulerConfig()
    scheduler_config = SchedulerConfig(
        worker_enabled=_to_bool(scheduler_section.get("worker_enabled", scheduler_defaults.worker_enabled)),
        poll_interval_seconds=max(
            1,
            _to_int(
                scheduler_section.get("poll_interval_seconds", scheduler_defaults.poll_interval_seconds),
                "scheduler.poll_interval_seconds",
            ),
        ),
        due_batch_limit=max(
            1,
            _to_int(
                scheduler_section.get("due_batch_limit", scheduler_defaults.due_batch_limit),
                "scheduler.due_batch_limit",
            ),
        ),
        step_timeout_seconds=max(
            1,
            _to_int(
                scheduler_section.get("step_timeout_seconds", scheduler_defaults.step_timeout_seconds),
                "scheduler.step_timeout_seconds",
            ),
        ),
        interrupted_after_minutes=max(
            1,
            _to_int(
                scheduler_section.get("interrupted_after_minutes", scheduler_defaults.interrupted_after_minutes),
                "scheduler.interrupted_after_minutes",
            ),
        ),
    )
    longest_run = scheduler_config.step_timeout_seconds * len(STEPS)
    if scheduler_config.interrupted_after_minutes * 60 <= longest_run:
        raise ConfigurationError(
            "scheduler.interrupted_after_minutes must exceed the longest possible run "
            f"({len(STEPS)} steps x {scheduler_config.step_timeout_seconds}s = {longest_run}s)."
        )

    storage_section = _section(config_dict, "storage")
    storage_config = StorageConfig(
        scheduled_offboardings_file=_optional_path(storage_section.get("scheduled_offboardings_file"))
        or StorageConfig().scheduled_offboardings_file,
        history_file=_optional_path(storage_section.get("history_file")) or StorageConfig().history_file,
    )

    auth_section = _section(config_dict, "auth")
    auth_config = AuthConfig(
        enabled=_to_bool(auth_section.get("enabled", False)),
        tenant_id=_optional_str(auth_section.get("tenant_id")),
        client_id=_optional_str(auth_section.get("client_id")),
        client_secret=_optional_str(auth_section.get("client_secret")),
        redirect_uri=_optional_str(auth_section.get("redirect_uri")),
        allowed_groups=_string_tuple(auth_section.get("allowed_groups")),
        scopes=_string_tuple(auth_section.get("scopes"), AuthConfig().scopes),
    )

    return AppConfig(
        ldap=_load_ldap(_section(config_dict, "ldap")),
        m365=m365_config,
        exchange=exchange_config,
        notification=notification_config,
        scheduler=scheduler_config,
        storage=storage_config,
        auth=auth_config,
    )


__all__ = [
    "AppConfig",
    "AuthConfig",
    "ConfigurationError",
    "ExchangeConfig",
    "LDAPConfig",
    "M365Config",
    "NotificationConfig",
    "SchedulerConfig",
    "StorageConfig",
    "build_config",
    "ensure_default_config",
    "load_config",
]
