"""Configuration loading utilities for the deployment toolkit."""
from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


DEFAULT_CONFIG_PATH = Path("config/settings.yaml")
DEFAULT_TEMPLATE_PATH = Path("config/settings.example.yaml")
ENV_CONFIG_PATH = "DEPLOY_CONFIG"
ENV_PREFIX = "DEPLOY_"


@dataclass
class TokensConfig:
    """Where environment tokens are defined and how they are resolved."""

    file: Path = Path("config/tokens.yaml")
    environment: str = "Default"
    node: Optional[str] = None
    max_passes: int = 20


@dataclass
class SSRSConfig:
    """Settings for publishing to a Reporting Services REST endpoint."""

    base_url: str
    username: Optional[str] = None
    password: Optional[str] = None
    verify_ssl: bool = True
    timeout: int = 30
    report_folder: Optional[str] = None
    dataset_folder: Optional[str] = None
    datasource_folder: Optional[str] = None
    overwrite_items: Optional[bool] = None
    overwrite_datasources: Optional[bool] = None
    project_configuration: Optional[str] = None
    data_sources: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)


@dataclass
class PowerShellConfig:
    """Settings for running Windows PowerShell scripts."""

    executable: str = "powershell.exe"
    timeout: int = 600


@dataclass
class ExchangeConfig:
    """Settings for configuring Exchange client access namespaces."""

    namespaces_file: Path = Path("config/namespaces.yaml")
    connection_uri: Optional[str] = None
    configuration_name: str = "Microsoft.Exchange"
    authentication: str = "Kerberos"


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: Optional[Path] = None
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass
class AppConfig:
    """Aggregate configuration for the application."""

    tokens: TokensConfig = field(default_factory=TokensConfig)
    powershell: PowerShellConfig = field(default_factory=PowerShellConfig)
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    ssrs: Optional[SSRSConfig] = None


class ConfigurationError(RuntimeError):
    """Raised when the configuration file or environment variables are invalid."""


def _load_from_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(
            f"Configuration file '{path}' does not exist. "
            "Create it from 'config/settings.example.yaml' or set environment variables."
        )
    with path.open("r", encoding="utf-8") as file:
        try:
            payload = yaml.safe_load(file) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Configuration file '{path}' is not valid YAML: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Configuration file '{path}' must contain a mapping.")
    return payload


def _apply_environment_overrides(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Override configuration values with environment variables."""

    overrides: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX) or key == ENV_CONFIG_PATH:
            continue
        path = key[len(ENV_PREFIX) :].lower().split("__")
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
    section = config_dict.get(key) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"Configuration section '{key}' must be a mapping.")
    return section


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _optional_bool(value: Any) -> Optional[bool]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return _to_bool(value)


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value.strip())
    return int(value)


def _optional_path(raw: Any) -> Optional[Path]:
    """Convert a raw config value to ``Path`` if set, otherwise ``None``."""

    if raw is None:
        return None
    if isinstance(raw, Path):
        return raw
    if isinstance(raw, str):
        stripped = raw.strip()
        if not stripped:
            return None
        return Path(stripped)
    return Path(raw)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def _load_ssrs(section: Dict[str, Any]) -> Optional[SSRSConfig]:
    if not section:
        return None
    base_url = _optional_str(section.get("base_url"))
    if not base_url:
        raise ConfigurationError("Missing SSRS configuration key: 'base_url'.")

    data_sources = section.get("data_sources") or {}
    if not isinstance(data_sources, dict) or not all(
        isinstance(entry, dict) for entry in data_sources.values()
    ):
        raise ConfigurationError("'ssrs.data_sources' must map data source names to settings.")

    try:
        timeout = _to_int(section.get("timeout", 30))
    except ValueError as exc:
        raise ConfigurationError(f"Invalid SSRS timeout: {exc}.") from exc

    return SSRSConfig(
        base_url=base_url.rstrip("/"),
        username=_optional_str(section.get("username")),
        password=_optional_str(section.get("password")),
        verify_ssl=_to_bool(section.get("verify_ssl", True)),
        timeout=timeout,
        report_folder=_optional_str(section.get("report_folder")),
        dataset_folder=_optional_str(section.get("dataset_folder")),
        datasource_folder=_optional_str(section.get("datasource_folder")),
        overwrite_items=_optional_bool(section.get("overwrite_items")),
        overwrite_datasources=_optional_bool(section.get("overwrite_datasources")),
        project_configuration=_optional_str(section.get("project_configuration")),
        data_sources={str(name): dict(entry) for name, entry in data_sources.items()},
    )


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load application configuration from disk and environment variables."""

    config_dict = _load_config_dict(path)

    tokens_section = _section(config_dict, "tokens")
    defaults = TokensConfig()
    try:
        tokens_config = TokensConfig(
            file=_optional_path(tokens_section.get("file")) or defaults.file,
            environment=_optional_str(tokens_section.get("environment")) or defaults.environment,
            node=_optional_str(tokens_section.get("node")),
            max_passes=_to_int(tokens_section.get("max_passes", defaults.max_passes)),
        )
    except ValueError as exc:
        raise ConfigurationError(f"Invalid tokens configuration: {exc}.") from exc

    powershell_section = _section(config_dict, "powershell")
    try:
        powershell_config = PowerShellConfig(
            executable=_optional_str(powershell_section.get("executable"))
            or PowerShellConfig().executable,
            timeout=_to_int(powershell_section.get("timeout", PowerShellConfig().timeout)),
        )
    except ValueError as exc:
        raise ConfigurationError(f"Invalid PowerShell configuration: {exc}.") from exc

    exchange_section = _section(config_dict, "exchange")
    exchange_defaults = ExchangeConfig()
    exchange_config = ExchangeConfig(
        namespaces_file=_optional_path(exchange_section.get("namespaces_file"))
        or exchange_defaults.namespaces_file,
        connection_uri=_optional_str(exchange_section.get("connection_uri")),
        configuration_name=_optional_str(exchange_section.get("configuration_name"))
        or exchange_defaults.configuration_name,
        authentication=_optional_str(exchange_section.get("authentication"))
        or exchange_defaults.authentication,
    )

    logging_section = _section(config_dict, "logging")
    logging_config = LoggingConfig(
        level=(_optional_str(logging_section.get("level")) or LoggingConfig().level).upper(),
        file=_optional_path(logging_section.get("file")),
        format=_optional_str(logging_section.get("format")) or LoggingConfig().format,
    )

    return AppConfig(
        tokens=tokens_config,
        powershell=powershell_config,
        exchange=exchange_config,
        logging=logging_config,
        ssrs=_load_ssrs(_section(config_dict, "ssrs")),
    )


def _masked(value: Optional[str]) -> str:
    return "********" if value else ""


def config_to_dict(config: AppConfig, mask_secrets: bool = True) -> Dict[str, Any]:
    """Serialize an :class:`AppConfig` back to primitive types for display."""

    payload: Dict[str, Any] = {
        "tokens": {
            "file": str(config.tokens.file),
            "environment": config.tokens.environment,
            "node": config.tokens.node or "",
            "max_passes": config.tokens.max_passes,
        },
        "powershell": {
            "executable": config.powershell.executable,
            "timeout": config.powershell.timeout,
        },
        "exchange": {
            "namespaces_file": str(config.exchange.namespaces_file),
            "connection_uri": config.exchange.connection_uri or "",
            "configuration_name": config.exchange.configuration_name,
            "authentication": config.exchange.authentication,
        },
        "logging": {
            "level": config.logging.level,
            "file": str(config.logging.file) if config.logging.file else "",
            "format": config.logging.format,
        },
    }
    if config.ssrs:
        ssrs = config.ssrs
        data_sources = {}
        for name, entry in ssrs.data_sources.items():
            data_sources[name] = dict(entry)
            if mask_secrets and entry.get("password"):
                data_sources[name]["password"] = _masked(entry.get("password"))
        payload["ssrs"] = {
            "base_url": ssrs.base_url,
            "username": ssrs.username or "",
            "password": _masked(ssrs.password) if mask_secrets else (ssrs.password or ""),
            "verify_ssl": ssrs.verify_ssl,
            "timeout": ssrs.timeout,
            **({"report_folder": ssrs.report_folder} if ssrs.report_folder else {}),
            **({"dataset_folder": ssrs.dataset_folder} if ssrs.dataset_folder else {}),
            **({"datasource_folder": ssrs.datasource_folder} if ssrs.datasource_folder else {}),
            **(
                {"overwrite_items": ssrs.overwrite_items}
                if ssrs.overwrite_items is not None
                else {}
            ),
            **(
                {"overwrite_datasources": ssrs.overwrite_datasources}
                if ssrs.overwrite_datasources is not None
                else {}
            ),
            **(
                {"project_configuration": ssrs.project_configuration}
                if ssrs.project_configuration
                else {}
            ),
            "data_sources": data_sources,
        }
    return payload


__all__ = [
    "AppConfig",
    "ConfigurationError",
    "ExchangeConfig",
    "LoggingConfig",
    "PowerShellConfig",
    "SSRSConfig",
    "TokensConfig",
    "config_to_dict",
    "ensure_default_config",
    "load_config",
]
