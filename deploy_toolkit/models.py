"""Data models for environments, report projects and mail namespaces."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional


def _unique_preserve(values: Any) -> List[str]:
    seen: set[str] = set()
    result: List[str] = []
    for value in values or []:
        cleaned = str(value or "").strip()
        if cleaned and cleaned not in seen:
            seen.add(cleaned)
            result.append(cleaned)
    return result


def _to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


@dataclass
class Environment:
    """Token definitions for one deployment environment."""

    name: str
    based_on: Optional[str] = None
    tokens: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    nodes: Dict[str, Dict[str, Dict[str, Any]]] = field(default_factory=dict)


@dataclass
class ProjectItem:
    """A file listed in a report project."""

    kind: str  # DataSource, DataSet, Report
    file_name: str
    path: Path

    @property
    def name(self) -> str:
        """Catalog item name, i.e. the file name without its extension."""
        return Path(self.file_name).stem


@dataclass
class ProjectConfiguration:
    """Deployment settings stored in a report project for one build configuration."""

    name: str
    target_server_url: Optional[str] = None
    target_report_folder: Optional[str] = None
    target_dataset_folder: Optional[str] = None
    target_datasource_folder: Optional[str] = None
    overwrite_datasets: Optional[bool] = None
    overwrite_datasources: Optional[bool] = None


@dataclass
class ReportProject:
    path: Path
    data_sources: List[ProjectItem] = field(default_factory=list)
    datasets: List[ProjectItem] = field(default_factory=list)
    reports: List[ProjectItem] = field(default_factory=list)
    configurations: Dict[str, ProjectConfiguration] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.path.stem

    def configuration(self, name: Optional[str]) -> Optional[ProjectConfiguration]:
        if not name:
            return None
        if name in self.configurations:
            return self.configurations[name]
        lowered = name.lower()
        for key, configuration in self.configurations.items():
            if key.lower() == lowered:
                return configuration
        return None


@dataclass
class DataSourceDefinition:
    """A shared data source, read from an ``.rds`` file or configuration."""

    name: str
    extension: str = "SQL"
    connection_string: str = ""
    credential_retrieval: str = "Integrated"  # Integrated, Store, Prompt, None
    username: Optional[str] = None
    password: Optional[str] = None
    windows_credentials: bool = False
    prompt: Optional[str] = None
    enabled: bool = True

    def with_overrides(self, overrides: Dict[str, Any]) -> "DataSourceDefinition":
        """Return a copy with configured connection settings applied."""

        retrieval = overrides.get("credential_retrieval")
        return DataSourceDefinition(
            name=self.name,
            extension=str(overrides.get("extension") or self.extension),
            connection_string=str(
                overrides.get("connection_string")
                if overrides.get("connection_string") is not None
                else self.connection_string
            ),
            credential_retrieval=str(retrieval).capitalize() if retrieval else self.credential_retrieval,
            username=overrides.get("username", self.username),
            password=overrides.get("password", self.password),
            windows_credentials=_to_bool(
                overrides.get("windows_credentials"), self.windows_credentials
            ),
            prompt=overrides.get("prompt", self.prompt),
            enabled=_to_bool(overrides.get("enabled"), self.enabled),
        )


@dataclass
class OutlookAnywhereSettings:
    enabled: bool = True
    internal_hostname: Optional[str] = None
    external_hostname: Optional[str] = None
    internal_require_ssl: bool = True
    external_require_ssl: bool = True
    external_authentication: str = "Negotiate"

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "OutlookAnywhereSettings":
        data = data or {}
        return cls(
            enabled=_to_bool(data.get("enabled"), True),
            internal_hostname=data.get("internal_hostname") or None,
            external_hostname=data.get("external_hostname") or None,
            internal_require_ssl=_to_bool(data.get("internal_require_ssl"), True),
            external_require_ssl=_to_bool(data.get("external_require_ssl"), True),
            external_authentication=str(data.get("external_authentication") or "Negotiate"),
        )


@dataclass
class NamespaceSettings:
    """Client access namespaces applied to a set of mail servers."""

    servers: List[str]
    internal_host: str
    external_host: Optional[str] = None
    autodiscover_host: Optional[str] = None
    services: List[str] = field(default_factory=list)
    web_site: str = "Default Web Site"
    outlook_anywhere: OutlookAnywhereSettings = field(default_factory=OutlookAnywhereSettings)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NamespaceSettings":
        servers = data.get("servers")
        if isinstance(servers, str):
            servers = [servers]
        return cls(
            servers=_unique_preserve(servers),
            internal_host=str(data.get("internal_host") or "").strip(),
            external_host=(str(data["external_host"]).strip() if data.get("external_host") else None),
            autodiscover_host=(
                str(data["autodiscover_host"]).strip() if data.get("autodiscover_host") else None
            ),
            services=[service.lower() for service in _unique_preserve(data.get("services"))],
            web_site=str(data.get("web_site") or "Default Web Site"),
            outlook_anywhere=OutlookAnywhereSettings.from_dict(data.get("outlook_anywhere")),
        )


__all__ = [
    "DataSourceDefinition",
    "Environment",
    "NamespaceSettings",
    "OutlookAnywhereSettings",
    "ProjectConfiguration",
    "ProjectItem",
    "ReportProject",
]
