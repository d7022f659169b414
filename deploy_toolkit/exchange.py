"""Exchange client access namespace configuration."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .models import NamespaceSettings
from .tokens import substitute_value

logger = logging.getLogger(__name__)

# service -> (cmdlet noun, IIS application name, URL path)
VIRTUAL_DIRECTORIES: Dict[str, tuple[str, str, str]] = {
    "owa": ("OwaVirtualDirectory", "owa", "owa"),
    "ecp": ("EcpVirtualDirectory", "ecp", "ecp"),
    "ews": ("WebServicesVirtualDirectory", "EWS", "EWS/Exchange.asmx"),
    "activesync": (
        "ActiveSyncVirtualDirectory",
        "Microsoft-Server-ActiveSync",
        "Microsoft-Server-ActiveSync",
    ),
    "oab": ("OabVirtualDirectory", "OAB", "OAB"),
    "mapi": ("MapiVirtualDirectory", "mapi", "mapi"),
}
AUTODISCOVER_PATH = "Autodiscover/Autodiscover.xml"


class NamespaceConfigurationError(RuntimeError):
    """Raised when namespace definitions are incomplete or inconsistent."""


@dataclass
class NamespaceCommand:
    """One Exchange Management Shell cmdlet invocation."""

    cmdlet: str
    identity: str
    parameters: Dict[str, Any] = field(default_factory=dict)

    def render(self) -> str:
        parts = [self.cmdlet, "-Identity", quote(self.identity)]
        for name, value in self.parameters.items():
            parts.append(f"-{name}")
            parts.append(format_value(value))
        return " ".join(parts)


def quote(value: str) -> str:
    return "'" + str(value).replace("'", "''") + "'"


def format_value(value: Any) -> str:
    if value is None:
        return "$null"
    if isinstance(value, bool):
        return "$true" if value else "$false"
    if isinstance(value, (int, float)):
        return str(value)
    return quote(value)


def _url(host: Optional[str], path: str) -> Optional[str]:
    if not host:
        return None
    return f"https://{host.strip().rstrip('/')}/{path}"


def load_namespaces(
    path: Path, resolved_tokens: Optional[Mapping[str, Mapping[str, Any]]] = None
) -> List[NamespaceSettings]:
    """Read namespace definitions from YAML, applying resolved tokens to every value."""

    if not path.exists():
        raise NamespaceConfigurationError(f"Namespace file '{path}' does not exist.")
    with path.open("r", encoding="utf-8") as handle:
        try:
            payload = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise NamespaceConfigurationError(
                f"Namespace file '{path}' is not valid YAML: {exc}"
            ) from exc

    entries = payload
    if isinstance(payload, dict) and "namespaces" in payload:
        entries = payload["namespaces"]
    if isinstance(entries, dict):
        entries = [entries]
    if not isinstance(entries, list) or not entries:
        raise NamespaceConfigurationError(f"Namespace file '{path}' defines no namespaces.")

    namespaces: List[NamespaceSettings] = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise NamespaceConfigurationError("Each namespace entry must be a mapping.")
        if resolved_tokens is not None:
            entry = substitute_value(entry, resolved_tokens)
        namespaces.append(NamespaceSettings.from_dict(entry))
    return namespaces


def validate_namespace(settings: NamespaceSettings) -> None:
    if not settings.servers:
        raise NamespaceConfigurationError("Namespace entry lists no servers.")
    if not settings.internal_host:
        raise NamespaceConfigurationError("Namespace entry has no internal_host.")
    unknown = [
        service
        for service in settings.services
        if service not in VIRTUAL_DIRECTORIES and service not in {"autodiscover", "outlookanywhere"}
    ]
    if unknown:
        raise NamespaceConfigurationError(f"Unknown client access service(s): {', '.join(unknown)}.")


def build_namespace_plan(settings: NamespaceSettings) -> List[NamespaceCommand]:
    """Translate namespace settings into the cmdlets that apply them, per server."""

    validate_namespace(settings)
    services = settings.services or [*VIRTUAL_DIRECTORIES, "autodiscover", "outlookanywhere"]
    autodiscover_host = settings.autodiscover_host or settings.internal_host
    plan: List[NamespaceCommand] = []

    for server in settings.servers:
        for service, (noun, application, path) in VIRTUAL_DIRECTORIES.items():
            if service not in services:
                continue
            plan.append(
                NamespaceCommand(
                    cmdlet=f"Set-{noun}",
                    identity=f"{server}\\{application} ({settings.web_site})",
                    parameters={
                        "InternalUrl": _url(settings.internal_host, path),
                        "ExternalUrl": _url(settings.external_host, path),
                    },
                )
            )

        if "autodiscover" in services:
            plan.append(
                NamespaceCommand(
                    cmdlet="Set-ClientAccessService",
                    identity=server,
                    parameters={
                        "AutoDiscoverServiceInternalUri": _url(autodiscover_host, AUTODISCOVER_PATH)
                    },
                )
            )

        anywhere = settings.outlook_anywhere
        if "outlookanywhere" in services and anywhere.enabled:
            external = anywhere.external_hostname or settings.external_host
            parameters: Dict[str, Any] = {
                "InternalHostname": anywhere.internal_hostname or settings.internal_host,
                "InternalClientsRequireSsl": anywhere.internal_require_ssl,
                "ExternalHostname": external,
            }
            if external:
                parameters["ExternalClientsRequireSsl"] = anywhere.external_require_ssl
                parameters["ExternalClientAuthenticationMethod"] = anywhere.external_authentication
            plan.append(
                NamespaceCommand(
                    cmdlet="Set-OutlookAnywhere",
                    identity=f"{server}\\Rpc ({settings.web_site})",
                    parameters=parameters,
                )
            )

    logger.debug("Built %s namespace command(s) for %s server(s).", len(plan), len(settings.servers))
    return plan


def render_script(
    plan: List[NamespaceCommand],
    connection_uri: Optional[str] = None,
    configuration_name: str = "Microsoft.Exchange",
    authentication: str = "Kerberos",
) -> str:
    """Render the plan as an Exchange Management Shell script."""

    lines = ["$ErrorActionPreference = 'Stop'"]
    body = []
    for command in plan:
        body.append(command.render())
        body.append(f"Write-Output {quote('Configured ' + command.identity)}")

    if connection_uri:
        lines.extend(
            [
                "$session = New-PSSession"
                f" -ConfigurationName {quote(configuration_name)}"
                f" -ConnectionUri {quote(connection_uri)}"
                f" -Authentication {authentication}",
                "Import-PSSession $session -DisableNameChecking -AllowClobber | Out-Null",
                "try {",
                *[f"    {line}" for line in body],
                "}",
                "finally {",
                "    Remove-PSSession $session",
                "}",
            ]
        )
    else:
        lines.append(
            "Add-PSSnapin Microsoft.Exchange.Management.PowerShell.SnapIn -ErrorAction SilentlyContinue"
        )
        lines.extend(body)
    return "\n".join(lines) + "\n"


__all__ = [
    "AUTODISCOVER_PATH",
    "NamespaceCommand",
    "NamespaceConfigurationError",
    "VIRTUAL_DIRECTORIES",
    "build_namespace_plan",
    "format_value",
    "load_namespaces",
    "quote",
    "render_script",
    "validate_namespace",
]
