"""Reporting Services REST API helper utilities."""
from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests
from requests.auth import HTTPBasicAuth

from .config import SSRSConfig
from .models import DataSourceDefinition
from .rptproj import catalog_path

logger = logging.getLogger(__name__)

API_PATH = "/api/v2.0"
ITEM_COLLECTIONS = {
    "Folder": "Folders",
    "Report": "Reports",
    "DataSet": "DataSets",
    "DataSource": "DataSources",
    "Resource": "Resources",
}


class SSRSClientError(RuntimeError):
    """Base exception for Reporting Services client operations."""


class SSRSConfigurationError(SSRSClientError):
    """Raised when the Reporting Services integration is not configured."""


class SSRSApiError(SSRSClientError):
    """Raised when the Reporting Services REST API returns an error."""

    def __init__(self, status_code: int, error: str, description: str) -> None:
        super().__init__(f"{status_code}: {error} - {description}")
        self.status_code = status_code
        self.error = error
        self.description = description


@dataclass(frozen=True)
class UploadResult:
    item: Dict[str, Any]
    action: str  # created, updated, skipped


def _path_key(path: str) -> str:
    escaped = path.replace("'", "''")
    return f"(Path='{quote(escaped, safe='/')}')"


class SSRSClient:
    """Thin client over the catalog endpoints used when publishing reports."""

    def __init__(self, config: SSRSConfig, session: Optional[requests.Session] = None) -> None:
        if not config.base_url:
            raise SSRSConfigurationError(
                "Reporting Services is not configured. Provide ssrs.base_url."
            )

        self._config = config
        self._api_root = config.base_url.rstrip("/") + API_PATH
        self._session = session or requests.Session()
        if config.has_credentials:
            self._session.auth = HTTPBasicAuth(config.username, config.password)
        self._session.verify = config.verify_ssl
        self._session.headers.update({"Accept": "application/json"})

    def close(self) -> None:
        self._session.close()

    def __enter__(self) -> "SSRSClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()

    # ------------------------------------------------------------------ #
    # HTTP helpers                                                       #
    # ------------------------------------------------------------------ #
    def _request(
        self, method: str, path: str, allow_missing: bool = False, **kwargs: Any
    ) -> Optional[Any]:
        url = self._api_root + path
        try:
            response = self._session.request(
                method, url, timeout=self._config.timeout, **kwargs
            )
        except requests.RequestException as exc:
            raise SSRSClientError(f"Unable to reach Reporting Services at {url}: {exc}") from exc

        if response.status_code == 404 and allow_missing:
            return None
        if response.status_code == 204:
            return {}

        if response.status_code >= 400:
            code = "ReportingServicesError"
            message = response.text or "Unknown Reporting Services error."
            try:
                payload = response.json()
            except ValueError:
                payload = None
            error = payload.get("error") if isinstance(payload, dict) else None
            if isinstance(error, dict):
                code = error.get("code", code)
                message = error.get("message", message)
            raise SSRSApiError(response.status_code, code, message)

        if not response.content:
            return {}
        return response.json()

    # ------------------------------------------------------------------ #
    # Catalog lookup                                                     #
    # ------------------------------------------------------------------ #
    def get_system_info(self) -> Dict[str, Any]:
        return self._request("GET", "/System") or {}

    def get_item(self, path: str) -> Optional[Dict[str, Any]]:
        """Return the catalog item at ``path`` or ``None`` when it does not exist."""
        return self._request("GET", f"/CatalogItems{_path_key(path)}", allow_missing=True)

    def delete_item(self, path: str) -> bool:
        item = self.get_item(path)
        if not item:
            return False
        self._request("DELETE", f"/CatalogItems({item['Id']})")
        logger.info("Deleted %s.", path)
        return True

    # ------------------------------------------------------------------ #
    # Folders                                                            #
    # ------------------------------------------------------------------ #
    def create_folder(self, name: str, parent: str = "/") -> Dict[str, Any]:
        payload = {"@odata.type": "#Model.Folder", "Name": name, "Path": catalog_path(parent)}
        return self._request("POST", "/Folders", json=payload) or {}

    def ensure_folder(self, path: str) -> Dict[str, Any]:
        """Create every missing folder along ``path`` and return the last one."""

        target = catalog_path(path)
        item: Dict[str, Any] = {"Path": "/", "Type": "Folder"}
        parent = "/"
        for segment in [part for part in target.split("/") if part]:
            current = catalog_path(parent, segment)
            existing = self.get_item(current)
            if existing is None:
                logger.info("Creating folder %s.", current)
                item = self.create_folder(segment, parent)
            elif existing.get("Type", "Folder") != "Folder":
                raise SSRSClientError(f"Catalog item '{current}' exists but is not a folder.")
            else:
                item = existing
            parent = current
        return item

    # ------------------------------------------------------------------ #
    # Item publishing                                                    #
    # ------------------------------------------------------------------ #
    def _create_or_update(
        self, collection: str, payload: Dict[str, Any], item_path: str, overwrite: bool
    ) -> UploadResult:
        try:
            created = self._request("POST", f"/{collection}", json=payload) or {}
            return UploadResult(item=created, action="created")
        except SSRSApiError as exc:
            if exc.status_code != 409:
                raise

        existing = self.get_item(item_path)
        if existing is None:
            raise SSRSClientError(
                f"Reporting Services reported a conflict for '{item_path}' but it cannot be found."
            )
        if not overwrite:
            return UploadResult(item=existing, action="skipped")

        updated = self._request("PATCH", f"/CatalogItems({existing['Id']})", json=payload) or {}
        return UploadResult(item={**existing, **updated}, action="updated")

    def upload_item(
        self,
        kind: str,
        name: str,
        folder: str,
        content: bytes,
        overwrite: bool = True,
        description: Optional[str] = None,
        hidden: bool = False,
    ) -> UploadResult:
        """Publish a report, dataset or resource definition into ``folder``."""

        try:
            collection = ITEM_COLLECTIONS[kind]
        except KeyError as exc:
            raise SSRSClientError(f"Unsupported catalog item type '{kind}'.") from exc

        item_path = catalog_path(folder, name)
        payload: Dict[str, Any] = {
            "@odata.type": f"#Model.{kind}",
            "Name": name,
            "Path": item_path,
            "Content": base64.b64encode(content).decode("ascii"),
            "ContentType": "",
            "Hidden": hidden,
        }
        if description:
            payload["Description"] = description
        return self._create_or_update(collection, payload, item_path, overwrite)

    def create_data_source(
        self, definition: DataSourceDefinition, folder: str, overwrite: bool = False
    ) -> UploadResult:
        item_path = catalog_path(folder, definition.name)
        payload: Dict[str, Any] = {
            "@odata.type": "#Model.DataSource",
            "Name": definition.name,
            "Path": item_path,
            "IsEnabled": definition.enabled,
            "DataSourceType": definition.extension,
            "ConnectionString": definition.connection_string,
            "IsConnectionStringOverridden": True,
            "CredentialRetrieval": definition.credential_retrieval,
        }
        if definition.credential_retrieval == "Store":
            payload["CredentialsInServer"] = {
                "UserName": definition.username or "",
                "Password": definition.password or "",
                "UseAsWindowsCredentials": definition.windows_credentials,
                "ImpersonateAuthenticatedUser": False,
            }
        elif definition.credential_retrieval == "Prompt":
            payload["CredentialsByUser"] = {
                "DisplayText": definition.prompt or "",
                "UseAsWindowsCredentials": definition.windows_credentials,
            }
        return self._create_or_update("DataSources", payload, item_path, overwrite)

    # ------------------------------------------------------------------ #
    # Data source bindings                                               #
    # ------------------------------------------------------------------ #
    def get_item_data_sources(self, kind: str, item_id: str) -> List[Dict[str, Any]]:
        result = self._request("GET", f"/{ITEM_COLLECTIONS[kind]}({item_id})/DataSources") or {}
        return list(result.get("value", []))

    def set_item_data_sources(
        self, kind: str, item_id: str, data_sources: List[Dict[str, Any]]
    ) -> None:
        self._request(
            "PUT", f"/{ITEM_COLLECTIONS[kind]}({item_id})/DataSources", json=data_sources
        )


__all__ = [
    "ITEM_COLLECTIONS",
    "SSRSApiError",
    "SSRSClient",
    "SSRSClientError",
    "SSRSConfigurationError",
    "UploadResult",
]
