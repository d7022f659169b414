"""Shared fixtures: an in-memory Reporting Services catalog and sample report projects."""

from __future__ import annotations

import base64
import json
import re
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import unquote

import pytest

from deploy_toolkit.config import SSRSConfig
from deploy_toolkit.ssrs_client import SSRSClient

BASE_URL = "http://reports.test/reports"
API_ROOT = BASE_URL + "/api/v2.0"

COLLECTION_TYPES = {
    "Folders": "Folder",
    "Reports": "Report",
    "DataSets": "DataSet",
    "DataSources": "DataSource",
}


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str = "") -> None:
        self.status_code = status_code
        self._payload = payload
        if not text and payload is not None:
            text = json.dumps(payload)
        self.text = text
        self.content = text.encode("utf-8")

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


class FakeSession:
    """Stands in for ``requests.Session``; every request goes to ``handler``."""

    def __init__(self, handler: Callable[[str, str, Dict[str, Any]], FakeResponse]) -> None:
        self.handler = handler
        self.headers: Dict[str, str] = {}
        self.auth = None
        self.verify = True
        self.closed = False
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []

    def request(self, method: str, url: str, timeout: Optional[int] = None, **kwargs: Any) -> FakeResponse:
        self.calls.append((method, url, kwargs))
        return self.handler(method, url, kwargs)

    def close(self) -> None:
        self.closed = True


def _error(status: int, code: str, message: str) -> FakeResponse:
    return FakeResponse(status, {"error": {"code": code, "message": message}})


class FakeReportServer:
    """Minimal emulation of the catalog endpoints of the REST API."""

    def __init__(self) -> None:
        self.items: Dict[str, Dict[str, Any]] = {}
        self.bindings: Dict[str, List[Dict[str, Any]]] = {}
        self.calls: List[Tuple[str, str, Any]] = []
        self._next_id = 1

    def add(self, path: str, item_type: str, **extra: Any) -> Dict[str, Any]:
        item = {
            "Id": f"item-{self._next_id}",
            "Name": path.rsplit("/", 1)[-1],
            "Path": path,
            "Type": item_type,
            **extra,
        }
        self._next_id += 1
        self.items[path] = item
        return item

    def _by_id(self, item_id: str) -> Optional[Dict[str, Any]]:
        for item in self.items.values():
            if item["Id"] == item_id:
                return item
        return None

    def _seed_bindings(self, item: Dict[str, Any]) -> None:
        content = item.get("_content") or ""
        if item["Type"] == "DataSet":
            self.bindings[item["Id"]] = [{"Name": "DataSetDataSource", "IsReference": False}]
        elif item["Type"] == "Report":
            names = re.findall(r'<DataSource Name="([^"]+)"', content)
            self.bindings[item["Id"]] = [{"Name": name, "IsReference": False} for name in names]

    def __call__(self, method: str, url: str, kwargs: Dict[str, Any]) -> FakeResponse:
        assert url.startswith(API_ROOT), url
        path = url[len(API_ROOT) :]
        body = kwargs.get("json")
        self.calls.append((method, path, body))

        if path == "/System" and method == "GET":
            return FakeResponse(200, {"ProductName": "Reporting Services", "ProductVersion": "15.0"})

        match = re.fullmatch(r"/CatalogItems\(Path='(.*)'\)", path)
        if match and method == "GET":
            item_path = unquote(match.group(1)).replace("''", "'")
            item = self.items.get(item_path)
            if item is None:
                return _error(404, "ItemNotFound", f"{item_path} not found")
            return FakeResponse(200, item)

        match = re.fullmatch(r"/(Folders|Reports|DataSets|DataSources)", path)
        if match and method == "POST":
            collection = match.group(1)
            if collection == "Folders":
                item_path = body["Path"].rstrip("/") + "/" + body["Name"]
            else:
                item_path = body["Path"]
            if item_path in self.items:
                return _error(409, "CatalogItemAlreadyExists", f"{item_path} already exists")
            extra = {key: value for key, value in body.items() if key not in {"Name", "Path"}}
            if "Content" in body:
                extra["_content"] = base64.b64decode(body["Content"]).decode("utf-8")
            item = self.add(item_path, COLLECTION_TYPES[collection], **extra)
            self._seed_bindings(item)
            return FakeResponse(201, item)

        match = re.fullmatch(r"/CatalogItems\(([^)]+)\)", path)
        if match and method in {"PATCH", "DELETE"}:
            item = self._by_id(match.group(1))
            if item is None:
                return _error(404, "ItemNotFound", "unknown id")
            if method == "DELETE":
                del self.items[item["Path"]]
                return FakeResponse(204)
            item.update({key: value for key, value in body.items() if key not in {"Name", "Path"}})
            if "Content" in body:
                item["_content"] = base64.b64decode(body["Content"]).decode("utf-8")
            return FakeResponse(204)

        match = re.fullmatch(r"/(Reports|DataSets)\(([^)]+)\)/DataSources", path)
        if match:
            item_id = match.group(2)
            if method == "GET":
                return FakeResponse(200, {"value": [dict(entry) for entry in self.bindings.get(item_id, [])]})
            if method == "PUT":
                self.bindings[item_id] = [dict(entry) for entry in body]
                return FakeResponse(204)

        return _error(500, "Unexpected", f"{method} {path}")

    def calls_for(self, method: str) -> List[Tuple[str, str, Any]]:
        return [call for call in self.calls if call[0] == method]


@pytest.fixture
def report_server() -> FakeReportServer:
    return FakeReportServer()


@pytest.fixture
def ssrs_settings() -> SSRSConfig:
    return SSRSConfig(base_url=BASE_URL, username="CONTOSO\\deploy", password="secret")


@pytest.fixture
def ssrs_client(report_server: FakeReportServer, ssrs_settings: SSRSConfig) -> SSRSClient:
    return SSRSClient(ssrs_settings, session=FakeSession(report_server))


# ---------------------------------------------------------------------------
# Sample report project files
# ---------------------------------------------------------------------------

DATA_SOURCE_RDS = """<?xml version="1.0" encoding="utf-8"?>
<RptDataSource xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance" Name="SalesDW">
  <ConnectionProperties>
    <Extension>SQL</Extension>
    <ConnectString>Data Source=localhost;Initial Catalog=SalesDW</ConnectString>
    <IntegratedSecurity>true</IntegratedSecurity>
  </ConnectionProperties>
  <DataSourceID>4b1c2f3e-0000-0000-0000-000000000001</DataSourceID>
</RptDataSource>
"""

DATASET_RSD = """<?xml version="1.0" encoding="utf-8"?>
<SharedDataSet xmlns="http://schemas.microsoft.com/sqlserver/reporting/2010/01/shareddatasetdefinition">
  <DataSet Name="">
    <Query>
      <DataSourceReference>SalesDW</DataSourceReference>
      <CommandText>SELECT RegionId, Name FROM dbo.Regions</CommandText>
    </Query>
  </DataSet>
</SharedDataSet>
"""

REPORT_RDL = """<?xml version="1.0" encoding="utf-8"?>
<Report xmlns="http://schemas.microsoft.com/sqlserver/reporting/2016/01/reportdefinition" xmlns:rd="http://schemas.microsoft.com/SQLServer/reporting/reportdesigner">
  <DataSources>
    <DataSource Name="SalesDW">
      <DataSourceReference>SalesDW</DataSourceReference>
      <rd:DataSourceID>4b1c2f3e-0000-0000-0000-000000000001</rd:DataSourceID>
    </DataSource>
  </DataSources>
  <DataSets>
    <DataSet Name="Regions">
      <SharedDataSet>
        <SharedDataSetReference>Regions</SharedDataSetReference>
      </SharedDataSet>
    </DataSet>
  </DataSets>
</Report>
"""

LEGACY_PROJECT = """<?xml version="1.0" encoding="utf-8"?>
<Project xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance" ToolsVersion="2.0">
  <State>$base64$</State>
  <DataSources>
    <ProjectItem>
      <Name>SalesDW.rds</Name>
      <FullPath>SalesDW.rds</FullPath>
    </ProjectItem>
  </DataSources>
  <DataSets>
    <ProjectItem>
      <Name>Regions.rsd</Name>
      <FullPath>Regions.rsd</FullPath>
    </ProjectItem>
  </DataSets>
  <Reports>
    <ProjectItem>
      <Name>Overview.rdl</Name>
      <FullPath>Overview.rdl</FullPath>
    </ProjectItem>
  </Reports>
  <Configurations>
    <Configuration>
      <Name>Debug</Name>
      <Options>
        <TargetServerURL>http://localhost/reportserver</TargetServerURL>
        <TargetFolder>Sales Debug</TargetFolder>
        <TargetDataSourceFolder>Data Sources</TargetDataSourceFolder>
        <TargetDatasetFolder>Datasets</TargetDatasetFolder>
        <OverwriteDataSources>true</OverwriteDataSources>
      </Options>
    </Configuration>
    <Configuration>
      <Name>Release</Name>
      <Options>
        <TargetFolder>Sales</TargetFolder>
        <OverwriteDatasets>false</OverwriteDatasets>
      </Options>
    </Configuration>
  </Configurations>
</Project>
"""


def write_report_project(directory: Path) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "SalesDW.rds").write_text(DATA_SOURCE_RDS, encoding="utf-8")
    (directory / "Regions.rsd").write_text(DATASET_RSD, encoding="utf-8")
    (directory / "Overview.rdl").write_text(REPORT_RDL, encoding="utf-8")
    project = directory / "Sales.rptproj"
    project.write_text(LEGACY_PROJECT, encoding="utf-8")
    return project


@pytest.fixture
def report_project(tmp_path: Path) -> Path:
    return write_report_project(tmp_path / "Sales")
