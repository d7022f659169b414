"""Tests for the Reporting Services REST client."""

from __future__ import annotations

import base64

import pytest
import requests
from requests.auth import HTTPBasicAuth

from conftest import API_ROOT, BASE_URL, FakeResponse, FakeSession
from deploy_toolkit.config import SSRSConfig
from deploy_toolkit.models import DataSourceDefinition
from deploy_toolkit.ssrs_client import (
    SSRSApiError,
    SSRSClient,
    SSRSClientError,
    SSRSConfigurationError,
)


def test_session_is_configured_with_credentials(ssrs_client):
    session = ssrs_client._session
    assert isinstance(session.auth, HTTPBasicAuth)
    assert session.auth.username == "CONTOSO\\deploy"
    assert session.headers["Accept"] == "application/json"
    assert session.verify is True


def test_session_without_credentials():
    session = FakeSession(lambda *args: FakeResponse(200, {}))
    SSRSClient(SSRSConfig(base_url=BASE_URL, verify_ssl=False), session=session)
    assert session.auth is None
    assert session.verify is False


def test_missing_base_url_is_rejected():
    with pytest.raises(SSRSConfigurationError):
        SSRSClient(SSRSConfig(base_url=""), session=FakeSession(lambda *args: None))


def test_context_manager_closes_session(ssrs_settings, report_server):
    session = FakeSession(report_server)
    with SSRSClient(ssrs_settings, session=session) as client:
        assert client.get_system_info()["ProductVersion"] == "15.0"
    assert session.closed


def test_get_item_returns_none_when_missing(ssrs_client):
    assert ssrs_client.get_item("/Nowhere") is None


def test_item_path_quotes_are_escaped(ssrs_client, report_server):
    report_server.add("/Team's Reports", "Folder")
    item = ssrs_client.get_item("/Team's Reports")
    assert item["Path"] == "/Team's Reports"
    method, path, _ = report_server.calls[-1]
    assert path == "/CatalogItems(Path='/Team%27%27s%20Reports')"


def test_ensure_folder_creates_missing_parents(ssrs_client, report_server):
    report_server.add("/Finance", "Folder")

    folder = ssrs_client.ensure_folder("Finance/Monthly/EMEA")

    assert folder["Path"] == "/Finance/Monthly/EMEA"
    assert set(report_server.items) == {"/Finance", "/Finance/Monthly", "/Finance/Monthly/EMEA"}
    posts = report_server.calls_for("POST")
    assert [body["Name"] for _, _, body in posts] == ["Monthly", "EMEA"]
    assert posts[1][2]["Path"] == "/Finance/Monthly"


def test_ensure_folder_rejects_non_folder(ssrs_client, report_server):
    report_server.add("/Finance", "Report")
    with pytest.raises(SSRSClientError, match="not a folder"):
        ssrs_client.ensure_folder("/Finance/Monthly")


def test_upload_item_create_update_and_skip(ssrs_client, report_server):
    report_server.add("/Sales", "Folder")

    created = ssrs_client.upload_item("Report", "Overview", "/Sales", b"<Report />")
    assert created.action == "created"
    assert report_server.items["/Sales/Overview"]["_content"] == "<Report />"

    updated = ssrs_client.upload_item("Report", "Overview", "/Sales", b"<Report>v2</Report>")
    assert updated.action == "updated"
    assert updated.item["Id"] == created.item["Id"]
    assert report_server.items["/Sales/Overview"]["_content"] == "<Report>v2</Report>"

    skipped = ssrs_client.upload_item(
        "Report", "Overview", "/Sales", b"<Report>v3</Report>", overwrite=False
    )
    assert skipped.action == "skipped"
    assert report_server.items["/Sales/Overview"]["_content"] == "<Report>v2</Report>"


def test_upload_item_payload(ssrs_client, report_server):
    ssrs_client.upload_item("DataSet", "Regions", "/Datasets", b"abc", description="Lookup", hidden=True)
    _, path, body = report_server.calls_for("POST")[0]
    assert path == "/DataSets"
    assert body["@odata.type"] == "#Model.DataSet"
    assert body["Path"] == "/Datasets/Regions"
    assert base64.b64decode(body["Content"]) == b"abc"
    assert body["Description"] == "Lookup"
    assert body["Hidden"] is True


def test_upload_item_rejects_unknown_kind(ssrs_client):
    with pytest.raises(SSRSClientError, match="Unsupported"):
        ssrs_client.upload_item("Dashboard", "x", "/", b"")


def test_create_data_source_with_stored_credentials(ssrs_client, report_server):
    definition = DataSourceDefinition(
        name="SalesDW",
        connection_string="Data Source=sql01",
        credential_retrieval="Store",
        username="CONTOSO\\svc_reports",
        password="p@ss",
        windows_credentials=True,
    )
    result = ssrs_client.create_data_source(definition, "/Data Sources")

    assert result.action == "created"
    _, path, body = report_server.calls_for("POST")[0]
    assert path == "/DataSources"
    assert body["Path"] == "/Data Sources/SalesDW"
    assert body["DataSourceType"] == "SQL"
    assert body["CredentialRetrieval"] == "Store"
    assert body["CredentialsInServer"] == {
        "UserName": "CONTOSO\\svc_reports",
        "Password": "p@ss",
        "UseAsWindowsCredentials": True,
        "ImpersonateAuthenticatedUser": False,
    }
    assert "CredentialsByUser" not in body


def test_existing_data_source_is_kept_without_overwrite(ssrs_client, report_server):
    report_server.add("/Data Sources/SalesDW", "DataSource", ConnectionString="old")
    definition = DataSourceDefinition(name="SalesDW", connection_string="new")

    result = ssrs_client.create_data_source(definition, "/Data Sources")

    assert result.action == "skipped"
    assert report_server.items["/Data Sources/SalesDW"]["ConnectionString"] == "old"
    assert not report_server.calls_for("PATCH")


def test_delete_item(ssrs_client, report_server):
    report_server.add("/Sales", "Folder")
    assert ssrs_client.delete_item("/Sales") is True
    assert "/Sales" not in report_server.items
    assert ssrs_client.delete_item("/Sales") is False


def test_item_data_sources_round_trip(ssrs_client, report_server):
    item = report_server.add("/Sales/Overview", "Report")
    report_server.bindings[item["Id"]] = [{"Name": "SalesDW", "IsReference": False}]

    entries = ssrs_client.get_item_data_sources("Report", item["Id"])
    assert entries == [{"Name": "SalesDW", "IsReference": False}]

    entries[0].update({"IsReference": True, "DataSourceSubType": "DataSource"})
    ssrs_client.set_item_data_sources("Report", item["Id"], entries)
    assert report_server.bindings[item["Id"]][0]["IsReference"] is True


def test_api_errors_are_parsed(ssrs_settings):
    session = FakeSession(
        lambda *args: FakeResponse(403, {"error": {"code": "AccessDenied", "message": "No rights"}})
    )
    client = SSRSClient(ssrs_settings, session=session)
    with pytest.raises(SSRSApiError) as excinfo:
        client.get_system_info()
    assert excinfo.value.status_code == 403
    assert excinfo.value.error == "AccessDenied"
    assert excinfo.value.description == "No rights"


def test_non_json_error_body(ssrs_settings):
    session = FakeSession(lambda *args: FakeResponse(500, text="Internal failure"))
    client = SSRSClient(ssrs_settings, session=session)
    with pytest.raises(SSRSApiError) as excinfo:
        client.get_system_info()
    assert excinfo.value.error == "ReportingServicesError"
    assert excinfo.value.description == "Internal failure"


def test_connection_failures_are_wrapped(ssrs_settings):
    def handler(*args):
        raise requests.ConnectionError("refused")

    client = SSRSClient(ssrs_settings, session=FakeSession(handler))
    with pytest.raises(SSRSClientError, match="Unable to reach") as excinfo:
        client.get_system_info()
    assert not isinstance(excinfo.value, SSRSApiError)


def test_requests_go_to_versioned_api(ssrs_client):
    ssrs_client.get_system_info()
    method, url, _ = ssrs_client._session.calls[0]
    assert method == "GET"
    assert url == API_ROOT + "/System"


@pytest.mark.parametrize("payload", [["unexpected"], "denied", {"error": "denied"}])
def test_error_body_that_is_not_an_error_object(ssrs_settings, payload):
    session = FakeSession(lambda *args: FakeResponse(400, payload))
    client = SSRSClient(ssrs_settings, session=session)
    with pytest.raises(SSRSApiError) as excinfo:
        client.get_system_info()
    assert excinfo.value.status_code == 400
    assert excinfo.value.error == "ReportingServicesError"
