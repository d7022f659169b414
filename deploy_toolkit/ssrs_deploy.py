"""Publishing of report projects to a Reporting Services catalog."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .config import SSRSConfig
from .models import ProjectItem, ReportProject
from .rptproj import (
    ProjectFileError,
    catalog_path,
    read_data_source,
    read_data_source_bindings,
    read_references,
    rewrite_references,
)
from .ssrs_client import SSRSClient
from .tokens import substitute, substitute_value

logger = logging.getLogger(__name__)

DEFAULT_DATASOURCE_FOLDER = "/Data Sources"
DEFAULT_DATASET_FOLDER = "/Datasets"


class DeploymentError(RuntimeError):
    """Raised when a report project cannot be deployed with the given options."""


@dataclass
class DeploymentOptions:
    report_folder: str
    dataset_folder: str = DEFAULT_DATASET_FOLDER
    datasource_folder: str = DEFAULT_DATASOURCE_FOLDER
    overwrite_items: bool = True
    overwrite_datasources: bool = False
    data_source_overrides: Dict[str, Dict[str, Any]] = field(default_factory=dict)


@dataclass
class DeployedItem:
    kind: str
    name: str
    path: str
    action: str


@dataclass
class DeploymentReport:
    """Outcome of one project deployment, item by item."""

    project: str
    items: List[DeployedItem] = field(default_factory=list)

    def record(self, kind: str, name: str, path: str, action: str) -> None:
        self.items.append(DeployedItem(kind=kind, name=name, path=path, action=action))

    def count(self, action: str) -> int:
        return sum(1 for item in self.items if item.action == action)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project": self.project,
            "items": [
                {"kind": item.kind, "name": item.name, "path": item.path, "action": item.action}
                for item in self.items
            ],
            "summary": {
                action: self.count(action) for action in ("created", "updated", "skipped")
            },
        }


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def resolve_options(
    settings: Optional[SSRSConfig],
    project: ReportProject,
    configuration_name: Optional[str] = None,
    report_folder: Optional[str] = None,
    overwrite_items: Optional[bool] = None,
    overwrite_datasources: Optional[bool] = None,
) -> DeploymentOptions:
    """Combine command line values, settings and the project's own configuration."""

    name = configuration_name or (settings.project_configuration if settings else None)
    configuration = project.configuration(name)
    if configuration_name and configuration is None:
        available = ", ".join(sorted(project.configurations)) or "none"
        raise DeploymentError(
            f"Project '{project.name}' has no configuration '{configuration_name}' "
            f"(available: {available})."
        )
    if configuration is not None:
        logger.debug("Using project configuration '%s'.", configuration.name)

    def _setting(attribute: str) -> Any:
        return getattr(settings, attribute) if settings else None

    def _project(attribute: str) -> Any:
        return getattr(configuration, attribute) if configuration else None

    return DeploymentOptions(
        report_folder=catalog_path(
            _first(report_folder, _setting("report_folder"), _project("target_report_folder"))
            or project.name
        ),
        dataset_folder=catalog_path(
            _first(_setting("dataset_folder"), _project("target_dataset_folder"))
            or DEFAULT_DATASET_FOLDER
        ),
        datasource_folder=catalog_path(
            _first(_setting("datasource_folder"), _project("target_datasource_folder"))
            or DEFAULT_DATASOURCE_FOLDER
        ),
        overwrite_items=_first(
            overwrite_items, _setting("overwrite_items"), _project("overwrite_datasets"), True
        ),
        overwrite_datasources=_first(
            overwrite_datasources,
            _setting("overwrite_datasources"),
            _project("overwrite_datasources"),
            False,
        ),
        data_source_overrides=dict(settings.data_sources) if settings else {},
    )


def _read_definition(item: ProjectItem) -> str:
    if not item.path.exists():
        raise ProjectFileError(f"Project item '{item.file_name}' not found at '{item.path}'.")
    return item.path.read_bytes().decode("utf-8-sig")


def _bind_data_sources(
    client: SSRSClient,
    kind: str,
    item: Dict[str, Any],
    bindings: Dict[str, str],
    options: DeploymentOptions,
) -> None:
    item_id = item.get("Id")
    if not item_id:
        logger.warning("No identifier returned for %s; data sources left unchanged.", item.get("Path"))
        return

    current = client.get_item_data_sources(kind, item_id)
    changed = False
    for entry in current:
        reference = bindings.get(entry.get("Name", ""))
        if not reference:
            continue
        target = reference
        if not reference.startswith("/"):
            target = catalog_path(options.datasource_folder, reference)
        if entry.get("IsReference") and entry.get("Path") == target:
            continue
        entry["IsReference"] = True
        entry["Path"] = target
        changed = True

    if changed:
        client.set_item_data_sources(kind, item_id, current)
        logger.info("Bound data sources of %s.", item.get("Path") or item_id)


def _publish(
    client: SSRSClient,
    kind: str,
    item: ProjectItem,
    folder: str,
    options: DeploymentOptions,
    known_datasets: List[str],
    report: DeploymentReport,
) -> None:
    content = _read_definition(item)
    for missing in read_references(item.path)["SharedDataSetReference"]:
        if not missing.startswith("/") and missing not in known_datasets:
            logger.warning(
                "%s references shared dataset '%s' which is not part of the project.",
                item.file_name,
                missing,
            )

    rewritten = rewrite_references(content, options.datasource_folder, options.dataset_folder)
    result = client.upload_item(
        kind, item.name, folder, rewritten.encode("utf-8"), overwrite=options.overwrite_items
    )
    path = catalog_path(folder, item.name)
    report.record(kind, item.name, path, result.action)
    logger.info("%s %s: %s.", kind, path, result.action)

    if result.action == "skipped":
        return
    bindings = read_data_source_bindings(item.path)
    if bindings:
        _bind_data_sources(client, kind, result.item, bindings, options)


def deploy_project(
    client: SSRSClient,
    project: ReportProject,
    options: DeploymentOptions,
    tokens: Optional[Mapping[str, Mapping[str, Any]]] = None,
) -> DeploymentReport:
    """Publish data sources, then datasets, then reports of ``project``."""

    report = DeploymentReport(project=project.name)
    logger.info(
        "Deploying %s: %s data source(s), %s dataset(s), %s report(s) to %s.",
        project.name,
        len(project.data_sources),
        len(project.datasets),
        len(project.reports),
        options.report_folder,
    )

    folders = []
    if project.data_sources:
        folders.append(options.datasource_folder)
    if project.datasets:
        folders.append(options.dataset_folder)
    if project.reports:
        folders.append(options.report_folder)
    for folder in dict.fromkeys(folders):
        client.ensure_folder(folder)

    for item in project.data_sources:
        if not item.path.exists():
            raise ProjectFileError(f"Project item '{item.file_name}' not found at '{item.path}'.")
        definition = read_data_source(item.path)
        definition.name = item.name
        overrides = options.data_source_overrides.get(item.name) or {}
        if tokens is not None:
            definition.connection_string = substitute(definition.connection_string, tokens)
            overrides = substitute_value(overrides, tokens)
        definition = definition.with_overrides(overrides)

        result = client.create_data_source(
            definition, options.datasource_folder, overwrite=options.overwrite_datasources
        )
        path = catalog_path(options.datasource_folder, item.name)
        report.record("DataSource", item.name, path, result.action)
        logger.info("DataSource %s: %s.", path, result.action)

    known_datasets = [item.name for item in project.datasets]
    for item in project.datasets:
        _publish(client, "DataSet", item, options.dataset_folder, options, known_datasets, report)

    for item in project.reports:
        _publish(client, "Report", item, options.report_folder, options, known_datasets, report)

    logger.info(
        "Finished %s: %s created, %s updated, %s skipped.",
        project.name,
        report.count("created"),
        report.count("updated"),
        report.count("skipped"),
    )
    return report


__all__ = [
    "DEFAULT_DATASET_FOLDER",
    "DEFAULT_DATASOURCE_FOLDER",
    "DeployedItem",
    "DeploymentError",
    "DeploymentOptions",
    "DeploymentReport",
    "deploy_project",
    "resolve_options",
]
