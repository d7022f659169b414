"""Readers for SQL Server Reporting Services project files and item definitions."""
from __future__ import annotations

import re
from pathlib import Path, PureWindowsPath
from typing import Dict, Iterator, List, Optional
from xml.etree import ElementTree as ET
from xml.sax.saxutils import escape, unescape

from .models import DataSourceDefinition, ProjectConfiguration, ProjectItem, ReportProject

LEGACY_GROUPS = {"DataSources": "DataSource", "DataSets": "DataSet", "Reports": "Report"}
MSBUILD_ITEMS = {"DataSource": "DataSource", "DataSet": "DataSet", "Report": "Report"}

_CONDITION_PATTERN = re.compile(r"==\s*'(?P<name>[^'|]+)(?:\|[^']*)?'")
_REFERENCE_PATTERN = re.compile(
    r"(?P<open><(?:[\w.-]+:)?(?P<tag>DataSourceReference|SharedDataSetReference)>)"
    r"(?P<value>[^<]*)"
    r"(?P<close></(?:[\w.-]+:)?(?P=tag)>)"
)


class ProjectFileError(RuntimeError):
    """Raised when a report project or one of its items cannot be read."""


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1] if "}" in tag else tag


def _children(element: ET.Element, name: str) -> Iterator[ET.Element]:
    for child in element:
        if _local(child.tag) == name:
            yield child


def _child_text(element: ET.Element, name: str) -> Optional[str]:
    for child in _children(element, name):
        text = (child.text or "").strip()
        return text or None
    return None


def _find_text(element: ET.Element, name: str) -> Optional[str]:
    for node in element.iter():
        if _local(node.tag) == name:
            text = (node.text or "").strip()
            if text:
                return text
    return None


def _optional_bool(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    return value.strip().lower() in {"1", "true", "yes"}


def _parse_file(path: Path) -> ET.Element:
    if not path.exists():
        raise ProjectFileError(f"File '{path}' does not exist.")
    try:
        return ET.parse(path).getroot()
    except ET.ParseError as exc:
        raise ProjectFileError(f"File '{path}' is not valid XML: {exc}") from exc


def _item_path(project_dir: Path, relative: str) -> Path:
    # Project files written on Windows use backslash separators.
    return project_dir.joinpath(*PureWindowsPath(relative).parts)


def _configuration_from(name: str, element: ET.Element) -> ProjectConfiguration:
    return ProjectConfiguration(
        name=name,
        target_server_url=_find_text(element, "TargetServerURL"),
        target_report_folder=_find_text(element, "TargetReportFolder")
        or _find_text(element, "TargetFolder"),
        target_dataset_folder=_find_text(element, "TargetDatasetFolder"),
        target_datasource_folder=_find_text(element, "TargetDataSourceFolder"),
        overwrite_datasets=_optional_bool(_find_text(element, "OverwriteDatasets")),
        overwrite_datasources=_optional_bool(_find_text(element, "OverwriteDataSources")),
    )


def _read_legacy(root: ET.Element, project: ReportProject, project_dir: Path) -> None:
    for group_name, kind in LEGACY_GROUPS.items():
        for group in _children(root, group_name):
            for item in _children(group, "ProjectItem"):
                file_name = _child_text(item, "Name")
                full_path = _child_text(item, "FullPath") or file_name
                if not file_name or not full_path:
                    continue
                _append(project, ProjectItem(kind, file_name, _item_path(project_dir, full_path)))

    for group in _children(root, "Configurations"):
        for configuration in _children(group, "Configuration"):
            name = _child_text(configuration, "Name")
            if name:
                project.configurations[name] = _configuration_from(name, configuration)


def _read_msbuild(root: ET.Element, project: ReportProject, project_dir: Path) -> None:
    for group in _children(root, "ItemGroup"):
        for item in group:
            kind = MSBUILD_ITEMS.get(_local(item.tag))
            include = item.get("Include")
            if not kind or not include:
                continue
            file_name = PureWindowsPath(include).name
            _append(project, ProjectItem(kind, file_name, _item_path(project_dir, include)))

    for group in _children(root, "PropertyGroup"):
        condition = group.get("Condition") or ""
        match = _CONDITION_PATTERN.search(condition)
        if not match:
            continue
        name = match.group("name").strip()
        project.configurations[name] = _configuration_from(name, group)


def _append(project: ReportProject, item: ProjectItem) -> None:
    target = {
        "DataSource": project.data_sources,
        "DataSet": project.datasets,
        "Report": project.reports,
    }[item.kind]
    if any(existing.file_name == item.file_name for existing in target):
        return
    target.append(item)


def load_project(path: Path) -> ReportProject:
    """Read the data sources, datasets, reports and configurations of a project file."""

    path = Path(path)
    root = _parse_file(path)
    project = ReportProject(path=path)
    if _local(root.tag) != "Project":
        raise ProjectFileError(f"File '{path}' is not a report project (root is '{root.tag}').")

    if root.tag.startswith("{") or any(True for _ in _children(root, "ItemGroup")):
        _read_msbuild(root, project, path.parent)
    else:
        _read_legacy(root, project, path.parent)
    return project


def read_data_source(path: Path) -> DataSourceDefinition:
    """Parse a shared data source (``.rds``) file."""

    root = _parse_file(path)
    name = root.get("Name") or path.stem
    integrated = _optional_bool(_find_text(root, "IntegratedSecurity")) or False
    prompt = _find_text(root, "Prompt")
    if integrated:
        retrieval = "Integrated"
    elif prompt:
        retrieval = "Prompt"
    else:
        retrieval = "None"
    return DataSourceDefinition(
        name=name,
        extension=_find_text(root, "Extension") or "SQL",
        connection_string=_find_text(root, "ConnectString") or "",
        credential_retrieval=retrieval,
        prompt=prompt,
    )


def read_references(path: Path) -> Dict[str, List[str]]:
    """Return the shared data source and dataset names an ``.rsd``/``.rdl`` refers to."""

    root = _parse_file(path)
    references: Dict[str, List[str]] = {"DataSourceReference": [], "SharedDataSetReference": []}
    for node in root.iter():
        tag = _local(node.tag)
        if tag in references:
            value = (node.text or "").strip()
            if value and value not in references[tag]:
                references[tag].append(value)
    return references


def read_data_source_bindings(path: Path) -> Dict[str, str]:
    """Map each data source declared in a report or dataset to the shared source it uses."""

    root = _parse_file(path)
    bindings: Dict[str, str] = {}
    for node in root.iter():
        tag = _local(node.tag)
        if tag == "DataSource":
            reference = _child_text(node, "DataSourceReference")
            if reference:
                bindings[node.get("Name") or reference] = reference
        elif tag == "Query":
            # Shared datasets name their single data source directly in the query.
            reference = _child_text(node, "DataSourceReference")
            if reference:
                bindings["DataSetDataSource"] = reference
    return bindings


def catalog_path(folder: str, name: str = "") -> str:
    """Join a catalog folder and item name into an absolute catalog path."""

    segments = [segment for segment in f"{folder}/{name}".replace("\\", "/").split("/") if segment]
    return "/" + "/".join(segments)


def rewrite_references(content: str, datasource_folder: str, dataset_folder: str) -> str:
    """Point relative shared data source and dataset references at deployed catalog paths."""

    def _replace(match: "re.Match[str]") -> str:
        value = unescape(match.group("value").strip())
        if not value or value.startswith("/"):
            return match.group(0)
        folder = datasource_folder if match.group("tag") == "DataSourceReference" else dataset_folder
        return match.group("open") + escape(catalog_path(folder, value)) + match.group("close")

    return _REFERENCE_PATTERN.sub(_replace, content)


__all__ = [
    "ProjectFileError",
    "catalog_path",
    "load_project",
    "read_data_source",
    "read_data_source_bindings",
    "read_references",
    "rewrite_references",
]
