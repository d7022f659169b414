"""Command line interface for the deployment toolkit."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from .config import AppConfig, ConfigurationError, LoggingConfig, config_to_dict, load_config
from .exchange import (
    NamespaceConfigurationError,
    build_namespace_plan,
    load_namespaces,
    render_script,
)
from .powershell import run_powershell
from .rptproj import ProjectFileError, load_project
from .ssrs_client import SSRSClient, SSRSClientError
from .ssrs_deploy import DeploymentError, deploy_project, resolve_options
from .storage import EnvironmentDefinitionError, load_environments, tokens_for
from .tokens import TokenError, resolve_tokens, substitute

app = typer.Typer(help="Publish reporting artifacts and configure mail server namespaces.")
tokens_app = typer.Typer(help="Inspect and apply environment tokens.")
ssrs_app = typer.Typer(help="Publish report projects to Reporting Services.")
exchange_app = typer.Typer(help="Configure Exchange client access namespaces.")
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(tokens_app, name="tokens")
app.add_typer(ssrs_app, name="ssrs")
app.add_typer(exchange_app, name="exchange")
app.add_typer(config_app, name="config")

logger = logging.getLogger(__name__)

CONFIG_OPTION_HELP = "Path to a specific settings file (overrides default)."
TOKEN_OPTION_HELP = "Token override in Category.Name=value form. May be provided multiple times."


def _configure_logging(settings: LoggingConfig) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if settings.file:
        settings.file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(settings.file, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, settings.level, logging.INFO),
        format=settings.format,
        handlers=handlers,
        force=True,
    )


def _load_configuration(config_path: Optional[Path]) -> AppConfig:
    try:
        config = load_config(config_path)
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)
    _configure_logging(config.logging)
    return config


def _fail(exc: Exception) -> None:
    typer.echo(f"Error: {exc}")
    raise typer.Exit(code=1)


def _parse_overrides(values: Optional[List[str]]) -> Dict[str, str]:
    overrides: Dict[str, str] = {}
    for item in values or []:
        if "=" not in item:
            raise typer.BadParameter("Token overrides must be provided in Category.Name=value form.")
        key, value = item.split("=", 1)
        overrides[key.strip()] = value
    return overrides


def _resolve(
    config: AppConfig,
    environment: Optional[str],
    node: Optional[str],
    token: Optional[List[str]],
    required: bool = True,
) -> Dict[str, Dict[str, Any]]:
    overrides = _parse_overrides(token)
    name = environment or config.tokens.environment
    node_name = node or config.tokens.node
    try:
        if required or config.tokens.file.exists():
            environments = load_environments(config.tokens.file)
            definitions = tokens_for(environments, name, node_name)
        else:
            logger.info("Token file %s not found; using overrides only.", config.tokens.file)
            definitions = {}
        resolved = resolve_tokens(
            definitions,
            overrides=overrides,
            environment=name,
            node=node_name,
            max_passes=config.tokens.max_passes,
        )
    except (EnvironmentDefinitionError, TokenError) as exc:
        _fail(exc)
    logger.info("Resolved tokens for environment '%s' (node: %s).", name, node_name or "-")
    return resolved


@config_app.command("show")
def show_config(
    config_path: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
) -> None:
    """Print the effective configuration with secrets masked."""

    config = _load_configuration(config_path)
    typer.echo(json.dumps(config_to_dict(config), indent=2))


@tokens_app.command("show")
def show_tokens(
    environment: Optional[str] = typer.Option(None, "--environment", "-e", help="Environment name."),
    node: Optional[str] = typer.Option(None, "--node", help="Node whose overrides apply."),
    token: Optional[List[str]] = typer.Option(None, "--token", help=TOKEN_OPTION_HELP),
    config_path: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
) -> None:
    """Display the resolved tokens of an environment."""

    config = _load_configuration(config_path)
    resolved = _resolve(config, environment, node, token)
    typer.echo(json.dumps(resolved, indent=2, default=str))


@tokens_app.command("render")
def render_template(
    template: Path = typer.Argument(..., exists=True, dir_okay=False, help="File containing placeholders."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the result here."),
    environment: Optional[str] = typer.Option(None, "--environment", "-e", help="Environment name."),
    node: Optional[str] = typer.Option(None, "--node", help="Node whose overrides apply."),
    token: Optional[List[str]] = typer.Option(None, "--token", help=TOKEN_OPTION_HELP),
    config_path: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
) -> None:
    """Replace ${Category.Name} placeholders in a file with resolved tokens."""

    config = _load_configuration(config_path)
    resolved = _resolve(config, environment, node, token)
    try:
        rendered = substitute(template.read_text(encoding="utf-8"), resolved)
    except TokenError as exc:
        _fail(exc)

    if output:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(rendered, encoding="utf-8")
        typer.echo(f"Wrote {output}.")
    else:
        typer.echo(rendered, nl=False)


def _ssrs_client(config: AppConfig) -> SSRSClient:
    if config.ssrs is None:
        _fail(ConfigurationError("Reporting Services is not configured (missing 'ssrs' section)."))
    return SSRSClient(config.ssrs)


@ssrs_app.command("info")
def ssrs_info(
    config_path: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
) -> None:
    """Show system information reported by the Reporting Services endpoint."""

    config = _load_configuration(config_path)
    try:
        with _ssrs_client(config) as client:
            info = client.get_system_info()
    except SSRSClientError as exc:
        _fail(exc)
    typer.echo(json.dumps(info, indent=2))


@ssrs_app.command("deploy")
def ssrs_deploy(
    project_file: Path = typer.Argument(..., help="Report project (.rptproj) to publish."),
    environment: Optional[str] = typer.Option(None, "--environment", "-e", help="Environment name."),
    node: Optional[str] = typer.Option(None, "--node", help="Node whose overrides apply."),
    token: Optional[List[str]] = typer.Option(None, "--token", help=TOKEN_OPTION_HELP),
    configuration: Optional[str] = typer.Option(
        None, "--configuration", help="Project configuration supplying target folders."
    ),
    folder: Optional[str] = typer.Option(None, "--folder", help="Target folder for reports."),
    overwrite: Optional[bool] = typer.Option(
        None, "--overwrite/--no-overwrite", help="Replace existing reports and datasets."
    ),
    overwrite_datasources: Optional[bool] = typer.Option(
        None,
        "--overwrite-datasources/--keep-datasources",
        help="Replace existing shared data sources.",
    ),
    config_path: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
) -> None:
    """Publish the data sources, datasets and reports of a project."""

    config = _load_configuration(config_path)
    resolved = _resolve(config, environment, node, token, required=False)

    try:
        project = load_project(project_file)
        options = resolve_options(
            config.ssrs,
            project,
            configuration_name=configuration,
            report_folder=folder,
            overwrite_items=overwrite,
            overwrite_datasources=overwrite_datasources,
        )
        with _ssrs_client(config) as client:
            report = deploy_project(client, project, options, tokens=resolved)
    except (ProjectFileError, DeploymentError, SSRSClientError, TokenError) as exc:
        _fail(exc)

    typer.echo(json.dumps(report.to_dict(), indent=2))


@ssrs_app.command("remove")
def ssrs_remove(
    item_path: str = typer.Argument(..., help="Catalog path of the item to delete."),
    config_path: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
) -> None:
    """Delete a catalog item."""

    config = _load_configuration(config_path)
    try:
        with _ssrs_client(config) as client:
            removed = client.delete_item(item_path)
    except SSRSClientError as exc:
        _fail(exc)

    if not removed:
        typer.echo(f"No catalog item at '{item_path}'.")
        raise typer.Exit(code=1)
    typer.echo(f"Deleted '{item_path}'.")


def _namespace_script(
    config: AppConfig,
    namespaces_file: Optional[Path],
    environment: Optional[str],
    node: Optional[str],
    token: Optional[List[str]],
) -> str:
    resolved = _resolve(config, environment, node, token, required=False)
    try:
        namespaces = load_namespaces(namespaces_file or config.exchange.namespaces_file, resolved)
        plan = [command for settings in namespaces for command in build_namespace_plan(settings)]
    except (NamespaceConfigurationError, TokenError) as exc:
        _fail(exc)
    return render_script(
        plan,
        connection_uri=config.exchange.connection_uri,
        configuration_name=config.exchange.configuration_name,
        authentication=config.exchange.authentication,
    )


@exchange_app.command("plan")
def exchange_plan(
    namespaces_file: Optional[Path] = typer.Option(None, "--namespaces", help="Namespace definitions."),
    environment: Optional[str] = typer.Option(None, "--environment", "-e", help="Environment name."),
    node: Optional[str] = typer.Option(None, "--node", help="Node whose overrides apply."),
    token: Optional[List[str]] = typer.Option(None, "--token", help=TOKEN_OPTION_HELP),
    config_path: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
) -> None:
    """Print the Exchange Management Shell script for the configured namespaces."""

    config = _load_configuration(config_path)
    typer.echo(_namespace_script(config, namespaces_file, environment, node, token), nl=False)


@exchange_app.command("apply")
def exchange_apply(
    namespaces_file: Optional[Path] = typer.Option(None, "--namespaces", help="Namespace definitions."),
    environment: Optional[str] = typer.Option(None, "--environment", "-e", help="Environment name."),
    node: Optional[str] = typer.Option(None, "--node", help="Node whose overrides apply."),
    token: Optional[List[str]] = typer.Option(None, "--token", help=TOKEN_OPTION_HELP),
    config_path: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
) -> None:
    """Apply the configured namespaces through PowerShell."""

    config = _load_configuration(config_path)
    script = _namespace_script(config, namespaces_file, environment, node, token)
    try:
        output = run_powershell(config.powershell, script)
    except RuntimeError as exc:
        _fail(exc)
    if output:
        typer.echo(output.rstrip())
    typer.echo("Namespaces applied.")


def run():
    app()


if __name__ == "__main__":
    run()
