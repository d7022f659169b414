"""Persistence helpers for environment token definitions."""
from __future__ import annotations

import importlib
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .models import Environment
from .tokens import Deferred

DEFAULT_ENVIRONMENT = "Default"


class EnvironmentDefinitionError(RuntimeError):
    """Raised when environment token definitions are invalid."""


class _TokenLoader(yaml.SafeLoader):
    """YAML loader that understands the ``!deferred`` tag."""


def _import_callable(spec: str) -> Any:
    module_name, _, attribute = spec.partition(":")
    if not module_name or not attribute:
        raise EnvironmentDefinitionError(
            f"Deferred token '{spec}' must be written as 'package.module:function'."
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise EnvironmentDefinitionError(f"Unable to import '{module_name}': {exc}") from exc
    target: Any = module
    for part in attribute.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as exc:
            raise EnvironmentDefinitionError(
                f"Module '{module_name}' has no attribute '{attribute}'."
            ) from exc
    if not callable(target):
        raise EnvironmentDefinitionError(f"Deferred token '{spec}' is not callable.")
    return target


def _construct_deferred(loader: yaml.SafeLoader, node: yaml.Node) -> Deferred:
    spec = str(loader.construct_scalar(node)).strip()
    return Deferred(_import_callable(spec), source=spec)


_TokenLoader.add_constructor("!deferred", _construct_deferred)


def _as_categories(raw: Any, where: str) -> Dict[str, Dict[str, Any]]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise EnvironmentDefinitionError(f"Tokens for {where} must be a mapping of categories.")
    categories: Dict[str, Dict[str, Any]] = {}
    for category, entries in raw.items():
        if entries is None:
            entries = {}
        if not isinstance(entries, dict):
            raise EnvironmentDefinitionError(
                f"Token category '{category}' in {where} must be a mapping."
            )
        categories[str(category)] = dict(entries)
    return categories


def parse_environments(payload: Dict[str, Any]) -> Dict[str, Environment]:
    raw_environments = payload.get("environments") or {}
    if not isinstance(raw_environments, dict):
        raise EnvironmentDefinitionError("'environments' must be a mapping of environment names.")

    environments: Dict[str, Environment] = {}
    for name, body in raw_environments.items():
        body = body or {}
        if not isinstance(body, dict):
            raise EnvironmentDefinitionError(f"Environment '{name}' must be a mapping.")
        where = f"environment '{name}'"
        nodes_raw = body.get("nodes") or {}
        if not isinstance(nodes_raw, dict):
            raise EnvironmentDefinitionError(f"Nodes for {where} must be a mapping.")
        environments[str(name)] = Environment(
            name=str(name),
            based_on=(str(body["based_on"]) if body.get("based_on") else None),
            tokens=_as_categories(body.get("tokens"), where),
            nodes={
                str(node): _as_categories(tokens, f"node '{node}' of {where}")
                for node, tokens in nodes_raw.items()
            },
        )
    return environments


def load_environments(path: Path) -> Dict[str, Environment]:
    """Load environment token definitions from a YAML file."""

    if not path.exists():
        raise EnvironmentDefinitionError(f"Token file '{path}' does not exist.")

    with path.open("r", encoding="utf-8") as handle:
        try:
            payload = yaml.load(handle, Loader=_TokenLoader) or {}
        except yaml.YAMLError as exc:
            raise EnvironmentDefinitionError(f"Token file '{path}' is not valid YAML: {exc}") from exc

    if not isinstance(payload, dict):
        raise EnvironmentDefinitionError(f"Token file '{path}' must contain a mapping.")
    return parse_environments(payload)


def _inheritance_chain(environments: Dict[str, Environment], name: str) -> List[Environment]:
    chain: List[Environment] = []
    seen: List[str] = []
    current: Optional[str] = name
    while current is not None:
        if current in seen:
            raise EnvironmentDefinitionError(
                "Environment inheritance loop: " + " -> ".join([*seen, current])
            )
        seen.append(current)
        environment = environments.get(current)
        if environment is None:
            if current == DEFAULT_ENVIRONMENT and chain:
                break
            raise EnvironmentDefinitionError(f"Unknown environment '{current}'.")
        chain.append(environment)
        if environment.based_on:
            current = environment.based_on
        elif current != DEFAULT_ENVIRONMENT:
            current = DEFAULT_ENVIRONMENT
        else:
            current = None
    chain.reverse()
    return chain


def _merge_categories(
    base: Dict[str, Dict[str, Any]], overrides: Dict[str, Dict[str, Any]]
) -> Dict[str, Dict[str, Any]]:
    result = {category: dict(entries) for category, entries in base.items()}
    for category, entries in overrides.items():
        result.setdefault(category, {}).update(entries)
    return result


def tokens_for(
    environments: Dict[str, Environment], name: str, node: Optional[str] = None
) -> Dict[str, Dict[str, Any]]:
    """Merge the token definitions of an environment, its ancestors and one node."""

    merged: Dict[str, Dict[str, Any]] = {}
    chain = _inheritance_chain(environments, name)
    for environment in chain:
        merged = _merge_categories(merged, environment.tokens)
    if node:
        for environment in chain:
            if node in environment.nodes:
                merged = _merge_categories(merged, environment.nodes[node])
    return merged


__all__ = [
    "DEFAULT_ENVIRONMENT",
    "EnvironmentDefinitionError",
    "load_environments",
    "parse_environments",
    "tokens_for",
]
