"""Token resolution with deferred values and circular reference detection."""
from __future__ import annotations

import logging
import re
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"\$\{(?P<ref>[A-Za-z_][\w-]*(?:\.[A-Za-z_][\w-]*)?)\}")
DEFAULT_MAX_PASSES = 20

TokenKey = Tuple[str, str]


class TokenError(RuntimeError):
    """Base exception for token resolution failures."""


class UnknownTokenError(TokenError):
    """Raised when a placeholder references a token that is not defined."""

    def __init__(self, reference: str, referrer: Optional[str] = None) -> None:
        message = f"Unknown token '{reference}'"
        if referrer:
            message += f" referenced from '{referrer}'"
        super().__init__(message + ".")
        self.reference = reference
        self.referrer = referrer


class CircularTokenReferenceError(TokenError):
    """Raised when tokens reference each other in a loop."""

    def __init__(self, cycle: List[str]) -> None:
        super().__init__("Circular token reference: " + " -> ".join(cycle))
        self.cycle = cycle


class TokenEvaluationError(TokenError):
    """Raised when a deferred token value fails while being evaluated."""


class TokenResolutionError(TokenError):
    """Raised when resolution does not settle within the allowed passes."""


class Deferred:
    """A token value computed lazily from the other tokens."""

    def __init__(self, func: Callable[["TokenView"], Any], source: Optional[str] = None) -> None:
        if not callable(func):
            raise TypeError("Deferred token values must be callable.")
        self.func = func
        self.source = source or getattr(func, "__qualname__", repr(func))

    def __call__(self, view: "TokenView") -> Any:
        return self.func(view)

    def __repr__(self) -> str:
        return f"Deferred({self.source})"


class _PendingToken(BaseException):
    """Signals that a deferred value read a token that isn't final yet.

    Not an ``Exception`` subclass: ``except Exception`` inside a deferred
    function must let it through.
    """

    def __init__(self, key: TokenKey) -> None:
        super().__init__(_format_key(key))
        self.key = key


def _format_key(key: TokenKey) -> str:
    return f"{key[0]}.{key[1]}"


def _is_deferred(value: Any) -> bool:
    return isinstance(value, Deferred) or callable(value)


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class _CategoryView:
    def __init__(self, resolver: "_Resolver", category: str) -> None:
        self._resolver = resolver
        self._category = category

    def __getitem__(self, name: str) -> Any:
        return self._resolver.read((self._category, name))

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self[name]
        except UnknownTokenError as exc:
            raise AttributeError(name) from exc

    def __contains__(self, name: str) -> bool:
        return (self._category, name) in self._resolver.values

    def get(self, name: str, default: Any = None) -> Any:
        if name not in self:
            return default
        return self[name]


class TokenView:
    """Read-only access to tokens from inside a deferred value."""

    def __init__(
        self,
        resolver: "_Resolver",
        environment: Optional[str] = None,
        node: Optional[str] = None,
        referrer: Optional[TokenKey] = None,
    ) -> None:
        self._resolver = resolver
        self._referrer = referrer
        self.environment = environment
        self.node = node

    def for_token(self, key: TokenKey) -> "TokenView":
        """Return a view whose bare lookups prefer the category of ``key``."""
        return TokenView(self._resolver, self.environment, self.node, referrer=key)

    def __getitem__(self, category: str) -> _CategoryView:
        if category not in self._resolver.categories:
            raise UnknownTokenError(category)
        return _CategoryView(self._resolver, category)

    def __getattr__(self, category: str) -> _CategoryView:
        if category.startswith("_"):
            raise AttributeError(category)
        try:
            return self[category]
        except UnknownTokenError as exc:
            raise AttributeError(category) from exc

    def __contains__(self, category: str) -> bool:
        return category in self._resolver.categories

    def lookup(self, reference: str) -> Any:
        key = self._resolver.find(reference, referrer=self._referrer)
        return self._resolver.read(key)


class _Resolver:
    def __init__(self, tokens: Mapping[str, Mapping[str, Any]]) -> None:
        self.categories: List[str] = []
        self.values: Dict[TokenKey, Any] = {}
        for category, entries in tokens.items():
            self.categories.append(str(category))
            for name, value in (entries or {}).items():
                self.values[(str(category), str(name))] = value
        self.pending: Set[TokenKey] = {
            key for key, value in self.values.items() if self._needs_work(value)
        }

    # Lookup ------------------------------------------------------------------
    def find(self, reference: str, referrer: Optional[TokenKey]) -> TokenKey:
        if "." in reference:
            category, name = reference.split(".", 1)
            key = (category, name)
            if key in self.values:
                return key
        else:
            if referrer is not None and (referrer[0], reference) in self.values:
                return (referrer[0], reference)
            for category in self.categories:
                if (category, reference) in self.values:
                    return (category, reference)
        raise UnknownTokenError(reference, _format_key(referrer) if referrer else None)

    def read(self, key: TokenKey) -> Any:
        if key not in self.values:
            raise UnknownTokenError(_format_key(key))
        if key in self.pending:
            raise _PendingToken(key)
        return self.values[key]

    # Evaluation --------------------------------------------------------------
    def _needs_work(self, value: Any) -> bool:
        if isinstance(value, str):
            return TOKEN_PATTERN.search(value) is not None
        if isinstance(value, Mapping):
            return any(self._needs_work(item) for item in value.values())
        if isinstance(value, (list, tuple)):
            return any(self._needs_work(item) for item in value)
        return _is_deferred(value)

    def evaluate(self, value: Any, key: TokenKey, view: TokenView) -> Tuple[Any, Set[TokenKey]]:
        """Return ``(result, dependencies)``; a non-empty set means not ready yet."""

        if isinstance(value, str):
            return self._substitute(value, key)
        if isinstance(value, Mapping):
            result: Dict[Any, Any] = {}
            waiting: Set[TokenKey] = set()
            for item_key, item in value.items():
                result[item_key], deps = self.evaluate(item, key, view)
                waiting |= deps
            return result, waiting
        if isinstance(value, (list, tuple)):
            items: List[Any] = []
            waiting = set()
            for item in value:
                evaluated, deps = self.evaluate(item, key, view)
                items.append(evaluated)
                waiting |= deps
            return (tuple(items) if isinstance(value, tuple) else items), waiting
        if _is_deferred(value):
            try:
                return value(view.for_token(key)), set()
            except _PendingToken as pending:
                return None, {pending.key}
            except TokenError:
                raise
            except Exception as exc:
                raise TokenEvaluationError(
                    f"Deferred value for token '{_format_key(key)}' failed: {exc}"
                ) from exc
        return value, set()

    def _substitute(self, text: str, key: TokenKey) -> Tuple[Any, Set[TokenKey]]:
        matches = list(TOKEN_PATTERN.finditer(text))
        if not matches:
            return text, set()

        referenced = [self.find(match.group("ref"), key) for match in matches]
        waiting = {ref for ref in referenced if ref in self.pending}
        if waiting:
            return None, waiting

        if len(matches) == 1 and matches[0].group(0) == text:
            return self.values[referenced[0]], set()

        lookup = iter(referenced)
        return TOKEN_PATTERN.sub(lambda _match: _stringify(self.values[next(lookup)]), text), set()

    def run(self, view: TokenView, max_passes: int) -> None:
        order = list(self.values)
        for pass_number in range(1, max_passes + 1):
            if not self.pending:
                return
            progressed = False
            graph: Dict[TokenKey, Set[TokenKey]] = {}
            for key in order:
                if key not in self.pending:
                    continue
                result, deps = self.evaluate(self.values[key], key, view)
                if deps:
                    graph[key] = deps
                    continue
                progressed = True
                self.values[key] = result
                if not self._needs_work(result):
                    self.pending.discard(key)
            logger.debug(
                "Token pass %s finished with %s pending token(s).", pass_number, len(self.pending)
            )
            if not self.pending:
                return
            if not progressed:
                cycle = _find_cycle(graph)
                if cycle:
                    raise CircularTokenReferenceError([_format_key(key) for key in cycle])
                raise TokenResolutionError(
                    "Unable to resolve tokens: "
                    + ", ".join(sorted(_format_key(key) for key in self.pending))
                )
        if self.pending:
            raise TokenResolutionError(
                f"Token resolution did not settle after {max_passes} passes; still pending: "
                + ", ".join(sorted(_format_key(key) for key in self.pending))
            )

    def result(self) -> Dict[str, Dict[str, Any]]:
        resolved: Dict[str, Dict[str, Any]] = {category: {} for category in self.categories}
        for (category, name), value in self.values.items():
            resolved[category][name] = value
        return resolved


def _find_cycle(graph: Mapping[TokenKey, Iterable[TokenKey]]) -> List[TokenKey]:
    visiting: List[TokenKey] = []
    done: Set[TokenKey] = set()

    def _visit(node: TokenKey) -> List[TokenKey]:
        if node in visiting:
            start = visiting.index(node)
            return visiting[start:] + [node]
        if node in done or node not in graph:
            return []
        visiting.append(node)
        for target in sorted(graph[node]):
            found = _visit(target)
            if found:
                return found
        visiting.pop()
        done.add(node)
        return []

    for node in graph:
        cycle = _visit(node)
        if cycle:
            return cycle
    return []


def _apply_overrides(
    tokens: Mapping[str, Mapping[str, Any]], overrides: Mapping[str, Any]
) -> Dict[str, Dict[str, Any]]:
    merged: Dict[str, Dict[str, Any]] = {
        str(category): dict(entries or {}) for category, entries in tokens.items()
    }
    for reference, value in overrides.items():
        if "." in reference:
            category, name = reference.split(".", 1)
            merged.setdefault(category, {})[name] = value
            continue
        targets = [entries for entries in merged.values() if reference in entries]
        if not targets:
            raise UnknownTokenError(reference, "overrides")
        for entries in targets:
            entries[reference] = value
    return merged


def resolve_tokens(
    tokens: Mapping[str, Mapping[str, Any]],
    overrides: Optional[Mapping[str, Any]] = None,
    environment: Optional[str] = None,
    node: Optional[str] = None,
    max_passes: int = DEFAULT_MAX_PASSES,
) -> Dict[str, Dict[str, Any]]:
    """Resolve placeholders and deferred values until every token is final.

    Each pass evaluates the tokens that are still pending. Plain strings are
    substituted once all the tokens they reference are final; deferred values
    are called with a :class:`TokenView` and retried on a later pass when they
    read a token that is still pending. A pass that makes no progress means
    the remaining tokens depend on each other, which is reported as a
    :class:`CircularTokenReferenceError`.
    """

    if max_passes < 1:
        raise ValueError("max_passes must be at least 1.")
    merged = _apply_overrides(tokens, overrides or {})
    resolver = _Resolver(merged)
    resolver.run(TokenView(resolver, environment=environment, node=node), max_passes)
    return resolver.result()


def flatten_tokens(resolved: Mapping[str, Mapping[str, Any]]) -> Dict[str, Any]:
    return {
        f"{category}.{name}": value
        for category, entries in resolved.items()
        for name, value in entries.items()
    }


def substitute(text: str, resolved: Mapping[str, Mapping[str, Any]]) -> str:
    """Replace ``${Name}`` and ``${Category.Name}`` placeholders in ``text``."""

    def _replace(match: "re.Match[str]") -> str:
        reference = match.group("ref")
        if "." in reference:
            category, name = reference.split(".", 1)
            entries = resolved.get(category) or {}
            if name in entries:
                return _stringify(entries[name])
        else:
            for entries in resolved.values():
                if reference in entries:
                    return _stringify(entries[reference])
        raise UnknownTokenError(reference)

    return TOKEN_PATTERN.sub(_replace, text)


def substitute_value(value: Any, resolved: Mapping[str, Mapping[str, Any]]) -> Any:
    """Apply :func:`substitute` to every string nested inside ``value``."""

    if isinstance(value, str):
        return substitute(value, resolved)
    if isinstance(value, Mapping):
        return {key: substitute_value(item, resolved) for key, item in value.items()}
    if isinstance(value, list):
        return [substitute_value(item, resolved) for item in value]
    return value


__all__ = [
    "CircularTokenReferenceError",
    "DEFAULT_MAX_PASSES",
    "Deferred",
    "TOKEN_PATTERN",
    "TokenError",
    "TokenEvaluationError",
    "TokenResolutionError",
    "TokenView",
    "UnknownTokenError",
    "flatten_tokens",
    "resolve_tokens",
    "substitute",
    "substitute_value",
]
