from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from importlib.metadata import EntryPoint, entry_points
from typing import Any, Callable

from .config import ConfigError

BACKEND_GROUP = "miau.session_backends"
HANDLER_GROUP = "miau.message_handlers"

ID_PATTERN = r"^[a-z0-9_-]{1,32}$"
_ID_RE = re.compile(ID_PATTERN)


def is_valid_id(value: str) -> bool:
    return bool(_ID_RE.fullmatch(value))


@dataclass(frozen=True, slots=True)
class PluginLoadError:
    group: str
    name: str
    value: str
    distribution: str | None
    error: str


class PluginLoadFailed(RuntimeError):
    def __init__(self, error: PluginLoadError) -> None:
        super().__init__(error.error)
        self.error = error


class PluginNotFound(LookupError):
    def __init__(self, group: str, name: str, available: list[str]) -> None:
        self.group = group
        self.name = name
        self.available = tuple(sorted(available))
        message = f"{group} plugin {name!r} not found"
        if self.available:
            message = f"{message}. Available: {', '.join(self.available)}."
        super().__init__(message)


def _select_entrypoints(group: str) -> list[EntryPoint]:
    eps = entry_points()
    if hasattr(eps, "select"):
        return list(eps.select(group=group))
    if isinstance(eps, Mapping):
        return list(eps.get(group, []))
    return []


def entrypoint_distribution_name(ep: EntryPoint) -> str | None:
    dist = getattr(ep, "dist", None)
    if dist is None:
        return None
    return getattr(dist, "name", None)


def _discover(group: str) -> tuple[dict[str, EntryPoint], dict[str, list[EntryPoint]]]:
    eps = sorted(
        _select_entrypoints(group),
        key=lambda ep: (ep.name, entrypoint_distribution_name(ep) or "", ep.value),
    )
    by_name: dict[str, EntryPoint] = {}
    duplicates: dict[str, list[EntryPoint]] = {}
    for ep in eps:
        if not is_valid_id(ep.name):
            continue
        existing = by_name.get(ep.name)
        if existing is None:
            by_name[ep.name] = ep
            continue
        duplicates.setdefault(ep.name, [existing]).append(ep)
    for name in duplicates:
        by_name.pop(name, None)
    return by_name, duplicates


def load_entrypoint(
    group: str,
    name: str,
    *,
    validator: Callable[[Any, EntryPoint], None] | None = None,
) -> Any:
    by_name, duplicates = _discover(group)
    if name in duplicates:
        items = duplicates[name]
        providers = ", ".join(
            sorted({entrypoint_distribution_name(item) or "<unknown>" for item in items})
        )
        raise PluginLoadFailed(
            PluginLoadError(
                group=group,
                name=name,
                value=items[0].value,
                distribution=entrypoint_distribution_name(items[0]),
                error=f"duplicate plugin id {name!r} from {providers}",
            )
        )

    ep = by_name.get(name)
    if ep is None:
        raise PluginNotFound(group, name, list(by_name))

    try:
        loaded = ep.load()
        if validator is not None:
            validator(loaded, ep)
    except Exception as exc:
        raise PluginLoadFailed(
            PluginLoadError(
                group=group,
                name=ep.name,
                value=ep.value,
                distribution=entrypoint_distribution_name(ep),
                error=str(exc),
            )
        ) from exc

    return loaded


def _require_callable(obj: Any, ep: EntryPoint) -> None:
    if not callable(obj):
        raise TypeError(f"{ep.value} is not callable")


def _load(group: str, name: str, *, kind_label: str) -> Any:
    try:
        return load_entrypoint(group, name, validator=_require_callable)
    except PluginNotFound as exc:
        if exc.available:
            available = ", ".join(exc.available)
            message = f"Unknown {kind_label} {name!r}. Available: {available}."
        else:
            message = f"Unknown {kind_label} {name!r}; none installed."
        raise ConfigError(message) from exc
    except PluginLoadFailed as exc:
        raise ConfigError(f"Failed to load {kind_label} {name!r}: {exc}") from exc


def load_backend(name: str) -> Any:
    return _load(BACKEND_GROUP, name, kind_label="session backend")


def load_handler(name: str) -> Any:
    return _load(HANDLER_GROUP, name, kind_label="message handler")
