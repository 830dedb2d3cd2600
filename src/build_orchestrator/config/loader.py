"""
Layered config loading for the build orchestrator.

Sources are applied lowest to highest: built-in defaults, the config file
(TOML, or YAML when the suffix says so), ``BUILDORCH_*`` environment variables,
then explicit CLI overrides. Every scalar leaf of the defaults can be set from
the environment; its name is the dotted path upper-cased and joined with ``_``.
Relative path settings resolve against the directory holding the config file.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final

import yaml

from build_orchestrator.config.schema import (
    PATH_FIELDS,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "build_orchestrator.toml"
ENV_PREFIX: Final[str] = "BUILDORCH_"
IN_MEMORY_DB: Final[str] = ":memory:"

_YAML_SUFFIXES: Final[frozenset[str]] = frozenset({".yaml", ".yml"})
_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

# Keyed by capability name, so there is no fixed leaf set to bind variables to.
_ENV_EXCLUDED_PREFIXES: Final[tuple[tuple[str, ...], ...]] = (
    ("gates", "policy_by_capability"),
    ("gates", "config_by_capability"),
)

ConfigPath = tuple[str, ...]


class ConfigLoadError(ValueError):
    """Raised when a config source cannot be read or an override has the wrong type."""


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the effective config; CLI beats env, env beats file, file beats defaults.

    A missing file is only an error when ``config_path`` was given explicitly;
    otherwise ``build_orchestrator.toml`` in the working directory is optional.
    """
    source = _config_source(config_path)
    env = os.environ if environ is None else environ

    layered = assert_valid_config(
        merge_config(default_config(), _read_config_file(source, required=config_path is not None))
    )
    for overrides in (_env_layer(layered, env), _cli_layer(cli_overrides or {})):
        layered = merge_config(layered, overrides)
    layered = assert_valid_config(layered)

    return assert_valid_config(normalize_paths(layered, base_dir=source.parent))


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Resolve every configured path setting against ``base_dir``."""
    resolved = merge_config({}, config)
    for field_path in PATH_FIELDS:
        raw = _lookup(resolved, field_path)
        if isinstance(raw, str):
            _assign(resolved, field_path, _resolve_path(raw, base_dir))
    return resolved


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Compact, key-sorted JSON of ``config`` with secrets masked."""
    return json.dumps(
        redact_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def env_name_for_path(path: ConfigPath) -> str:
    return ENV_PREFIX + "_".join(segment.upper() for segment in path)


def _config_source(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _read_config_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.is_file():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}

    try:
        raw = path.read_bytes()
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc

    if path.suffix.lower() in _YAML_SUFFIXES:
        try:
            parsed = yaml.safe_load(raw)
        except yaml.YAMLError as exc:
            raise ConfigLoadError(f"invalid YAML in {path}: {exc}") from exc
        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise ConfigLoadError(f"config file {path} must contain a mapping at the top level")
        return parsed

    try:
        return tomllib.loads(raw.decode("utf-8"))
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc


def _env_layer(config: Mapping[str, object], environ: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for path, current in _scalar_leaves(config):
        if any(path[: len(prefix)] == prefix for prefix in _ENV_EXCLUDED_PREFIXES):
            continue
        name = env_name_for_path(path)
        raw = environ.get(name)
        if raw is None:
            continue
        _assign(layer, path, _parse_env_value(raw.strip(), current, name, path))
    return layer


def _scalar_leaves(
    node: Mapping[str, object], prefix: ConfigPath = ()
) -> list[tuple[ConfigPath, object]]:
    leaves: list[tuple[ConfigPath, object]] = []
    for key in sorted(node):
        value = node[key]
        if isinstance(value, Mapping):
            leaves.extend(_scalar_leaves(value, (*prefix, key)))
        elif isinstance(value, (bool, int, float, str)):
            leaves.append(((*prefix, key), value))
    return leaves


def _parse_env_value(text: str, current: object, name: str, path: ConfigPath) -> object:
    target = f"{name} -> {'.'.join(path)}"
    if isinstance(current, bool):
        lowered = text.lower()
        if lowered in _TRUTHY:
            return True
        if lowered in _FALSY:
            return False
        raise ConfigLoadError(
            f"{target} must be a boolean (true/false/1/0/yes/no/on/off)"
        )
    if isinstance(current, int):
        try:
            return int(text)
        except ValueError as exc:
            raise ConfigLoadError(f"{target} must be an integer") from exc
    if isinstance(current, float):
        try:
            return float(text)
        except ValueError as exc:
            raise ConfigLoadError(f"{target} must be a number") from exc
    return text


def _cli_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for dotted in sorted(overrides):
        path = tuple(segment for segment in dotted.split(".") if segment)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {dotted!r}")
        value = overrides[dotted]
        _assign(layer, path, merge_config({}, value) if isinstance(value, Mapping) else value)
    return layer


def _lookup(config: Mapping[str, object], path: ConfigPath) -> object | None:
    node: object = config
    for segment in path:
        if not isinstance(node, Mapping) or segment not in node:
            return None
        node = node[segment]
    return node


def _assign(config: dict[str, Any], path: ConfigPath, value: object) -> None:
    node = config
    for segment in path[:-1]:
        child = node.get(segment)
        if not isinstance(child, dict):
            child = node[segment] = {}
        node = child
    node[path[-1]] = value


def _resolve_path(raw: str, base_dir: Path) -> str:
    if raw == IN_MEMORY_DB:
        return raw
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "IN_MEMORY_DB",
    "ConfigLoadError",
    "dump_effective_config",
    "env_name_for_path",
    "load_config",
    "normalize_paths",
]
