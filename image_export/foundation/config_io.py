"""
Locating and reading the export configuration.

Loading happens in two steps: ``resolve_config_sources`` decides which YAML
files apply (one explicit file, or the repo's base config plus an optional
local overlay), then ``load_config`` folds them into one mapping.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import yaml

DEFAULT_ENV_VAR = "IMAGE_EXPORT_CONFIG"
LOCAL_OVERLAY_NAME = "config.local.yaml"
REPO_MARKERS = ("pyproject.toml", ".git")

SourceMode = Literal["explicit", "env", "base", "base+local"]


@dataclass(frozen=True)
class ConfigSources:
    mode: SourceMode
    paths: tuple[str, ...]
    env_var: str | None
    repo_root: str | None = None

    def as_meta(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "paths": list(self.paths),
            "env_var": self.env_var,
            "repo_root": self.repo_root,
        }


def find_repo_root(start: str | os.PathLike[str] | None = None) -> str:
    here = Path(start or os.getcwd()).resolve()
    if here.is_file():
        here = here.parent

    for directory in (here, *here.parents):
        if any((directory / marker).exists() for marker in REPO_MARKERS):
            return str(directory)

    raise FileNotFoundError(f"No {' or '.join(REPO_MARKERS)} found in {here} or any parent directory")


def read_yaml_mapping(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ValueError(f"{path}: not valid YAML ({exc})") from exc

    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        raise ValueError(f"{path}: top level must be a mapping, got {type(payload).__name__}")
    return dict(payload)


def _kind(value: Any) -> str:
    if isinstance(value, Mapping):
        return "mapping"
    if isinstance(value, (list, tuple)):
        return "list"
    return "scalar"


def merge_overlay(base: Any, overlay: Any, *, path: str = "") -> Any:
    """
    Deep-merge ``overlay`` onto ``base``.

    Mappings merge key by key, lists are replaced wholesale, and an explicit
    ``None`` in the overlay clears the base value. Any other change of kind
    (mapping, list, scalar) raises.
    """

    if overlay is None or base is None:
        return overlay

    base_kind, overlay_kind = _kind(base), _kind(overlay)
    if base_kind != overlay_kind:
        raise ValueError(f"Config overlay at {path or '<root>'}: cannot replace a {base_kind} with a {overlay_kind}")

    if base_kind == "list":
        return list(overlay)
    if base_kind == "scalar":
        return overlay

    merged: dict[str, Any] = dict(base)
    for key, value in overlay.items():
        child = f"{path}.{key}" if path else str(key)
        merged[key] = merge_overlay(base[key], value, path=child) if key in base else value
    return merged


def resolve_config_sources(
    *,
    config_path: str | None = None,
    env_var: str | None = DEFAULT_ENV_VAR,
    config_dir: str = "config",
    config_name: str = "config.yaml",
    start_dir: str | None = None,
) -> ConfigSources:
    """
    Decide which config files to read, in merge order.

    ``config_path`` (or, failing that, the ``env_var`` environment variable)
    names a single file used as-is. Otherwise ``<config_dir>/<config_name>``
    is required and ``config.local.yaml`` beside it is layered on top when
    present. A relative ``config_dir`` is taken from the repo root.
    """

    if config_path is not None:
        single, mode = str(config_path).strip(), "explicit"
    else:
        single, mode = (os.environ.get(env_var, "").strip() if env_var else ""), "env"
    if single:
        resolved = os.path.abspath(os.path.expandvars(os.path.expanduser(single)))
        return ConfigSources(mode, (resolved,), env_var)

    repo_root = None
    if not os.path.isabs(config_dir):
        repo_root = find_repo_root(start_dir)
        config_dir = os.path.join(repo_root, config_dir)

    base_path = os.path.abspath(os.path.join(config_dir, config_name))
    if not os.path.isfile(base_path):
        raise FileNotFoundError(f"Missing base config file: {base_path}")

    overlay_path = os.path.abspath(os.path.join(config_dir, LOCAL_OVERLAY_NAME))
    if os.path.isfile(overlay_path):
        return ConfigSources("base+local", (base_path, overlay_path), env_var, repo_root)
    return ConfigSources("base", (base_path,), env_var, repo_root)


def load_config(**kwargs) -> tuple[dict[str, Any], dict[str, Any]]:
    """Return ``(cfg, meta)`` for the sources picked by ``resolve_config_sources(**kwargs)``."""

    sources = resolve_config_sources(**kwargs)
    cfg: dict[str, Any] = {}
    for path in sources.paths:
        cfg = merge_overlay(cfg, read_yaml_mapping(path))
    return cfg, sources.as_meta()
