from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Mapping, get_args

from image_export.foundation.config_io import find_repo_root
from image_export.framework.session import (
    BACKENDS,
    TIMESTAMP_MODES,
    Backend,
    FilenameOptions,
    GenerationSessionContext,
    LogTail,
    ProcessHandle,
    TimestampMode,
)


def parse_bool(value: Any, path: str) -> bool:
    """
    Strict boolean parsing to avoid bool('false') footguns.

    Accepts:
      - True/False
      - 0/1 (ints)
      - strings: true/false/1/0/yes/no (case-insensitive, surrounding whitespace ignored)

    Raises:
      ValueError for anything else, with the provided config key path.
    """

    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value in (0, 1):
            return bool(value)
        raise ValueError(f"Invalid boolean for {path}: {value!r}")
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"true", "1", "yes"}:
            return True
        if normalized in {"false", "0", "no"}:
            return False
    raise ValueError(f"Invalid boolean for {path}: {value!r}")


def parse_float(value: Any, path: str) -> float:
    if value is None:
        raise ValueError(f"Invalid config value for {path}: None")
    if isinstance(value, bool):
        raise ValueError(f"Invalid config type for {path}: expected float, got bool")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError as exc:
            raise ValueError(f"Invalid config value for {path}: must be a float") from exc
    raise ValueError(f"Invalid config type for {path}: expected float")


def parse_int(value: Any, path: str) -> int:
    if value is None:
        raise ValueError(f"Invalid config value for {path}: None")
    if isinstance(value, bool):
        raise ValueError(f"Invalid config type for {path}: expected int, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError as exc:
            raise ValueError(f"Invalid config value for {path}: must be an int") from exc
    raise ValueError(f"Invalid config type for {path}: expected int")


@dataclass(frozen=True)
class LoopConfig:
    startup_delay_s: float = 1.0
    interval_s: float = 0.1
    min_image_age_ms: int = 200
    log_correlation_lines: int = 5


@dataclass(frozen=True)
class ExportConfig:
    output_dir: str
    log_dir: str
    backend: Backend = "invokeai"
    extension: str = ".png"
    subfolders_per_prompt: bool = False
    session_subfolder: str | None = None
    filename: FilenameOptions = field(default_factory=FilenameOptions)
    loop: LoopConfig = field(default_factory=LoopConfig)
    mask_path: str | None = None
    sentinel_path: str | None = None

    @staticmethod
    def from_dict(cfg: Mapping[str, Any]) -> tuple["ExportConfig", list[str]]:
        """
        Parse and validate the ``export:`` section, returning (ExportConfig, warnings).

        Relative paths resolve against the repo root.

        Raises:
            ValueError: if required keys are missing or invalid.
        """

        if not isinstance(cfg, Mapping):
            raise ValueError("Config must be a mapping")

        warnings: list[str] = []
        repo_root: str | None = None

        strict_unknown_keys = False
        if "strict" in cfg:
            strict_unknown_keys = parse_bool(cfg.get("strict"), "strict")

        export_cfg = cfg.get("export")
        if export_cfg is None:
            raise ValueError("Missing required config: export")
        if not isinstance(export_cfg, Mapping):
            raise ValueError("Invalid config type for export: expected mapping")

        def collect_unknown_keys(mapping: Any, schema: Mapping[str, Any], *, prefix: str) -> list[str]:
            if not isinstance(mapping, Mapping):
                return []
            unknown: list[str] = []
            for key, value in mapping.items():
                if not isinstance(key, str):
                    continue
                if key not in schema:
                    unknown.append(f"{prefix}.{key}")
                    continue
                subschema = schema.get(key)
                if isinstance(subschema, Mapping):
                    unknown.extend(collect_unknown_keys(value, subschema, prefix=f"{prefix}.{key}"))
            return unknown

        export_schema: Mapping[str, Any] = {
            "output_dir": None,
            "log_dir": None,
            "backend": None,
            "extension": None,
            "subfolders_per_prompt": None,
            "session_subfolder": None,
            "filename": {name: None for name in FilenameOptions.__dataclass_fields__},
            "loop": {name: None for name in LoopConfig.__dataclass_fields__},
            "mask_path": None,
            "sentinel_path": None,
        }

        unknown_keys = collect_unknown_keys(export_cfg, export_schema, prefix="export")
        if unknown_keys:
            unknown_keys = sorted(set(unknown_keys))
            if strict_unknown_keys:
                raise ValueError("Unknown config keys: " + ", ".join(unknown_keys))
            warnings.extend(f"Unknown config key: {key}" for key in unknown_keys)

        def normalize_path(value: str) -> str:
            expanded = os.path.expandvars(os.path.expanduser(value.strip()))
            if not os.path.isabs(expanded):
                nonlocal repo_root
                if repo_root is None:
                    repo_root = find_repo_root()
                expanded = os.path.join(repo_root, expanded)
            return os.path.abspath(expanded)

        def lookup(path: str) -> tuple[bool, Any]:
            cur: Any = cfg
            for part in path.split("."):
                if not isinstance(cur, Mapping) or part not in cur:
                    return False, None
                cur = cur[part]
            return True, cur

        def optional_str(path: str) -> str | None:
            found, cur = lookup(path)
            if not found or cur is None:
                return None
            if not isinstance(cur, str):
                raise ValueError(f"Invalid config type for {path}: expected string")
            return cur.strip() or None

        def require_str(path: str) -> str:
            value = optional_str(path)
            if value is None:
                raise ValueError(f"Missing required config: {path}")
            return value

        def optional_bool(path: str, *, default: bool) -> bool:
            found, cur = lookup(path)
            if not found:
                return default
            return parse_bool(cur, path)

        def choice(path: str, allowed: tuple[str, ...], *, default: str) -> str:
            found, cur = lookup(path)
            if not found or cur is None:
                return default
            if not isinstance(cur, str) or cur.strip().lower() not in allowed:
                raise ValueError(f"Unknown {path}: {cur!r} (expected: {'|'.join(allowed)})")
            return cur.strip().lower()

        output_dir = normalize_path(require_str("export.output_dir"))
        log_dir_raw = optional_str("export.log_dir")
        log_dir = normalize_path(log_dir_raw) if log_dir_raw else os.path.join(output_dir, "logs")

        backend = choice("export.backend", tuple(get_args(Backend)), default="invokeai")
        if backend not in BACKENDS:
            raise ValueError(f"Unknown export.backend: {backend!r}")

        extension = optional_str("export.extension") or ".png"
        if not extension.startswith("."):
            extension = "." + extension
        if len(extension) < 2 or any(sep in extension for sep in ("/", "\\")):
            raise ValueError(f"Invalid config value for export.extension: {extension!r}")

        subfolders_per_prompt = optional_bool("export.subfolders_per_prompt", default=False)
        session_subfolder = optional_str("export.session_subfolder")
        if session_subfolder and os.path.basename(session_subfolder) != session_subfolder:
            raise ValueError("Invalid config value for export.session_subfolder: must be a single folder name")

        defaults = FilenameOptions()
        timestamp: TimestampMode = choice(  # type: ignore[assignment]
            "export.filename.timestamp", TIMESTAMP_MODES, default=defaults.timestamp
        )
        filename = FilenameOptions(
            timestamp=timestamp,
            include_prompt=optional_bool("export.filename.include_prompt", default=defaults.include_prompt),
            include_seed=optional_bool("export.filename.include_seed", default=defaults.include_seed),
            include_scale=optional_bool("export.filename.include_scale", default=defaults.include_scale),
            include_sampler=optional_bool("export.filename.include_sampler", default=defaults.include_sampler),
            include_model=optional_bool("export.filename.include_model", default=defaults.include_model),
            strip_wildcards=optional_bool("export.filename.strip_wildcards", default=defaults.strip_wildcards),
        )
        if subfolders_per_prompt and filename.include_prompt:
            warnings.append(
                "export.subfolders_per_prompt=true: the prompt names the subfolder and is left out of filenames."
            )

        loop_defaults = LoopConfig()
        loop_values: dict[str, Any] = {}
        for name in ("startup_delay_s", "interval_s"):
            found, raw = lookup(f"export.loop.{name}")
            value = parse_float(raw, f"export.loop.{name}") if found else getattr(loop_defaults, name)
            if value < 0:
                raise ValueError(f"Invalid config value for export.loop.{name}: must be >= 0")
            loop_values[name] = value
        for name in ("min_image_age_ms", "log_correlation_lines"):
            found, raw = lookup(f"export.loop.{name}")
            value = parse_int(raw, f"export.loop.{name}") if found else getattr(loop_defaults, name)
            if value < 0:
                raise ValueError(f"Invalid config value for export.loop.{name}: must be >= 0")
            loop_values[name] = value
        if loop_values["interval_s"] == 0:
            warnings.append("export.loop.interval_s=0: the export loop will poll without pausing.")

        mask_raw = optional_str("export.mask_path")
        sentinel_raw = optional_str("export.sentinel_path")
        if backend == "invokeai" and not sentinel_raw:
            warnings.append(
                "export.sentinel_path is not set for backend=invokeai; the session ends as soon as "
                "the images directory is empty."
            )

        return (
            ExportConfig(
                output_dir=output_dir,
                log_dir=log_dir,
                backend=backend,  # type: ignore[arg-type]
                extension=extension,
                subfolders_per_prompt=subfolders_per_prompt,
                session_subfolder=session_subfolder,
                filename=filename,
                loop=LoopConfig(**loop_values),
                mask_path=normalize_path(mask_raw) if mask_raw else None,
                sentinel_path=normalize_path(sentinel_raw) if sentinel_raw else None,
            ),
            warnings,
        )

    def session_context(
        self,
        images_dir: str,
        target_image_count: int,
        *,
        model_name: str = "",
        start_time: float | None = None,
        process: ProcessHandle | None = None,
        log_tail: LogTail | None = None,
    ) -> GenerationSessionContext:
        """Freeze this configuration into the context for one generation run."""

        extra: dict[str, Any] = {}
        if start_time is not None:
            extra["start_time"] = start_time
        return GenerationSessionContext(
            images_dir=os.path.abspath(images_dir),
            output_dir=self.output_dir,
            target_image_count=target_image_count,
            backend=self.backend,
            extension=self.extension,
            subfolders_per_prompt=self.subfolders_per_prompt,
            session_subdir_name=self.session_subfolder,
            filename=self.filename,
            model_name=model_name,
            sentinel_path=self.sentinel_path,
            process=process,
            mask_path=self.mask_path,
            log_tail=log_tail,
            **extra,
        )
