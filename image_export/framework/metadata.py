"""
Provenance metadata embedded in generated images.

Generated PNGs carry a text side channel written by whichever backend produced
them. Four historical layouts exist:

  sd-metadata:   InvokeAI JSON document (supersedes the dream string)
  Dream:         InvokeAI single-line CLI string, two token layouts
  parameters:    Automatic1111 three-line key/value block
  Nmkdiffusers:  flat JSON dictionary written by the internal diffusers backend

Parsing never raises. Structural failures produce an UNKNOWN record, garbled
individual fields leave their unset sentinel and add a warning.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from image_export.framework import media

logger = logging.getLogger(__name__)

ParseStatus = Literal["parsed", "partial", "unparseable"]


class MetadataFormat(str, Enum):
    INVOKE_AI_DREAM = "invokeai_dream"
    INVOKE_AI_JSON = "invokeai_json"
    AUTO1111 = "auto1111"
    NMKDIFFUSERS = "nmkdiffusers"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ImageMetadataRecord:
    format: MetadataFormat = MetadataFormat.UNKNOWN
    prompt: str = ""
    negative_prompt: str = ""
    steps: int = -1
    batch_size: int = 1
    width: int = 0
    height: int = 0
    cfg_scale: float = -1.0
    img_scale: float = -1.0
    sampler: str = ""
    seed: int = -1
    init_image_path: str = ""
    init_strength: float = -1.0
    seamless: bool = False
    face_tool: str = ""
    model: str = ""
    raw_text: str = ""
    parsed_text: str = ""

    @property
    def resolution(self) -> tuple[int, int]:
        return self.width, self.height

    @property
    def combined_prompt(self) -> str:
        return combine_prompt(self.prompt, self.negative_prompt)


@dataclass(frozen=True)
class MetadataParseResult:
    status: ParseStatus
    record: ImageMetadataRecord
    warnings: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.status != "unparseable"


class _Unparseable(ValueError):
    """Payload is structurally broken for the selected format."""


@dataclass
class _Draft:
    """Mutable accumulator used while a variant parser runs."""

    fields: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def set_int(self, name: str, raw: Any) -> None:
        value = _to_int(raw)
        if value is None:
            self.warnings.append(f"{name}: not an integer ({raw!r})")
        else:
            self.fields[name] = value

    def set_float(self, name: str, raw: Any) -> None:
        value = _to_float(raw)
        if value is None:
            self.warnings.append(f"{name}: not a number ({raw!r})")
        else:
            self.fields[name] = value

    def set_text(self, name: str, raw: Any) -> None:
        if raw is None:
            return
        self.fields[name] = str(raw).strip()


_INT_RE = re.compile(r"^[+-]?\d+")
_FLOAT_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?")


def _to_int(raw: Any) -> int | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        return int(raw) if raw.is_integer() else None
    match = _INT_RE.match(str(raw).strip())
    return int(match.group(0)) if match else None


def _to_float(raw: Any) -> float | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return float(raw)
    match = _FLOAT_RE.match(str(raw).strip())
    return float(match.group(0)) if match else None


def combine_prompt(prompt: str, negative_prompt: str) -> str:
    if not negative_prompt:
        return prompt
    return f"{prompt} [{negative_prompt}]"


def split_negative_prompt(prompt: str) -> tuple[str, str]:
    """
    Split ``"positive [negative]"`` into its two halves.

    Only a prompt ending in ``]`` with exactly one bracket pair opened after a
    space is split. A prompt that uses a single bracketed aside for another
    purpose is split as well; that matches historical output and is a known
    false positive.
    """

    if not (prompt.endswith("]") and " [" in prompt and prompt.count("[") == 1 and prompt.count("]") == 1):
        return prompt, ""
    head, _, tail = prompt.rpartition(" [")
    return head, tail.split("]", 1)[0]


def _apply_prompt(draft: _Draft, prompt: str) -> None:
    positive, negative = split_negative_prompt(prompt.strip())
    draft.fields["prompt"] = positive
    if negative:
        draft.fields["negative_prompt"] = negative


def _decode_json_object(payload: str) -> dict[str, Any]:
    text = payload.lstrip()
    try:
        value, _end = json.JSONDecoder().raw_decode(text)
    except json.JSONDecodeError as exc:
        raise _Unparseable(f"invalid JSON: {exc.msg} at char {exc.pos}") from exc
    if not isinstance(value, dict):
        raise _Unparseable(f"expected a JSON object, got {type(value).__name__}")
    return value


# -- InvokeAI dream string ---------------------------------------------------

_DREAM_FLAGS: dict[str, Callable[[_Draft, str], None]] = {
    "s": lambda d, v: d.set_int("steps", v),
    "b": lambda d, v: d.set_int("batch_size", v),
    "W": lambda d, v: d.set_int("width", v),
    "H": lambda d, v: d.set_int("height", v),
    "C": lambda d, v: d.set_float("cfg_scale", v),
    "A": lambda d, v: d.set_text("sampler", v),
    "S": lambda d, v: d.set_int("seed", v),
    "f": lambda d, v: _set_inverted_strength(d, v),
    "I": lambda d, v: d.set_text("init_image_path", v),
    "seamless": lambda d, v: d.fields.__setitem__("seamless", True),
    "ft": lambda d, v: d.set_text("face_tool", v.lower()),
}


def _set_inverted_strength(draft: _Draft, raw: Any) -> None:
    value = _to_float(raw)
    if value is None:
        draft.warnings.append(f"init_strength: not a number ({raw!r})")
        return
    draft.fields["init_strength"] = round(1.0 - value, 6)


def _parse_dream(payload: str, draft: _Draft) -> None:
    lines = payload.strip().splitlines()
    info = lines[0].strip() if lines else ""
    if not info:
        raise _Unparseable("empty dream string")

    if info.startswith('"'):
        parts = info.split('"')
        if len(parts) < 3:
            raise _Unparseable("unterminated quoted prompt")
        prompt = parts[1].strip()
        params_text = '"'.join(parts[2:])
    else:
        prompt, _, params_text = info.partition(" -")
        if params_text:
            params_text = "-" + params_text

    _apply_prompt(draft, prompt)

    # Layout detection: the current layout separates flag and value with a space.
    spaced_layout = "-W " in info and "-H " in info
    params_text = " " + params_text

    if spaced_layout:
        tokens = [f"-{chunk.strip().lstrip('-')}" for chunk in params_text.split(" -")]
    else:
        tokens = [chunk.strip() for chunk in params_text.split(" ")]
    tokens = [t for t in tokens if len(t.strip()) >= 3]
    if not spaced_layout:
        tokens = [t[:2] + " " + t[2:] for t in tokens]

    for token in tokens:
        words = token.split(" ")
        key = words[0].strip().replace("-", "")
        value = words[-1].strip()
        handler = _DREAM_FLAGS.get(key)
        if handler is not None:
            handler(draft, value)


# -- InvokeAI JSON -------------------------------------------------------------


def _parse_invoke_json(payload: str, draft: _Draft) -> None:
    doc = _decode_json_object(payload)
    image = doc.get("image")
    if not isinstance(image, Mapping):
        raise _Unparseable("missing 'image' object")

    prompt_field = image.get("prompt")
    if isinstance(prompt_field, list) and prompt_field:
        first = prompt_field[0]
        prompt = first.get("prompt", "") if isinstance(first, Mapping) else str(first)
        _apply_prompt(draft, str(prompt))
    elif isinstance(prompt_field, str):
        _apply_prompt(draft, prompt_field)
    else:
        draft.warnings.append("prompt: missing")

    for key, name in (("steps", "steps"), ("width", "width"), ("height", "height"), ("seed", "seed")):
        if key in image:
            draft.set_int(name, image[key])
    if "cfg_scale" in image:
        draft.set_float("cfg_scale", image["cfg_scale"])
    if "sampler" in image:
        draft.set_text("sampler", image["sampler"])
    if "strength" in image:
        _set_inverted_strength(draft, image["strength"])
    if "init_image_path" in image:
        draft.set_text("init_image_path", image["init_image_path"])
    if image.get("seamless") is True:
        draft.fields["seamless"] = True
    if image.get("facetool"):
        draft.set_text("face_tool", str(image["facetool"]).lower())
    if doc.get("model_id"):
        draft.set_text("model", doc["model_id"])


# -- Automatic1111 --------------------------------------------------------------

_A1111_PAIR_RE = re.compile(r"\s*([A-Za-z][A-Za-z0-9 _-]*):\s*([^,]*)")


def _parse_auto1111(payload: str, draft: _Draft) -> None:
    lines = payload.strip().splitlines()
    if not lines or not lines[0].strip():
        raise _Unparseable("missing prompt line")

    draft.fields["prompt"] = lines[0].strip()

    params_line = ""
    for line in lines[1:]:
        stripped = line.strip()
        if stripped.startswith("Negative prompt:"):
            draft.fields["negative_prompt"] = stripped.split("Negative prompt:", 1)[1].strip()
        elif stripped.startswith("Steps:"):
            params_line = stripped
    if not params_line:
        draft.warnings.append("parameters line missing")
        return

    pairs = {m.group(1).strip(): m.group(2).strip() for m in _A1111_PAIR_RE.finditer(params_line)}
    if "Steps" in pairs:
        draft.set_int("steps", pairs["Steps"])
    if "Size" in pairs:
        width, sep, height = pairs["Size"].partition("x")
        if sep:
            draft.set_int("width", width)
            draft.set_int("height", height)
        else:
            draft.warnings.append(f"Size: not WxH ({pairs['Size']!r})")
    if "CFG scale" in pairs:
        draft.set_float("cfg_scale", pairs["CFG scale"])
    if "Sampler" in pairs:
        draft.fields["sampler"] = pairs["Sampler"].replace(" ", "_")
    if "Seed" in pairs:
        draft.set_int("seed", pairs["Seed"])
    if "Model" in pairs:
        draft.set_text("model", pairs["Model"])


# -- Nmkdiffusers flat dictionary ------------------------------------------------

_NMK_KEYS: dict[str, Callable[[_Draft, Any], None]] = {
    "prompt": lambda d, v: d.set_text("prompt", v),
    "promptNeg": lambda d, v: d.set_text("negative_prompt", v),
    "initImg": lambda d, v: d.set_text("init_image_path", v),
    "initStrength": lambda d, v: d.set_float("init_strength", v),
    "steps": lambda d, v: d.set_int("steps", v),
    "seed": lambda d, v: d.set_int("seed", v),
    "scaleTxt": lambda d, v: d.set_float("cfg_scale", v),
    "scaleImg": lambda d, v: d.set_float("img_scale", v),
    "w": lambda d, v: d.set_int("width", v),
    "h": lambda d, v: d.set_int("height", v),
    "sampler": lambda d, v: d.set_text("sampler", v),
    "model": lambda d, v: d.set_text("model", v),
}


def _parse_nmkdiffusers(payload: str, draft: _Draft) -> None:
    for key, value in _decode_json_object(payload).items():
        handler = _NMK_KEYS.get(key)
        if handler is not None and value is not None:
            handler(draft, value)


# Priority order matters: the JSON document supersedes the dream string when
# InvokeAI wrote both.
FORMAT_PARSERS: tuple[tuple[str, MetadataFormat, Callable[[str, _Draft], None]], ...] = (
    ("sd-metadata: ", MetadataFormat.INVOKE_AI_JSON, _parse_invoke_json),
    ("Dream: ", MetadataFormat.INVOKE_AI_DREAM, _parse_dream),
    ("parameters:", MetadataFormat.AUTO1111, _parse_auto1111),
    ("Nmkdiffusers:", MetadataFormat.NMKDIFFUSERS, _parse_nmkdiffusers),
)


def detect_format(raw_text: str) -> MetadataFormat:
    for tag, fmt, _parser in FORMAT_PARSERS:
        if tag in raw_text:
            return fmt
    return MetadataFormat.UNKNOWN


def parse_metadata_text(raw_text: str | None) -> MetadataParseResult:
    """Parse side-channel text into a record plus an explicit outcome."""

    text = raw_text or ""
    for tag, fmt, parser in FORMAT_PARSERS:
        if tag not in text:
            continue

        payload = text.split(tag)[-1]
        draft = _Draft()
        try:
            parser(payload, draft)
        except _Unparseable as exc:
            warning = f"{fmt.value}: {exc}"
            logger.warning("Unparseable image metadata (%s)", warning)
            record = ImageMetadataRecord(raw_text=text, parsed_text=payload, **_safe_fields(draft))
            return MetadataParseResult("unparseable", record, (warning, *draft.warnings))
        except Exception as exc:  # noqa: BLE001
            warning = f"{fmt.value}: unexpected {type(exc).__name__}: {exc}"
            logger.warning("Failed to parse image metadata (%s)", warning, exc_info=True)
            record = ImageMetadataRecord(raw_text=text, parsed_text=payload, **_safe_fields(draft))
            return MetadataParseResult("unparseable", record, (warning, *draft.warnings))

        record = ImageMetadataRecord(format=fmt, raw_text=text, parsed_text=payload, **_safe_fields(draft))
        if draft.warnings:
            logger.debug("Partially parsed %s metadata: %s", fmt.value, "; ".join(draft.warnings))
            return MetadataParseResult("partial", record, tuple(draft.warnings))
        return MetadataParseResult("parsed", record)

    return MetadataParseResult("unparseable", ImageMetadataRecord(raw_text=text), ("no metadata tag found",))


def _safe_fields(draft: _Draft) -> dict[str, Any]:
    fields = dict(draft.fields)
    if fields.get("batch_size", 1) < 1:
        draft.warnings.append(f"batch_size: must be >= 1 ({fields['batch_size']})")
        fields.pop("batch_size")
    for name in ("steps", "width", "height"):
        if name in fields and fields[name] < 0:
            draft.warnings.append(f"{name}: must be >= 0 ({fields[name]})")
            fields.pop(name)
    return fields


def parse_metadata(raw_text: str | None) -> ImageMetadataRecord:
    return parse_metadata_text(raw_text).record


def read_image_metadata(path: str) -> ImageMetadataRecord:
    """Read and parse the side channel of an image file; unreadable files give an UNKNOWN record."""

    try:
        chunks = media.read_text_chunks(path)
    except (OSError, ValueError) as exc:
        logger.warning("Can't read metadata from %s: %s", path, exc)
        return ImageMetadataRecord()
    return parse_metadata(media.side_channel_text(chunks))
