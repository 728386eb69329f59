"""
Export filename construction under a path-length budget.

The whole destination path must stay within ``MAX_PATH_LENGTH``. The
timestamp and image index are mandatory; optional tokens are taken in the
fixed priority order seed, scale, sampler, prompt, model and are dropped
silently when they do not fit. The prompt is ranked fourth but placed right
after the mandatory tokens so filenames sort and read naturally.
"""

from __future__ import annotations

import os
import re
from datetime import datetime

from image_export.framework.metadata import ImageMetadataRecord
from image_export.framework.session import GenerationSessionContext, SessionFatalError, TimestampMode

MAX_PATH_LENGTH = 255
MIN_PROMPT_CHARS = 4
MODEL_NAME_MAX_CHARS = 20
SUBFOLDER_NAME_RESERVE = 65
SEPARATOR = "-"

_HOSTILE_CHARS_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f]')
_WILDCARD_RE = re.compile(r"__[\w\-/.]+__|~[\w\-/.]+")


class FilenameBudgetError(SessionFatalError, ValueError):
    """The mandatory filename tokens alone exceed the path budget."""


def format_timestamp(mode: TimestampMode, now: datetime) -> str:
    if mode == "none":
        return ""
    if mode == "date":
        return now.strftime("%Y-%m-%d")
    if mode == "date-time":
        return now.strftime("%Y-%m-%d_%H-%M-%S")
    if mode == "unix-epoch":
        return str(int(now.timestamp()))
    raise ValueError(f"Unknown timestamp mode: {mode!r}")


def _clean_token(text: str) -> str:
    text = _HOSTILE_CHARS_RE.sub(" ", text)
    return "_".join(text.split()).strip("._-")


def sanitize_prompt_filename(prompt: str, max_length: int, *, strip_wildcards: bool = False) -> str:
    """Make a prompt safe and readable as a filename fragment of at most ``max_length`` chars."""

    if max_length <= 0:
        return ""

    text = prompt
    if strip_wildcards:
        text = _WILDCARD_RE.sub(" ", text)
    # " -" would read as a CLI flag when the prompt is echoed back to a backend.
    text = text.replace(" -", " ")
    text = _clean_token(text)
    return text[:max_length].rstrip("._-")


def prompt_subfolder_name(
    prompt: str,
    export_dir_length: int,
    *,
    now: datetime | None = None,
    strip_wildcards: bool = False,
) -> str:
    """Folder name for ``prompt`` under a parent of ``export_dir_length`` chars, leaving room for the filename."""
    budget = MAX_PATH_LENGTH - export_dir_length - SUBFOLDER_NAME_RESERVE
    name = sanitize_prompt_filename(prompt, budget, strip_wildcards=strip_wildcards) if prompt.strip() else ""
    if name:
        return name
    stamp = int((now or datetime.now()).timestamp() * 1000)
    return f"unknown_prompt_{stamp}"


def model_token(model_name: str) -> str:
    stem = os.path.splitext(os.path.basename(model_name.strip()))[0]
    return _clean_token(stem)[:MODEL_NAME_MAX_CHARS].rstrip("._-")


def build_export_filename(
    record: ImageMetadataRecord,
    session: GenerationSessionContext,
    parent_dir_length: int,
    suffix_token: str,
    extension: str | None = None,
    *,
    now: datetime | None = None,
    include_prompt: bool | None = None,
) -> str:
    """
    Build the destination filename (with extension) for one exported image.

    ``parent_dir_length`` is the length of the destination directory path; the
    result satisfies ``parent_dir_length + 1 + len(result) <= MAX_PATH_LENGTH``.

    Raises:
        FilenameBudgetError: if even the timestamp and index do not fit.
    """

    opts = session.filename
    ext = extension if extension is not None else session.extension
    if ext and not ext.startswith("."):
        ext = "." + ext
    if include_prompt is None:
        include_prompt = opts.include_prompt and not session.subfolders_per_prompt

    budget = MAX_PATH_LENGTH - parent_dir_length - 1 - len(ext)
    head = [t for t in (format_timestamp(opts.timestamp, now or datetime.now()), suffix_token) if t]
    remaining = budget - len(SEPARATOR.join(head))
    if remaining < 0:
        raise FilenameBudgetError(
            f"Destination directory too long for export filenames: dir_length={parent_dir_length} "
            f"budget={budget} mandatory={SEPARATOR.join(head)!r}"
        )

    def fits(token: str) -> bool:
        return len(SEPARATOR) + len(token) <= remaining

    optional = (
        (opts.include_seed, str(record.seed) if record.seed >= 0 else ""),
        (opts.include_scale, f"scale{record.cfg_scale:.2f}" if record.cfg_scale >= 0 else ""),
        (opts.include_sampler, _clean_token(record.sampler)),
    )
    tail: list[str] = []
    for enabled, token in optional:
        if enabled and token and fits(token):
            tail.append(token)
            remaining -= len(SEPARATOR) + len(token)

    prompt_part = ""
    if include_prompt and record.prompt:
        room = remaining - len(SEPARATOR)
        if room >= MIN_PROMPT_CHARS:
            prompt_part = sanitize_prompt_filename(record.prompt, room, strip_wildcards=opts.strip_wildcards)
            if prompt_part:
                remaining -= len(SEPARATOR) + len(prompt_part)

    if opts.include_model:
        token = model_token(session.model_name or record.model)
        if token and fits(token):
            tail.append(token)
            remaining -= len(SEPARATOR) + len(token)

    components = [c for c in (*head, prompt_part, *tail) if c.strip()]
    return SEPARATOR.join(components) + ext
