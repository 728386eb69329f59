"""Image file helpers: PNG text side channel, mask overlay, writer-lock probing.

Only Pillow is used; no external binaries are involved.
"""

from __future__ import annotations

import errno
import os
from collections.abc import Mapping
from pathlib import Path

from PIL import Image, PngImagePlugin


class MaskOverlayError(RuntimeError):
    """Raised when a mask cannot be composited onto an image."""


def read_text_chunks(path: str | os.PathLike[str]) -> dict[str, str]:
    """Return the PNG ``tEXt``/``iTXt``/``zTXt`` chunks of an image as ``{keyword: text}``."""

    with Image.open(path) as im:
        im.load()
        text = getattr(im, "text", None)
        if text is None:
            text = {k: v for k, v in im.info.items() if isinstance(v, str)}
        return {str(k): str(v) for k, v in dict(text).items()}


def side_channel_text(chunks: Mapping[str, str]) -> str:
    """Join text chunks into the ``"keyword: text"`` form the metadata tags are matched against."""

    return "\n".join(f"{key}: {value}" for key, value in chunks.items())


def write_text_chunks(path: str | os.PathLike[str], chunks: Mapping[str, str]) -> None:
    """Rewrite a PNG in place with the given text chunks, keeping pixel data unchanged."""

    target = Path(path)
    with Image.open(target) as im:
        im.load()
        pixels = im.copy()

    info = PngImagePlugin.PngInfo()
    for key, value in chunks.items():
        if _needs_itxt(value):
            info.add_itxt(key, value)
        else:
            info.add_text(key, value)

    tmp = target.with_name(f".{target.name}.tmp")
    try:
        pixels.save(tmp, format="PNG", pnginfo=info)
        os.replace(tmp, target)
    finally:
        if tmp.exists():
            tmp.unlink()


def _needs_itxt(value: str) -> bool:
    try:
        value.encode("latin-1")
    except UnicodeEncodeError:
        return True
    return False


def overlay_mask(image_path: str, mask_path: str) -> None:
    """
    Composite ``mask_path`` onto ``image_path`` in place.

    The mask is resized to the image size (Lanczos) when they differ. The saved
    file carries no text chunks; callers that need provenance must re-embed it.
    """

    if not os.path.exists(mask_path):
        raise FileNotFoundError(f"Mask image does not exist: {mask_path}")

    with Image.open(image_path) as im, Image.open(mask_path) as mask:
        keep_alpha = im.mode in ("RGBA", "LA", "PA")
        base = im.convert("RGBA")
        overlay = mask.convert("RGBA")
        if overlay.size != base.size:
            overlay = overlay.resize(base.size, resample=Image.Resampling.LANCZOS)
        try:
            composed = Image.alpha_composite(base, overlay)
        except ValueError as exc:
            raise MaskOverlayError(f"Cannot overlay {mask_path} onto {image_path}: {exc}") from exc

    if not keep_alpha:
        composed = composed.convert("RGB")
    composed.save(image_path, format="PNG")


def is_file_locked(path: str | os.PathLike[str]) -> bool:
    """
    Best-effort check whether another writer still holds ``path``.

    Opening for update fails on platforms with mandatory sharing modes; on
    POSIX a non-blocking exclusive ``flock`` detects writers that took an
    advisory lock. A vanished file is not "locked".
    """

    try:
        handle = open(path, "r+b")
    except FileNotFoundError:
        return False
    except PermissionError:
        return True
    except OSError as exc:
        return exc.errno in (errno.EACCES, errno.EBUSY, errno.ETXTBSY)

    with handle:
        if os.name != "posix":
            return False

        import fcntl  # noqa: PLC0415

        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return True
        except OSError:
            return False
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        return False
