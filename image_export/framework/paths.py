from __future__ import annotations

import errno
import logging
import os
import shutil
from collections.abc import Collection

logger = logging.getLogger(__name__)

DEFAULT_MOVE_ATTEMPTS = 5
_CROSS_DEVICE_ERRNOS = {errno.EXDEV, errno.EPERM, errno.ENOTSUP, errno.EOPNOTSUPP}


def _suffixed(candidate: str, index: int, max_length: int | None = None) -> str:
    root, ext = os.path.splitext(candidate)
    suffix = f" ({index})"
    if max_length is not None:
        overflow = len(os.path.abspath(candidate)) + len(suffix) - max_length
        if overflow > 0:
            head, stem = os.path.split(root)
            if overflow >= len(stem):
                raise ValueError(f"No room for a collision suffix on {candidate} within {max_length} chars")
            root = os.path.join(head, stem[: len(stem) - overflow])
    return f"{root}{suffix}{ext}"


def resolve_available_path(
    candidate: str,
    taken: Collection[str] = (),
    *,
    max_length: int | None = None,
) -> str:
    """
    Return ``candidate`` if free, else the first free ``name (N).ext`` with N >= 1.

    With ``max_length`` the stem is shortened so the suffixed absolute path
    stays within it.
    """

    path = candidate
    index = 0
    while os.path.exists(path) or os.path.normcase(os.path.abspath(path)) in taken:
        index += 1
        path = _suffixed(candidate, index, max_length)
    return path


class PathAvailabilityResolver:
    """Collision-free destination paths for one export batch.

    Paths returned earlier in the batch count as taken even before anything is
    written there, so two images that compute the same name get distinct paths.
    """

    def __init__(self, max_path_length: int | None = None) -> None:
        self.max_path_length = max_path_length
        self._claimed: set[str] = set()

    def resolve(self, candidate: str) -> str:
        path = resolve_available_path(candidate, self._claimed, max_length=self.max_path_length)
        self._claimed.add(os.path.normcase(os.path.abspath(path)))
        return path


def _link_into_place(src: str, dst: str) -> None:
    """Move ``src`` to ``dst`` without ever replacing an existing ``dst``."""

    try:
        os.link(src, dst)
    except FileExistsError:
        raise
    except OSError as exc:
        if exc.errno not in _CROSS_DEVICE_ERRNOS:
            raise
        _copy_into_place(src, dst)
        return

    try:
        os.unlink(src)
    except OSError:
        os.unlink(dst)
        raise


def _copy_into_place(src: str, dst: str) -> None:
    staging = os.path.join(os.path.dirname(dst) or ".", f".{os.path.basename(dst)}.partial")
    shutil.copy2(src, staging)
    try:
        try:
            os.link(staging, dst)
        except OSError as exc:
            if exc.errno not in _CROSS_DEVICE_ERRNOS:
                raise
            if os.path.exists(dst):
                raise FileExistsError(errno.EEXIST, "Destination appeared during copy", dst) from exc
            os.replace(staging, dst)
            staging = ""
    finally:
        if staging and os.path.exists(staging):
            os.unlink(staging)

    try:
        os.unlink(src)
    except OSError:
        os.unlink(dst)
        raise


def move_without_overwrite(
    src: str,
    candidate: str,
    resolver: PathAvailabilityResolver | None = None,
    *,
    attempts: int = DEFAULT_MOVE_ATTEMPTS,
) -> str:
    """
    Move ``src`` to the first available path derived from ``candidate``.

    A destination created by someone else between resolution and the move is
    never overwritten: the path is re-resolved and the move retried. Either
    the file ends up at exactly one destination or it stays at ``src``.

    Returns the destination path.
    """

    resolver = resolver or PathAvailabilityResolver()
    last_error: FileExistsError | None = None
    for attempt in range(1, attempts + 1):
        dst = resolver.resolve(candidate)
        try:
            _link_into_place(src, dst)
            return dst
        except FileExistsError as exc:
            logger.debug("Destination %s appeared before move (attempt %d/%d)", dst, attempt, attempts)
            last_error = exc
    raise FileExistsError(f"No free destination for {src} after {attempts} attempts (last: {last_error})")
