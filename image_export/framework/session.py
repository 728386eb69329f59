from __future__ import annotations

import os
import threading
import time
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Literal, Protocol

TimestampMode = Literal["none", "date", "date-time", "unix-epoch"]
Backend = Literal["invokeai", "nmkdiffusers", "comfy"]
LivenessSource = Literal["sentinel", "process", "image_count"]

TIMESTAMP_MODES: tuple[str, ...] = ("none", "date", "date-time", "unix-epoch")


class SessionFatalError(RuntimeError):
    """A condition that makes the whole generation session unrecoverable."""


class ProcessHandle(Protocol):
    def poll(self) -> int | None: ...


@dataclass(frozen=True)
class BackendTraits:
    liveness: LivenessSource
    log_correlation: bool
    mask_overlay: bool


# invokeai signals activity through its prompt-queue file, nmkdiffusers runs as
# a child process that post-processes images after logging them, comfy is an
# interactive server that never exits on its own.
BACKENDS: dict[str, BackendTraits] = {
    "invokeai": BackendTraits(liveness="sentinel", log_correlation=False, mask_overlay=True),
    "nmkdiffusers": BackendTraits(liveness="process", log_correlation=True, mask_overlay=False),
    "comfy": BackendTraits(liveness="image_count", log_correlation=True, mask_overlay=False),
}


def backend_traits(backend: str) -> BackendTraits:
    try:
        return BACKENDS[backend]
    except KeyError:
        raise ValueError(f"Unknown backend {backend!r}; expected one of {sorted(BACKENDS)}") from None


class LogTail:
    """Thread-safe, bounded view of the most recent upstream log lines."""

    def __init__(self, maxlen: int = 50) -> None:
        if maxlen <= 0:
            raise ValueError("maxlen must be > 0")
        self._lines: deque[str] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def append(self, line: str) -> None:
        with self._lock:
            self._lines.append(line.rstrip("\r\n"))

    def extend(self, lines: Iterable[str]) -> None:
        for line in lines:
            self.append(line)

    def last(self, count: int) -> list[str]:
        with self._lock:
            if count <= 0:
                return []
            return list(self._lines)[-count:]

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)


@dataclass(frozen=True)
class FilenameOptions:
    timestamp: TimestampMode = "date-time"
    include_prompt: bool = True
    include_seed: bool = True
    include_scale: bool = True
    include_sampler: bool = True
    include_model: bool = False
    strip_wildcards: bool = False


@dataclass(frozen=True)
class GenerationSessionContext:
    """Everything the export pipeline needs to know about one generation run.

    Built once when generation starts and never mutated; a new run gets a new
    context.
    """

    images_dir: str
    output_dir: str
    target_image_count: int
    backend: Backend = "invokeai"
    start_time: float = field(default_factory=time.time)
    extension: str = ".png"
    subfolders_per_prompt: bool = False
    session_subdir_name: str | None = None
    filename: FilenameOptions = field(default_factory=FilenameOptions)
    model_name: str = ""
    sentinel_path: str | None = None
    process: ProcessHandle | None = None
    mask_path: str | None = None
    log_tail: LogTail | None = None

    def __post_init__(self) -> None:
        backend_traits(self.backend)
        if self.target_image_count < 0:
            raise ValueError("target_image_count must be >= 0")
        if not self.extension.startswith("."):
            raise ValueError(f"extension must start with '.': {self.extension!r}")

    @property
    def traits(self) -> BackendTraits:
        return backend_traits(self.backend)

    @property
    def export_dir(self) -> str:
        if self.session_subdir_name:
            return os.path.join(self.output_dir, self.session_subdir_name)
        return self.output_dir

    def upstream_live(self, image_count: int) -> bool:
        source = self.traits.liveness
        if source == "sentinel":
            return bool(self.sentinel_path) and os.path.exists(str(self.sentinel_path))
        if source == "process":
            return self.process is not None and self.process.poll() is None
        return image_count < self.target_image_count
