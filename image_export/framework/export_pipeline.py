"""
Polling export of generated images.

One ``ExportPipeline`` exists per generation session. Each ``tick()`` looks
at the watched directory once, moves every stable image to its final name
and reports the resulting state. Timing (startup delay, tick interval) and
threading live in ``image_export.app.export_loop``.

State flow::

    IDLE -> RUNNING <-> DRAINING -> TERMINATED

RUNNING while the upstream generator is live, DRAINING once it has stopped
but images are still waiting, TERMINATED when it has stopped and nothing is
left (or on cancellation or a loop-ending error).
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from image_export.framework import media
from image_export.framework.filenames import MAX_PATH_LENGTH, build_export_filename, prompt_subfolder_name
from image_export.framework.metadata import ImageMetadataRecord, parse_metadata, read_image_metadata
from image_export.framework.paths import PathAvailabilityResolver, move_without_overwrite
from image_export.framework.session import GenerationSessionContext, SessionFatalError

DEFAULT_MIN_IMAGE_AGE_S = 0.2
DEFAULT_LOG_CORRELATION_LINES = 5

PreviewSink = Callable[[list[str]], None]
MaskOverlay = Callable[[str, str], None]


class ExportState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DRAINING = "draining"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class ExportedImageRecord:
    source_path: str
    destination_path: str
    metadata: ImageMetadataRecord


@dataclass(frozen=True)
class _Artifact:
    path: str
    name: str
    created: float
    modified: float


def _creation_time(stat: os.stat_result) -> float:
    birth = getattr(stat, "st_birthtime", None)
    return float(birth) if birth else stat.st_ctime


class ExportPipeline:
    def __init__(
        self,
        session: GenerationSessionContext,
        *,
        preview_sink: PreviewSink | None = None,
        mask_overlay: MaskOverlay = media.overlay_mask,
        cancel_session: Callable[[str], None] | None = None,
        import_in_progress: Callable[[], bool] | None = None,
        clock: Callable[[], float] = time.time,
        min_image_age_s: float = DEFAULT_MIN_IMAGE_AGE_S,
        log_correlation_lines: int = DEFAULT_LOG_CORRELATION_LINES,
        logger: logging.Logger | None = None,
    ) -> None:
        self.session = session
        self.preview_sink = preview_sink
        self.mask_overlay = mask_overlay
        self.cancel_session = cancel_session
        self.import_in_progress = import_in_progress or (lambda: False)
        self.clock = clock
        self.min_image_age_s = min_image_age_s
        self.log_correlation_lines = log_correlation_lines
        self.logger = logger or logging.getLogger(__name__)

        self.state = ExportState.IDLE
        self.termination_reason: str | None = None
        self.image_count = 0
        self.published: list[str] = []
        self._saved_chunks: dict[str, dict[str, str]] = {}
        self._masked_sources: set[str] = set()
        self._reported_stale: frozenset[str] = frozenset()
        self._cancel_requested = threading.Event()

    # -- control ---------------------------------------------------------

    def request_cancel(self) -> None:
        """Ask the pipeline to stop at the start of its next tick."""
        self._cancel_requested.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    @property
    def terminated(self) -> bool:
        return self.state is ExportState.TERMINATED

    def summary(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "reason": self.termination_reason,
            "exported": self.image_count,
            "published": list(self.published),
        }

    # -- tick --------------------------------------------------------------

    def tick(self) -> ExportState:
        if self.terminated:
            return self.state
        if self.cancel_requested:
            return self._terminate("cancelled")

        exported: list[ExportedImageRecord] = []
        try:
            artifacts = self._list_artifacts()
            live = self.session.upstream_live(self.image_count)
            busy = bool(self.import_in_progress())

            if not live and not busy and not artifacts:
                return self._terminate("finished")

            self.state = ExportState.RUNNING if (live or busy) else ExportState.DRAINING

            candidates = self._correlate_with_log(self._stable(artifacts))
            self._export_batch(candidates, exported)
        except SessionFatalError as exc:
            self._publish(exported)
            self.logger.error("Export session cancelled: %s", exc)
            if self.cancel_session is not None:
                self.cancel_session(str(exc))
            return self._terminate("session-fatal")
        except Exception as exc:  # noqa: BLE001
            self.logger.exception("Image export error: %s", exc)
            return self._terminate("error")

        self._publish(exported)
        return self.state

    def _terminate(self, reason: str) -> ExportState:
        self.state = ExportState.TERMINATED
        self.termination_reason = reason
        self.logger.info("Export pipeline terminated (reason=%s, exported=%d)", reason, self.image_count)
        return self.state

    # -- discovery ---------------------------------------------------------

    def _list_artifacts(self) -> list[_Artifact]:
        ext = self.session.extension.lower()
        artifacts: list[_Artifact] = []
        with os.scandir(self.session.images_dir) as entries:
            for entry in entries:
                if not entry.name.lower().endswith(ext) or entry.name.startswith("."):
                    continue
                try:
                    if not entry.is_file():
                        continue
                    stat = entry.stat()
                except FileNotFoundError:
                    continue
                artifacts.append(_Artifact(entry.path, entry.name, _creation_time(stat), stat.st_mtime))
        artifacts.sort(key=lambda a: (a.created, a.name))
        return artifacts

    def _stable(self, artifacts: list[_Artifact]) -> list[_Artifact]:
        now = self.clock()
        stable: list[_Artifact] = []
        stale: list[str] = []
        for art in artifacts:
            if art.created <= self.session.start_time:
                stale.append(art.name)
                continue
            if now - art.modified < self.min_image_age_s:
                continue
            if media.is_file_locked(art.path):
                self.logger.debug("Skipping %s: still held by its writer", art.name)
                continue
            stable.append(art)
        if frozenset(stale) != self._reported_stale:
            self._reported_stale = frozenset(stale)
            if stale:
                self.logger.debug(
                    "Ignoring %d image(s) created before session start: %s", len(stale), ", ".join(stale)
                )
        return stable

    def _correlate_with_log(self, artifacts: list[_Artifact]) -> list[_Artifact]:
        log_tail = self.session.log_tail
        if not artifacts or not self.session.traits.log_correlation or log_tail is None:
            return artifacts
        recent = log_tail.last(self.log_correlation_lines)
        return [art for art in artifacts if any(art.name in line for line in recent)]

    # -- export ------------------------------------------------------------

    def _export_batch(self, artifacts: list[_Artifact], exported: list[ExportedImageRecord]) -> None:
        """Export ``artifacts`` in order, appending each success to ``exported`` as it happens."""
        resolver = PathAvailabilityResolver(max_path_length=MAX_PATH_LENGTH)
        for art in artifacts:
            try:
                exported.append(self._export_one(art, resolver))
            except SessionFatalError:
                raise
            except Exception as exc:  # noqa: BLE001
                self.logger.warning("Failed to move image %s - will retry next tick (%s)", art.name, exc)

    def _export_one(self, art: _Artifact, resolver: PathAvailabilityResolver) -> ExportedImageRecord:
        session = self.session
        now = datetime.fromtimestamp(self.clock())
        saved = self._saved_chunks.get(art.path)
        if saved is not None:
            record = parse_metadata(media.side_channel_text(saved))
        else:
            record = read_image_metadata(art.path)

        dest_dir = session.export_dir
        if session.subfolders_per_prompt:
            folder = prompt_subfolder_name(
                record.prompt,
                len(os.path.abspath(session.export_dir)),
                now=now,
                strip_wildcards=session.filename.strip_wildcards,
            )
            dest_dir = os.path.join(dest_dir, folder)
        os.makedirs(dest_dir, exist_ok=True)

        index = self.image_count + 1
        width = len(str(max(session.target_image_count, 1)))
        filename = build_export_filename(
            record,
            session,
            len(os.path.abspath(dest_dir)),
            str(index).zfill(width),
            now=now,
        )

        self._apply_pending_mask(art.path)
        candidate = os.path.join(dest_dir, filename)
        self.logger.debug("Trying to move %s => %s", art.name, candidate)
        destination = move_without_overwrite(art.path, candidate, resolver)

        self._saved_chunks.pop(art.path, None)
        self._masked_sources.discard(art.path)
        self.image_count = index
        self.logger.info("Exported %s => %s", art.name, destination)
        return ExportedImageRecord(art.path, destination, record)

    def _apply_pending_mask(self, image_path: str) -> None:
        saved = self._saved_chunks.get(image_path)
        if saved is None:
            mask_path = self.session.mask_path
            if not mask_path or not self.session.traits.mask_overlay or not os.path.exists(mask_path):
                return
            # The overlay rewrites the file without text chunks; keep them until the move lands.
            saved = media.read_text_chunks(image_path)
            self._saved_chunks[image_path] = saved

        if image_path not in self._masked_sources:
            self.mask_overlay(image_path, self.session.mask_path)
            self._masked_sources.add(image_path)
        if saved:
            media.write_text_chunks(image_path, saved)

    # -- publish -----------------------------------------------------------

    def _publish(self, exported: list[ExportedImageRecord]) -> None:
        self.published.extend(rec.destination_path for rec in exported)
        if self.preview_sink is None:
            return
        paths = [p for p in self.published if os.path.exists(p)]
        if not paths:
            return
        try:
            self.preview_sink(paths)
        except Exception as exc:  # noqa: BLE001
            self.logger.warning("Preview sink rejected %d images: %s", len(paths), exc)
