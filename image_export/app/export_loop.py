from __future__ import annotations

import logging
import os
import threading
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

from image_export.foundation.logging_utils import setup_operational_logger
from image_export.framework.config import ExportConfig
from image_export.framework.export_pipeline import ExportPipeline, ExportState, PreviewSink
from image_export.framework.session import LogTail, ProcessHandle


def generate_session_id() -> str:
    return f"{datetime.now().strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4()}"


class ExportLoop:
    """
    Drive an ``ExportPipeline`` on a background thread.

    Waits ``startup_delay_s`` before the first tick and ``interval_s`` between
    ticks. Both waits are interruptible by ``stop()``.
    """

    def __init__(
        self,
        pipeline: ExportPipeline,
        *,
        startup_delay_s: float = 1.0,
        interval_s: float = 0.1,
        on_finished: Callable[[dict[str, Any]], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._pipeline: ExportPipeline | None = pipeline
        self.startup_delay_s = startup_delay_s
        self.interval_s = interval_s
        self.on_finished = on_finished
        self.logger = logger or pipeline.logger
        self.summary: dict[str, Any] | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def pipeline(self) -> ExportPipeline | None:
        return self._pipeline

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("Export loop already started")
        self._thread = threading.Thread(target=self.run, name="image-export", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        pipeline = self._pipeline
        if pipeline is not None:
            pipeline.request_cancel()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the loop thread; True once it has finished."""
        if self._thread is None:
            return self.summary is not None
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def run(self) -> dict[str, Any]:
        pipeline = self._pipeline
        if pipeline is None:
            raise RuntimeError("Export loop already finished")

        self._stop.wait(self.startup_delay_s)
        while pipeline.tick() is not ExportState.TERMINATED:
            self._stop.wait(self.interval_s)

        self.logger.info("Export loop end")
        summary = pipeline.summary()
        self.summary = summary
        self._pipeline = None

        if self.on_finished is not None:
            try:
                self.on_finished(summary)
            except Exception:  # noqa: BLE001
                self.logger.exception("Export on_finished callback failed")
        return summary


def run_export_loop(
    cfg_dict: dict[str, Any],
    images_dir: str,
    target_image_count: int,
    *,
    session_id: str | None = None,
    config_meta: dict[str, Any] | None = None,
    model_name: str = "",
    process: ProcessHandle | None = None,
    log_tail: LogTail | None = None,
    preview_sink: PreviewSink | None = None,
    cancel_session: Callable[[str], None] | None = None,
    import_in_progress: Callable[[], bool] | None = None,
) -> dict[str, Any]:
    """Export one generation session in the foreground and return the pipeline summary."""

    cfg, cfg_warnings = ExportConfig.from_dict(cfg_dict)

    session_id = session_id or generate_session_id()
    logger, log_path = setup_operational_logger(cfg.log_dir, session_id)

    if config_meta:
        mode = config_meta.get("mode")
        paths = config_meta.get("paths") or []
        env_var = config_meta.get("env_var") or "IMAGE_EXPORT_CONFIG"
        if mode in {"env", "explicit"} and paths:
            label = f"env {env_var}" if mode == "env" else "explicit path"
            logger.info("Loaded config from %s=%s", label, paths[0])
        elif len(paths) > 1:
            logger.info("Loaded config base=%s local=%s", paths[0], paths[1])
        elif paths:
            logger.info("Loaded config base=%s", paths[0])

    for warning in cfg_warnings:
        logger.warning("%s", warning)

    session = cfg.session_context(
        images_dir,
        target_image_count,
        model_name=model_name,
        process=process,
        log_tail=log_tail,
    )
    logger.info(
        "Export session %s: watching %s (backend=%s, target=%d) => %s",
        session_id,
        session.images_dir,
        session.backend,
        session.target_image_count,
        session.export_dir,
    )
    logger.debug("Operational log at %s", log_path)

    pipeline = ExportPipeline(
        session,
        preview_sink=preview_sink,
        cancel_session=cancel_session,
        import_in_progress=import_in_progress,
        min_image_age_s=cfg.loop.min_image_age_ms / 1000.0,
        log_correlation_lines=cfg.loop.log_correlation_lines,
        logger=logger,
    )
    loop = ExportLoop(
        pipeline,
        startup_delay_s=cfg.loop.startup_delay_s,
        interval_s=cfg.loop.interval_s,
        logger=logger,
    )

    try:
        loop.start()
        try:
            while not loop.join(timeout=0.5):
                pass
        except KeyboardInterrupt:
            logger.info("Interrupted; cancelling export session %s", session_id)
            loop.stop()
            loop.join()
        summary = loop.summary or pipeline.summary()
        logger.info(
            "Export session %s finished: reason=%s exported=%d",
            session_id,
            summary["reason"],
            summary["exported"],
        )
        summary["session_id"] = session_id
        summary["log_path"] = os.path.abspath(log_path)
        return summary
    finally:
        for handler in list(logger.handlers):
            handler.flush()
            handler.close()
        logger.handlers.clear()
