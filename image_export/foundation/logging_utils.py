"""Operational logging setup for export sessions."""

from __future__ import annotations

import logging
import os

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"


def setup_operational_logger(log_dir: str, session_id: str) -> tuple[logging.Logger, str]:
    """
    Configure a per-session logger writing to stdout (INFO) and a UTF-8 file (DEBUG).

    Calling it again for the same session id replaces the handlers instead of
    stacking duplicates.
    """

    os.makedirs(log_dir, exist_ok=True)
    log_file = os.path.join(log_dir, f"{session_id}_export.log")

    logger = logging.getLogger(f"image_export.{session_id}")
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT)

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(logging.INFO)
    stream_handler.setFormatter(formatter)

    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    logger.propagate = False

    logger.info("Operational logging initialized for export session %s", session_id)
    logger.debug("Operational log file: %s", log_file)
    return logger, log_file
