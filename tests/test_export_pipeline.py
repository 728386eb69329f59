import logging
import os
import time

import pytest
from PIL import Image, PngImagePlugin

from image_export.framework import export_pipeline, media
from image_export.framework.export_pipeline import ExportPipeline, ExportState
from image_export.framework.filenames import MAX_PATH_LENGTH, FilenameBudgetError
from image_export.framework.session import FilenameOptions, GenerationSessionContext, LogTail

PLAIN_NAMES = FilenameOptions(timestamp="none", include_seed=False, include_scale=False, include_sampler=False)


def _png(path, prompt: str | None = None, color=(200, 10, 10)) -> str:
    info = PngImagePlugin.PngInfo()
    if prompt is not None:
        info.add_text("Dream", f'"{prompt}" -s 10 -S 1 -W 8 -H 8')
    Image.new("RGB", (8, 8), color).save(path, pnginfo=info)
    return str(path)


def _session(tmp_path, **overrides) -> GenerationSessionContext:
    images = tmp_path / "images"
    images.mkdir(exist_ok=True)
    values = dict(
        images_dir=str(images),
        output_dir=str(tmp_path / "out"),
        target_image_count=3,
        start_time=time.time() - 5,
        filename=PLAIN_NAMES,
    )
    values.update(overrides)
    return GenerationSessionContext(**values)


def _aged_clock():
    return time.time() + 10


class _Process:
    def __init__(self, returncode=None):
        self.returncode = returncode

    def poll(self):
        return self.returncode


def test_three_images_are_exported_in_creation_order_then_terminates(tmp_path):
    session = _session(tmp_path)
    images = tmp_path / "images"
    for name, prompt in (("c.png", "first"), ("b.png", "second"), ("a.png", "third")):
        _png(images / name, prompt)
        time.sleep(0.05)
    published: list[list[str]] = []

    pipeline = ExportPipeline(session, preview_sink=published.append, clock=_aged_clock)

    assert pipeline.state is ExportState.IDLE
    assert pipeline.tick() is ExportState.DRAINING
    assert os.listdir(images) == []
    assert pipeline.tick() is ExportState.TERMINATED
    assert pipeline.termination_reason == "finished"

    out = tmp_path / "out"
    assert published[-1] == [str(out / "1-first.png"), str(out / "2-second.png"), str(out / "3-third.png")]
    assert pipeline.image_count == 3
    assert pipeline.summary()["exported"] == 3


def test_young_image_waits_for_age_gate(tmp_path):
    session = _session(tmp_path)
    path = _png(tmp_path / "images" / "fresh.png", "fresh")
    mtime = os.stat(path).st_mtime
    now = [mtime + 0.05]

    pipeline = ExportPipeline(session, clock=lambda: now[0])

    assert pipeline.tick() is ExportState.DRAINING
    assert os.path.exists(path)
    assert pipeline.image_count == 0

    now[0] = mtime + 0.3
    pipeline.tick()
    assert not os.path.exists(path)
    assert pipeline.published == [str(tmp_path / "out" / "1-fresh.png")]


def test_images_from_before_session_start_are_ignored(tmp_path):
    images = tmp_path / "images"
    images.mkdir()
    old = _png(images / "old.png", "old")
    session = _session(tmp_path, start_time=time.time() + 5)

    pipeline = ExportPipeline(session, clock=_aged_clock)

    assert pipeline.tick() is ExportState.DRAINING
    assert os.path.exists(old)


def test_log_correlation_waits_until_filename_is_logged(tmp_path):
    tail = LogTail()
    tail.append("Loading model")
    session = _session(tmp_path, backend="nmkdiffusers", process=_Process(), log_tail=tail)
    path = _png(tmp_path / "images" / "img_001.png", "boat")

    pipeline = ExportPipeline(session, clock=_aged_clock)

    assert pipeline.tick() is ExportState.RUNNING
    assert os.path.exists(path)

    tail.append("Saved images/img_001.png")
    assert pipeline.tick() is ExportState.RUNNING
    assert not os.path.exists(path)


def test_log_correlation_only_looks_at_recent_lines(tmp_path):
    tail = LogTail()
    tail.append("Saved img_001.png")
    tail.extend(f"step {i}" for i in range(5))
    session = _session(tmp_path, backend="nmkdiffusers", process=_Process(), log_tail=tail)
    path = _png(tmp_path / "images" / "img_001.png", "boat")

    ExportPipeline(session, clock=_aged_clock).tick()

    assert os.path.exists(path)


def test_process_exit_drains_then_terminates(tmp_path):
    process = _Process()
    tail = LogTail()
    session = _session(tmp_path, backend="nmkdiffusers", process=process, log_tail=tail)

    pipeline = ExportPipeline(session, clock=_aged_clock)
    assert pipeline.tick() is ExportState.RUNNING

    process.returncode = 0
    assert pipeline.tick() is ExportState.TERMINATED


def test_image_count_liveness_counts_exports(tmp_path):
    tail = LogTail()
    session = _session(tmp_path, backend="comfy", target_image_count=1, log_tail=tail)
    _png(tmp_path / "images" / "ComfyUI_00001_.png", "tower")
    tail.append("Prompt executed, saved ComfyUI_00001_.png")

    pipeline = ExportPipeline(session, clock=_aged_clock)

    assert pipeline.tick() is ExportState.RUNNING
    assert pipeline.image_count == 1
    assert pipeline.tick() is ExportState.TERMINATED


def test_sentinel_file_keeps_session_running(tmp_path):
    sentinel = tmp_path / "queue.lock"
    sentinel.write_text("", encoding="utf-8")
    session = _session(tmp_path, sentinel_path=str(sentinel))

    pipeline = ExportPipeline(session, clock=_aged_clock)

    assert pipeline.tick() is ExportState.RUNNING
    sentinel.unlink()
    assert pipeline.tick() is ExportState.TERMINATED


def test_import_in_progress_keeps_session_running(tmp_path):
    busy = [True]
    pipeline = ExportPipeline(_session(tmp_path), import_in_progress=lambda: busy[0], clock=_aged_clock)

    assert pipeline.tick() is ExportState.RUNNING
    busy[0] = False
    assert pipeline.tick() is ExportState.TERMINATED


def test_same_computed_name_gets_distinct_destinations(tmp_path):
    opts = FilenameOptions(timestamp="none", include_seed=False, include_scale=False, include_sampler=False)
    session = _session(tmp_path, filename=opts, target_image_count=3)
    out = tmp_path / "out"
    out.mkdir()
    (out / "1-dup.png").write_bytes(b"occupied")
    _png(tmp_path / "images" / "x.png", "dup")

    pipeline = ExportPipeline(session, clock=_aged_clock)
    pipeline.tick()

    assert pipeline.published == [str(out / "1-dup (1).png")]
    assert (out / "1-dup.png").read_bytes() == b"occupied"


def test_subfolders_per_prompt(tmp_path):
    session = _session(tmp_path, subfolders_per_prompt=True)
    _png(tmp_path / "images" / "a.png", "a red barn")
    _png(tmp_path / "images" / "b.png")

    pipeline = ExportPipeline(session, clock=_aged_clock)
    pipeline.tick()

    out = tmp_path / "out"
    assert os.path.exists(out / "a_red_barn" / "1.png")
    unknown = [d for d in os.listdir(out) if d.startswith("unknown_prompt_")]
    assert len(unknown) == 1
    assert pipeline.image_count == 2


def test_session_subfolder_is_used(tmp_path):
    session = _session(tmp_path, session_subdir_name="batch_7")
    _png(tmp_path / "images" / "a.png", "kite")

    ExportPipeline(session, clock=_aged_clock).tick()

    assert os.path.exists(tmp_path / "out" / "batch_7" / "1-kite.png")


def test_mask_is_overlaid_and_metadata_preserved(tmp_path):
    mask = tmp_path / "mask.png"
    Image.new("RGBA", (4, 4), (0, 255, 0, 255)).save(mask)
    session = _session(tmp_path, mask_path=str(mask))
    _png(tmp_path / "images" / "a.png", "meadow")

    pipeline = ExportPipeline(session, clock=_aged_clock)
    pipeline.tick()

    dst = pipeline.published[0]
    with Image.open(dst) as im:
        assert im.getpixel((0, 0)) == (0, 255, 0)
    assert media.read_text_chunks(dst)["Dream"].startswith('"meadow"')


def test_failed_image_is_retried_next_tick(tmp_path, caplog):
    mask = tmp_path / "mask.png"
    Image.new("RGBA", (8, 8), (0, 0, 0, 0)).save(mask)
    session = _session(tmp_path, mask_path=str(mask))
    src = _png(tmp_path / "images" / "a.png", "harbor")
    attempts = []

    def flaky_overlay(image_path, mask_path):
        attempts.append(image_path)
        if len(attempts) == 1:
            raise OSError("disk hiccup")
        media.overlay_mask(image_path, mask_path)

    caplog.set_level(logging.WARNING)
    pipeline = ExportPipeline(session, mask_overlay=flaky_overlay, clock=_aged_clock)

    assert pipeline.tick() is ExportState.DRAINING
    assert os.path.exists(src)
    assert "will retry next tick" in caplog.text

    pipeline.tick()
    assert not os.path.exists(src)
    assert len(attempts) == 2
    assert pipeline.image_count == 1


def test_filename_budget_overflow_cancels_session(tmp_path):
    session = _session(tmp_path, session_subdir_name="x" * 240)
    src = _png(tmp_path / "images" / "a.png", "cliff")
    cancelled: list[str] = []

    pipeline = ExportPipeline(session, cancel_session=cancelled.append, clock=_aged_clock)

    assert pipeline.tick() is ExportState.TERMINATED
    assert pipeline.termination_reason == "session-fatal"
    assert len(cancelled) == 1
    assert "too long" in cancelled[0]
    assert os.path.exists(src)


def test_preview_sink_errors_are_logged_not_raised(tmp_path, caplog):
    def broken_sink(paths):
        raise RuntimeError("preview closed")

    (tmp_path / "images").mkdir()
    _png(tmp_path / "images" / "a.png", "dune")
    caplog.set_level(logging.WARNING)
    pipeline = ExportPipeline(_session(tmp_path), preview_sink=broken_sink, clock=_aged_clock)

    assert pipeline.tick() is ExportState.DRAINING
    assert "preview closed" in caplog.text
    assert pipeline.tick() is ExportState.TERMINATED
    assert pipeline.termination_reason == "finished"


def test_sink_not_called_before_first_export(tmp_path):
    calls = []
    pipeline = ExportPipeline(_session(tmp_path), preview_sink=calls.append, import_in_progress=lambda: True)

    pipeline.tick()

    assert calls == []


def test_missing_watch_directory_ends_loop_with_error(tmp_path, caplog):
    session = GenerationSessionContext(
        images_dir=str(tmp_path / "gone"),
        output_dir=str(tmp_path / "out"),
        target_image_count=1,
    )
    caplog.set_level(logging.ERROR)

    pipeline = ExportPipeline(session)

    assert pipeline.tick() is ExportState.TERMINATED
    assert pipeline.termination_reason == "error"
    assert "Image export error" in caplog.text


def test_cancel_request_terminates_on_next_tick(tmp_path):
    pipeline = ExportPipeline(_session(tmp_path), import_in_progress=lambda: True)
    assert pipeline.tick() is ExportState.RUNNING

    pipeline.request_cancel()

    assert pipeline.tick() is ExportState.TERMINATED
    assert pipeline.termination_reason == "cancelled"
    assert pipeline.tick() is ExportState.TERMINATED


@pytest.mark.parametrize("name", ["notes.txt", ".hidden.png"])
def test_non_matching_files_are_not_artifacts(tmp_path, name):
    (tmp_path / "images").mkdir()
    (tmp_path / "images" / name).write_bytes(b"x")

    pipeline = ExportPipeline(_session(tmp_path), clock=_aged_clock)

    assert pipeline.tick() is ExportState.TERMINATED


def _output_dir_of_length(tmp_path, length: int) -> str:
    base = os.path.abspath(str(tmp_path))
    return os.path.join(base, "o" * (length - len(base) - 1))


def test_prompt_subfolders_fit_under_a_long_output_dir(tmp_path):
    output_dir = _output_dir_of_length(tmp_path, 170)
    session = _session(tmp_path, output_dir=output_dir, subfolders_per_prompt=True)
    _png(tmp_path / "images" / "a.png", "short")
    time.sleep(0.05)
    _png(tmp_path / "images" / "b.png", "word " * 60)
    published: list[list[str]] = []

    pipeline = ExportPipeline(session, preview_sink=published.append, clock=_aged_clock)

    assert pipeline.tick() is ExportState.DRAINING
    assert pipeline.image_count == 2
    assert sorted(os.listdir(output_dir)) == ["short", "word_word_word_word"]
    assert published[-1] == [os.path.join(output_dir, "short", "1.png"), os.path.join(output_dir, "word_word_word_word", "2.png")]
    assert all(len(p) <= MAX_PATH_LENGTH for p in published[-1])
    assert pipeline.tick() is ExportState.TERMINATED
    assert pipeline.termination_reason == "finished"


def test_images_exported_before_a_session_fatal_error_are_published(tmp_path, monkeypatch):
    session = _session(tmp_path)
    _png(tmp_path / "images" / "a.png", "first")
    time.sleep(0.05)
    second = _png(tmp_path / "images" / "b.png", "second")
    real_build = export_pipeline.build_export_filename
    calls = []

    def build_then_overflow(*args, **kwargs):
        calls.append(args)
        if len(calls) == 2:
            raise FilenameBudgetError("Filename too long for export directory")
        return real_build(*args, **kwargs)

    monkeypatch.setattr(export_pipeline, "build_export_filename", build_then_overflow)
    published: list[list[str]] = []
    cancelled: list[str] = []

    pipeline = ExportPipeline(session, preview_sink=published.append, cancel_session=cancelled.append, clock=_aged_clock)

    assert pipeline.tick() is ExportState.TERMINATED
    assert pipeline.termination_reason == "session-fatal"
    assert cancelled and "too long" in cancelled[0]
    first_dst = str(tmp_path / "out" / "1-first.png")
    assert pipeline.published == [first_dst]
    assert published == [[first_dst]]
    assert os.path.exists(second)


def test_metadata_survives_chunk_rewrite_failure_after_mask(tmp_path, monkeypatch):
    mask = tmp_path / "mask.png"
    Image.new("RGBA", (4, 4), (0, 255, 0, 255)).save(mask)
    session = _session(tmp_path, mask_path=str(mask))
    src = _png(tmp_path / "images" / "a.png", "meadow")
    overlays = []
    real_write = media.write_text_chunks
    writes = []

    def counting_overlay(image_path, mask_path):
        overlays.append(image_path)
        media.overlay_mask(image_path, mask_path)

    def write_fails_once(path, chunks):
        writes.append(path)
        if len(writes) == 1:
            raise OSError("disk full")
        real_write(path, chunks)

    monkeypatch.setattr(media, "write_text_chunks", write_fails_once)
    pipeline = ExportPipeline(session, mask_overlay=counting_overlay, clock=_aged_clock)

    pipeline.tick()
    assert os.path.exists(src)
    assert media.read_text_chunks(src) == {}

    pipeline.tick()
    assert not os.path.exists(src)
    assert len(overlays) == 1
    dst = str(tmp_path / "out" / "1-meadow.png")
    assert pipeline.published == [dst]
    assert media.read_text_chunks(dst)["Dream"].startswith('"meadow"')
    with Image.open(dst) as im:
        assert im.getpixel((0, 0)) == (0, 255, 0)


def test_images_from_before_session_start_are_logged_once(tmp_path, caplog):
    images = tmp_path / "images"
    images.mkdir()
    _png(images / "old.png", "old")
    session = _session(tmp_path, start_time=time.time() + 5)
    caplog.set_level(logging.DEBUG, logger="image_export.framework.export_pipeline")

    pipeline = ExportPipeline(session, clock=_aged_clock)
    pipeline.tick()
    pipeline.tick()

    messages = [r.getMessage() for r in caplog.records if "created before session start" in r.getMessage()]
    assert messages == ["Ignoring 1 image(s) created before session start: old.png"]
