from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence
from dataclasses import asdict

INSPECT_COLUMNS = (
    "path",
    "format",
    "prompt",
    "negative_prompt",
    "steps",
    "width",
    "height",
    "cfg_scale",
    "sampler",
    "seed",
    "init_image_path",
    "init_strength",
    "seamless",
    "face_tool",
    "model",
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="image-export", add_help=True)
    sub = parser.add_subparsers(dest="command", required=True)

    watch = sub.add_parser("watch", help="Export images from a generation output directory")
    watch.add_argument("images_dir", help="Directory the generator writes images into")
    watch.add_argument("--config", default=None, help="Config file (default: env IMAGE_EXPORT_CONFIG or config/)")
    watch.add_argument("--target", type=int, default=0, help="Number of images the session will produce")
    watch.add_argument("--model", default="", help="Model name to record in filenames")

    inspect = sub.add_parser("inspect", help="Show the generation metadata embedded in images")
    inspect.add_argument("paths", nargs="+", help="Image files")
    inspect.add_argument("--csv", default=None, help="Write the table to this CSV file instead of stdout")

    return parser


def inspect_images(paths: Sequence[str]):
    import pandas as pd

    from .framework.metadata import read_image_metadata

    rows = []
    for path in paths:
        record = read_image_metadata(path)
        row = asdict(record)
        row["path"] = path
        row["format"] = record.format.value
        rows.append(row)
    return pd.DataFrame(rows, columns=list(INSPECT_COLUMNS))


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)

    if args.command == "watch":
        from .app.export_loop import run_export_loop
        from .foundation.config_io import load_config

        cfg_dict, cfg_meta = load_config(config_path=args.config) if args.config else load_config()
        summary = run_export_loop(
            cfg_dict,
            args.images_dir,
            args.target,
            model_name=args.model,
            config_meta=cfg_meta,
        )
        return 0 if summary["reason"] in ("finished", "cancelled") else 1

    if args.command == "inspect":
        table = inspect_images(args.paths)
        if args.csv:
            table.to_csv(args.csv, index=False)
            print(f"Wrote {len(table)} rows to {args.csv}")
        else:
            print(table.to_string(index=False))
        return 0

    raise AssertionError(f"Unhandled command: {args.command}")


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main(sys.argv[1:]))
