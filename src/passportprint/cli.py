#!/usr/bin/env python3
"""
passportprint CLI

Run the whole pipeline headless: remove the background, put the subject on a
colour or picture, optionally adjust brightness/contrast/saturation, crop to a
catalog size at 300 DPI and save.

Usage:
  passportprint --input in.jpg --size 35x45
  passportprint -i in.jpg --background "#0284c7" --format jpeg --name visa
  passportprint -i in.jpg --background-image wall.jpg --bg-scale 1.5 --brightness 10
  passportprint -i in.jpg --backend local --crop 120,80,900,1157
"""

from __future__ import annotations

import argparse
import sys
from typing import List, Optional

from passportprint.app.dispatch import InlineDispatcher, ManualScheduler
from passportprint.app.export import DEFAULT_FILENAME
from passportprint.app.pipeline import PipelineController
from passportprint.config import get_settings
from passportprint.core.errors import UserInputError
from passportprint.core.models import (
    BACKGROUND_COLORS,
    OUTPUT_FORMATS,
    PHOTO_SIZES,
    ColorBackground,
    CropRectangle,
    ImageBackground,
    ImageBlob,
)
from passportprint.logging_setup import configure_logging
from passportprint.services.factory import build_image_ops


def _parse_crop(text: str) -> CropRectangle:
    try:
        x, y, w, h = (float(p) for p in text.split(","))
    except ValueError:
        raise argparse.ArgumentTypeError("crop must be x,y,width,height in pixels")
    return CropRectangle(x, y, w, h, "px")


def _build_arg_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    p = argparse.ArgumentParser(description="Make a print-ready passport/visa photo from any photo.")
    p.add_argument("--input", "-i", required=True, help="Path to input image")
    p.add_argument("--output-dir", "-o", default=".", help="Directory to write the photo into (default: .)")
    p.add_argument("--name", default=DEFAULT_FILENAME, help=f"Output file name without extension (default: {DEFAULT_FILENAME})")
    p.add_argument("--size", choices=sorted(PHOTO_SIZES), default=settings.default_size, help="Photo size")
    p.add_argument("--format", choices=OUTPUT_FORMATS, default=settings.default_format, help="Output format")

    bg = p.add_mutually_exclusive_group()
    bg.add_argument(
        "--background",
        default="#ffffff",
        help=f"Background colour #RRGGBB or a preset name ({', '.join(BACKGROUND_COLORS)})",
    )
    bg.add_argument("--background-image", help="Picture to use as the background")
    p.add_argument("--bg-scale", type=float, default=1.0, help="Background picture scale (0.5-2.0)")
    p.add_argument("--bg-offset-x", type=float, default=0.0, help="Background picture x offset (-1.0-1.0)")
    p.add_argument("--bg-offset-y", type=float, default=0.0, help="Background picture y offset (-1.0-1.0)")

    p.add_argument("--brightness", type=int, default=0, help="Brightness (-100..100)")
    p.add_argument("--contrast", type=float, default=1.0, help="Contrast (0.5..3.0)")
    p.add_argument("--saturation", type=float, default=1.0, help="Saturation (0.5..3.0)")

    p.add_argument("--crop", type=_parse_crop, help="Crop x,y,width,height in pixels (default: centered)")
    p.add_argument("--backend", choices=("remote", "local"), default=settings.backend, help="Where image operations run")
    p.add_argument("--service-url", default=settings.service_url, help="Photo service base URL (remote backend)")
    p.add_argument("--log-level", default=settings.log_level, help="Logging level")
    return p


def _background(args: argparse.Namespace):
    if args.background_image:
        return ImageBackground(
            image=ImageBlob.from_path(args.background_image),
            scale=args.bg_scale,
            offset_x=args.bg_offset_x,
            offset_y=args.bg_offset_y,
        )
    color = BACKGROUND_COLORS.get(args.background.capitalize(), args.background)
    return ColorBackground(color)


def _check(controller: PipelineController) -> None:
    """Operations run inline here, so a failure is already recorded; re-raise it."""
    if controller.last_error is not None:
        raise controller.last_error


def run_pipeline(controller: PipelineController, args: argparse.Namespace) -> str:
    controller.select_format(args.format)
    controller.select_size(args.size)
    controller.load_source(args.input)

    controller.remove_background()
    _check(controller)

    try:
        background = _background(args)
    except (ValueError, OSError) as e:
        raise UserInputError(str(e)) from e
    controller.apply_background(background)
    _check(controller)

    if (args.brightness, args.contrast, args.saturation) != (0, 1.0, 1.0):
        controller.set_adjustment(args.brightness, args.contrast, args.saturation)

    controller.proceed_to_crop()
    _check(controller)

    if args.crop is not None:
        controller.update_crop(args.crop)
    controller.finish_crop()
    _check(controller)

    return str(controller.export(args.output_dir, args.name))


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_arg_parser().parse_args(argv)
    configure_logging(args.log_level)

    settings = get_settings().model_copy(update={"backend": args.backend, "service_url": args.service_url})
    controller = PipelineController(
        build_image_ops(settings),
        ManualScheduler(),
        InlineDispatcher(),
        dpi=settings.dpi,
        adjust_window_ms=settings.adjust_debounce_ms,
    )

    try:
        out = run_pipeline(controller, args)
    except Exception as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    print(f"Saved: {out}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
