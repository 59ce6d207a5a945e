from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from stereoundistort.api.undistortion import undistort_camera
from stereoundistort.batch import BatchReport, ImageUndistorter, StereoPairRectifier
from stereoundistort.core.camera import CAMERA_MODELS, Camera
from stereoundistort.options import UndistortCameraOptions, parse_undistort_options
from stereoundistort.scene import load_scene

_OPTION_KEYS = (
    "blank_pixels",
    "min_scale",
    "max_scale",
    "max_image_size",
    "max_fov",
    "max_horizontal_fov",
    "max_vertical_fov",
    "camera_model_override",
    "camera_model_override_params",
    "estimate_focal_length_from_fov",
)


def _add_option_args(p: argparse.ArgumentParser) -> None:
    g = p.add_argument_group("undistortion options")
    g.add_argument("--options", type=Path, default=None, help="JSON file with undistortion options.")
    g.add_argument("--blank-pixels", type=float, default=None, help="0 crops to valid pixels, 1 keeps all pixels.")
    g.add_argument("--min-scale", type=float, default=None)
    g.add_argument("--max-scale", type=float, default=None)
    g.add_argument("--max-image-size", type=int, default=None, help="Cap on the larger output dimension (0=none).")
    g.add_argument("--max-fov", type=float, default=None, help="Maximum field of view in degrees.")
    g.add_argument("--max-horizontal-fov", type=float, default=None)
    g.add_argument("--max-vertical-fov", type=float, default=None)
    g.add_argument("--camera-model-override", type=str, default=None, choices=sorted(CAMERA_MODELS))
    g.add_argument("--camera-model-override-params", type=str, default=None, help='e.g. "500, 320, 240"')
    g.add_argument(
        "--estimate-focal-length-from-fov",
        action="store_true",
        default=None,
        help="Derive the focal length from the field of view instead of copying it.",
    )


def options_from_args(args: argparse.Namespace) -> UndistortCameraOptions:
    data: dict[str, Any] = {}
    if args.options is not None:
        data.update(json.loads(Path(args.options).read_text(encoding="utf-8")))
    for key in _OPTION_KEYS:
        value = getattr(args, key)
        if value is not None:
            data[key] = value
    return parse_undistort_options(data)


def _report_exit_code(report: BatchReport) -> int:
    logging.getLogger(__name__).info(
        "Done: %d written, %d skipped, %d failed%s",
        len(report.written),
        len(report.skipped),
        len(report.failed),
        " (cancelled)" if report.cancelled else "",
    )
    return 0 if not report.failed else 1


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="stereoundistort")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    sub = parser.add_subparsers(dest="cmd", required=True)

    cam = sub.add_parser("undistort-camera", help="Print the pinhole camera that replaces a distorted camera.")
    cam.add_argument("--model", type=str, required=True, choices=sorted(CAMERA_MODELS))
    cam.add_argument("--width", type=int, required=True)
    cam.add_argument("--height", type=int, required=True)
    cam.add_argument("--params", type=str, required=True, help='Comma-separated parameters, e.g. "500, 320, 240, 0.1"')
    _add_option_args(cam)

    und = sub.add_parser("undistort-images", help="Undistort every image of a scene.")
    und.add_argument("scene", type=Path, help="Scene JSON (stereoundistort.scene.v0).")
    und.add_argument("--images", type=Path, required=True, help="Directory containing the distorted images.")
    und.add_argument("--out", type=Path, required=True)
    und.add_argument("--num-workers", type=int, default=None)
    und.add_argument("--write-projection-matrices", action="store_true", help="Also write K[R|t] per image.")
    _add_option_args(und)

    rect = sub.add_parser("rectify-stereo", help="Undistort and rectify stereo pairs of a scene.")
    rect.add_argument("scene", type=Path, help="Scene JSON (stereoundistort.scene.v0).")
    rect.add_argument("--images", type=Path, required=True, help="Directory containing the distorted images.")
    rect.add_argument("--out", type=Path, required=True)
    rect.add_argument(
        "--pair",
        nargs=2,
        action="append",
        required=True,
        metavar=("NAME1", "NAME2"),
        help="Image names of one stereo pair (repeatable).",
    )
    rect.add_argument("--num-workers", type=int, default=None)
    _add_option_args(rect)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    options = options_from_args(args)

    if args.cmd == "undistort-camera":
        camera = Camera.from_param_string(args.model, args.width, args.height, args.params)
        undistorted = undistort_camera(options, camera)
        print(json.dumps(undistorted.to_dict(), indent=2))
        return 0

    if args.cmd == "undistort-images":
        scene = load_scene(args.scene)
        report = ImageUndistorter(
            options,
            scene,
            args.images,
            args.out,
            num_workers=args.num_workers,
            write_projection_matrices=args.write_projection_matrices,
        ).run()
        return _report_exit_code(report)

    if args.cmd == "rectify-stereo":
        scene = load_scene(args.scene)
        try:
            pairs = [(scene.image_by_name(a).image_id, scene.image_by_name(b).image_id) for a, b in args.pair]
        except KeyError as e:
            parser.error(f"--pair: {e.args[0]}")
        report = StereoPairRectifier(options, scene, args.images, args.out, pairs, num_workers=args.num_workers).run()
        return _report_exit_code(report)

    raise AssertionError(f"Unhandled cmd: {args.cmd}")


if __name__ == "__main__":
    sys.exit(main())
