"""
Undistortion / rectification demo on a synthetic stereo rig.

It does:
1) render a checkerboard as seen by two distorted cameras (OpenCV model),
2) undistort one view and report how much of the frame was kept,
3) rectify the pair and write both rectified views together with Q.

Run:
  python docs/examples/undistort_rectify_demo.py --out docs/examples/_out
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path

import numpy as np
from scipy.spatial.transform import Rotation as Rot

from stereoundistort import (
    Camera,
    RelativePose,
    UndistortCameraOptions,
    rectify_and_undistort_stereo_images,
    undistort_camera,
    undistort_image,
)
from stereoundistort.core.geometry import rotmat_to_qvec
from stereoundistort.core.image_io import Bitmap, save_bitmap
from stereoundistort.core.warp import RemapWarpExecutor


def checkerboard(width: int, height: int, square: int) -> np.ndarray:
    yy, xx = np.mgrid[0:height, 0:width]
    return np.where(((xx // square) + (yy // square)) % 2 == 0, 230, 25).astype(np.uint8)


def render_distorted(camera: Camera, pattern: np.ndarray) -> Bitmap:
    # The pattern lives on an ideal pinhole plane with the same intrinsics.
    ideal = Camera.create(
        "PINHOLE",
        pattern.shape[1],
        pattern.shape[0],
        [camera.focal_length_x, camera.focal_length_y, pattern.shape[1] / 2.0, pattern.shape[0] / 2.0],
    )
    src = Bitmap(pixels=pattern)
    return RemapWarpExecutor().warp(ideal, camera, src)


def main() -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--out", type=Path, default=Path("docs/examples/_out"))
    ap.add_argument("--blank-pixels", type=float, default=0.0)
    args = ap.parse_args()

    cam = Camera.create("OPENCV", 640, 480, [520.0, 520.0, 320.0, 240.0, -0.18, 0.03, 0.0005, -0.0004])
    pattern = checkerboard(960, 720, 40)
    left = render_distorted(cam, pattern)
    right = render_distorted(cam, np.roll(pattern, -25, axis=1))

    options = UndistortCameraOptions(blank_pixels=args.blank_pixels)
    pinhole = undistort_camera(options, cam)
    undistorted, _ = undistort_image(options, left, cam)

    # Fraction of output pixels that actually sample the input.
    coverage = float(np.mean(undistorted.pixels > 0))

    pose = RelativePose.create(rotmat_to_qvec(Rot.from_rotvec([0.0, 0.02, 0.0]).as_matrix()), [-0.12, 0.0, 0.0])
    pair = rectify_and_undistort_stereo_images(options, left, right, cam, cam, pose)

    args.out.mkdir(parents=True, exist_ok=True)
    save_bitmap(args.out / "left_distorted.png", left)
    save_bitmap(args.out / "left_undistorted.png", undistorted)
    save_bitmap(args.out / "left_rectified.png", pair.image1)
    save_bitmap(args.out / "right_rectified.png", pair.image2)

    summary = {
        "distorted_camera": cam.to_dict(),
        "pinhole_camera": pinhole.to_dict(),
        "coverage": coverage,
        "Q": pair.Q.tolist(),
    }
    (args.out / "summary.json").write_text(json.dumps(summary, indent=2), encoding="utf-8")
    print(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
