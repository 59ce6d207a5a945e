"""
Image warping between camera models.

Both warps are backward maps: every destination pixel is traced back into the
source image and sampled there with `cv2.remap`. Destination pixels whose
source location falls outside the source raster (or is not finite) keep the
border value.

Notes
-----
- Pixel centres sit at +0.5 in camera coordinates; remap expects centres at
  integer positions, hence the -0.5 shift when building the maps.
- The homography variant maps a destination pixel p to H p on the destination
  camera's image plane, back-projects it through the destination camera and
  projects it through the (possibly distorted) source camera.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Tuple

import cv2
import numpy as np

from stereoundistort.core.camera import Camera
from stereoundistort.core.image_io import Bitmap


class WarpExecutor(Protocol):
    def warp(self, source_camera: Camera, target_camera: Camera, source_image: Bitmap) -> Bitmap: ...

    def warp_with_homography(
        self, H: np.ndarray, source_camera: Camera, target_camera: Camera, source_image: Bitmap
    ) -> Bitmap: ...


def _pixel_centers(camera: Camera) -> np.ndarray:
    xs = np.arange(camera.width, dtype=np.float64) + 0.5
    ys = np.arange(camera.height, dtype=np.float64) + 0.5
    grid_x, grid_y = np.meshgrid(xs, ys)
    return np.stack([grid_x, grid_y], axis=-1)


def _to_remap(source_points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    mapx = source_points[..., 0] - 0.5
    mapy = source_points[..., 1] - 0.5
    bad = ~(np.isfinite(mapx) & np.isfinite(mapy))
    mapx = np.where(bad, -1.0, mapx).astype(np.float32)
    mapy = np.where(bad, -1.0, mapy).astype(np.float32)
    return mapx, mapy


def build_camera_warp_maps(source_camera: Camera, target_camera: Camera) -> Tuple[np.ndarray, np.ndarray]:
    """Remap LUTs (mapx, mapy) of shape (H_target, W_target) into the source image."""
    world = target_camera.image_to_world(_pixel_centers(target_camera))
    return _to_remap(source_camera.world_to_image(world))


def build_homography_warp_maps(
    H: np.ndarray, source_camera: Camera, target_camera: Camera
) -> Tuple[np.ndarray, np.ndarray]:
    H = np.asarray(H, dtype=np.float64).reshape(3, 3)
    grid = _pixel_centers(target_camera)
    homog = np.concatenate([grid, np.ones(grid.shape[:2] + (1,), dtype=np.float64)], axis=-1)
    mapped = homog @ H.T
    with np.errstate(all="ignore"):
        plane = mapped[..., :2] / mapped[..., 2:3]
    world = target_camera.image_to_world(plane)
    return _to_remap(source_camera.world_to_image(world))


def _check_source(source_camera: Camera, source_image: Bitmap) -> None:
    if (source_image.width, source_image.height) != (source_camera.width, source_camera.height):
        raise ValueError(
            f"source image is {source_image.width}x{source_image.height}, "
            f"camera expects {source_camera.width}x{source_camera.height}"
        )


@dataclass(frozen=True)
class RemapWarpExecutor:
    interpolation: int = cv2.INTER_LINEAR
    border_mode: int = cv2.BORDER_CONSTANT
    border_value: float = 0.0

    def _remap(self, source_image: Bitmap, maps: Tuple[np.ndarray, np.ndarray]) -> Bitmap:
        mapx, mapy = maps
        pixels = cv2.remap(
            source_image.pixels,
            mapx,
            mapy,
            interpolation=self.interpolation,
            borderMode=self.border_mode,
            borderValue=self.border_value,
        )
        return Bitmap(pixels=pixels, metadata=dict(source_image.metadata))

    def warp(self, source_camera: Camera, target_camera: Camera, source_image: Bitmap) -> Bitmap:
        _check_source(source_camera, source_image)
        return self._remap(source_image, build_camera_warp_maps(source_camera, target_camera))

    def warp_with_homography(
        self, H: np.ndarray, source_camera: Camera, target_camera: Camera, source_image: Bitmap
    ) -> Bitmap:
        _check_source(source_camera, source_image)
        return self._remap(source_image, build_homography_warp_maps(H, source_camera, target_camera))
