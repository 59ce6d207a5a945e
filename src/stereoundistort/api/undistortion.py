"""
Pinhole camera synthesis for distorted cameras, and image/scene undistortion.

The synthesized camera keeps the principal point of the input camera and
picks a focal length and an image size such that the undistorted image
covers the distorted one according to `UndistortCameraOptions.blank_pixels`.

General lens models have no closed-form inverse and their back-projection
degrades (non-monotonic, non-finite) far outside the designed field of view.
Two bounded searches keep every evaluation inside the valid domain:

- a pixel-by-pixel march from the principal point towards the farthest
  corner, which stops at the first loss of monotonicity or at max_fov/2;
- a 32-step bisection along individual rays (`select_point_on_ray`).
"""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from stereoundistort.core.camera import Camera, CameraModelError
from stereoundistort.core.image_io import Bitmap
from stereoundistort.core.warp import RemapWarpExecutor, WarpExecutor
from stereoundistort.options import OptionsValidationError, UndistortCameraOptions
from stereoundistort.scene import Scene

logger = logging.getLogger(__name__)

NUM_BISECTION_STEPS = 32
# Radius steps back-projected per batch; the march never evaluates past the
# batch holding its first invalid step.
MARCH_BLOCK_SIZE = 32


def _within_angles(
    world: np.ndarray, max_angle: float, max_horizontal_angle: float, max_vertical_angle: float
) -> np.ndarray:
    with np.errstate(invalid="ignore"):
        vertical = np.abs(np.arctan(world[..., 1]))
        horizontal = np.abs(np.arctan(world[..., 0]))
        full = np.arctan(np.linalg.norm(world, axis=-1))
        # NaN compares False, so non-finite back-projections are invalid.
        return (vertical < max_vertical_angle) & (horizontal < max_horizontal_angle) & (full < max_angle)


def select_point_on_ray(
    camera: Camera,
    origin: np.ndarray,
    target: np.ndarray,
    max_length: float,
    max_angle: float,
    max_horizontal_angle: float,
    max_vertical_angle: float,
) -> np.ndarray:
    """
    Farthest point from `origin` towards `target` whose back-projection is valid.

    The search runs over the distance m in [0, min(max_length, |target-origin|)]
    with a fixed number of bisection steps. A point is valid when the
    back-projected direction (x, y) satisfies |atan(y)| < max_vertical_angle,
    |atan(x)| < max_horizontal_angle and atan(|(x, y)|) < max_angle (radians).

    `target` may be a single point (2,) or a batch (N,2); all rays are bisected
    together. When nothing along a ray is valid, `origin` is returned.
    """
    origin = np.asarray(origin, dtype=np.float64).reshape(2)
    target = np.asarray(target, dtype=np.float64)
    single = target.ndim == 1
    targets = target.reshape(-1, 2)

    diff = targets - origin
    dist = np.linalg.norm(diff, axis=1)
    direction = diff / np.where(dist > 0.0, dist, 1.0)[:, None]

    lo = np.zeros_like(dist)
    hi = np.minimum(max(float(max_length), 0.0), dist)
    for _ in range(NUM_BISECTION_STEPS):
        mid = 0.5 * (lo + hi)
        world = camera.image_to_world(origin + direction * mid[:, None])
        valid = _within_angles(world, max_angle, max_horizontal_angle, max_vertical_angle)
        lo = np.where(valid, mid, lo)
        hi = np.where(valid, hi, mid)

    points = origin + direction * lo[:, None]
    return points[0] if single else points


@dataclass(frozen=True)
class ValidDomain:
    """Disk around the principal point where back-projection is trusted."""

    principal_point: np.ndarray  # (2,)
    radius: float  # pixels
    fov_half: float  # radians


def _image_corners(camera: Camera) -> np.ndarray:
    w, h = float(camera.width), float(camera.height)
    # Opposite corners are two apart.
    return np.array([[0.0, 0.0], [w, 0.0], [w, h], [0.0, h]], dtype=np.float64)


def estimate_valid_domain(camera: Camera, max_fov: float) -> ValidDomain:
    """
    March outward from the principal point, one pixel at a time, towards the
    farthest image corner. The march stops at the first step whose incidence
    angle does not increase or exceeds max_fov/2 (radians).
    """
    image_size = np.array([camera.width, camera.height], dtype=np.float64)
    default_radius = float(np.linalg.norm(image_size))
    default_fov_half = 0.5 * float(max_fov)

    if len(camera.principal_point_idxs) != 2:
        return ValidDomain(principal_point=0.5 * image_size, radius=default_radius, fov_half=default_fov_half)

    pp = np.array([camera.principal_point_x, camera.principal_point_y], dtype=np.float64)
    diffs = _image_corners(camera) - pp
    norms = np.linalg.norm(diffs, axis=1)
    k = int(np.argmax(norms))
    max_radius = float(norms[k])

    steps = np.arange(1.0, max_radius) if max_radius > 1.0 else np.zeros((0,))
    corner_dir = diffs[k] / max_radius if max_radius > 0.0 else np.zeros(2)
    radius = None
    fov_half = 0.0
    for start in range(0, steps.size, MARCH_BLOCK_SIZE):
        block = steps[start : start + MARCH_BLOCK_SIZE]
        world = camera.image_to_world(pp + block[:, None] * corner_dir)
        with np.errstate(invalid="ignore"):
            phi = np.arctan(np.linalg.norm(world, axis=1))
            prev = np.concatenate([[fov_half], phi[:-1]])
            invalid = ~np.isfinite(phi) | (phi <= prev) | (2.0 * phi > max_fov)
        n_valid = int(np.argmax(invalid)) if np.any(invalid) else int(block.size)
        if n_valid > 0:
            radius = float(block[n_valid - 1])
            fov_half = float(phi[n_valid - 1])
        if n_valid < block.size:
            break

    if radius is None:
        logger.warning(
            "%s camera: no valid radius found around the principal point, using the full image diagonal",
            camera.model_name,
        )
        return ValidDomain(principal_point=pp, radius=default_radius, fov_half=default_fov_half)

    return ValidDomain(principal_point=pp, radius=radius, fov_half=fov_half)


def _focal_from_fov(extent: float, fov: float) -> float:
    if not np.isfinite(fov) or fov <= 0.0:
        return float("nan")
    return extent / 2.0 / float(np.tan(fov / 2.0))


def estimate_focal_length_from_fov(
    camera: Camera, domain: ValidDomain, max_horizontal_fov: float, max_vertical_fov: float
) -> float:
    """
    Largest focal length among the candidates preserving the diagonal,
    corner-to-corner, horizontal and vertical fields of view (radians).
    """
    w, h = float(camera.width), float(camera.height)
    diagonal = float(np.hypot(w, h))
    pp = domain.principal_point

    def probe(targets: np.ndarray) -> np.ndarray:
        return select_point_on_ray(
            camera,
            pp,
            targets,
            domain.radius,
            domain.fov_half,
            max_horizontal_fov / 2.0,
            max_vertical_fov / 2.0,
        )

    candidates = [_focal_from_fov(diagonal, 2.0 * domain.fov_half)]

    corner_angles = np.arctan(np.linalg.norm(camera.image_to_world(probe(_image_corners(camera))), axis=1))
    for i in range(2):
        candidates.append(_focal_from_fov(diagonal, float(corner_angles[i] + corner_angles[i + 2])))

    # left, right, top, bottom edge midpoints through the principal point
    edges = np.array([[0.0, pp[1]], [w, pp[1]], [pp[0], 0.0], [pp[0], h]], dtype=np.float64)
    edge_world = camera.image_to_world(probe(edges))
    horizontal_fov = float(np.sum(np.arctan(np.abs(edge_world[:2, 0]))))
    vertical_fov = float(np.sum(np.arctan(np.abs(edge_world[2:, 1]))))
    candidates.append(_focal_from_fov(w, min(max_horizontal_fov, horizontal_fov)))
    candidates.append(_focal_from_fov(h, min(max_vertical_fov, vertical_fov)))

    return float(np.nanmax(candidates))


def _blend_scale(min_scale: float, max_scale: float, options: UndistortCameraOptions) -> float:
    with np.errstate(all="ignore"):
        scale = 1.0 / (min_scale * options.blank_pixels + max_scale * (1.0 - options.blank_pixels))
    if not np.isfinite(scale):
        scale = 1.0
    return float(np.clip(scale, options.min_scale, options.max_scale))


def scale_to_image_content(
    options: UndistortCameraOptions,
    camera: Camera,
    undistorted: Camera,
    domain: ValidDomain,
    max_horizontal_fov: float,
    max_vertical_fov: float,
) -> Camera:
    """
    Resize `undistorted` so that the distorted image border lands on the
    undistorted image border, interpolating between "lose no source pixel"
    and "no blank output pixel" with options.blank_pixels.
    """
    w, h = float(camera.width), float(camera.height)
    ys = np.arange(camera.height, dtype=np.float64) + 0.5
    xs = np.arange(camera.width, dtype=np.float64) + 0.5

    def border(targets: np.ndarray) -> np.ndarray:
        points = select_point_on_ray(
            camera,
            domain.principal_point,
            targets,
            domain.radius,
            domain.fov_half,
            max_horizontal_fov / 2.0,
            max_vertical_fov / 2.0,
        )
        return undistorted.world_to_image(camera.image_to_world(points))

    left = border(np.stack([np.full_like(ys, 0.5), ys], axis=1))
    right = border(np.stack([np.full_like(ys, w - 0.5), ys], axis=1))
    top = border(np.stack([xs, np.full_like(xs, 0.5)], axis=1))
    bottom = border(np.stack([xs, np.full_like(xs, h - 0.5)], axis=1))

    left_min_x, left_max_x = np.min(left[:, 0]), np.max(left[:, 0])
    right_min_x, right_max_x = np.min(right[:, 0]), np.max(right[:, 0])
    top_min_y, top_max_y = np.min(top[:, 1]), np.max(top[:, 1])
    bottom_min_y, bottom_max_y = np.min(bottom[:, 1]), np.max(bottom[:, 1])

    cx = np.float64(undistorted.principal_point_x)
    cy = np.float64(undistorted.principal_point_y)

    with np.errstate(all="ignore"):
        # Undistorted image contains all pixels of the distorted image.
        min_scale_x = np.minimum(cx / (cx - left_min_x), (w - 0.5 - cx) / (right_max_x - cx))
        min_scale_y = np.minimum(cy / (cy - top_min_y), (h - 0.5 - cy) / (bottom_max_y - cy))
        # No blank pixels in the undistorted image.
        max_scale_x = np.maximum(cx / (cx - left_max_x), (w - 0.5 - cx) / (right_min_x - cx))
        max_scale_y = np.maximum(cy / (cy - top_max_y), (h - 0.5 - cy) / (bottom_min_y - cy))

    scale_x = _blend_scale(float(min_scale_x), float(max_scale_x), options)
    scale_y = _blend_scale(float(min_scale_y), float(max_scale_y), options)

    new_width = int(max(1.0, scale_x * undistorted.width))
    new_height = int(max(1.0, scale_y * undistorted.height))
    logger.debug("content scale x=%.4f y=%.4f -> %dx%d", scale_x, scale_y, new_width, new_height)
    return undistorted.with_size(new_width, new_height).with_principal_point(
        float(cx) * new_width / w, float(cy) * new_height / h
    )


def undistort_camera(options: UndistortCameraOptions, camera: Camera) -> Camera:
    """
    Build the pinhole camera that replaces `camera` after undistortion.

    The result is always a PINHOLE camera with width/height >= 1, or the
    configured override camera. Deterministic for identical inputs.
    """
    options.validate()

    if options.camera_model_override:
        try:
            override = Camera.from_param_string(
                options.camera_model_override, camera.width, camera.height, options.camera_model_override_params
            )
        except CameraModelError as e:
            raise OptionsValidationError(f"invalid camera override: {e}") from e
        if not override.verify_params():
            raise OptionsValidationError(f"invalid camera override parameters for {override.model_name}")
        return override

    max_fov = float(np.deg2rad(options.max_fov))
    max_horizontal_fov = float(np.deg2rad(options.max_horizontal_fov))
    max_vertical_fov = float(np.deg2rad(options.max_vertical_fov))

    domain = estimate_valid_domain(camera, max_fov)

    if options.estimate_focal_length_from_fov:
        fx = fy = estimate_focal_length_from_fov(camera, domain, max_horizontal_fov, max_vertical_fov)
    else:
        idxs = camera.focal_length_idxs
        if len(idxs) == 1:
            fx = fy = camera.focal_length
        elif len(idxs) == 2:
            fx, fy = camera.focal_length_x, camera.focal_length_y
        else:
            raise CameraModelError(
                f"{camera.model_name}: only one or two focal length parameters are supported, got {len(idxs)}"
            )

    undistorted = Camera.create(
        "PINHOLE",
        camera.width,
        camera.height,
        [fx, fy, camera.principal_point_x, camera.principal_point_y],
    )

    if not camera.is_pinhole:
        undistorted = scale_to_image_content(
            options, camera, undistorted, domain, max_horizontal_fov, max_vertical_fov
        )

    if options.max_image_size > 0:
        max_image_scale = min(
            options.max_image_size / float(undistorted.width),
            options.max_image_size / float(undistorted.height),
        )
        if max_image_scale < 1.0:
            undistorted = undistorted.rescale(max_image_scale)

    logger.debug(
        "undistorted %s %dx%d -> PINHOLE %dx%d params=%s",
        camera.model_name,
        camera.width,
        camera.height,
        undistorted.width,
        undistorted.height,
        undistorted.params,
    )
    return undistorted


def undistort_image(
    options: UndistortCameraOptions,
    distorted_image: Bitmap,
    distorted_camera: Camera,
    warper: Optional[WarpExecutor] = None,
) -> tuple[Bitmap, Camera]:
    """
    Undistort one image; returns (undistorted_image, undistorted_camera).
    """
    if (distorted_image.width, distorted_image.height) != (distorted_camera.width, distorted_camera.height):
        raise ValueError(
            f"image is {distorted_image.width}x{distorted_image.height} but camera is "
            f"{distorted_camera.width}x{distorted_camera.height}"
        )
    undistorted_camera = undistort_camera(options, distorted_camera)
    warper = warper if warper is not None else RemapWarpExecutor()
    undistorted_image = warper.warp(distorted_camera, undistorted_camera, distorted_image)
    return undistorted_image, undistorted_camera


def undistort_scene(options: UndistortCameraOptions, scene: Scene) -> Scene:
    """
    Copy of `scene` with undistorted cameras and remapped 2D observations.
    """
    cameras = {cid: undistort_camera(options, cam) for cid, cam in scene.cameras.items()}
    images = {}
    for image_id, image in scene.images.items():
        distorted = scene.cameras[image.camera_id]
        undistorted = cameras[image.camera_id]
        points = np.asarray(image.points2D, dtype=np.float64).reshape(-1, 2)
        if points.shape[0]:
            points = undistorted.world_to_image(distorted.image_to_world(points))
        images[image_id] = dataclasses.replace(image, points2D=points.copy())
    return Scene(cameras=cameras, images=images)
