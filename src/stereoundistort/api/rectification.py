"""
Epipolar rectification of calibrated pinhole stereo pairs.

Convention (same as `RelativePose`):
- camera 2 pose relative to camera 1 is X_2 = R X_1 + t
- both cameras are rotated by half of R (in opposite directions) towards the
  average orientation, then jointly rotated so that the baseline lies on the
  rectified x-axis
- the disparity-to-depth matrix Q acts on row vectors:
  [x, y, d, 1] @ Q = [X, Y, Z, W] (homogeneous 3D point in rectified camera 1)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.spatial.transform import Rotation as Rot

from stereoundistort.api.undistortion import undistort_camera
from stereoundistort.core.camera import Camera, CameraModelError
from stereoundistort.core.geometry import RelativePose
from stereoundistort.core.image_io import Bitmap
from stereoundistort.core.warp import RemapWarpExecutor, WarpExecutor
from stereoundistort.options import UndistortCameraOptions

logger = logging.getLogger(__name__)

_MIN_AXIS_NORM = np.finfo(np.float64).eps
_MIN_BASELINE = 1e-12


@dataclass(frozen=True)
class StereoRectification:
    H1: np.ndarray  # (3,3) camera 1 image plane -> rectified plane
    H2: np.ndarray  # (3,3) camera 2 image plane -> rectified plane
    Q: np.ndarray  # (4,4) disparity-to-depth, row-vector convention


@dataclass(frozen=True)
class RectifiedStereoPair:
    image1: Bitmap
    image2: Bitmap
    camera: Camera  # shared pinhole camera of both rectified images
    Q: np.ndarray


def _baseline_alignment(t: np.ndarray) -> np.ndarray:
    """Rotation that turns `t` onto +x or -x, whichever is closer."""
    x_unit = np.array([1.0, 0.0, 0.0], dtype=np.float64)
    if float(t @ x_unit) < 0.0:
        x_unit = -x_unit

    axis = np.cross(t, x_unit)
    axis_norm = float(np.linalg.norm(axis))
    if axis_norm < _MIN_AXIS_NORM:
        return np.eye(3, dtype=np.float64)

    cos_angle = abs(float(t @ x_unit)) / float(np.linalg.norm(t))
    angle = float(np.arccos(np.clip(cos_angle, -1.0, 1.0)))
    return Rot.from_rotvec(angle * axis / axis_norm).as_matrix()


def rectify_stereo_cameras(camera1: Camera, camera2: Camera, pose: RelativePose) -> StereoRectification:
    """
    Homographies H1, H2 and disparity-to-depth matrix Q of a pinhole stereo pair.

    Precondition: the baseline must not vanish (t_x != 0 after alignment);
    Q would contain -1/t_x otherwise.
    """
    for name, cam in (("camera1", camera1), ("camera2", camera2)):
        if not cam.is_pinhole:
            raise CameraModelError(f"{name} must be SIMPLE_PINHOLE or PINHOLE, got {cam.model_name}")

    # Half of the relative rotation, inverted: camera 2 turns back by half,
    # camera 1 forward by half, meeting at the average orientation.
    half = Rot.from_rotvec(-0.5 * pose.rotation().as_rotvec())
    R2 = half.as_matrix()
    R1 = R2.T

    t = R2 @ np.asarray(pose.tvec, dtype=np.float64).reshape(3)
    R_x = _baseline_alignment(t)
    R1 = R_x @ R1
    R2 = R_x @ R2
    t = R_x @ t

    if abs(float(t[0])) < _MIN_BASELINE:
        raise ValueError("stereo rectification requires a non-zero baseline (t_x != 0)")

    # Smaller focal length: neither image gets upsampled.
    f = min(camera1.mean_focal_length, camera2.mean_focal_length)
    cx = camera1.principal_point_x
    cy = 0.5 * (camera1.principal_point_y + camera2.principal_point_y)
    K = np.array([[f, 0.0, cx], [0.0, f, cy], [0.0, 0.0, 1.0]], dtype=np.float64)

    H1 = K @ R1 @ np.linalg.inv(camera1.calibration_matrix())
    H2 = K @ R2 @ np.linalg.inv(camera2.calibration_matrix())

    Q = np.zeros((4, 4), dtype=np.float64)
    Q[0, 0] = 1.0
    Q[1, 1] = 1.0
    Q[3, 0] = -cx
    Q[3, 1] = -cy
    Q[3, 2] = f
    Q[2, 3] = -1.0 / float(t[0])

    return StereoRectification(H1=H1, H2=H2, Q=Q)


def rectify_and_undistort_stereo_images(
    options: UndistortCameraOptions,
    image1: Bitmap,
    image2: Bitmap,
    camera1: Camera,
    camera2: Camera,
    pose: RelativePose,
    warper: Optional[WarpExecutor] = None,
) -> RectifiedStereoPair:
    """
    Undistort and rectify a stereo pair onto one shared pinhole camera.

    The shared camera is the undistorted version of camera 1; both outputs
    have its size and intrinsics.
    """
    for idx, (img, cam) in enumerate(((image1, camera1), (image2, camera2)), start=1):
        if (img.width, img.height) != (cam.width, cam.height):
            raise ValueError(f"image{idx} is {img.width}x{img.height} but camera{idx} is {cam.width}x{cam.height}")

    camera = undistort_camera(options, camera1)
    rect = rectify_stereo_cameras(camera, camera, pose)

    warper = warper if warper is not None else RemapWarpExecutor()
    rect_image1 = warper.warp_with_homography(np.linalg.inv(rect.H1), camera1, camera, image1)
    rect_image2 = warper.warp_with_homography(np.linalg.inv(rect.H2), camera2, camera, image2)
    logger.debug("rectified pair onto %dx%d, Q[2,3]=%.6g", camera.width, camera.height, rect.Q[2, 3])
    return RectifiedStereoPair(image1=rect_image1, image2=rect_image2, camera=camera, Q=rect.Q)
