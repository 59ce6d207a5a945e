from stereoundistort.api import (
    RectifiedStereoPair,
    StereoRectification,
    rectify_and_undistort_stereo_images,
    rectify_stereo_cameras,
    select_point_on_ray,
    undistort_camera,
    undistort_image,
    undistort_scene,
)
from stereoundistort.core.camera import Camera, CameraModelError
from stereoundistort.core.geometry import RelativePose
from stereoundistort.options import OptionsValidationError, UndistortCameraOptions

__all__ = [
    "Camera",
    "CameraModelError",
    "OptionsValidationError",
    "RectifiedStereoPair",
    "RelativePose",
    "StereoRectification",
    "UndistortCameraOptions",
    "rectify_and_undistort_stereo_images",
    "rectify_stereo_cameras",
    "select_point_on_ray",
    "undistort_camera",
    "undistort_image",
    "undistort_scene",
]
