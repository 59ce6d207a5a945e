from stereoundistort.api.rectification import (
    RectifiedStereoPair,
    StereoRectification,
    rectify_and_undistort_stereo_images,
    rectify_stereo_cameras,
)
from stereoundistort.api.undistortion import select_point_on_ray, undistort_camera, undistort_image, undistort_scene

__all__ = [
    "RectifiedStereoPair",
    "StereoRectification",
    "rectify_and_undistort_stereo_images",
    "rectify_stereo_cameras",
    "select_point_on_ray",
    "undistort_camera",
    "undistort_image",
    "undistort_scene",
]
