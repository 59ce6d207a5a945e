from __future__ import annotations

import numpy as np
import pytest
from scipy.spatial.transform import Rotation as Rot

from stereoundistort.api.rectification import rectify_and_undistort_stereo_images, rectify_stereo_cameras
from stereoundistort.core.camera import Camera, CameraModelError
from stereoundistort.core.geometry import RelativePose, rotmat_to_qvec
from stereoundistort.core.image_io import Bitmap
from stereoundistort.options import UndistortCameraOptions


def _pinhole(fx: float = 500.0, fy: float = 500.0, cx: float = 320.0, cy: float = 240.0) -> Camera:
    return Camera.create("PINHOLE", 640, 480, [fx, fy, cx, cy])


def _apply(H: np.ndarray, uv: np.ndarray) -> np.ndarray:
    h = np.concatenate([uv, np.ones((uv.shape[0], 1))], axis=1) @ H.T
    return h[:, :2] / h[:, 2:3]


def _project(K: np.ndarray, X: np.ndarray) -> np.ndarray:
    x = X @ K.T
    return x[:, :2] / x[:, 2:3]


def test_aligned_pair_needs_no_homography() -> None:
    cam = _pinhole()
    rect = rectify_stereo_cameras(cam, cam, RelativePose.create([1.0, 0.0, 0.0, 0.0], [0.1, 0.0, 0.0]))

    assert np.allclose(rect.H1, np.eye(3))
    assert np.allclose(rect.H2, np.eye(3))
    assert rect.Q[2, 3] == pytest.approx(-10.0)
    assert rect.Q[3, 2] == pytest.approx(500.0)
    assert rect.Q[3, 0] == pytest.approx(-320.0)
    assert rect.Q[3, 1] == pytest.approx(-240.0)


def test_rectified_rows_align_and_q_recovers_depth() -> None:
    rng = np.random.default_rng(1)
    cam1 = _pinhole(500.0, 505.0, 318.0, 242.0)
    cam2 = _pinhole(480.0, 490.0, 322.0, 236.0)
    R = Rot.from_rotvec([0.03, -0.08, 0.02]).as_matrix()
    t = np.array([-0.3, 0.02, 0.01])
    rect = rectify_stereo_cameras(cam1, cam2, RelativePose.create(rotmat_to_qvec(R), t))

    X1 = np.stack([rng.uniform(-1.0, 1.0, 30), rng.uniform(-1.0, 1.0, 30), rng.uniform(3.0, 10.0, 30)], axis=1)
    X2 = X1 @ R.T + t
    p1 = _apply(rect.H1, _project(cam1.calibration_matrix(), X1))
    p2 = _apply(rect.H2, _project(cam2.calibration_matrix(), X2))

    # epipolar lines are image rows
    assert np.max(np.abs(p1[:, 1] - p2[:, 1])) < 1e-6

    f = rect.Q[3, 2]
    assert f == pytest.approx(min(cam1.mean_focal_length, cam2.mean_focal_length))
    K = np.array([[f, 0.0, -rect.Q[3, 0]], [0.0, f, -rect.Q[3, 1]], [0.0, 0.0, 1.0]])
    R1 = np.linalg.inv(K) @ rect.H1 @ cam1.calibration_matrix()
    assert np.allclose(R1 @ R1.T, np.eye(3), atol=1e-9)

    disparity = p1[:, 0] - p2[:, 0]
    hom = np.concatenate([p1, disparity[:, None], np.ones((p1.shape[0], 1))], axis=1) @ rect.Q
    recovered = hom[:, :3] / hom[:, 3:4]
    assert np.allclose(recovered, X1 @ R1.T, atol=1e-6)


def test_rectification_splits_rotation_in_half() -> None:
    cam = _pinhole()
    # rotation about the baseline: no extra alignment is needed
    R = Rot.from_rotvec([0.2, 0.0, 0.0]).as_matrix()
    rect = rectify_stereo_cameras(cam, cam, RelativePose.create(rotmat_to_qvec(R), [-0.5, 0.0, 0.0]))
    K = cam.calibration_matrix()
    R1 = np.linalg.inv(K) @ rect.H1 @ K
    R2 = np.linalg.inv(K) @ rect.H2 @ K

    assert np.allclose(R2 @ R, R1, atol=1e-9)
    assert np.allclose(Rot.from_matrix(R1).as_rotvec(), [0.1, 0.0, 0.0], atol=1e-9)
    assert np.allclose(Rot.from_matrix(R2).as_rotvec(), [-0.1, 0.0, 0.0], atol=1e-9)
    assert rect.Q[2, 3] == pytest.approx(2.0)


def test_rectification_rejects_distorted_cameras() -> None:
    radial = Camera.create("SIMPLE_RADIAL", 640, 480, [500.0, 320.0, 240.0, 0.1])
    with pytest.raises(CameraModelError):
        rectify_stereo_cameras(radial, _pinhole(), RelativePose.create([1.0, 0.0, 0.0, 0.0], [0.1, 0.0, 0.0]))


def test_rectification_rejects_zero_baseline() -> None:
    cam = _pinhole()
    with pytest.raises(ValueError):
        rectify_stereo_cameras(cam, cam, RelativePose.identity())


def test_rectify_and_undistort_aligned_pinhole_pair_copies_images() -> None:
    cam = _pinhole()
    rng = np.random.default_rng(2)
    img1 = Bitmap(pixels=rng.integers(0, 255, size=(480, 640), dtype=np.uint8), metadata={"dpi": (72, 72)})
    img2 = Bitmap(pixels=rng.integers(0, 255, size=(480, 640), dtype=np.uint8))

    pair = rectify_and_undistort_stereo_images(
        UndistortCameraOptions(), img1, img2, cam, cam, RelativePose.create([1.0, 0.0, 0.0, 0.0], [0.1, 0.0, 0.0])
    )

    assert pair.camera == cam
    assert np.array_equal(pair.image1.pixels, img1.pixels)
    assert np.array_equal(pair.image2.pixels, img2.pixels)
    assert pair.image1.metadata == {"dpi": (72, 72)}
    assert pair.Q[2, 3] == pytest.approx(-10.0)


def test_rectify_and_undistort_distorted_pair() -> None:
    cam = Camera.create("SIMPLE_RADIAL", 160, 120, [120.0, 80.0, 60.0, -0.05])
    img = Bitmap(pixels=np.full((120, 160, 3), 200, dtype=np.uint8))
    pose = RelativePose.create(rotmat_to_qvec(Rot.from_rotvec([0.0, 0.05, 0.0]).as_matrix()), [-0.2, 0.0, 0.0])

    pair = rectify_and_undistort_stereo_images(UndistortCameraOptions(blank_pixels=0.0), img, img, cam, cam, pose)

    assert pair.camera.model_name == "PINHOLE"
    assert pair.image1.pixels.shape == (pair.camera.height, pair.camera.width, 3)
    assert pair.image2.pixels.shape == pair.image1.pixels.shape
    assert pair.image1.pixels.dtype == np.uint8
    # the image center still samples the source
    assert pair.image1.pixels[pair.camera.height // 2, pair.camera.width // 2, 0] == 200


def test_rectify_and_undistort_checks_image_sizes() -> None:
    cam = _pinhole()
    img = Bitmap(pixels=np.zeros((10, 10), dtype=np.uint8))
    with pytest.raises(ValueError):
        rectify_and_undistort_stereo_images(
            UndistortCameraOptions(), img, img, cam, cam, RelativePose.create([1.0, 0.0, 0.0, 0.0], [0.1, 0.0, 0.0])
        )
