from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy.spatial.transform import Rotation as Rot

from stereoundistort.core.camera import Camera, CameraModelError


def normalize_qvec(qvec: np.ndarray) -> np.ndarray:
    qvec = np.asarray(qvec, dtype=np.float64).reshape(4)
    norm = np.linalg.norm(qvec)
    if not np.isfinite(norm) or norm < 1e-12:
        raise ValueError("quaternion must have non-zero finite norm")
    return qvec / norm


def qvec_to_rotation(qvec: np.ndarray) -> Rot:
    """
    Quaternions are stored scalar-first (w, x, y, z); scipy expects scalar-last.
    """
    w, x, y, z = normalize_qvec(qvec)
    return Rot.from_quat([x, y, z, w])


def rotation_to_qvec(rot: Rot) -> np.ndarray:
    x, y, z, w = rot.as_quat()
    qvec = np.array([w, x, y, z], dtype=np.float64)
    # Canonical sign: non-negative scalar part.
    return qvec if w >= 0.0 else -qvec


def qvec_to_rotmat(qvec: np.ndarray) -> np.ndarray:
    return qvec_to_rotation(qvec).as_matrix()


def rotmat_to_qvec(R: np.ndarray) -> np.ndarray:
    return rotation_to_qvec(Rot.from_matrix(np.asarray(R, dtype=np.float64).reshape(3, 3)))


@dataclass(frozen=True)
class RelativePose:
    """
    Pose of camera 2 relative to camera 1: X_2 = R(qvec) X_1 + tvec.
    """

    qvec: np.ndarray  # (4,) w, x, y, z
    tvec: np.ndarray  # (3,)

    @classmethod
    def create(cls, qvec: np.ndarray, tvec: np.ndarray) -> "RelativePose":
        return cls(qvec=normalize_qvec(qvec), tvec=np.asarray(tvec, dtype=np.float64).reshape(3).copy())

    @classmethod
    def identity(cls) -> "RelativePose":
        return cls.create(np.array([1.0, 0.0, 0.0, 0.0]), np.zeros(3))

    @classmethod
    def from_absolute_poses(
        cls, qvec1: np.ndarray, tvec1: np.ndarray, qvec2: np.ndarray, tvec2: np.ndarray
    ) -> "RelativePose":
        """
        Relative pose from two world-to-camera poses (X_i = R_i X_world + t_i).
        """
        R1 = qvec_to_rotmat(qvec1)
        R2 = qvec_to_rotmat(qvec2)
        R12 = R2 @ R1.T
        t12 = np.asarray(tvec2, dtype=np.float64).reshape(3) - R12 @ np.asarray(tvec1, dtype=np.float64).reshape(3)
        return cls.create(rotmat_to_qvec(R12), t12)

    def rotation(self) -> Rot:
        return qvec_to_rotation(self.qvec)

    def rotation_matrix(self) -> np.ndarray:
        return self.rotation().as_matrix()


def projection_matrix(camera: Camera, qvec: np.ndarray, tvec: np.ndarray) -> np.ndarray:
    """
    3x4 projection matrix P = K [R | t] of a pinhole camera.
    """
    if not camera.is_pinhole:
        raise CameraModelError(f"projection matrices require a pinhole camera, got {camera.model_name}")
    Rt = np.concatenate([qvec_to_rotmat(qvec), np.asarray(tvec, dtype=np.float64).reshape(3, 1)], axis=1)
    return camera.calibration_matrix() @ Rt
