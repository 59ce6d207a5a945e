from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np

from stereoundistort.core.camera import Camera, CameraModelError
from stereoundistort.core.geometry import RelativePose, normalize_qvec

SCENE_SCHEMA_VERSION = "stereoundistort.scene.v0"


class SceneValidationError(ValueError):
    pass


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise SceneValidationError(msg)


@dataclass(frozen=True)
class SceneImage:
    """
    A registered image: its camera, world-to-camera pose and 2D observations.
    """

    image_id: int
    name: str
    camera_id: int
    qvec: np.ndarray  # (4,) w, x, y, z
    tvec: np.ndarray  # (3,)
    points2D: np.ndarray = field(default_factory=lambda: np.zeros((0, 2), dtype=np.float64))


@dataclass(frozen=True)
class Scene:
    cameras: dict[int, Camera]
    images: dict[int, SceneImage]

    @property
    def image_ids(self) -> list[int]:
        return sorted(self.images)

    def camera_of(self, image_id: int) -> Camera:
        return self.cameras[self.images[image_id].camera_id]

    def image_by_name(self, name: str) -> SceneImage:
        for image in self.images.values():
            if image.name == name:
                return image
        raise KeyError(f"no image named {name!r}")

    def relative_pose(self, image_id1: int, image_id2: int) -> RelativePose:
        im1 = self.images[image_id1]
        im2 = self.images[image_id2]
        return RelativePose.from_absolute_poses(im1.qvec, im1.tvec, im2.qvec, im2.tvec)


def load_scene(path: Path) -> Scene:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    return parse_scene(data)


def parse_scene(data: dict[str, Any]) -> Scene:
    _require(data.get("schema_version") == SCENE_SCHEMA_VERSION, f"schema_version must be {SCENE_SCHEMA_VERSION}")

    cameras_raw = data.get("cameras")
    _require(isinstance(cameras_raw, dict) and len(cameras_raw) > 0, "cameras must be a non-empty mapping")
    cameras: dict[int, Camera] = {}
    for key, cam in cameras_raw.items():
        try:
            cameras[int(key)] = Camera.from_dict(cam)
        except (KeyError, TypeError) as e:
            raise SceneValidationError(f"camera {key} is missing model/width/height/params") from e
        except CameraModelError as e:
            raise SceneValidationError(f"camera {key}: {e}") from e

    images_raw = data.get("images", [])
    _require(isinstance(images_raw, list), "images must be a list")
    images: dict[int, SceneImage] = {}
    for img in images_raw:
        _require("image_id" in img and "name" in img and "camera_id" in img, "image needs image_id, name and camera_id")
        image_id = int(img["image_id"])
        _require(image_id not in images, f"duplicate image_id {image_id}")
        camera_id = int(img["camera_id"])
        _require(camera_id in cameras, f"image {image_id} references unknown camera {camera_id}")

        qvec = np.asarray(img.get("qvec", [1.0, 0.0, 0.0, 0.0]), dtype=np.float64).reshape(-1)
        tvec = np.asarray(img.get("tvec", [0.0, 0.0, 0.0]), dtype=np.float64).reshape(-1)
        _require(qvec.shape == (4,), f"image {image_id}: qvec must be [w,x,y,z]")
        _require(tvec.shape == (3,), f"image {image_id}: tvec must be [x,y,z]")
        _require(bool(np.linalg.norm(qvec) > 0.0), f"image {image_id}: qvec must be non-zero")

        pts = np.asarray(img.get("points2D", []), dtype=np.float64)
        pts = pts.reshape(-1, 2) if pts.size else np.zeros((0, 2), dtype=np.float64)

        images[image_id] = SceneImage(
            image_id=image_id,
            name=str(img["name"]),
            camera_id=camera_id,
            qvec=normalize_qvec(qvec),
            tvec=tvec,
            points2D=pts,
        )

    return Scene(cameras=cameras, images=images)


def scene_to_dict(scene: Scene) -> dict[str, Any]:
    return {
        "schema_version": SCENE_SCHEMA_VERSION,
        "cameras": {str(cid): cam.to_dict() for cid, cam in sorted(scene.cameras.items())},
        "images": [
            {
                "image_id": int(img.image_id),
                "name": img.name,
                "camera_id": int(img.camera_id),
                "qvec": np.asarray(img.qvec, dtype=np.float64).tolist(),
                "tvec": np.asarray(img.tvec, dtype=np.float64).tolist(),
                "points2D": np.asarray(img.points2D, dtype=np.float64).tolist(),
            }
            for _, img in sorted(scene.images.items())
        ],
    }


def save_scene(path: Path, scene: Scene) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(scene_to_dict(scene), indent=2, sort_keys=True), encoding="utf-8")
    return path
