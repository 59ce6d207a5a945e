from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence, Union

import numpy as np

from stereoundistort.core.distortion import BrownDistortion, FisheyeDistortion

Distortion = Union[BrownDistortion, FisheyeDistortion]


class CameraModelError(ValueError):
    pass


@dataclass(frozen=True)
class CameraModelSpec:
    """
    Static description of a projection family.

    Index tuples point into `Camera.params`. `distortion` builds the lens
    distortion from the extra parameters; None means a plain pinhole.
    """

    model_id: int
    model_name: str
    param_names: tuple[str, ...]
    focal_length_idxs: tuple[int, ...]
    principal_point_idxs: tuple[int, ...]
    extra_params_idxs: tuple[int, ...]
    distortion: Optional[Callable[[Sequence[float]], Distortion]] = None

    @property
    def num_params(self) -> int:
        return len(self.param_names)


def _spec(
    model_id: int,
    model_name: str,
    param_names: str,
    distortion: Optional[Callable[[Sequence[float]], Distortion]] = None,
) -> CameraModelSpec:
    names = tuple(p.strip() for p in param_names.split(","))
    focal = tuple(i for i, n in enumerate(names) if n in ("f", "fx", "fy"))
    principal = tuple(i for i, n in enumerate(names) if n in ("cx", "cy"))
    extra = tuple(i for i in range(len(names)) if i not in focal and i not in principal)
    return CameraModelSpec(
        model_id=model_id,
        model_name=model_name,
        param_names=names,
        focal_length_idxs=focal,
        principal_point_idxs=principal,
        extra_params_idxs=extra,
        distortion=distortion,
    )


CAMERA_MODELS: dict[str, CameraModelSpec] = {
    spec.model_name: spec
    for spec in (
        _spec(0, "SIMPLE_PINHOLE", "f, cx, cy"),
        _spec(1, "PINHOLE", "fx, fy, cx, cy"),
        _spec(2, "SIMPLE_RADIAL", "f, cx, cy, k", lambda e: BrownDistortion(k1=e[0])),
        _spec(3, "RADIAL", "f, cx, cy, k1, k2", lambda e: BrownDistortion(k1=e[0], k2=e[1])),
        _spec(
            4,
            "OPENCV",
            "fx, fy, cx, cy, k1, k2, p1, p2",
            lambda e: BrownDistortion(k1=e[0], k2=e[1], p1=e[2], p2=e[3]),
        ),
        _spec(
            5,
            "OPENCV_FISHEYE",
            "fx, fy, cx, cy, k1, k2, k3, k4",
            lambda e: FisheyeDistortion(k1=e[0], k2=e[1], k3=e[2], k4=e[3]),
        ),
        _spec(
            6,
            "FULL_OPENCV",
            "fx, fy, cx, cy, k1, k2, p1, p2, k3, k4, k5, k6",
            lambda e: BrownDistortion(k1=e[0], k2=e[1], p1=e[2], p2=e[3], k3=e[4], k4=e[5], k5=e[6], k6=e[7]),
        ),
        _spec(8, "SIMPLE_RADIAL_FISHEYE", "f, cx, cy, k", lambda e: FisheyeDistortion(k1=e[0])),
        _spec(9, "RADIAL_FISHEYE", "f, cx, cy, k1, k2", lambda e: FisheyeDistortion(k1=e[0], k2=e[1])),
    )
}

PINHOLE_MODEL_NAMES = ("SIMPLE_PINHOLE", "PINHOLE")


def camera_model_spec(model_name: str) -> CameraModelSpec:
    spec = CAMERA_MODELS.get(str(model_name).upper())
    if spec is None:
        raise CameraModelError(f"Unknown camera model: {model_name}")
    return spec


def parse_params_string(text: str) -> tuple[float, ...]:
    """Parse a comma-separated parameter list such as "500, 320, 240"."""
    items = [s.strip() for s in str(text).split(",") if s.strip()]
    try:
        return tuple(float(s) for s in items)
    except ValueError as e:
        raise CameraModelError(f"Invalid camera parameter string: {text!r}") from e


@dataclass(frozen=True)
class Camera:
    """
    Intrinsic camera: projection family, image size and parameter vector.

    Image coordinates follow the convention that the upper-left pixel centre is
    at (0.5, 0.5). World coordinates are normalized directions with implicit
    unit depth, i.e. (X/Z, Y/Z).

    Instances are immutable; the `with_*` helpers and `rescale` return copies.
    """

    model_name: str
    width: int
    height: int
    params: tuple[float, ...]

    @classmethod
    def create(cls, model_name: str, width: int, height: int, params: Sequence[float]) -> "Camera":
        spec = camera_model_spec(model_name)
        params = tuple(float(p) for p in np.asarray(params, dtype=np.float64).reshape(-1))
        if len(params) != spec.num_params:
            raise CameraModelError(
                f"{spec.model_name} expects {spec.num_params} parameters ({', '.join(spec.param_names)}), got {len(params)}"
            )
        if int(width) < 1 or int(height) < 1:
            raise CameraModelError("camera width and height must be >= 1")
        return cls(model_name=spec.model_name, width=int(width), height=int(height), params=params)

    @classmethod
    def from_param_string(cls, model_name: str, width: int, height: int, params: str) -> "Camera":
        return cls.create(model_name, width, height, parse_params_string(params))

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Camera":
        return cls.create(str(d["model"]), int(d["width"]), int(d["height"]), d["params"])

    def to_dict(self) -> dict[str, Any]:
        return {"model": self.model_name, "width": self.width, "height": self.height, "params": list(self.params)}

    @property
    def model(self) -> CameraModelSpec:
        return camera_model_spec(self.model_name)

    @property
    def is_pinhole(self) -> bool:
        return self.model_name in PINHOLE_MODEL_NAMES

    @property
    def focal_length_idxs(self) -> tuple[int, ...]:
        return self.model.focal_length_idxs

    @property
    def principal_point_idxs(self) -> tuple[int, ...]:
        return self.model.principal_point_idxs

    @property
    def extra_params(self) -> tuple[float, ...]:
        return tuple(self.params[i] for i in self.model.extra_params_idxs)

    def verify_params(self) -> bool:
        spec = self.model
        if len(self.params) != spec.num_params:
            return False
        if not all(np.isfinite(self.params)):
            return False
        return all(self.params[i] > 0.0 for i in spec.focal_length_idxs)

    # -- intrinsics ---------------------------------------------------------

    @property
    def focal_length(self) -> float:
        idxs = self.focal_length_idxs
        if len(idxs) != 1:
            raise CameraModelError(f"{self.model_name} has {len(idxs)} focal length parameters")
        return self.params[idxs[0]]

    @property
    def focal_length_x(self) -> float:
        return self.params[self.focal_length_idxs[0]]

    @property
    def focal_length_y(self) -> float:
        return self.params[self.focal_length_idxs[-1]]

    @property
    def mean_focal_length(self) -> float:
        return float(np.mean([self.params[i] for i in self.focal_length_idxs]))

    @property
    def principal_point_x(self) -> float:
        idxs = self.principal_point_idxs
        return self.params[idxs[0]] if idxs else 0.5 * self.width

    @property
    def principal_point_y(self) -> float:
        idxs = self.principal_point_idxs
        return self.params[idxs[1]] if idxs else 0.5 * self.height

    def calibration_matrix(self) -> np.ndarray:
        return np.array(
            [
                [self.focal_length_x, 0.0, self.principal_point_x],
                [0.0, self.focal_length_y, self.principal_point_y],
                [0.0, 0.0, 1.0],
            ],
            dtype=np.float64,
        )

    def with_focal_length(self, fx: float, fy: Optional[float] = None) -> "Camera":
        fy = fx if fy is None else fy
        params = list(self.params)
        idxs = self.focal_length_idxs
        if len(idxs) == 1:
            params[idxs[0]] = 0.5 * (float(fx) + float(fy))
        else:
            params[idxs[0]] = float(fx)
            params[idxs[1]] = float(fy)
        return dataclasses.replace(self, params=tuple(params))

    def with_principal_point(self, cx: float, cy: float) -> "Camera":
        idxs = self.principal_point_idxs
        if not idxs:
            return self
        params = list(self.params)
        params[idxs[0]] = float(cx)
        params[idxs[1]] = float(cy)
        return dataclasses.replace(self, params=tuple(params))

    def with_size(self, width: int, height: int) -> "Camera":
        return dataclasses.replace(self, width=max(1, int(width)), height=max(1, int(height)))

    def rescale(self, scale: float) -> "Camera":
        """
        Resize the image by `scale`; intrinsics follow the realized size ratio.
        """
        new_width = max(1, int(round(float(scale) * self.width)))
        new_height = max(1, int(round(float(scale) * self.height)))
        scale_x = new_width / float(self.width)
        scale_y = new_height / float(self.height)
        cam = self.with_principal_point(scale_x * self.principal_point_x, scale_y * self.principal_point_y)
        if len(self.focal_length_idxs) == 1:
            cam = cam.with_focal_length(0.5 * (scale_x + scale_y) * self.focal_length)
        else:
            cam = cam.with_focal_length(scale_x * self.focal_length_x, scale_y * self.focal_length_y)
        return cam.with_size(new_width, new_height)

    # -- projection ---------------------------------------------------------

    def _distortion(self) -> Optional[Distortion]:
        factory = self.model.distortion
        if factory is None:
            return None
        return factory(self.extra_params)

    def image_to_world(self, points: np.ndarray) -> np.ndarray:
        """Back-project image points (..., 2) to normalized directions (..., 2)."""
        points = np.asarray(points, dtype=np.float64)
        u = points[..., 0]
        v = points[..., 1]
        xd = (u - self.principal_point_x) / self.focal_length_x
        yd = (v - self.principal_point_y) / self.focal_length_y
        distortion = self._distortion()
        if distortion is None:
            return np.stack([xd, yd], axis=-1)
        x, y = distortion.undistort(xd, yd)
        return np.stack([x, y], axis=-1)

    def world_to_image(self, points: np.ndarray) -> np.ndarray:
        """Project normalized directions (..., 2) to image points (..., 2)."""
        points = np.asarray(points, dtype=np.float64)
        x = points[..., 0]
        y = points[..., 1]
        distortion = self._distortion()
        if distortion is not None:
            with np.errstate(all="ignore"):
                x, y = distortion.distort(x, y)
        u = self.focal_length_x * x + self.principal_point_x
        v = self.focal_length_y * y + self.principal_point_y
        return np.stack([u, v], axis=-1)
