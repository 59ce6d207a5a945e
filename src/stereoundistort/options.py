from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any


class OptionsValidationError(ValueError):
    pass


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise OptionsValidationError(msg)


@dataclass(frozen=True)
class UndistortCameraOptions:
    """
    Controls how a distorted camera is turned into a pinhole camera.

    blank_pixels trades cropping against padding: 0 keeps only pixels that
    have a source sample, 1 keeps every source pixel (blank borders appear).
    Field-of-view limits are full angles in degrees.
    """

    blank_pixels: float = 0.0
    min_scale: float = 0.2
    max_scale: float = 2.0
    # 0 disables the cap.
    max_image_size: int = 0
    max_fov: float = 179.0
    max_horizontal_fov: float = 179.0
    max_vertical_fov: float = 179.0
    camera_model_override: str = ""
    camera_model_override_params: str = ""
    estimate_focal_length_from_fov: bool = False

    def validate(self) -> "UndistortCameraOptions":
        _require(0.0 <= self.blank_pixels <= 1.0, "blank_pixels must be in [0,1]")
        _require(self.min_scale > 0.0, "min_scale must be > 0")
        _require(self.min_scale <= self.max_scale, "min_scale must be <= max_scale")
        _require(self.max_image_size >= 0, "max_image_size must be >= 0 (0 disables the cap)")
        for name in ("max_fov", "max_horizontal_fov", "max_vertical_fov"):
            value = float(getattr(self, name))
            _require(0.0 < value < 180.0, f"{name} must be in (0,180) degrees")
        _require(
            not self.camera_model_override_params or bool(self.camera_model_override),
            "camera_model_override_params requires camera_model_override",
        )
        return self


def parse_undistort_options(data: dict[str, Any]) -> UndistortCameraOptions:
    known = {f.name for f in fields(UndistortCameraOptions)}
    unknown = sorted(set(data) - known)
    _require(not unknown, f"unknown undistortion options: {unknown}")

    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        if key in ("camera_model_override", "camera_model_override_params"):
            kwargs[key] = str(value)
        elif key == "max_image_size":
            kwargs[key] = int(value)
        elif key == "estimate_focal_length_from_fov":
            _require(isinstance(value, bool), "estimate_focal_length_from_fov must be a boolean")
            kwargs[key] = value
        else:
            kwargs[key] = float(value)
    return UndistortCameraOptions(**kwargs).validate()
