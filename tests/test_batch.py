from __future__ import annotations

import threading
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from stereoundistort.batch import ImageUndistorter, StereoPairRectifier, _run_tasks, flat_name
from stereoundistort.options import UndistortCameraOptions
from stereoundistort.scene import SCENE_SCHEMA_VERSION, load_scene, parse_scene


def _scene():
    return parse_scene(
        {
            "schema_version": SCENE_SCHEMA_VERSION,
            "cameras": {
                "1": {"model": "SIMPLE_RADIAL", "width": 48, "height": 32, "params": [40.0, 24.0, 16.0, -0.05]},
            },
            "images": [
                {"image_id": 1, "name": "rig/left.png", "camera_id": 1, "tvec": [0.0, 0.0, 0.0]},
                {"image_id": 2, "name": "rig/right.png", "camera_id": 1, "tvec": [-0.2, 0.0, 0.0]},
                {"image_id": 3, "name": "rig/missing.png", "camera_id": 1},
            ],
        }
    )


def _write_images(image_dir: Path, names: list[str]) -> None:
    rng = np.random.default_rng(0)
    for name in names:
        p = image_dir / name
        p.parent.mkdir(parents=True, exist_ok=True)
        Image.fromarray(rng.integers(0, 255, size=(32, 48, 3), dtype=np.uint8)).save(p)


@pytest.mark.integration
def test_image_undistorter_writes_images_scene_and_projections(tmp_path: Path) -> None:
    _write_images(tmp_path / "in", ["rig/left.png", "rig/right.png"])

    report = ImageUndistorter(
        UndistortCameraOptions(),
        _scene(),
        tmp_path / "in",
        tmp_path / "out",
        num_workers=2,
        write_projection_matrices=True,
    ).run()

    assert report.total == 3
    assert sorted(report.written) == ["rig/left.png", "rig/right.png"]
    assert report.skipped == ["rig/missing.png"]
    assert not report.failed and not report.cancelled

    scene = load_scene(tmp_path / "out" / "sparse" / "scene.json")
    cam = scene.cameras[1]
    assert cam.model_name == "PINHOLE"
    with Image.open(tmp_path / "out" / "images" / "rig" / "left.png") as im:
        assert im.size == (cam.width, cam.height)

    proj = tmp_path / "out" / "proj" / "rig-right.png.txt"
    assert proj.read_text().splitlines()[0] == "CONTOUR"
    P = np.loadtxt(proj, skiprows=1)
    assert P.shape == (3, 4)
    assert P[0, 3] == pytest.approx(cam.focal_length_x * -0.2)


def test_image_undistorter_stops_when_event_is_set(tmp_path: Path) -> None:
    _write_images(tmp_path / "in", ["rig/left.png", "rig/right.png"])
    stop = threading.Event()
    stop.set()

    report = ImageUndistorter(
        UndistortCameraOptions(), _scene(), tmp_path / "in", tmp_path / "out", num_workers=1, stop_event=stop
    ).run()

    assert report.cancelled
    assert len(report.written) + len(report.skipped) + len(report.failed) < report.total
    for name in report.written:
        assert (tmp_path / "out" / "images" / name).is_file()


def test_image_undistorter_reports_task_failures(tmp_path: Path) -> None:
    _write_images(tmp_path / "in", ["rig/left.png"])
    # wrong raster size for the camera
    Image.fromarray(np.zeros((10, 10), dtype=np.uint8)).save(tmp_path / "in" / "rig" / "right.png")

    report = ImageUndistorter(UndistortCameraOptions(), _scene(), tmp_path / "in", tmp_path / "out").run()

    assert report.written == ["rig/left.png"]
    assert "rig/right.png" in report.failed
    assert report.failed["rig/right.png"].startswith("ValueError")


@pytest.mark.integration
def test_stereo_pair_rectifier_writes_pair_directory(tmp_path: Path) -> None:
    _write_images(tmp_path / "in", ["rig/left.png", "rig/right.png"])
    rectifier = StereoPairRectifier(
        UndistortCameraOptions(), _scene(), tmp_path / "in", tmp_path / "out", [(1, 2), (1, 3)]
    )

    report = rectifier.run()

    pair_dir = tmp_path / "out" / "rig-left.png-rig-right.png"
    assert rectifier.pair_dir(1, 2) == pair_dir
    assert report.written == [pair_dir.name]
    assert report.skipped == ["rig-left.png-rig-missing.png"]
    assert (pair_dir / "rig-left.png").is_file()
    assert (pair_dir / "rig-right.png").is_file()
    Q = np.loadtxt(pair_dir / "Q.txt")
    assert Q.shape == (4, 4)
    assert Q[2, 3] == pytest.approx(5.0)


def test_stereo_pair_rectifier_rejects_unknown_images(tmp_path: Path) -> None:
    with pytest.raises(KeyError):
        StereoPairRectifier(UndistortCameraOptions(), _scene(), tmp_path, tmp_path, [(1, 42)])


def test_flat_name() -> None:
    assert flat_name("a/b/c.png") == "a-b-c.png"


class _StopOnceRunning:
    """Reports a stop request as soon as the given tasks have started."""

    def __init__(self, started: list[threading.Event]) -> None:
        self.started = started

    def is_set(self) -> bool:
        for ev in self.started:
            assert ev.wait(5.0)
        return True


def test_stop_collects_tasks_that_were_already_running() -> None:
    started = [threading.Event(), threading.Event()]
    hold = threading.Event()

    def ok() -> bool:
        started[0].set()
        hold.wait(0.5)
        return True

    def boom() -> bool:
        started[1].set()
        hold.wait(0.5)
        raise RuntimeError("disk full")

    def never() -> bool:
        raise AssertionError("cancelled task ran")

    report = _run_tasks(
        [("a", ok), ("b", boom), ("c", never)],
        message="Testing",
        num_workers=2,
        stop_event=_StopOnceRunning(started),
    )

    assert report.cancelled
    assert report.written == ["a"]
    assert report.failed == {"b": "RuntimeError: disk full"}
    assert "c" not in report.failed and "c" not in report.written
