from __future__ import annotations

import json
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from stereoundistort.cli.main import main
from stereoundistort.scene import SCENE_SCHEMA_VERSION


def test_undistort_camera_prints_pinhole_camera(capsys) -> None:
    rc = main(["undistort-camera", "--model", "PINHOLE", "--width", "640", "--height", "480", "--params", "500, 500, 320, 240"])
    assert rc == 0
    out = json.loads(capsys.readouterr().out)
    assert out == {"model": "PINHOLE", "width": 640, "height": 480, "params": [500.0, 500.0, 320.0, 240.0]}


def test_undistort_camera_merges_options_file_and_flags(tmp_path: Path, capsys) -> None:
    opts = tmp_path / "opts.json"
    opts.write_text(json.dumps({"min_scale": 1.5, "max_scale": 1.5, "max_image_size": 100}), encoding="utf-8")
    rc = main(
        [
            "undistort-camera",
            "--model",
            "SIMPLE_RADIAL",
            "--width",
            "640",
            "--height",
            "480",
            "--params",
            "500, 320, 240, -0.1",
            "--options",
            str(opts),
            "--max-image-size",
            "0",
        ]
    )
    assert rc == 0
    out = json.loads(capsys.readouterr().out)
    assert (out["width"], out["height"]) == (960, 720)


def test_rectify_stereo_command(tmp_path: Path) -> None:
    scene = {
        "schema_version": SCENE_SCHEMA_VERSION,
        "cameras": {"1": {"model": "PINHOLE", "width": 24, "height": 16, "params": [20.0, 20.0, 12.0, 8.0]}},
        "images": [
            {"image_id": 1, "name": "l.png", "camera_id": 1},
            {"image_id": 2, "name": "r.png", "camera_id": 1, "tvec": [-0.5, 0.0, 0.0]},
        ],
    }
    (tmp_path / "scene.json").write_text(json.dumps(scene), encoding="utf-8")
    for name in ("l.png", "r.png"):
        Image.fromarray(np.full((16, 24), 7, dtype=np.uint8)).save(tmp_path / name)

    rc = main(
        [
            "rectify-stereo",
            str(tmp_path / "scene.json"),
            "--images",
            str(tmp_path),
            "--out",
            str(tmp_path / "out"),
            "--pair",
            "l.png",
            "r.png",
        ]
    )

    assert rc == 0
    Q = np.loadtxt(tmp_path / "out" / "l.png-r.png" / "Q.txt")
    assert np.isclose(Q[2, 3], 2.0)


def test_rectify_stereo_rejects_unknown_pair_name(tmp_path: Path, capsys) -> None:
    scene = {
        "schema_version": SCENE_SCHEMA_VERSION,
        "cameras": {"1": {"model": "PINHOLE", "width": 24, "height": 16, "params": [20.0, 20.0, 12.0, 8.0]}},
        "images": [{"image_id": 1, "name": "l.png", "camera_id": 1}],
    }
    (tmp_path / "scene.json").write_text(json.dumps(scene), encoding="utf-8")

    with pytest.raises(SystemExit) as exc:
        main(
            [
                "rectify-stereo",
                str(tmp_path / "scene.json"),
                "--images",
                str(tmp_path),
                "--out",
                str(tmp_path / "out"),
                "--pair",
                "l.png",
                "missing.png",
            ]
        )
    assert exc.value.code == 2
    assert "missing.png" in capsys.readouterr().err
