"""
Batch drivers: undistort every image of a scene, or rectify a list of
stereo pairs, on a thread pool.

The geometric functions are pure, so tasks share the options and the scene
read-only and each writes only its own files. A `threading.Event` can stop a
run between task completions; tasks already running finish normally.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Callable, Optional, Sequence

import numpy as np

from stereoundistort.api.rectification import rectify_and_undistort_stereo_images
from stereoundistort.api.undistortion import undistort_image, undistort_scene
from stereoundistort.core.geometry import projection_matrix
from stereoundistort.core.image_io import BitmapReadError, load_bitmap, save_bitmap
from stereoundistort.core.warp import RemapWarpExecutor, WarpExecutor
from stereoundistort.options import UndistortCameraOptions
from stereoundistort.scene import Scene, save_scene

logger = logging.getLogger(__name__)


@dataclass
class BatchReport:
    total: int
    written: list[str] = field(default_factory=list)
    # Inputs that could not be read.
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    cancelled: bool = False


def flat_name(name: str) -> str:
    return name.replace("/", "-")


def write_matrix(path: Path, matrix: np.ndarray, header: str = "") -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    np.savetxt(path, np.asarray(matrix, dtype=np.float64), fmt="%.17g", header=header, comments="")
    return path


def _collect(report: BatchReport, label: str, fut: Future) -> None:
    try:
        ok = fut.result()
    except Exception as e:
        # One bad task must not abort the batch.
        logger.exception("%s failed", label)
        report.failed[label] = f"{type(e).__name__}: {e}"
        return
    (report.written if ok else report.skipped).append(label)


def _run_tasks(
    tasks: Sequence[tuple[str, Callable[[], bool]]],
    *,
    message: str,
    num_workers: Optional[int],
    stop_event: Optional[threading.Event],
) -> BatchReport:
    report = BatchReport(total=len(tasks))
    with ThreadPoolExecutor(max_workers=num_workers) as pool:
        futures: list[tuple[str, Future]] = [(label, pool.submit(fn)) for label, fn in tasks]
        for i, (label, fut) in enumerate(futures):
            if stop_event is not None and stop_event.is_set():
                # Tasks already running cannot be cancelled; their outcome still counts.
                running = [(lbl, pending) for lbl, pending in futures[i:] if not pending.cancel()]
                report.cancelled = True
                logger.warning(
                    "Stopped after %d of %d tasks, waiting for %d running", i, len(futures), len(running)
                )
                for lbl, pending in running:
                    _collect(report, lbl, pending)
                break

            logger.info("%s [%d/%d]", message, i + 1, len(futures))
            _collect(report, label, fut)
    return report


class ImageUndistorter:
    """
    Writes <output_dir>/images/<name>, <output_dir>/sparse/scene.json and,
    optionally, <output_dir>/proj/<name>.txt projection matrices.
    """

    def __init__(
        self,
        options: UndistortCameraOptions,
        scene: Scene,
        image_dir: Path,
        output_dir: Path,
        *,
        num_workers: Optional[int] = None,
        warper: Optional[WarpExecutor] = None,
        write_projection_matrices: bool = False,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        self.options = options.validate()
        self.scene = scene
        self.image_dir = Path(image_dir)
        self.output_dir = Path(output_dir)
        self.num_workers = num_workers
        self.warper = warper if warper is not None else RemapWarpExecutor()
        self.write_projection_matrices = write_projection_matrices
        self.stop_event = stop_event

    def run(self) -> BatchReport:
        (self.output_dir / "images").mkdir(parents=True, exist_ok=True)
        tasks = [(self.scene.images[i].name, partial(self._undistort, i)) for i in self.scene.image_ids]
        report = _run_tasks(
            tasks, message="Undistorting image", num_workers=self.num_workers, stop_event=self.stop_event
        )

        logger.info("Writing scene...")
        save_scene(self.output_dir / "sparse" / "scene.json", undistort_scene(self.options, self.scene))
        return report

    def _undistort(self, image_id: int) -> bool:
        image = self.scene.images[image_id]
        camera = self.scene.camera_of(image_id)
        try:
            bitmap = load_bitmap(self.image_dir / image.name)
        except BitmapReadError as e:
            logger.error("%s", e)
            return False

        undistorted_image, undistorted_camera = undistort_image(self.options, bitmap, camera, self.warper)
        save_bitmap(self.output_dir / "images" / image.name, undistorted_image)
        if self.write_projection_matrices:
            P = projection_matrix(undistorted_camera, image.qvec, image.tvec)
            write_matrix(self.output_dir / "proj" / f"{flat_name(image.name)}.txt", P, header="CONTOUR")
        return True


class StereoPairRectifier:
    """
    Writes <output_dir>/<name1>-<name2>/{<name1>, <name2>, Q.txt} per pair,
    with "/" in image names replaced by "-".
    """

    def __init__(
        self,
        options: UndistortCameraOptions,
        scene: Scene,
        image_dir: Path,
        output_dir: Path,
        pairs: Sequence[tuple[int, int]],
        *,
        num_workers: Optional[int] = None,
        warper: Optional[WarpExecutor] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        self.options = options.validate()
        self.scene = scene
        self.image_dir = Path(image_dir)
        self.output_dir = Path(output_dir)
        for id1, id2 in pairs:
            if id1 not in scene.images or id2 not in scene.images:
                raise KeyError(f"stereo pair ({id1}, {id2}) references an unknown image")
        self.pairs = [(int(a), int(b)) for a, b in pairs]
        self.num_workers = num_workers
        self.warper = warper if warper is not None else RemapWarpExecutor()
        self.stop_event = stop_event

    def pair_dir(self, image_id1: int, image_id2: int) -> Path:
        name1 = flat_name(self.scene.images[image_id1].name)
        name2 = flat_name(self.scene.images[image_id2].name)
        return self.output_dir / f"{name1}-{name2}"

    def run(self) -> BatchReport:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        tasks = [(self.pair_dir(a, b).name, partial(self._rectify, a, b)) for a, b in self.pairs]
        return _run_tasks(
            tasks, message="Rectifying image pair", num_workers=self.num_workers, stop_event=self.stop_event
        )

    def _rectify(self, image_id1: int, image_id2: int) -> bool:
        image1 = self.scene.images[image_id1]
        image2 = self.scene.images[image_id2]
        try:
            bitmap1 = load_bitmap(self.image_dir / image1.name)
            bitmap2 = load_bitmap(self.image_dir / image2.name)
        except BitmapReadError as e:
            logger.error("%s", e)
            return False

        pair = rectify_and_undistort_stereo_images(
            self.options,
            bitmap1,
            bitmap2,
            self.scene.camera_of(image_id1),
            self.scene.camera_of(image_id2),
            self.scene.relative_pose(image_id1, image_id2),
            self.warper,
        )

        out = self.pair_dir(image_id1, image_id2)
        save_bitmap(out / flat_name(image1.name), pair.image1)
        save_bitmap(out / flat_name(image2.name), pair.image2)
        write_matrix(out / "Q.txt", pair.Q)
        return True
