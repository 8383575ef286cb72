"""Quick acceptance checks for the segmentation core.

Runs synthetic frames through the full pipeline with an oracle engine that
"predicts" the known boxes, so no trained model is needed.

Usage:  python -m bevseg.validate --config segmenter.yaml
"""
from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass

import numpy as np

from .config import SegmenterConfig, load_config
from .grid import GridSpec
from .inference import FunctionEngine, PredictionLayout
from .numba_kernels import warmup_numba
from .pipeline import FrameStatus, InstanceSegmenter
from .pointcloud import PointCloud


@dataclass
class SyntheticBox:
    center_x: float
    center_y: float
    length: float     # along x
    width: float      # along y
    z_min: float
    z_max: float
    class_index: int = 1


def make_box_cloud(
    boxes: list[SyntheticBox],
    frame_id: str,
    points_per_box: int = 2000,
    seed: int = 0,
    stamp_ns: int = 0,
) -> PointCloud:
    """Uniformly sampled points filling each box, concatenated in box order."""
    rng = np.random.default_rng(seed)
    chunks = []
    for b in boxes:
        pts = np.empty((points_per_box, 4), dtype=np.float32)
        pts[:, 0] = rng.uniform(b.center_x - b.length / 2, b.center_x + b.length / 2, points_per_box)
        pts[:, 1] = rng.uniform(b.center_y - b.width / 2, b.center_y + b.width / 2, points_per_box)
        pts[:, 2] = rng.uniform(b.z_min, b.z_max, points_per_box)
        pts[:, 3] = rng.uniform(0.0, 255.0, points_per_box)
        chunks.append(pts)
    points = np.concatenate(chunks) if chunks else np.zeros((0, 4), np.float32)
    return PointCloud(points, frame_id=frame_id, stamp_ns=stamp_ns)


def make_oracle_engine(
    grid: GridSpec,
    layout: PredictionLayout,
    boxes: list[SyntheticBox],
    z_offset_m: float = 0.0,
    confidence: float = 0.9,
) -> FunctionEngine:
    """Engine whose output marks each box footprint and points it at the box center."""
    cx, cy = grid.cell_centers()
    out = np.zeros((layout.num_channels, grid.height, grid.width), dtype=np.float32)
    for b in boxes:
        # Cover every cell the box touches, not only cells whose center is inside.
        inside = (
            (np.abs(cx - b.center_x) <= b.length / 2 + grid.cell_size_row / 2)
            & (np.abs(cy - b.center_y) <= b.width / 2 + grid.cell_size_col / 2)
        )
        off_x, off_y = grid.center_offsets(b.center_x, b.center_y)
        out[layout.objectness][inside] = 1.0
        out[layout.offset_x][inside] = off_x[inside]
        out[layout.offset_y][inside] = off_y[inside]
        out[layout.confidence][inside] = confidence
        out[layout.height][inside] = b.z_max + z_offset_m
        if layout.num_classes:
            out[layout.class_start + b.class_index][inside] = 1.0
    return FunctionEngine(lambda tensor: out.copy())


def default_boxes() -> list[SyntheticBox]:
    return [
        SyntheticBox(10.0, 5.0, 4.0, 2.0, -1.8, -0.3, class_index=1),
        SyntheticBox(-15.1, -8.0, 0.8, 0.8, -1.8, 0.0, class_index=4),
    ]


def build_oracle_segmenter(cfg: SegmenterConfig, boxes: list[SyntheticBox]) -> InstanceSegmenter:
    grid = GridSpec.from_config(cfg.grid)
    layout = PredictionLayout.from_config(cfg.prediction)
    engine = make_oracle_engine(grid, layout, boxes, z_offset_m=cfg.transforms.z_offset_m)
    return InstanceSegmenter(cfg, engine)


def run_validation(config_path: str) -> bool:
    """Run acceptance gates. Returns True if all pass."""
    cfg = load_config(config_path)
    fails = 0

    def check(ok: bool, name: str, detail: str = ""):
        nonlocal fails
        tag = "PASS" if ok else "FAIL"
        if not ok:
            fails += 1
        print(f"  [{tag}] {name}" + (f" - {detail}" if detail else ""))

    # Compile the kernels once so the frame checks below do not time JIT latency.
    print("\n-- JIT --")
    dt = warmup_numba()
    check(dt >= 0.0, "Kernels compiled", f"{dt:.1f}s")

    # -- Grid --
    print("\n-- Grid --")
    grid = GridSpec.from_config(cfg.grid)
    r = grid.range_m
    inner = r * 0.999
    corners_in = [grid.cell_of(sx * inner, sy * inner) for sx in (-1, 1) for sy in (-1, 1)]
    check(all(c is not None for c in corners_in), "Interior corners indexed")
    corners_edge = [grid.cell_of(sx * r, sy * r) for sx in (-1, 1) for sy in (-1, 1)]
    check(corners_edge == [(grid.height - 1, grid.width - 1), (grid.height - 1, 0),
                           (0, grid.width - 1), (0, 0)], "Closed extent corners")
    corners_out = [grid.cell_of(sx * r * 1.01, 0.0) for sx in (-1, 1)]
    check(all(c is None for c in corners_out), "Exterior points rejected")

    # -- Pipeline --
    print("\n-- Pipeline --")
    boxes = default_boxes()
    frame_id = cfg.transforms.target_frame
    seg = build_oracle_segmenter(cfg, boxes)

    empty = seg.process(PointCloud(np.zeros((0, 4), np.float32), frame_id=frame_id))
    check(empty.status is FrameStatus.OK and not empty.objects, "Empty frame", empty.status.value)

    cloud = make_box_cloud(boxes, frame_id)
    res = seg.process(cloud)
    check(res.ok, "Frame status", res.status.value)
    check(len(res.objects) == len(boxes), "Object count", f"{len(res.objects)} (expected {len(boxes)})")
    if res.objects:
        all_idx = np.concatenate([o.point_indices for o in res.objects])
        check(all_idx.size == np.unique(all_idx).size, "Objects disjoint")
        o = cfg.objects
        bad = [ob for ob in res.objects
               if ob.score < o.score_threshold or ob.height_range < o.height_thresh
               or ob.point_count < o.min_pts_num]
        check(not bad, "Thresholds honored")

    again = seg.process(cloud)
    same = len(again.objects) == len(res.objects) and all(
        np.array_equal(a.point_indices, b.point_indices) for a, b in zip(res.objects, again.objects))
    check(same, "Deterministic output")

    noisy = cloud.points.copy()
    noisy[::50, 0] = np.nan
    res_nan = seg.process(PointCloud(noisy, frame_id=frame_id))
    check(res_nan.ok and len(res_nan.objects) == len(boxes), "Non-finite points tolerated")

    print(f"\n  {'PASS' if fails == 0 else 'FAIL'}: {fails} failures")
    return fails == 0


def main():
    p = argparse.ArgumentParser(description="Validate segmentation core")
    p.add_argument("--config", default="segmenter.yaml")
    args = p.parse_args()
    sys.exit(0 if run_validation(args.config) else 1)


if __name__ == "__main__":
    main()
