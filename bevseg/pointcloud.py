"""Point cloud frame record and input sanitizing."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass(eq=False)
class PointCloud:
    points: np.ndarray   # (N, 4) float32: x, y, z, intensity
    frame_id: str
    stamp_ns: int = 0    # pass-through only

    def __post_init__(self):
        pts = np.asarray(self.points, dtype=np.float32)
        if pts.size == 0:
            pts = pts.reshape(0, 4)
        if pts.ndim != 2 or pts.shape[1] != 4:
            raise ValueError(f"Point cloud must be (N, 4) [x, y, z, intensity], got {pts.shape}")
        self.points = pts

    @classmethod
    def from_arrays(
        cls,
        xyz: np.ndarray,
        intensity: np.ndarray | None,
        frame_id: str,
        stamp_ns: int = 0,
    ) -> "PointCloud":
        """Pack (N, 3) xyz and optional (N,) intensity into one cloud."""
        xyz = np.asarray(xyz, dtype=np.float32).reshape(-1, 3)
        if intensity is None:
            intensity = np.zeros(xyz.shape[0], dtype=np.float32)
        intensity = np.asarray(intensity, dtype=np.float32).reshape(-1)
        if intensity.shape[0] != xyz.shape[0]:
            raise ValueError(f"Intensity length {intensity.shape[0]} != point count {xyz.shape[0]}")
        return cls(np.column_stack([xyz, intensity]), frame_id=frame_id, stamp_ns=stamp_ns)

    def __len__(self) -> int:
        return self.points.shape[0]


def sanitize_points(points: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Drop rows with any non-finite value.

    Returns the kept points (contiguous float32) and, for each kept row, its
    row index in the input so results can be reported against the caller's
    cloud.
    """
    finite = np.isfinite(points).all(axis=1)
    source_index = np.flatnonzero(finite)
    if source_index.size == points.shape[0]:
        return np.ascontiguousarray(points, dtype=np.float32), source_index
    return np.ascontiguousarray(points[finite], dtype=np.float32), source_index
