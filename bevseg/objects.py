"""Object assembly: filter clusters and emit per-object aggregates.

A cluster becomes an object iff
    mean objectness >= score_threshold
    max(z) - min(z) >= height_thresh
    point count     >= min_pts_num
Everything else is dropped without error; most small or noisy clusters are
expected to go every frame.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

import cv2
import numpy as np

from .cluster import Cluster
from .config import ObjectConfig, SegmenterConfig
from .inference import Predictions
from .log import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class BoundingBox:
    """Minimum-area rectangle in the xy plane plus the z extent."""

    center_x: float
    center_y: float
    length: float   # long side
    width: float    # short side
    yaw: float      # radians, heading of the long side, in [-pi/2, pi/2)
    z_min: float
    z_max: float

    @property
    def height(self) -> float:
        return self.z_max - self.z_min


@dataclass(frozen=True, eq=False)
class DetectedObject:
    cluster_id: int
    point_indices: np.ndarray  # (K,) int64 rows of the input cloud
    points: np.ndarray         # (K, 4) float32 x y z intensity
    cells: np.ndarray          # (C,) int64 flat grid cells
    score: float               # mean objectness over cells
    confidence: float          # mean category confidence over cells
    height_range: float        # max(z) - min(z) over points
    predicted_height: float    # mean predicted height over cells
    point_count: int
    bbox: BoundingBox
    label: Optional[str] = None
    class_probs: Optional[np.ndarray] = None


def fit_bounding_box(points: np.ndarray) -> BoundingBox:
    """Fit the xy min-area rectangle of (K >= 1, 3+) points."""
    xy = np.ascontiguousarray(points[:, :2], dtype=np.float32)
    (cx, cy), (w, h), angle_deg = cv2.minAreaRect(xy)
    yaw = np.deg2rad(angle_deg)
    # OpenCV's angle refers to the "width" side; report the long side instead.
    if h > w:
        w, h = h, w
        yaw += np.pi / 2.0
    yaw = (yaw + np.pi / 2.0) % np.pi - np.pi / 2.0
    z = points[:, 2]
    return BoundingBox(
        center_x=float(cx), center_y=float(cy),
        length=float(w), width=float(h), yaw=float(yaw),
        z_min=float(z.min()), z_max=float(z.max()),
    )


def _readonly(arr: np.ndarray) -> np.ndarray:
    arr.setflags(write=False)
    return arr


class ObjectAssembler:
    def __init__(
        self,
        score_threshold: float,
        height_thresh: float,
        min_pts_num: int,
        height_gate_m: float | None = None,
        z_offset_m: float = 0.0,
    ):
        if not (0.0 <= score_threshold <= 1.0):
            raise ValueError(f"score_threshold must be in [0, 1], got {score_threshold}")
        if height_thresh < 0:
            raise ValueError(f"height_thresh must be >= 0, got {height_thresh}")
        if min_pts_num < 1:
            raise ValueError(f"min_pts_num must be >= 1, got {min_pts_num}")
        self.score_threshold = float(score_threshold)
        self.height_thresh = float(height_thresh)
        self.min_pts_num = int(min_pts_num)
        self.height_gate_m = None if height_gate_m is None else float(height_gate_m)
        # Predicted heights live in the network frame (points shifted up by z_offset).
        self.z_offset_m = float(z_offset_m)

    @classmethod
    def from_config(cls, cfg: SegmenterConfig | ObjectConfig, z_offset_m: float | None = None) -> "ObjectAssembler":
        if isinstance(cfg, SegmenterConfig):
            if z_offset_m is None:
                z_offset_m = cfg.transforms.z_offset_m
            cfg = cfg.objects
        return cls(
            cfg.score_threshold, cfg.height_thresh, cfg.min_pts_num,
            height_gate_m=cfg.height_gate_m,
            z_offset_m=z_offset_m or 0.0,
        )

    def assemble(
        self,
        clusters: Sequence[Cluster],
        points: np.ndarray,
        predictions: Predictions,
        source_index: np.ndarray | None = None,
    ) -> list[DetectedObject]:
        """Turn clusters into accepted objects, in cluster order.

        ``points`` is the array the clusters index into. ``source_index``
        optionally maps those rows back to the caller's original cloud.
        """
        objects: list[DetectedObject] = []
        n_rejected = 0
        for cluster in clusters:
            obj = self._assemble_one(cluster, points, predictions, source_index)
            if obj is None:
                n_rejected += 1
                continue
            objects.append(obj)

        if clusters:
            logger.debug("Accepted %d of %d clusters (%d discarded)",
                         len(objects), len(clusters), n_rejected)
        return objects

    def _assemble_one(
        self,
        cluster: Cluster,
        points: np.ndarray,
        predictions: Predictions,
        source_index: np.ndarray | None,
    ) -> DetectedObject | None:
        cells = cluster.cells
        score = float(np.mean(predictions.objectness[cells]))
        if score < self.score_threshold:
            return None

        predicted_height = float(np.mean(predictions.height[cells]))
        rows = cluster.point_indices
        if self.height_gate_m is not None and rows.size:
            z_net = points[rows, 2] + self.z_offset_m
            rows = rows[z_net <= predicted_height + self.height_gate_m]

        point_count = int(rows.size)
        if point_count < self.min_pts_num:
            return None

        member = points[rows]
        z = member[:, 2]
        height_range = float(z.max() - z.min())
        if height_range < self.height_thresh:
            return None

        label, class_probs = self._classify(cells, predictions)
        if source_index is not None:
            rows = source_index[rows]

        return DetectedObject(
            cluster_id=cluster.cluster_id,
            point_indices=_readonly(np.array(rows, dtype=np.int64)),
            points=_readonly(np.array(member, dtype=np.float32)),
            cells=_readonly(np.array(cells, dtype=np.int64)),
            score=score,
            confidence=float(np.mean(predictions.confidence[cells])),
            height_range=height_range,
            predicted_height=predicted_height,
            point_count=point_count,
            bbox=fit_bounding_box(member),
            label=label,
            class_probs=class_probs,
        )

    @staticmethod
    def _classify(cells: np.ndarray, predictions: Predictions) -> tuple[str | None, np.ndarray | None]:
        if predictions.class_scores is None:
            return None, None
        sums = predictions.class_scores[:, cells].astype(np.float64).sum(axis=1)
        total = sums.sum()
        if not total > 0:
            return None, None
        probs = _readonly((sums / total).astype(np.float32))
        return predictions.layout.class_names[int(np.argmax(probs))], probs
