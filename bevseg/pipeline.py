"""Per-frame instance segmentation pipeline.

    cloud -> transform -> sanitize -> features -> infer -> cluster -> assemble

Every per-frame failure is local: a transform or inference error ends the
frame with an empty object list and a status saying why, and the next frame
is processed normally. Only configuration errors (raised while building the
segmenter) are fatal.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .cluster import GridClusterer
from .config import SegmenterConfig
from .feature_map import FeatureMapBuilder
from .grid import GridSpec
from .inference import InferenceEngine, InferenceError, PredictionLayout, run_inference
from .log import get_logger, setup_logger
from .objects import DetectedObject, ObjectAssembler
from .pointcloud import PointCloud, sanitize_points
from .transforms import StaticTransformBuffer, TransformError, Transformer

logger = get_logger(__name__)


class FrameStatus(Enum):
    OK = "ok"
    TRANSFORM_FAILED = "transform_failed"
    INFERENCE_FAILED = "inference_failed"
    SUPERSEDED = "superseded"


@dataclass
class FrameStats:
    n_input: int = 0
    n_finite: int = 0
    n_in_grid: int = 0
    n_nonempty_cells: int = 0
    n_eligible_cells: int = 0
    n_clusters: int = 0
    n_objects: int = 0
    transform_s: float = 0.0
    features_s: float = 0.0
    inference_s: float = 0.0
    cluster_s: float = 0.0
    assemble_s: float = 0.0

    @property
    def total_s(self) -> float:
        return self.transform_s + self.features_s + self.inference_s + self.cluster_s + self.assemble_s


@dataclass
class FrameResult:
    frame_id: str
    stamp_ns: int
    status: FrameStatus
    objects: tuple[DetectedObject, ...]
    stats: FrameStats

    @property
    def ok(self) -> bool:
        return self.status is FrameStatus.OK


class InstanceSegmenter:
    """Owns one set of scratch buffers; process frames one at a time."""

    def __init__(
        self,
        cfg: SegmenterConfig,
        engine: InferenceEngine,
        transformer: Transformer | None = None,
    ):
        if not isinstance(engine, InferenceEngine):
            raise TypeError(f"Engine {type(engine).__name__} has no infer(tensor) method")
        setup_logger(level=cfg.logging.level, log_file=cfg.logging.log_file)

        self.cfg = cfg
        self.engine = engine
        self.transformer = transformer or StaticTransformBuffer.from_config(cfg.transforms)
        self.target_frame = cfg.transforms.target_frame
        self.objectness_threshold = cfg.clustering.objectness_threshold

        self.grid = GridSpec.from_config(cfg.grid)
        self.builder = FeatureMapBuilder.from_config(cfg)
        self.layout = PredictionLayout.from_config(cfg.prediction)
        self.clusterer = GridClusterer(self.grid)
        self.assembler = ObjectAssembler.from_config(cfg)

        logger.info(
            "Segmenter ready: grid %dx%d, range %.1fm, %d feature channels %s",
            self.grid.height, self.grid.width, self.grid.range_m,
            self.builder.layout.num_channels, list(self.builder.layout.channels),
        )

    def process(
        self,
        cloud: PointCloud,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> FrameResult:
        """Run one frame to completion (or to the first per-frame failure).

        ``is_cancelled`` is polled after inference and after clustering; a
        True answer abandons the frame with status SUPERSEDED.
        """
        stats = FrameStats(n_input=len(cloud))

        def finish(status: FrameStatus, objects=()) -> FrameResult:
            stats.n_objects = len(objects)
            return FrameResult(cloud.frame_id, cloud.stamp_ns, status, tuple(objects), stats)

        def cancelled() -> bool:
            return is_cancelled is not None and is_cancelled()

        t0 = time.perf_counter()
        try:
            cloud_tf = self.transformer.transform(cloud, self.target_frame)
        except TransformError as exc:
            logger.warning("Frame %s @%d skipped: %s", cloud.frame_id, cloud.stamp_ns, exc)
            return finish(FrameStatus.TRANSFORM_FAILED)
        stats.transform_s = time.perf_counter() - t0

        t0 = time.perf_counter()
        points, source_index = sanitize_points(cloud_tf.points)
        stats.n_finite = int(points.shape[0])
        feature_map = self.builder.build(points)
        stats.n_in_grid = feature_map.stats.n_in_grid
        stats.n_nonempty_cells = feature_map.stats.n_nonempty_cells
        stats.features_s = time.perf_counter() - t0

        # No occupied cell means no cluster whatever the network says.
        if stats.n_nonempty_cells == 0:
            return finish(FrameStatus.OK)

        t0 = time.perf_counter()
        try:
            predictions = run_inference(self.engine, feature_map.tensor, self.layout)
        except InferenceError as exc:
            logger.warning("Frame %s @%d skipped: %s", cloud.frame_id, cloud.stamp_ns, exc,
                           exc_info=True)
            return finish(FrameStatus.INFERENCE_FAILED)
        stats.inference_s = time.perf_counter() - t0
        if cancelled():
            return finish(FrameStatus.SUPERSEDED)

        t0 = time.perf_counter()
        result = self.clusterer.cluster(predictions, feature_map.inverse_index, self.objectness_threshold)
        stats.n_eligible_cells = result.n_eligible
        stats.n_clusters = len(result)
        stats.cluster_s = time.perf_counter() - t0
        if cancelled():
            return finish(FrameStatus.SUPERSEDED)

        t0 = time.perf_counter()
        objects = self.assembler.assemble(result.clusters, points, predictions, source_index=source_index)
        stats.assemble_s = time.perf_counter() - t0

        logger.debug(
            "Frame %s @%d: %d pts, %d in grid, %d cells, %d clusters, %d objects (%.1f ms)",
            cloud.frame_id, cloud.stamp_ns, stats.n_input, stats.n_in_grid,
            stats.n_nonempty_cells, stats.n_clusters, len(objects), 1e3 * stats.total_s,
        )
        return finish(FrameStatus.OK, objects)

