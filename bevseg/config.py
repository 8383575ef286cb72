"""Configuration: load segmenter.yaml into typed dataclasses."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import yaml

SCHEDULING_POLICIES = ("drop_and_replace", "fifo")

# Apollo CNN-seg output head, 12 channels.
DEFAULT_CLASS_NAMES = ["unknown", "car", "truck", "bicycle", "pedestrian"]


@dataclass
class GridConfig:
    width: int
    height: int
    range_m: float
    min_height_m: float = -5.0
    max_height_m: float = 5.0


@dataclass
class FeatureConfig:
    use_intensity_feature: bool = True
    use_constant_feature: bool = True
    intensity_scale: float = 255.0


@dataclass
class PredictionConfig:
    num_channels: int = 12
    objectness: int = 0
    offset_x: int = 1
    offset_y: int = 2
    confidence: int = 3
    height: int = 11
    class_start: Optional[int] = 4  # None = no class channels
    class_names: List[str] = field(default_factory=lambda: list(DEFAULT_CLASS_NAMES))


@dataclass
class ClusteringConfig:
    objectness_threshold: float = 0.5


@dataclass
class ObjectConfig:
    score_threshold: float = 0.8
    height_thresh: float = 0.5
    min_pts_num: int = 3
    height_gate_m: Optional[float] = None  # None = keep every member point


@dataclass
class MountConfig:
    parent: str
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    roll: float = 0.0
    pitch: float = 0.0
    yaw: float = 0.0


@dataclass
class TransformConfig:
    target_frame: str = "base_link"
    z_offset_m: float = 2.0
    mounts: dict[str, MountConfig] = field(default_factory=dict)  # child frame -> mount


@dataclass
class SchedulingConfig:
    policy: str = "drop_and_replace"
    max_pending: int = 1


@dataclass
class LoggingConfig:
    level: str = "INFO"
    log_file: Optional[Path] = None


@dataclass
class SegmenterConfig:
    grid: GridConfig
    features: FeatureConfig = field(default_factory=FeatureConfig)
    prediction: PredictionConfig = field(default_factory=PredictionConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    objects: ObjectConfig = field(default_factory=ObjectConfig)
    transforms: TransformConfig = field(default_factory=TransformConfig)
    scheduling: SchedulingConfig = field(default_factory=SchedulingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _check_unit_interval(name: str, value: float) -> None:
    if not (0.0 <= value <= 1.0):
        raise ValueError(f"{name} must be in [0, 1], got {value}")


def _validate(cfg: SegmenterConfig) -> None:
    """Validate config values. Raises ValueError on bad input."""
    g, pred, obj = cfg.grid, cfg.prediction, cfg.objects
    if g.width <= 0 or g.height <= 0:
        raise ValueError(f"Grid dimensions must be positive: {g.width}x{g.height}")
    if not g.range_m > 0:
        raise ValueError(f"Grid range must be positive: {g.range_m}")
    if not g.min_height_m < g.max_height_m:
        raise ValueError(f"Bad height limits: min={g.min_height_m}, max={g.max_height_m}")
    if not cfg.features.intensity_scale > 0:
        raise ValueError(f"Intensity scale must be positive: {cfg.features.intensity_scale}")

    if pred.num_channels <= 0:
        raise ValueError(f"Prediction channel count must be positive: {pred.num_channels}")
    named = {
        "objectness": pred.objectness, "offset_x": pred.offset_x,
        "offset_y": pred.offset_y, "confidence": pred.confidence, "height": pred.height,
    }
    for name, idx in named.items():
        if not (0 <= idx < pred.num_channels):
            raise ValueError(f"Prediction channel {name}={idx} outside [0, {pred.num_channels})")
    if pred.class_start is not None:
        if not pred.class_names:
            raise ValueError("class_names must not be empty when class_start is set")
        end = pred.class_start + len(pred.class_names)
        if pred.class_start < 0 or end > pred.num_channels:
            raise ValueError(
                f"Prediction class channels [{pred.class_start}, {end}) outside [0, {pred.num_channels})"
            )

    _check_unit_interval("objectness_threshold", cfg.clustering.objectness_threshold)
    _check_unit_interval("score_threshold", obj.score_threshold)
    if obj.height_thresh < 0:
        raise ValueError(f"height_thresh must be >= 0, got {obj.height_thresh}")
    if obj.min_pts_num < 1:
        raise ValueError(f"min_pts_num must be >= 1, got {obj.min_pts_num}")

    for child, mount in cfg.transforms.mounts.items():
        if mount.parent == child:
            raise ValueError(f"Mount {child!r} cannot be its own parent")

    if cfg.scheduling.policy not in SCHEDULING_POLICIES:
        raise ValueError(f"Unsupported scheduling policy: {cfg.scheduling.policy!r}")
    if cfg.scheduling.max_pending < 1:
        raise ValueError(f"max_pending must be >= 1, got {cfg.scheduling.max_pending}")


def config_from_dict(raw: dict) -> SegmenterConfig:
    """Build and validate a SegmenterConfig from an already-parsed mapping."""
    # Only the grid section is mandatory; the rest fall back to Apollo defaults.
    grid = GridConfig(**raw["grid"])
    features = FeatureConfig(**(raw.get("features") or {}))

    pred_raw = dict(raw.get("prediction") or {})
    if "class_names" in pred_raw:
        pred_raw["class_names"] = [str(n) for n in (pred_raw["class_names"] or [])]
    prediction = PredictionConfig(**pred_raw)

    clustering = ClusteringConfig(**(raw.get("clustering") or {}))
    objects = ObjectConfig(**(raw.get("objects") or {}))

    tf_raw = dict(raw.get("transforms") or {})
    mounts = {
        str(child): MountConfig(**m)
        for child, m in (tf_raw.pop("mounts", None) or {}).items()
    }
    transforms = TransformConfig(mounts=mounts, **tf_raw)

    scheduling = SchedulingConfig(**(raw.get("scheduling") or {}))
    log_raw = dict(raw.get("logging") or {})
    if log_raw.get("log_file") is not None:
        log_raw["log_file"] = Path(log_raw["log_file"])
    logging_cfg = LoggingConfig(**log_raw)

    cfg = SegmenterConfig(
        grid=grid,
        features=features,
        prediction=prediction,
        clustering=clustering,
        objects=objects,
        transforms=transforms,
        scheduling=scheduling,
        logging=logging_cfg,
    )
    _validate(cfg)
    return cfg


def load_config(path: str | Path) -> SegmenterConfig:
    """Load segmenter.yaml and return a fully typed SegmenterConfig."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path) as f:
        raw = yaml.safe_load(f)
    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} does not contain a mapping")
    return config_from_dict(raw)
