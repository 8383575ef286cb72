"""Inference contract: the network is an external ``infer(tensor) -> tensor``.

Any object with an ``infer`` method satisfies ``InferenceEngine``; accelerator
runtimes are plugged in by composition, never by subclassing. The output
tensor is ``(C', H, W)`` (a leading batch axis of 1 is accepted) and its
channel positions are described by ``PredictionLayout``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Protocol, runtime_checkable

import numpy as np

from .config import PredictionConfig


class InferenceError(RuntimeError):
    """The engine failed or returned a tensor that breaks the contract."""


@runtime_checkable
class InferenceEngine(Protocol):
    def infer(self, tensor: np.ndarray) -> np.ndarray:
        ...


class FunctionEngine:
    """Adapts a plain ``fn(tensor) -> tensor`` callable to the engine contract."""

    def __init__(self, fn: Callable[[np.ndarray], np.ndarray]):
        self._fn = fn

    def infer(self, tensor: np.ndarray) -> np.ndarray:
        return self._fn(tensor)


@dataclass(frozen=True)
class PredictionLayout:
    num_channels: int
    objectness: int
    offset_x: int     # meters along the grid row axis
    offset_y: int     # meters along the grid column axis
    confidence: int
    height: int
    class_start: Optional[int] = None
    class_names: tuple[str, ...] = ()

    @classmethod
    def from_config(cls, cfg: PredictionConfig) -> "PredictionLayout":
        has_classes = cfg.class_start is not None
        return cls(
            num_channels=cfg.num_channels,
            objectness=cfg.objectness,
            offset_x=cfg.offset_x,
            offset_y=cfg.offset_y,
            confidence=cfg.confidence,
            height=cfg.height,
            class_start=cfg.class_start if has_classes else None,
            class_names=tuple(cfg.class_names) if has_classes else (),
        )

    @property
    def num_classes(self) -> int:
        return len(self.class_names) if self.class_start is not None else 0


@dataclass(eq=False)
class Predictions:
    """Per-cell network outputs as flat (G,) views, G = H * W."""

    objectness: np.ndarray
    offset_x: np.ndarray
    offset_y: np.ndarray
    confidence: np.ndarray
    height: np.ndarray
    class_scores: np.ndarray | None  # (K, G) or None
    layout: PredictionLayout

    @classmethod
    def from_tensor(cls, tensor: np.ndarray, layout: PredictionLayout) -> "Predictions":
        flat = np.ascontiguousarray(tensor, dtype=np.float32).reshape(tensor.shape[0], -1)
        class_scores = None
        if layout.num_classes:
            start = layout.class_start
            class_scores = flat[start:start + layout.num_classes]
        return cls(
            objectness=flat[layout.objectness],
            offset_x=flat[layout.offset_x],
            offset_y=flat[layout.offset_y],
            confidence=flat[layout.confidence],
            height=flat[layout.height],
            class_scores=class_scores,
            layout=layout,
        )

    @property
    def num_cells(self) -> int:
        return self.objectness.shape[0]


def check_output(output, layout: PredictionLayout, height: int, width: int) -> np.ndarray:
    """Validate an engine output and return it as (C', H, W) float32."""
    arr = np.asarray(output)
    if arr.ndim == 4 and arr.shape[0] == 1:
        arr = arr[0]
    expected = (layout.num_channels, height, width)
    if arr.shape != expected:
        raise InferenceError(f"Engine returned shape {arr.shape}, expected {expected}")
    return arr.astype(np.float32, copy=False)


def run_inference(
    engine: InferenceEngine,
    tensor: np.ndarray,
    layout: PredictionLayout,
) -> Predictions:
    """Single blocking call into the engine, checked against the layout."""
    _, height, width = tensor.shape
    try:
        output = engine.infer(tensor)
    except InferenceError:
        raise
    except Exception as exc:
        raise InferenceError(f"Inference engine failed: {exc}") from exc
    return Predictions.from_tensor(check_output(output, layout, height, width), layout)
