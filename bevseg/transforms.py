"""SE3 transforms and the static transform service.  T_A_B converts points FROM B INTO A."""

from __future__ import annotations

from typing import Protocol

import numpy as np

from .config import MountConfig, TransformConfig
from .pointcloud import PointCloud


class TransformError(RuntimeError):
    """No transform is known between the requested frames."""


class Transformer(Protocol):
    def transform(self, cloud: PointCloud, target_frame: str) -> PointCloud:
        ...


def pose_to_matrix(x: float, y: float, z: float,
                   roll: float, pitch: float, yaw: float) -> np.ndarray:
    """Build a 4×4 SE3 matrix from position and Euler angles (radians).

    Rotation order: Rz(yaw) @ Ry(pitch) @ Rx(roll)  (extrinsic XYZ / intrinsic ZYX).
    """
    cr, sr = np.cos(roll), np.sin(roll)
    cp, sp = np.cos(pitch), np.sin(pitch)
    cy, sy = np.cos(yaw), np.sin(yaw)

    R = np.array([
        [cy * cp,  cy * sp * sr - sy * cr,  cy * sp * cr + sy * sr],
        [sy * cp,  sy * sp * sr + cy * cr,  sy * sp * cr - cy * sr],
        [-sp,      cp * sr,                 cp * cr],
    ], dtype=np.float64)

    T = np.eye(4, dtype=np.float64)
    T[:3, :3] = R
    T[:3, 3] = [x, y, z]
    return T


def invert_se3(T: np.ndarray) -> np.ndarray:
    """Invert a 4×4 SE3 matrix: T_B_A = invert_se3(T_A_B)."""
    R = T[:3, :3]
    t = T[:3, 3]
    T_inv = np.eye(4, dtype=np.float64)
    T_inv[:3, :3] = R.T
    T_inv[:3, 3] = -R.T @ t
    return T_inv


def transform_points(T_A_B: np.ndarray, points_B: np.ndarray) -> np.ndarray:
    """Transform (N, 3) points from frame B to frame A using T_A_B.

    p_A = R @ p_B + t
    """
    R = T_A_B[:3, :3]
    t = T_A_B[:3, 3]
    return (R @ points_B.T).T + t


def is_valid_se3(T: np.ndarray, atol: float = 1e-8) -> bool:
    """Check if T is a valid 4×4 SE3 matrix."""
    if T.shape != (4, 4):
        return False
    if not np.allclose(T[3, :], [0, 0, 0, 1], atol=atol):
        return False
    R = T[:3, :3]
    if not np.allclose(R @ R.T, np.eye(3), atol=atol):
        return False
    if abs(np.linalg.det(R) - 1.0) > atol:
        return False
    return True


def mount_to_matrix(m: MountConfig) -> np.ndarray:
    return pose_to_matrix(m.x, m.y, m.z, m.roll, m.pitch, m.yaw)


class StaticTransformBuffer:
    """Fixed sensor mounts, resolved one hop in either direction.

    Each mount registers T_parent_child. Lookups between frames that are not
    equal and not directly linked raise TransformError, which the pipeline
    treats as a skipped frame.
    """

    def __init__(self, mounts: dict[str, MountConfig] | None = None):
        self._T: dict[tuple[str, str], np.ndarray] = {}
        for child, mount in (mounts or {}).items():
            self.add(mount.parent, child, mount_to_matrix(mount))

    @classmethod
    def from_config(cls, cfg: TransformConfig) -> "StaticTransformBuffer":
        return cls(cfg.mounts)

    def add(self, parent: str, child: str, T_parent_child: np.ndarray) -> None:
        if not is_valid_se3(T_parent_child, atol=1e-6):
            raise ValueError(f"Transform {parent} <- {child} is not a valid SE3 matrix")
        self._T[(parent, child)] = np.asarray(T_parent_child, dtype=np.float64)

    def lookup(self, target: str, source: str) -> np.ndarray:
        """T_target_source."""
        if target == source:
            return np.eye(4, dtype=np.float64)
        T = self._T.get((target, source))
        if T is not None:
            return T
        T = self._T.get((source, target))
        if T is not None:
            return invert_se3(T)
        raise TransformError(f"No transform from {source!r} to {target!r}")

    def transform(self, cloud: PointCloud, target_frame: str) -> PointCloud:
        if cloud.frame_id == target_frame:
            return cloud
        T = self.lookup(target_frame, cloud.frame_id)
        out = cloud.points.copy()
        out[:, :3] = transform_points(T, cloud.points[:, :3].astype(np.float64))
        return PointCloud(out, frame_id=target_frame, stamp_ns=cloud.stamp_ns)
