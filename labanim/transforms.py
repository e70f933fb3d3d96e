"""
Per-bone, per-frame transforms computed from LAB key tracks.

Matrices follow the row-vector convention used by pyrr and by the file
itself: points transform as ``v @ M`` and the translation sits in row 3.
"""
from typing import List, Optional

import numpy as np
import pyrr

from labanim.debug_console import DebugConsole
from labanim.errors import NumericError, TrackMismatchError
from labanim.lab_parser import (
    AnimationDataset,
    KeyEncoding,
    KeyTrack,
    Mat43Sequence,
    Mat44Sequence,
    QuatPosSequence,
)


def quaternion_to_matrix(quats: np.ndarray) -> np.ndarray:
    """
    Rotation matrices for (w, x, y, z) quaternions, shape (..., 4) -> (..., 4, 4).

    The quaternions are used as given; a non-unit quaternion yields a
    scaled/sheared matrix rather than an error.
    """
    quats = np.asarray(quats, dtype=np.float32)
    w, x, y, z = (quats[..., i] for i in range(4))
    xx, yy, zz = x * x, y * y, z * z
    xy, xz, yz = x * y, x * z, y * z
    wx, wy, wz = w * x, w * y, w * z

    out = np.zeros(quats.shape[:-1] + (4, 4), dtype=np.float32)
    out[..., 0, 0] = 1.0 - 2.0 * (yy + zz)
    out[..., 0, 1] = 2.0 * (xy + wz)
    out[..., 0, 2] = 2.0 * (xz - wy)
    out[..., 1, 0] = 2.0 * (xy - wz)
    out[..., 1, 1] = 1.0 - 2.0 * (xx + zz)
    out[..., 1, 2] = 2.0 * (yz + wx)
    out[..., 2, 0] = 2.0 * (xz + wy)
    out[..., 2, 1] = 2.0 * (yz - wx)
    out[..., 2, 2] = 1.0 - 2.0 * (xx + yy)
    out[..., 3, 3] = 1.0
    return out


def translation_matrices(positions: np.ndarray) -> np.ndarray:
    """Translation matrices for positions, shape (..., 3) -> (..., 4, 4)."""
    positions = np.asarray(positions, dtype=np.float32)
    identity = pyrr.matrix44.create_identity(dtype=np.float32)
    out = np.broadcast_to(identity, positions.shape[:-1] + (4, 4)).copy()
    out[..., 3, :3] = positions
    return out


def expand_mat43(matrices: np.ndarray) -> np.ndarray:
    """
    Widen 4x3 keys to 4x4, shape (..., 4, 3) -> (..., 4, 4).

    The four stored rows are kept and a (0, 0, 0, 1) column is appended, so
    the translation stays in row 3 as it does for 4x4 keys.
    """
    matrices = np.asarray(matrices, dtype=np.float32)
    out = np.zeros(matrices.shape[:-2] + (4, 4), dtype=np.float32)
    out[..., :, :3] = matrices
    out[..., 3, 3] = 1.0
    return out


def quatpos_matrices(rotations: np.ndarray, positions: np.ndarray) -> np.ndarray:
    # Rotation first, then translation
    return quaternion_to_matrix(rotations) @ translation_matrices(positions)


class TransformEngine:
    def __init__(self, dataset: AnimationDataset):
        self.dataset = dataset
        self._table: Optional[np.ndarray] = None

    @property
    def encoding(self) -> KeyEncoding:
        return self.dataset.key_encoding

    @property
    def bone_count(self) -> int:
        return self.dataset.bone_count

    @property
    def frame_count(self) -> int:
        return self.dataset.frame_count

    # ------------------------------------------------------------------
    # Track access
    # ------------------------------------------------------------------
    def _check_bone(self, bone: int):
        if not 0 <= bone < self.bone_count:
            raise IndexError(f"Bone index {bone} out of range (bone count {self.bone_count})")

    def _check_frame(self, frame: int):
        if not 0 <= frame < self.frame_count:
            raise IndexError(f"Frame index {frame} out of range (frame count {self.frame_count})")

    def _track(self, bone: int, frame: Optional[int] = None) -> KeyTrack:
        self._check_bone(bone)
        if frame is not None:
            self._check_frame(frame)
        if self.encoding is KeyEncoding.Invalid:
            raise TrackMismatchError("File has an invalid key encoding; no transforms available", bone, frame)
        if bone >= len(self.dataset.tracks):
            raise TrackMismatchError("No key track decoded", bone, frame)
        return self.dataset.tracks[bone]

    # ------------------------------------------------------------------
    # Local transforms
    # ------------------------------------------------------------------
    def bone_transforms(self, bone: int) -> np.ndarray:
        """All frames of one bone, shape (frame_count, 4, 4)."""
        if self._table is not None:
            self._check_bone(bone)
            return self._table[bone]

        track = self._track(bone)
        if isinstance(track, QuatPosSequence):
            return quatpos_matrices(track.rotations, track.positions)
        if isinstance(track, Mat43Sequence):
            return expand_mat43(track.matrices)
        if isinstance(track, Mat44Sequence):
            return np.array(track.matrices, dtype=np.float32)
        raise TrackMismatchError(f"Unsupported key track type {type(track).__name__}", bone)

    def local_transform(self, bone: int, frame: int) -> np.ndarray:
        track = self._track(bone, frame)
        if isinstance(track, QuatPosSequence):
            return quatpos_matrices(track.rotations[frame], track.positions[frame])
        if isinstance(track, Mat43Sequence):
            return expand_mat43(track.matrices[frame])
        if isinstance(track, Mat44Sequence):
            return np.array(track.matrices[frame], dtype=np.float32)
        raise TrackMismatchError(f"Unsupported key track type {type(track).__name__}", bone, frame)

    def quaternion_transform(self, bone: int, frame: int) -> np.ndarray:
        """Local transform built from the quaternion/position keys only."""
        track = self._track(bone, frame)
        if not isinstance(track, QuatPosSequence):
            raise TrackMismatchError(
                f"Quaternion keys requested but the file stores {self.encoding.name} keys", bone, frame
            )
        return quatpos_matrices(track.rotations[frame], track.positions[frame])

    def rest_pose(self, bone: int) -> np.ndarray:
        """Frame-0 local transform; identity for a file without frames."""
        if self.frame_count == 0:
            self._track(bone)
            return np.asarray(pyrr.Matrix44.identity(), dtype=np.float32)
        return self.local_transform(bone, 0)

    def rest_poses(self) -> List[np.ndarray]:
        if self.frame_count == 0 and self.bone_count:
            DebugConsole.warning("Animation has no frames; using identity rest poses")
        return [self.rest_pose(bone) for bone in range(self.bone_count)]

    def frame_transforms(self, frame: int) -> List[np.ndarray]:
        """Local transforms of every bone for one frame."""
        self._check_frame(frame)
        if self._table is not None:
            return list(self._table[:, frame])
        return [self.local_transform(bone, frame) for bone in range(self.bone_count)]

    def transform_table(self) -> np.ndarray:
        """
        The full table, shape (bone_count, frame_count, 4, 4).

        Computed once; the returned array is read-only.
        """
        if self._table is None:
            table = np.empty((self.bone_count, self.frame_count, 4, 4), dtype=np.float32)
            for bone in range(self.bone_count):
                table[bone] = self.bone_transforms(bone)
            table.setflags(write=False)
            self._table = table
            DebugConsole.log(f"Computed {self.bone_count}x{self.frame_count} frame transforms")
        return self._table

    # ------------------------------------------------------------------
    # Bind pose and positions
    # ------------------------------------------------------------------
    def inverse_bind(self, bone: int) -> np.ndarray:
        self._check_bone(bone)
        return self.dataset.inverse_bind_matrices[bone]

    def bind_pose(self, bone: int) -> np.ndarray:
        return invert_bind_matrix(self.inverse_bind(bone), bone)

    @staticmethod
    def world_position(inverse_bind: np.ndarray, frame_transform: np.ndarray, bone: Optional[int] = None) -> np.ndarray:
        """
        Animated position of a bone in object space.

        The bind-pose origin is the translation of ``inverse_bind``'s inverse;
        that point is carried through ``inverse_bind`` and then the frame's
        transform.
        """
        inverse_bind = np.asarray(inverse_bind, dtype=np.float64)
        bind_pose = invert_bind_matrix(inverse_bind, bone)
        origin = np.append(bind_pose[3, :3], 1.0)
        point = origin @ inverse_bind @ np.asarray(frame_transform, dtype=np.float64)
        return point[:3].astype(np.float32)

    def frame_positions(self, frame: int) -> np.ndarray:
        """World positions of every bone for one frame, shape (bone_count, 3)."""
        transforms = self.frame_transforms(frame)
        positions = np.empty((self.bone_count, 3), dtype=np.float32)
        for bone in range(self.bone_count):
            positions[bone] = self.world_position(self.inverse_bind(bone), transforms[bone], bone)
        return positions


def invert_bind_matrix(matrix: np.ndarray, bone: Optional[int] = None) -> np.ndarray:
    matrix = np.asarray(matrix, dtype=np.float64)
    if not np.all(np.isfinite(matrix)) or np.linalg.det(matrix) == 0:
        raise NumericError("Inverse bind matrix is not invertible", bone)
    try:
        return pyrr.matrix44.inverse(matrix)
    except np.linalg.LinAlgError as exc:
        raise NumericError(f"Inverse bind matrix is not invertible: {exc}", bone) from exc
