import os
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import BinaryIO, Dict, List, Optional, Union

import numpy as np

from labanim.debug_console import DebugConsole
from labanim.errors import DecodeError, UnsupportedVersionError


# ==========================================================================
# 1. ENUMS and Helper Classes
# ==========================================================================
NO_PARENT = 0xFFFFFFFF
BONE_NAME_SIZE = 64


class KeyEncoding(IntEnum):
    Mat4x3 = 1
    Mat4x4 = 2
    QuatPos = 3
    Invalid = 4

    @classmethod
    def from_value(cls, value: int) -> "KeyEncoding":
        if value in (cls.Mat4x3, cls.Mat4x4, cls.QuatPos):
            return cls(value)
        return cls.Invalid


class BinaryReader:
    def __init__(self, stream, endian="<"):
        self.stream = stream
        self.endian = endian

    def read_bytes(self, num_bytes, what=None):
        offset = self.tell()
        target = f" while reading {what}" if what else ""
        # Header counts are untrusted; never ask the stream for more than it holds
        remaining = self.remaining()
        if num_bytes > remaining:
            raise DecodeError(
                f"Tried to read {num_bytes} bytes{target}, but only {remaining} remain",
                offset=offset,
            )
        data = self.stream.read(num_bytes)
        if len(data) < num_bytes:
            raise DecodeError(
                f"Tried to read {num_bytes} bytes{target}, but only got {len(data)}",
                offset=offset,
            )
        return data

    def read_struct(self, fmt, num_bytes, what=None):
        return struct.unpack(self.endian + fmt, self.read_bytes(num_bytes, what))

    def read_u16(self, what=None):
        return self.read_struct("H", 2, what)[0]

    def read_fixed_string(self, length, what=None) -> str:
        raw = self.read_bytes(length, what)
        return raw.split(b"\x00", 1)[0].decode("utf-8", errors="replace")

    def read_f32_array(self, count, what=None) -> np.ndarray:
        data = self.read_bytes(count * 4, what)
        return np.frombuffer(data, dtype=self.endian + "f4").astype(np.float32)

    def read_matrix44(self, what=None) -> np.ndarray:
        return self.read_f32_array(16, what).reshape(4, 4)

    def tell(self):
        return self.stream.tell()

    def seek(self, offset, whence=0):
        return self.stream.seek(offset, whence)

    def remaining(self):
        current_pos = self.tell()
        self.stream.seek(0, os.SEEK_END)
        end_pos = self.stream.tell()
        self.stream.seek(current_pos, os.SEEK_SET)
        return max(end_pos - current_pos, 0)

    def is_eof(self):
        return self.remaining() == 0


# ==============================================================================
# 2. LAB (Bone Animation) Data Structures
# ==============================================================================
@dataclass(frozen=True)
class LabHeader:
    version: int
    bone_count: int
    frame_count: int
    dummy_count: int
    key_encoding: KeyEncoding
    raw_key_encoding: int


@dataclass(frozen=True)
class BoneBase:
    name: str
    id: int
    parent_id: int

    @property
    def is_root(self) -> bool:
        return self.parent_id == NO_PARENT


@dataclass
class DummyMarker:
    id: int
    parent_bone_id: int
    matrix: np.ndarray


@dataclass
class Mat43Sequence:
    """Raw 4x3 keys, shape (frame_count, 4, 3)."""
    matrices: np.ndarray
    encoding = KeyEncoding.Mat4x3

    @property
    def frame_count(self) -> int:
        return len(self.matrices)


@dataclass
class Mat44Sequence:
    """Raw 4x4 keys, shape (frame_count, 4, 4)."""
    matrices: np.ndarray
    encoding = KeyEncoding.Mat4x4

    @property
    def frame_count(self) -> int:
        return len(self.matrices)


@dataclass
class QuatPosSequence:
    """Parallel position (frame_count, 3) and (w, x, y, z) rotation (frame_count, 4) keys."""
    positions: np.ndarray
    rotations: np.ndarray
    encoding = KeyEncoding.QuatPos

    @property
    def frame_count(self) -> int:
        return len(self.positions)


KeyTrack = Union[Mat43Sequence, Mat44Sequence, QuatPosSequence]


@dataclass
class AnimationDataset:
    header: LabHeader
    bones: List[BoneBase] = field(default_factory=list)
    # Indexed by bone position in the table, not by bone id
    inverse_bind_matrices: List[np.ndarray] = field(default_factory=list)
    dummies: Dict[int, List[DummyMarker]] = field(default_factory=dict)
    # Empty when the key encoding is Invalid
    tracks: List[KeyTrack] = field(default_factory=list)

    @property
    def bone_count(self) -> int:
        return self.header.bone_count

    @property
    def frame_count(self) -> int:
        return self.header.frame_count

    @property
    def key_encoding(self) -> KeyEncoding:
        return self.header.key_encoding

    def all_dummies(self) -> List[DummyMarker]:
        return [dummy for group in self.dummies.values() for dummy in group]


# ==============================================================================
# 3. LAB Parser
# ==============================================================================
class LabParser:
    MIN_VERSION = 4010
    LAB_EXTENSION = ".lab"
    HEADER_OFFSET = 4  # u16 version + 2 bytes padding

    def __init__(self, source: Union[str, os.PathLike, BinaryIO]):
        self.source = source
        self.reader: Optional[BinaryReader] = None
        self.base_offset = 0
        self.header: Optional[LabHeader] = None

    @property
    def is_path_source(self) -> bool:
        return isinstance(self.source, (str, os.PathLike))

    def _open(self):
        if not os.path.exists(self.source):
            raise FileNotFoundError(f"File not found: {self.source}")
        return open(self.source, "rb")

    def parse(self) -> AnimationDataset:
        if self.is_path_source:
            with self._open() as f:
                try:
                    return self._parse_stream(f)
                finally:
                    # The reader must not outlive the file it wraps
                    self.reader = None
        return self._parse_stream(self.source)

    def _parse_stream(self, stream) -> AnimationDataset:
        self.reader = BinaryReader(stream)
        self.base_offset = self.reader.tell()
        header = self.read_header()
        DebugConsole.log(
            f"LAB v{header.version}: {header.bone_count} bones, {header.frame_count} frames, "
            f"{header.dummy_count} dummies, key encoding {header.key_encoding.name}"
        )
        if header.key_encoding is KeyEncoding.Invalid:
            DebugConsole.warning(
                f"Unknown key encoding value {header.raw_key_encoding}; keyframes will not be decoded"
            )

        dataset = AnimationDataset(header=header)
        dataset.bones = self._read_bone_bases(header)
        dataset.inverse_bind_matrices = self._read_inverse_bind_matrices(header)
        dataset.dummies = self._read_dummies(header)
        dataset.tracks = self._read_key_tracks(header)

        if not self.reader.is_eof():
            DebugConsole.log(f"Ignoring trailing data after offset {self.reader.tell()}")
        return dataset

    def read_header(self) -> LabHeader:
        """Decode the version tag and header; always starts from the stream's base offset."""
        if self.reader is None:
            if self.is_path_source:
                with self._open() as f:
                    self.reader = BinaryReader(f)
                    self.base_offset = 0
                    try:
                        return self._decode_header()
                    finally:
                        self.reader = None
            self.reader = BinaryReader(self.source)
            self.base_offset = self.reader.tell()
        return self._decode_header()

    def _decode_header(self) -> LabHeader:
        self.reader.seek(self.base_offset)
        version = self.reader.read_u16("version tag")
        if version < self.MIN_VERSION:
            raise UnsupportedVersionError(version, self.MIN_VERSION)

        self.reader.seek(self.base_offset + self.HEADER_OFFSET)
        bone_count, frame_count, dummy_count, raw_key_encoding = self.reader.read_struct(
            "IIII", 16, "header"
        )
        self.header = LabHeader(
            version=version,
            bone_count=bone_count,
            frame_count=frame_count,
            dummy_count=dummy_count,
            key_encoding=KeyEncoding.from_value(raw_key_encoding),
            raw_key_encoding=raw_key_encoding,
        )
        return self.header

    def _read_bone_bases(self, header: LabHeader) -> List[BoneBase]:
        bones = []
        for i in range(header.bone_count):
            what = f"bone base record {i}"
            name = self.reader.read_fixed_string(BONE_NAME_SIZE, what)
            bone_id, parent_id = self.reader.read_struct("II", 8, what)
            bones.append(BoneBase(name=name, id=bone_id, parent_id=parent_id))
        return bones

    def _read_inverse_bind_matrices(self, header: LabHeader) -> List[np.ndarray]:
        return [
            self.reader.read_matrix44(f"inverse bind matrix {i}")
            for i in range(header.bone_count)
        ]

    def _read_dummies(self, header: LabHeader) -> Dict[int, List[DummyMarker]]:
        dummies: Dict[int, List[DummyMarker]] = {}
        for i in range(header.dummy_count):
            what = f"dummy record {i}"
            dummy_id, parent_bone_id = self.reader.read_struct("II", 8, what)
            matrix = self.reader.read_matrix44(what)
            dummies.setdefault(parent_bone_id, []).append(
                DummyMarker(id=dummy_id, parent_bone_id=parent_bone_id, matrix=matrix)
            )
        return dummies

    def _read_key_tracks(self, header: LabHeader) -> List[KeyTrack]:
        frames = header.frame_count
        encoding = header.key_encoding
        tracks: List[KeyTrack] = []
        if encoding is KeyEncoding.Invalid:
            return tracks

        for i in range(header.bone_count):
            what = f"keyframes of bone {i}"
            if encoding is KeyEncoding.Mat4x3:
                matrices = self.reader.read_f32_array(frames * 12, what).reshape(frames, 4, 3)
                tracks.append(Mat43Sequence(matrices))
            elif encoding is KeyEncoding.Mat4x4:
                matrices = self.reader.read_f32_array(frames * 16, what).reshape(frames, 4, 4)
                tracks.append(Mat44Sequence(matrices))
            else:
                positions = self.reader.read_f32_array(frames * 3, what).reshape(frames, 3)
                xyzw = self.reader.read_f32_array(frames * 4, what).reshape(frames, 4)
                rotations = np.ascontiguousarray(xyzw[:, [3, 0, 1, 2]])
                tracks.append(QuatPosSequence(positions, rotations))
        return tracks


def load_animation(source: Union[str, os.PathLike, BinaryIO]) -> AnimationDataset:
    """Parse a LAB file (path or binary stream) into an AnimationDataset."""
    return LabParser(source).parse()

