"""Synthetic LAB files for the test-suite"""

import io
import math
import struct

import numpy as np
import pytest

NO_PARENT = 0xFFFFFFFF

BIPED_BONES = [
    ("Bip01", 0, NO_PARENT),
    ("Bip01 Footsteps", 1, 0),
    ("Bip01 Pelvis", 2, 0),
    ("Bip01 Spine", 3, 2),
    ("Bip01 L Thigh", 4, 3),
    ("Bip01 L Calf", 5, 4),
    ("Bip01 L Foot", 6, 5),
    ("Bip01 L Toe0", 7, 6),
    ("Bip01 L Toe0Nub", 8, 7),
    ("Bip01 R Thigh", 9, 3),
    ("Bip01 R Calf", 10, 9),
    ("Bip01 R Foot", 11, 10),
    ("Bip01 R Toe0", 12, 11),
    ("Bip01 R Toe0Nub", 13, 12),
    ("Bip01 Spine1", 14, 3),
    ("Bip01 Neck", 15, 14),
    ("Bip01 R Clavicle", 16, 15),
    ("Bip01 R UpperArm", 17, 16),
    ("Bip01 R Forearm", 18, 17),
    ("Bip01 R Hand", 19, 18),
    ("Bip01 R Finger0Nub", 20, 19),
    ("Bip01 L Clavicle", 21, 15),
    ("Bip01 L UpperArm", 22, 21),
    ("Bip01 L Forearm", 23, 22),
    ("Bip01 L Hand", 24, 23),
    ("Bip01 L Finger0Nub", 25, 24),
    ("Bip01 Head", 26, 15),
    ("Bip01 HeadNub", 27, 26),
    ("Bip01 Ponytail1", 28, 26),
    ("Bip01 Ponytail1Nub", 29, 28),
    ("Bip01 Xtra01", 30, 26),
    ("Bip01 Tail", 31, 2),
    ("Bip01 Tail1", 32, 31),
    ("Bip01 Tail2", 33, 32),
    ("Bip01 TailNub", 34, 33),
]


def _f32(values):
    return np.asarray(values, dtype="<f4").tobytes()


def translation(x, y, z):
    m = np.identity(4, dtype=np.float32)
    m[3, :3] = (x, y, z)
    return m


def build_lab(bones, frame_count, key_encoding, keys=None, inverse_binds=None,
              dummies=(), version=4010, name_padding=b"\x00"):
    """
    Packs a LAB file.

    ``keys`` holds one entry per bone: (positions, quats_xyzw) for encoding 3,
    an (F, 4, 3) array for encoding 1, an (F, 4, 4) array for encoding 2.
    Identity keys are used when omitted.
    """
    out = io.BytesIO()
    out.write(struct.pack("<H", version))
    out.write(b"\x00\x00")
    out.write(struct.pack("<IIII", len(bones), frame_count, len(dummies), key_encoding))

    for name, bone_id, parent_id in bones:
        raw = name.encode("utf-8") if isinstance(name, str) else name
        out.write(raw.ljust(64, name_padding)[:64])
        out.write(struct.pack("<II", bone_id, parent_id))

    for i in range(len(bones)):
        matrix = np.identity(4) if inverse_binds is None else inverse_binds[i]
        out.write(_f32(matrix))

    for dummy_id, parent_bone_id, matrix in dummies:
        out.write(struct.pack("<II", dummy_id, parent_bone_id))
        out.write(_f32(matrix))

    for i in range(len(bones)):
        if key_encoding == 1:
            mats = keys[i] if keys else np.tile(np.identity(4)[:, :3], (frame_count, 1, 1))
            out.write(_f32(mats))
        elif key_encoding == 2:
            mats = keys[i] if keys else np.tile(np.identity(4), (frame_count, 1, 1))
            out.write(_f32(mats))
        elif key_encoding == 3:
            if keys:
                positions, quats = keys[i]
            else:
                positions = np.zeros((frame_count, 3))
                quats = np.tile([0.0, 0.0, 0.0, 1.0], (frame_count, 1))
            out.write(_f32(positions))
            out.write(_f32(quats))

    return out.getvalue()


def biped_keys(frame_count):
    keys = []
    for bone in range(len(BIPED_BONES)):
        frames = np.arange(frame_count, dtype=np.float64)
        positions = np.stack([np.full(frame_count, float(bone)), frames * 0.1, np.zeros(frame_count)], axis=1)
        angles = frames * (math.pi / 180.0)
        # (x, y, z, w) rotation about z
        quats = np.stack(
            [np.zeros(frame_count), np.zeros(frame_count), np.sin(angles / 2), np.cos(angles / 2)], axis=1
        )
        keys.append((positions, quats))
    return keys


@pytest.fixture
def biped_lab_bytes():
    """35 bones, 228 frames, 2 dummies, quaternion/position keys"""
    dummies = [
        (0, 19, translation(0.0, 5.0, 0.0)),
        (1, 24, translation(0.0, -5.0, 0.0)),
    ]
    return build_lab(BIPED_BONES, 228, 3, keys=biped_keys(228), dummies=dummies)


@pytest.fixture
def biped_lab_stream(biped_lab_bytes):
    return io.BytesIO(biped_lab_bytes)


@pytest.fixture
def small_bones():
    return [
        ("Root", 0, NO_PARENT),
        ("Spine Bone", 1, 0),
        ("Arm", 2, 1),
    ]
