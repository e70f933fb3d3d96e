"""Tests for the frame transform computation"""

import io
import math

import numpy as np
import pytest

from conftest import build_lab, translation
from labanim.errors import NumericError, TrackMismatchError
from labanim.lab_parser import load_animation
from labanim.transforms import (
    TransformEngine,
    expand_mat43,
    quaternion_to_matrix,
    translation_matrices,
)


def engine_for(bones, frames, encoding, **kwargs):
    return TransformEngine(load_animation(io.BytesIO(build_lab(bones, frames, encoding, **kwargs))))


def z_rotation_xyzw(degrees):
    half = math.radians(degrees) / 2
    return [0.0, 0.0, math.sin(half), math.cos(half)]


def test_identity_quaternion():
    assert np.allclose(quaternion_to_matrix([1.0, 0.0, 0.0, 0.0]), np.identity(4))


def test_quaternion_rotates_x_onto_y():
    half = math.radians(90) / 2
    rotation = quaternion_to_matrix([math.cos(half), 0.0, 0.0, math.sin(half)])
    point = np.array([1.0, 0.0, 0.0, 1.0]) @ rotation
    assert np.allclose(point, [0.0, 1.0, 0.0, 1.0], atol=1e-6)


def test_quaternion_is_not_normalised():
    # (w, x, y, z) = (0, 2, 0, 0)
    rotation = quaternion_to_matrix([0.0, 2.0, 0.0, 0.0])
    assert rotation[0, 0] == pytest.approx(1.0)
    assert rotation[1, 1] == pytest.approx(-7.0)
    assert rotation[2, 2] == pytest.approx(-7.0)


def test_translation_matrices_put_offset_in_last_row():
    matrices = translation_matrices(np.array([[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]]))
    assert matrices.shape == (2, 4, 4)
    assert np.array_equal(matrices[1], translation(4, 5, 6))


def test_expand_mat43_keeps_translation_row():
    stored = np.array(
        [[1, 2, 3], [4, 5, 6], [7, 8, 9], [10, 11, 12]], dtype=np.float32
    )
    expanded = expand_mat43(stored)

    assert np.array_equal(expanded[:, :3], stored)
    assert np.array_equal(expanded[:, 3], [0, 0, 0, 1])
    assert np.array_equal(expanded[3, :3], [10, 11, 12])


def test_quatpos_local_rotates_then_translates(small_bones):
    keys = [(np.array([[5.0, 0.0, 0.0]]), np.array([z_rotation_xyzw(90)]))] * 3
    engine = engine_for(small_bones, 1, 3, keys=keys)

    local = engine.local_transform(0, 0)
    point = np.array([1.0, 0.0, 0.0, 1.0]) @ local
    assert np.allclose(point, [5.0, 1.0, 0.0, 1.0], atol=1e-6)
    assert np.allclose(local[3, :3], [5.0, 0.0, 0.0])


def test_mat44_rest_pose_identity(small_bones):
    engine = engine_for(small_bones, 3, 2)
    assert np.array_equal(engine.rest_pose(1), np.identity(4))


def test_mat43_rest_pose_identity(small_bones):
    engine = engine_for(small_bones, 3, 1)
    assert np.array_equal(engine.rest_pose(2), np.identity(4))


def test_mat44_passes_through(small_bones):
    keys = [np.stack([translation(b, f, 2) for f in range(4)]) for b in range(3)]
    engine = engine_for(small_bones, 4, 2, keys=keys)

    assert np.array_equal(engine.local_transform(2, 3), translation(2, 3, 2))
    assert np.array_equal(engine.bone_transforms(1), keys[1])


def test_rest_pose_is_frame_zero(biped_lab_stream):
    engine = TransformEngine(load_animation(biped_lab_stream))
    for bone in (0, 20, 34):
        assert np.allclose(engine.rest_pose(bone), engine.local_transform(bone, 0))
    assert len(engine.rest_poses()) == 35


def test_quaternion_transform_rejects_matrix_keys(small_bones):
    engine = engine_for(small_bones, 2, 2)
    with pytest.raises(TrackMismatchError) as excinfo:
        engine.quaternion_transform(0, 1)
    assert excinfo.value.bone == 0
    assert excinfo.value.frame == 1


def test_quaternion_transform_on_quaternion_keys(biped_lab_stream):
    engine = TransformEngine(load_animation(biped_lab_stream))
    assert np.allclose(engine.quaternion_transform(3, 7), engine.local_transform(3, 7))


def test_invalid_encoding_fails_every_request(small_bones):
    engine = engine_for(small_bones, 2, 0)

    with pytest.raises(TrackMismatchError):
        engine.local_transform(0, 0)
    with pytest.raises(TrackMismatchError):
        engine.rest_pose(1)
    with pytest.raises(TrackMismatchError):
        engine.bone_transforms(2)
    with pytest.raises(TrackMismatchError):
        engine.transform_table()
    with pytest.raises(TrackMismatchError):
        engine.frame_transforms(0)


def test_out_of_range_indices(small_bones):
    engine = engine_for(small_bones, 2, 2)
    with pytest.raises(IndexError):
        engine.local_transform(3, 0)
    with pytest.raises(IndexError):
        engine.local_transform(0, 2)


def test_transform_table(biped_lab_stream):
    engine = TransformEngine(load_animation(biped_lab_stream))
    table = engine.transform_table()

    assert table.shape == (35, 228, 4, 4)
    assert not table.flags.writeable
    assert table is engine.transform_table()
    assert np.allclose(table[12, 100], engine.local_transform(12, 100))


def test_frame_transforms_cover_all_bones(biped_lab_stream):
    engine = TransformEngine(load_animation(biped_lab_stream))
    transforms = engine.frame_transforms(50)

    assert len(transforms) == 35
    # position keys are (bone, frame * 0.1, 0)
    assert np.allclose(transforms[7][3, :3], [7.0, 5.0, 0.0], atol=1e-5)


def test_no_frames_gives_identity_rest_pose(small_bones):
    engine = engine_for(small_bones, 0, 3)
    assert np.array_equal(engine.rest_pose(0), np.identity(4))
    assert engine.transform_table().shape == (3, 0, 4, 4)


def test_world_position_follows_frame_translation():
    inverse_bind = translation(-1.0, -2.0, -3.0)
    frame = translation(4.0, 5.0, 6.0)

    position = TransformEngine.world_position(inverse_bind, frame)
    assert np.allclose(position, [4.0, 5.0, 6.0])


def test_world_position_identity_frame_returns_origin():
    inverse_bind = translation(-1.0, -2.0, -3.0)
    position = TransformEngine.world_position(inverse_bind, np.identity(4))
    assert np.allclose(position, [0.0, 0.0, 0.0])


def test_singular_inverse_bind_is_fatal():
    with pytest.raises(NumericError) as excinfo:
        TransformEngine.world_position(np.zeros((4, 4)), np.identity(4), bone=5)
    assert excinfo.value.bone == 5


def test_frame_positions(small_bones):
    inverse_binds = [translation(-i, 0, 0) for i in range(3)]
    keys = [(np.array([[i, 1.0, 0.0]]), np.array([[0.0, 0.0, 0.0, 1.0]])) for i in range(3)]
    engine = engine_for(small_bones, 1, 3, keys=keys, inverse_binds=inverse_binds)

    positions = engine.frame_positions(0)
    assert positions.shape == (3, 3)
    assert np.allclose(positions[2], [2.0, 1.0, 0.0])
    assert np.allclose(engine.bind_pose(2), translation(2, 0, 0))


def test_frame_positions_singular_bind_names_bone(small_bones):
    inverse_binds = [np.identity(4), np.zeros((4, 4)), np.identity(4)]
    engine = engine_for(small_bones, 1, 3, inverse_binds=inverse_binds)

    with pytest.raises(NumericError) as excinfo:
        engine.frame_positions(0)
    assert excinfo.value.bone == 1
