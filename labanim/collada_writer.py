import os
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import BinaryIO, Iterable, Optional, Union

import numpy as np

from labanim.debug_console import DebugConsole
from labanim.errors import UnsupportedOperationError
from labanim.lab_parser import AnimationDataset, DummyMarker, load_animation
from labanim.skeleton import JointNode, JointTree, build_from_dataset
from labanim.transforms import TransformEngine

XML_DECLARATION = '<?xml version="1.0" encoding="utf-8"?>\n'


def format_float(value) -> str:
    """Shortest text that reads back as the same float32."""
    return np.format_float_positional(np.float32(value), unique=True, trim="-")


def format_floats(values: Iterable) -> str:
    return " ".join(format_float(v) for v in values)


def matrix_to_text(matrix: np.ndarray) -> str:
    """
    COLLADA matrices are row-major with column vectors; our matrices use row
    vectors, so they are written column by column.
    """
    return format_floats(np.asarray(matrix).ravel(order="F"))


class ColladaWriter:
    """Renders a joint tree and its frame transforms as a COLLADA 1.4.1 document."""

    AUTHOR = "Perseus"
    UP_AXIS = "Z_UP"
    FRAME_RATE = 25.0
    COLLADA_NAMESPACE = "http://www.collada.org/2005/11/COLLADASchema"
    COLLADA_VERSION = "1.4.1"
    SCENE_ID = "Scene"
    SKELETON_ID = "Skeleton"

    def __init__(
            self,
            tree: JointTree,
            transform_table: np.ndarray,
            author: Optional[str] = None,
            created: Optional[datetime] = None,
    ):
        if len(transform_table) != len(tree):
            raise ValueError(
                f"Transform table has {len(transform_table)} bones but the joint tree has {len(tree)}"
            )
        self.tree = tree
        self.transform_table = transform_table
        self.author = author or self.AUTHOR
        self.created = created

    @property
    def frame_count(self) -> int:
        return self.transform_table.shape[1]

    def build(self) -> ET.Element:
        root = ET.Element(
            "COLLADA",
            {"xmlns": self.COLLADA_NAMESPACE, "version": self.COLLADA_VERSION},
        )
        self._write_asset(root)
        self._write_visual_scene(root)
        self._write_animations(root)
        self._write_scene(root)
        return root

    def to_string(self) -> str:
        root = self.build()
        ET.indent(root)
        return XML_DECLARATION + ET.tostring(root, encoding="unicode") + "\n"

    # ------------------------------------------------------------------
    # <asset>
    # ------------------------------------------------------------------
    def _write_asset(self, parent: ET.Element):
        asset = ET.SubElement(parent, "asset")
        contributor = ET.SubElement(asset, "contributor")
        ET.SubElement(contributor, "author").text = self.author
        created = self.created or datetime.now(timezone.utc)
        ET.SubElement(asset, "created").text = created.isoformat()
        ET.SubElement(asset, "up_axis").text = self.UP_AXIS

    # ------------------------------------------------------------------
    # <library_visual_scenes>
    # ------------------------------------------------------------------
    def _write_visual_scene(self, parent: ET.Element):
        library = ET.SubElement(parent, "library_visual_scenes")
        scene = ET.SubElement(library, "visual_scene", {"id": self.SCENE_ID, "name": self.SCENE_ID})
        skeleton = ET.SubElement(
            scene, "node", {"id": self.SKELETON_ID, "name": self.SKELETON_ID, "type": "NODE"}
        )
        self._write_joint_node(skeleton, self.tree.root)

    def _write_joint_node(self, parent: ET.Element, joint: JointNode):
        node_id = joint.sanitized_name
        node = ET.SubElement(
            parent, "node", {"id": node_id, "sid": node_id, "name": joint.name, "type": "JOINT"}
        )
        self._write_matrix(node, joint.rest_pose)
        for dummy in joint.dummies:
            self._write_dummy_node(node, dummy)
        for child in joint.children:
            self._write_joint_node(node, self.tree[child])

    def _write_dummy_node(self, parent: ET.Element, dummy: DummyMarker):
        node = ET.SubElement(
            parent,
            "node",
            {"id": f"Dummy_{dummy.id}", "name": f"Dummy {dummy.id}", "type": "NODE"},
        )
        self._write_matrix(node, dummy.matrix)

    @staticmethod
    def _write_matrix(parent: ET.Element, matrix: np.ndarray):
        ET.SubElement(parent, "matrix", {"sid": "transform"}).text = matrix_to_text(matrix)

    # ------------------------------------------------------------------
    # <library_animations>
    # ------------------------------------------------------------------
    def _write_animations(self, parent: ET.Element):
        library = ET.SubElement(parent, "library_animations")
        for index, joint in enumerate(self.tree):
            self._write_animation(library, joint, self.transform_table[index])

    def time_samples(self) -> np.ndarray:
        return np.arange(self.frame_count, dtype=np.float32) / np.float32(self.FRAME_RATE)

    def _write_animation(self, parent: ET.Element, joint: JointNode, transforms: np.ndarray):
        prefix = f"{joint.sanitized_name}_pose_matrix"
        frames = self.frame_count
        animation = ET.SubElement(parent, "animation", {"id": prefix, "name": prefix})

        self._write_source(
            animation, f"{prefix}-input", "float_array", frames,
            format_floats(self.time_samples()), stride=1, param=("TIME", "float"),
        )
        output_text = " ".join(matrix_to_text(m) for m in transforms)
        self._write_source(
            animation, f"{prefix}-output", "float_array", 16 * frames,
            output_text, stride=16, param=("TRANSFORM", "float4x4"), accessor_count=frames,
        )
        self._write_source(
            animation, f"{prefix}-interpolation", "Name_array", frames,
            " ".join(["LINEAR"] * frames), stride=1, param=("INTERPOLATION", "name"),
        )

        sampler = ET.SubElement(animation, "sampler", {"id": f"{prefix}-sampler"})
        for semantic, suffix in (("INPUT", "input"), ("OUTPUT", "output"), ("INTERPOLATION", "interpolation")):
            ET.SubElement(sampler, "input", {"semantic": semantic, "source": f"#{prefix}-{suffix}"})

        ET.SubElement(
            animation,
            "channel",
            {"source": f"#{prefix}-sampler", "target": f"{joint.sanitized_name}/transform"},
        )

    @staticmethod
    def _write_source(parent, source_id, array_tag, count, text, stride, param, accessor_count=None):
        source = ET.SubElement(parent, "source", {"id": source_id})
        array_id = f"{source_id}-array"
        ET.SubElement(source, array_tag, {"id": array_id, "count": str(count)}).text = text
        technique = ET.SubElement(source, "technique_common")
        accessor = ET.SubElement(
            technique,
            "accessor",
            {
                "source": f"#{array_id}",
                "count": str(count if accessor_count is None else accessor_count),
                "stride": str(stride),
            },
        )
        name, param_type = param
        ET.SubElement(accessor, "param", {"name": name, "type": param_type})

    # ------------------------------------------------------------------
    # <scene>
    # ------------------------------------------------------------------
    def _write_scene(self, parent: ET.Element):
        scene = ET.SubElement(parent, "scene")
        ET.SubElement(scene, "instance_visual_scene", {"url": f"#{self.SCENE_ID}"})


# ==============================================================================
# Pipeline
# ==============================================================================
def dataset_to_collada(
        dataset: AnimationDataset,
        author: Optional[str] = None,
        created: Optional[datetime] = None,
) -> str:
    engine = TransformEngine(dataset)
    table = engine.transform_table()
    tree = build_from_dataset(dataset, engine.rest_poses())
    document = ColladaWriter(tree, table, author=author, created=created).to_string()
    DebugConsole.log(f"Rendered COLLADA document ({len(document)} characters)")
    return document


def convert_animation(
        source: Union[str, os.PathLike, BinaryIO],
        author: Optional[str] = None,
        created: Optional[datetime] = None,
) -> str:
    """
    Converts a LAB animation (path or binary stream) to COLLADA text.

    Nothing is written to disk; any LabError aborts before text is produced.
    """
    return dataset_to_collada(load_animation(source), author=author, created=created)


def import_collada(path: Union[str, os.PathLike]):
    """COLLADA -> LAB is not implemented."""
    raise UnsupportedOperationError(
        f"Converting COLLADA documents back to LAB is not supported: {os.fspath(path)}"
    )
