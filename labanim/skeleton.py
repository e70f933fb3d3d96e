"""
Joint hierarchy built from the LAB bone table.

Joints live in a flat list and refer to each other by index, so the tree
has no reference cycles and is never mutated after ``build_joint_tree``.
"""
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import pyrr

from labanim.debug_console import DebugConsole
from labanim.errors import HierarchyError
from labanim.lab_parser import NO_PARENT, AnimationDataset, BoneBase, DummyMarker


@dataclass
class JointNode:
    bone_id: int
    name: str
    parent_id: int
    rest_pose: np.ndarray
    parent: Optional[int] = None
    children: List[int] = field(default_factory=list)
    dummies: List[DummyMarker] = field(default_factory=list)

    @property
    def sanitized_name(self) -> str:
        return sanitize_name(self.name)

    @property
    def is_root(self) -> bool:
        return self.parent is None


def sanitize_name(name: str) -> str:
    """Node ids may not contain spaces."""
    return name.replace(" ", "_")


class JointTree:
    def __init__(self, nodes: List[JointNode], root: int):
        self._nodes = nodes
        self._root = root
        self._index_by_id = {node.bone_id: i for i, node in enumerate(nodes)}

    @property
    def root(self) -> JointNode:
        return self._nodes[self._root]

    @property
    def root_index(self) -> int:
        return self._root

    def __len__(self):
        return len(self._nodes)

    def __iter__(self) -> Iterator[JointNode]:
        return iter(self._nodes)

    def __getitem__(self, index: int) -> JointNode:
        return self._nodes[index]

    def index_of(self, bone_id: int) -> int:
        try:
            return self._index_by_id[bone_id]
        except KeyError:
            raise KeyError(f"No joint with bone id {bone_id}") from None

    def by_id(self, bone_id: int) -> JointNode:
        return self._nodes[self.index_of(bone_id)]

    def parent_of(self, index: int) -> Optional[JointNode]:
        parent = self._nodes[index].parent
        return None if parent is None else self._nodes[parent]

    def walk(self) -> Iterator[Tuple[int, JointNode]]:
        """Depth-first from the root, parents before children."""
        stack = [self._root]
        while stack:
            index = stack.pop()
            node = self._nodes[index]
            yield index, node
            stack.extend(reversed(node.children))

    def depth(self, index: int) -> int:
        depth = 0
        parent = self._nodes[index].parent
        while parent is not None:
            depth += 1
            parent = self._nodes[parent].parent
        return depth


def build_joint_tree(
        bones: Sequence[BoneBase],
        dummies: Optional[Dict[int, List[DummyMarker]]] = None,
        rest_poses: Optional[Sequence[np.ndarray]] = None,
) -> JointTree:
    """
    Builds the joint hierarchy from the bone table.

    Nodes are created first, then parent links are resolved through the bone
    ids. Every problem found is collected and raised as one HierarchyError:
    a missing or repeated root, duplicate ids, dangling parent ids, bones
    that cannot be reached from the root, and dummies on unknown bones.

    ``rest_poses`` is indexed like ``bones``; identity is used when omitted.
    """
    dummies = dummies or {}
    # bone_id None marks a problem with the table as a whole
    problems: List[Tuple[Optional[int], str]] = []

    # Phase 1: one node per bone
    nodes: List[JointNode] = []
    index_by_id: Dict[int, int] = {}
    for i, bone in enumerate(bones):
        rest_pose = (
            np.asarray(rest_poses[i], dtype=np.float32)
            if rest_poses is not None
            else np.asarray(pyrr.Matrix44.identity(), dtype=np.float32)
        )
        nodes.append(
            JointNode(
                bone_id=bone.id,
                name=bone.name,
                parent_id=bone.parent_id,
                rest_pose=rest_pose,
                dummies=list(dummies.get(bone.id, [])),
            )
        )
        if bone.id in index_by_id:
            problems.append((bone.id, f"duplicate bone id (table positions {index_by_id[bone.id]} and {i})"))
        else:
            index_by_id[bone.id] = i

    # Phase 2: resolve and validate links
    # Ids double as indices into the per-bone tables, so they must be dense
    for node in nodes:
        if node.bone_id >= len(nodes):
            problems.append((node.bone_id, f"bone id outside 0..{len(nodes) - 1}"))

    roots = [i for i, node in enumerate(nodes) if node.parent_id == NO_PARENT]
    if not roots:
        problems.append((None, "no root bone (no bone has the no-parent sentinel)"))
    elif len(roots) > 1:
        for i in roots[1:]:
            problems.append((nodes[i].bone_id, f"additional root bone (first root is bone {nodes[roots[0]].bone_id})"))

    for i, node in enumerate(nodes):
        if node.parent_id == NO_PARENT:
            continue
        parent = index_by_id.get(node.parent_id)
        if parent is None:
            problems.append((node.bone_id, f"parent bone {node.parent_id} does not exist"))
            continue
        node.parent = parent
        nodes[parent].children.append(i)

    for parent_bone_id, group in dummies.items():
        if parent_bone_id not in index_by_id:
            for dummy in group:
                problems.append((parent_bone_id, f"dummy {dummy.id} is attached to a bone that does not exist"))

    if roots and not problems:
        reachable = _reachable_from(nodes, roots[0])
        for i, node in enumerate(nodes):
            if i not in reachable:
                problems.append((node.bone_id, "not reachable from the root (parent cycle)"))

    if problems:
        raise HierarchyError(problems)

    tree = JointTree(nodes, roots[0])
    DebugConsole.log(
        f"Built joint tree: {len(nodes)} joints, root '{tree.root.name}', "
        f"{sum(len(n.dummies) for n in nodes)} dummies"
    )
    return tree


def _reachable_from(nodes: List[JointNode], root: int) -> set:
    seen = {root}
    stack = [root]
    while stack:
        for child in nodes[stack.pop()].children:
            if child not in seen:
                seen.add(child)
                stack.append(child)
    return seen


def build_from_dataset(dataset: AnimationDataset, rest_poses: Optional[Sequence[np.ndarray]] = None) -> JointTree:
    return build_joint_tree(dataset.bones, dataset.dummies, rest_poses)
