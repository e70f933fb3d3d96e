"""
Error types raised while converting LAB animation files.
"""
from typing import List, Optional, Tuple


class LabError(Exception):
    """Base class for every conversion failure."""


class DecodeError(LabError):
    """The byte stream is truncated or a record cannot be read."""

    def __init__(self, message, offset: Optional[int] = None):
        if offset is not None:
            message = f"{message} (at byte offset {offset})"
        super().__init__(message)
        self.offset = offset


class UnsupportedVersionError(DecodeError):
    def __init__(self, version: int, minimum: int):
        super().__init__(
            f"File version {version} is below the minimum supported version {minimum}",
            offset=0,
        )
        self.version = version
        self.minimum = minimum


class HierarchyError(LabError):
    """The bone table does not describe a single rooted tree."""

    def __init__(self, problems: List[Tuple[Optional[int], str]]):
        # bone_id is None for problems that concern the whole bone table
        self.problems = list(problems)
        lines = [
            f"{'bone table' if bone_id is None else f'bone {bone_id}'}: {message}"
            for bone_id, message in self.problems
        ]
        super().__init__(
            f"Invalid joint hierarchy ({len(self.problems)} problem(s)):\n  "
            + "\n  ".join(lines)
        )

    @property
    def bone_ids(self) -> List[int]:
        return [bone_id for bone_id, _ in self.problems if bone_id is not None]


class TrackMismatchError(LabError):
    """A transform was requested from a key track that is not present."""

    def __init__(self, message, bone: Optional[int] = None, frame: Optional[int] = None):
        context = []
        if bone is not None:
            context.append(f"bone {bone}")
        if frame is not None:
            context.append(f"frame {frame}")
        if context:
            message = f"{message} ({', '.join(context)})"
        super().__init__(message)
        self.bone = bone
        self.frame = frame


class NumericError(LabError):
    def __init__(self, message, bone: Optional[int] = None):
        if bone is not None:
            message = f"{message} (bone {bone})"
        super().__init__(message)
        self.bone = bone


class UnsupportedOperationError(LabError):
    pass
