# sam-onnx/src/sam_onnx/prompts.py
"""Point / box prompts in original image pixel coordinates."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional, Sequence, Tuple

from sam_onnx.errors import InvalidArgumentError


class PointLabel(IntEnum):
    NEGATIVE = 0
    POSITIVE = 1
    BOX_TOP_LEFT = 2
    BOX_BOTTOM_RIGHT = 3


@dataclass(frozen=True)
class BoundingBox:
    """Axis aligned box (x1, y1) top-left, (x2, y2) bottom-right, in pixels."""

    x1: int
    y1: int
    x2: int
    y2: int

    @classmethod
    def from_xywh(cls, x: int, y: int, w: int, h: int) -> "BoundingBox":
        return cls(x, y, x + w, y + h)

    def normalized(self) -> "BoundingBox":
        x1, x2 = sorted((self.x1, self.x2))
        y1, y2 = sorted((self.y1, self.y2))
        return BoundingBox(x1, y1, x2, y2)

    def corners(self) -> Tuple[Tuple[int, int], Tuple[int, int]]:
        return (self.x1, self.y1), (self.x2, self.y2)


def as_box(box) -> Optional[BoundingBox]:
    """Accept a BoundingBox or an (x1, y1, x2, y2) sequence."""
    if box is None or isinstance(box, BoundingBox):
        return box
    try:
        x1, y1, x2, y2 = box
    except (TypeError, ValueError):
        raise InvalidArgumentError(f"box must be (x1, y1, x2, y2), got {box!r}") from None
    return BoundingBox(int(x1), int(y1), int(x2), int(y2))


@dataclass
class Prompt:
    points: List[Tuple[int, int]] = field(default_factory=list)
    labels: List[int] = field(default_factory=list)
    box: Optional[BoundingBox] = None

    def __post_init__(self) -> None:
        if self.points is None or self.labels is None:
            raise InvalidArgumentError("points and labels must not be None")
        if len(self.points) != len(self.labels):
            raise InvalidArgumentError(
                f"Points and labels must have the same length "
                f"({len(self.points)} != {len(self.labels)})")
        try:
            self.points = [(int(x), int(y)) for x, y in self.points]
            self.labels = [int(lbl) for lbl in self.labels]
        except (TypeError, ValueError):
            raise InvalidArgumentError(
                "points must be (x, y) pairs and labels integers") from None
        self.box = as_box(self.box)

    @property
    def num_points(self) -> int:
        """Prompt length as seen by the decoder (box corners included)."""
        return len(self.points) + (2 if self.box is not None else 0)

    @property
    def is_empty(self) -> bool:
        return self.num_points == 0


def create_point_grid(width: int, height: int, grid_size: int) -> List[Tuple[int, int]]:
    """Evenly spaced points, offset by half a step, for automatic prompting."""
    if width <= 0 or height <= 0 or grid_size <= 0:
        raise InvalidArgumentError("width, height and grid_size must be positive")
    step_x = max(1, width // grid_size)
    step_y = max(1, height // grid_size)
    return [(x, y)
            for y in range(step_y // 2, height, step_y)
            for x in range(step_x // 2, width, step_x)]


def positive_labels(count: int) -> List[int]:
    return [int(PointLabel.POSITIVE)] * count


def negative_labels(count: int) -> List[int]:
    return [int(PointLabel.NEGATIVE)] * count


def make_prompt(points: Optional[Sequence[Tuple[int, int]]],
                labels: Optional[Sequence[int]],
                box=None) -> Prompt:
    if points is None or labels is None:
        raise InvalidArgumentError("points and labels must not be None")
    return Prompt(list(points), list(labels), box)
