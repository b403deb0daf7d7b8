from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Sequence, Tuple

import numpy as np


@dataclass(frozen=True)
class Point:
    """Position in metres. Z is carried through the planar fits untouched."""
    x: float
    y: float
    z: float = 0.0

    def __add__(self, other: "Point") -> "Point":
        return Point(self.x + other.x, self.y + other.y, self.z + other.z)

    def __sub__(self, other: "Point") -> "Point":
        return Point(self.x - other.x, self.y - other.y, self.z - other.z)

    def __mul__(self, k: float) -> "Point":
        return Point(self.x * k, self.y * k, self.z * k)

    __rmul__ = __mul__

    def __neg__(self) -> "Point":
        return Point(-self.x, -self.y, -self.z)

    @property
    def magnitude(self) -> float:
        return math.sqrt(self.x * self.x + self.y * self.y + self.z * self.z)

    def distance_to(self, other: "Point") -> float:
        return (self - other).magnitude

    @property
    def is_finite(self) -> bool:
        return math.isfinite(self.x) and math.isfinite(self.y) and math.isfinite(self.z)

    def as_xy(self) -> Tuple[float, float]:
        return self.x, self.y


@dataclass(frozen=True)
class Matrix2x2:
    a11: float
    a12: float
    a21: float
    a22: float

    @property
    def determinant(self) -> float:
        return self.a11 * self.a22 - self.a12 * self.a21

    @property
    def transpose(self) -> "Matrix2x2":
        return Matrix2x2(self.a11, self.a21, self.a12, self.a22)

    def multiply(self, point: Point) -> Point:
        """A·p on the XY components; Z passes through."""
        return Point(
            self.a11 * point.x + self.a12 * point.y,
            self.a21 * point.x + self.a22 * point.y,
            point.z,
        )

    def to_array(self) -> np.ndarray:
        return np.array([[self.a11, self.a12], [self.a21, self.a22]], dtype=float)

    @classmethod
    def from_array(cls, arr: np.ndarray) -> "Matrix2x2":
        return cls(float(arr[0, 0]), float(arr[0, 1]), float(arr[1, 0]), float(arr[1, 1]))

    @classmethod
    def identity(cls) -> "Matrix2x2":
        return cls(1.0, 0.0, 0.0, 1.0)


def points_to_xy(points: Sequence[Point]) -> np.ndarray:
    """Stack points into an (n, 2) array of XY coordinates."""
    return np.array([[p.x, p.y] for p in points], dtype=float).reshape(-1, 2)


def mean_point(points: Iterable[Point]) -> Point:
    pts = list(points)
    if not pts:
        raise ValueError("Cannot average an empty list of points")
    n = float(len(pts))
    return Point(
        sum(p.x for p in pts) / n,
        sum(p.y for p in pts) / n,
        sum(p.z for p in pts) / n,
    )
