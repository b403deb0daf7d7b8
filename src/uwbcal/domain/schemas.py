import math
import uuid
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from uwbcal.core.geometry import Matrix2x2, Point


class CorrespondencePoint(BaseModel):
    """A paired (reference, measured) position owned by one antenna."""
    model_config = ConfigDict(frozen=True)

    reference_position: Point
    measured_position: Point
    owner_id: str
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    sigma: Optional[float] = Field(default=None, gt=0)

    @property
    def weight(self) -> float:
        if self.sigma is None:
            return 1.0
        return 1.0 / (self.sigma * self.sigma)


class SimilarityTransform(BaseModel):
    """
    Measured frame -> reference frame:  p' = R(rotation) · diag(scale.x, scale.y) · p + translation
    """
    model_config = ConfigDict(frozen=True)

    translation: Point
    rotation: float
    scale: Point
    accuracy: float = Field(ge=0)

    @property
    def is_valid(self) -> bool:
        values = (
            self.translation.x, self.translation.y, self.translation.z,
            self.rotation, self.scale.x, self.scale.y, self.accuracy,
        )
        if not all(math.isfinite(v) for v in values):
            return False
        return self.scale.x > 0 and self.scale.y > 0

    @property
    def rotation_degrees(self) -> float:
        return math.degrees(self.rotation)


class AffineTransform(BaseModel):
    """target ≈ A · source + t"""
    model_config = ConfigDict(frozen=True)

    A: Matrix2x2
    t: Point

    def apply(self, point: Point) -> Point:
        p = self.A.multiply(point)
        return Point(p.x + self.t.x, p.y + self.t.y, point.z)

    def inverse(self) -> "AffineTransform":
        det = self.A.determinant
        if det == 0 or not math.isfinite(det):
            raise RuntimeError("Affine transform is not invertible.")
        inv = Matrix2x2(self.A.a22 / det, -self.A.a12 / det, -self.A.a21 / det, self.A.a11 / det)
        t_inv = inv.multiply(Point(self.t.x, self.t.y))
        return AffineTransform(A=inv, t=Point(-t_inv.x, -t_inv.y))


class DecomposedPose(BaseModel):
    model_config = ConfigDict(frozen=True)

    angle_degrees: float
    scale: Tuple[float, float]
    rotation_matrix: Matrix2x2


class AntennaPose(BaseModel):
    """Position and orientation of one antenna in the reference frame."""
    model_config = ConfigDict(frozen=True)

    x: float
    y: float
    angle_degrees: float
    rmse: float = Field(ge=0)
    scale: Tuple[float, float]
    tag_count: int = 0

    @property
    def angle_radians(self) -> float:
        return math.radians(self.angle_degrees)

    @property
    def position(self) -> Point:
        return Point(self.x, self.y, 0.0)


class CalibrationStatus(str, Enum):
    EMPTY = "empty"
    ACCUMULATING = "accumulating"
    CALIBRATED = "calibrated"


class CalibrationStatistics(BaseModel):
    total_antennas: int
    calibrated_antennas: int
    completion_percentage: float
    average_accuracy: float


class CalibrationResult(BaseModel):
    owner_id: str
    success: bool
    transform: Optional[SimilarityTransform] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    processed_points: List[CorrespondencePoint] = Field(default_factory=list)


class CorrespondenceRow(BaseModel):
    """One row of a correspondence CSV, after column names are lower-cased."""
    owner_id: str = Field(alias="antenna")
    ref_x: float
    ref_y: float
    ref_z: float = 0.0
    meas_x: float
    meas_y: float
    meas_z: float = 0.0
    sigma: Optional[float] = None

    model_config = {"populate_by_name": True}

    @field_validator("owner_id", mode="before")
    @classmethod
    def _owner_as_str(cls, v):
        return str(v).strip()

    @field_validator("sigma", mode="before")
    @classmethod
    def _blank_sigma(cls, v):
        if v is None or (isinstance(v, float) and math.isnan(v)) or v == "":
            return None
        return v


class TagMeasurementRow(BaseModel):
    antenna: str
    tag: str
    x: float
    y: float
    z: float = 0.0

    @field_validator("antenna", "tag", mode="before")
    @classmethod
    def _as_str(cls, v):
        return str(v).strip()
