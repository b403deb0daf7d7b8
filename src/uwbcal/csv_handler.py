from __future__ import annotations

from collections import defaultdict
from pathlib import Path
from typing import Dict, List

import pandas as pd
from pydantic import ValidationError

from uwbcal.core.geometry import Point
from uwbcal.domain.schemas import CorrespondencePoint, CorrespondenceRow, TagMeasurementRow


def _read_normalized(path: str | Path) -> pd.DataFrame:
    df = pd.read_csv(path)
    # Normalize column names to lowercase to be case-insensitive
    df.columns = [str(c).strip().lower() for c in df.columns]
    return df


def read_correspondence_csv(path: str | Path) -> List[CorrespondencePoint]:
    """
    Reads correspondence points.

    Columns: antenna (or owner_id), ref_x, ref_y, [ref_z], meas_x, meas_y, [meas_z], [sigma]
    """
    df = _read_normalized(path)
    points: List[CorrespondencePoint] = []
    for i, row in enumerate(df.to_dict("records"), start=2):
        try:
            r = CorrespondenceRow(**row)
        except ValidationError as e:
            raise ValueError(f"{path}: invalid row at line {i}: {e}") from e
        points.append(
            CorrespondencePoint(
                reference_position=Point(r.ref_x, r.ref_y, r.ref_z),
                measured_position=Point(r.meas_x, r.meas_y, r.meas_z),
                owner_id=r.owner_id,
                sigma=r.sigma,
            )
        )
    return points


def read_tag_config(path: str | Path) -> Dict[str, Point]:
    """
    Reads surveyed tag positions.

    NAME,POSITION_X,POSITION_Y
    Tag 1,14.090,18.134
    """
    df = _read_normalized(path)
    cols = list(df.columns)
    if len(cols) < 3 or cols[0] != "name" or "position_x" not in cols[1] or "position_y" not in cols[2]:
        raise ValueError(f"{path}: header must be NAME, POSITION_X, POSITION_Y (got {cols})")

    tags: Dict[str, Point] = {}
    for i, row in enumerate(df.itertuples(index=False), start=2):
        name = str(row[0]).strip()
        try:
            tags[name] = Point(float(row[1]), float(row[2]), 0.0)
        except (TypeError, ValueError) as e:
            raise ValueError(f"{path}: invalid position at line {i}: {e}") from e
    return tags


def read_tag_measurements(path: str | Path) -> Dict[str, Dict[str, List[Point]]]:
    """
    Reads raw tag observations grouped by antenna then tag.

    Columns: antenna, tag, x, y, [z]
    """
    df = _read_normalized(path)
    grouped: Dict[str, Dict[str, List[Point]]] = defaultdict(lambda: defaultdict(list))
    for i, row in enumerate(df.to_dict("records"), start=2):
        try:
            r = TagMeasurementRow(**row)
        except ValidationError as e:
            raise ValueError(f"{path}: invalid row at line {i}: {e}") from e
        grouped[r.antenna][r.tag].append(Point(r.x, r.y, r.z))
    return {antenna: dict(tags) for antenna, tags in grouped.items()}


def save_results_csv(path: str | Path, df: pd.DataFrame) -> None:
    """Saves a Pandas DataFrame to CSV."""
    df.to_csv(path, index=False)
