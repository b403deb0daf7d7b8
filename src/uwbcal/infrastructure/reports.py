from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Mapping, Optional, Union

from uwbcal.core.errors import CalibrationError
from uwbcal.domain.schemas import AntennaPose, CalibrationResult, CalibrationStatistics


def _similarity_section(results: Mapping[str, CalibrationResult]) -> list[str]:
    lines = [
        "## Similarity calibration",
        "",
        "| Antenna | Status | tx (m) | ty (m) | Rotation (°) | sx | sy | RMSE (m) | Points |",
        "|---|---|---|---|---|---|---|---|---|",
    ]
    for owner_id, r in results.items():
        if r.success and r.transform is not None:
            t = r.transform
            lines.append(
                f"| {owner_id} | calibrated | {t.translation.x:.4f} | {t.translation.y:.4f} | "
                f"{t.rotation_degrees:.3f} | {t.scale.x:.5f} | {t.scale.y:.5f} | {t.accuracy:.4f} | "
                f"{len(r.processed_points)} |"
            )
        else:
            lines.append(f"| {owner_id} | failed ({r.error_kind}) | | | | | | | {len(r.processed_points)} |")
    failures = [r for r in results.values() if not r.success]
    if failures:
        lines += ["", "### Errors", ""]
        lines += [f"- **{r.owner_id}**: {r.error_message}" for r in failures]
    return lines


def _pose_section(poses: Mapping[str, Union[AntennaPose, CalibrationError]]) -> list[str]:
    lines = [
        "## Antenna poses (affine)",
        "",
        "| Antenna | X (m) | Y (m) | Angle (°) | sx | sy | RMSE (m) | Tags |",
        "|---|---|---|---|---|---|---|---|",
    ]
    errors = []
    for antenna_id, pose in poses.items():
        if isinstance(pose, AntennaPose):
            lines.append(
                f"| {antenna_id} | {pose.x:.3f} | {pose.y:.3f} | {pose.angle_degrees:.2f} | "
                f"{pose.scale[0]:.4f} | {pose.scale[1]:.4f} | {pose.rmse:.4f} | {pose.tag_count} |"
            )
        else:
            lines.append(f"| {antenna_id} | | | | | | failed ({pose.kind}) | |")
            errors.append(f"- **{antenna_id}**: {pose}")
    if errors:
        lines += ["", "### Errors", ""] + errors
    return lines


def generate_markdown_report(
    output_path: Path,
    statistics: Optional[CalibrationStatistics] = None,
    results: Optional[Mapping[str, CalibrationResult]] = None,
    poses: Optional[Mapping[str, Union[AntennaPose, CalibrationError]]] = None,
) -> str:
    """Writes a Markdown calibration report and returns its text."""
    lines = [
        "# UWB Calibration Report",
        "",
        f"Generated: {datetime.now().isoformat(timespec='seconds')}",
        "",
    ]
    if statistics is not None:
        lines += [
            "## Summary",
            "",
            f"- Antennas: {statistics.total_antennas}",
            f"- Calibrated: {statistics.calibrated_antennas} ({statistics.completion_percentage:.1f} %)",
            f"- Average accuracy (RMSE): {statistics.average_accuracy:.4f} m",
            "",
        ]
    if results:
        lines += _similarity_section(results) + [""]
    if poses:
        lines += _pose_section(poses) + [""]

    text = "\n".join(lines)
    Path(output_path).write_text(text, encoding="utf-8")
    return text
