import logging
from pathlib import Path
from typing import Optional

import pandas as pd
import typer

from uwbcal.core.antenna import AntennaPoseEstimator
from uwbcal.core.registry import CalibrationRegistry
from uwbcal.csv_handler import (
    read_correspondence_csv,
    read_tag_config,
    read_tag_measurements,
    save_results_csv,
)
from uwbcal.domain.schemas import AntennaPose
from uwbcal.infrastructure.reports import generate_markdown_report

app = typer.Typer(no_args_is_help=True)


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Log solver details.")) -> None:
    """uwbcal: UWB antenna coordinate calibration tools."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@app.command()
def version() -> None:
    """Print version."""
    typer.echo("uwbcal 0.1.0")


@app.command()
def similarity(
    points_csv: Path = typer.Option(..., "--points-csv", exists=True, readable=True, help="CSV with antenna,ref_x,ref_y,meas_x,meas_y[,sigma]"),
    output_report: Path = typer.Option("calibration_report.md", help="Output report in Markdown format."),
    output_csv: Optional[Path] = typer.Option(None, help="Output CSV with calibrated measured positions."),
) -> None:
    """
    Fits a translation + rotation + per-axis scale calibration for every
    antenna found in the correspondence CSV.
    """
    registry = CalibrationRegistry()
    registry.add_points(read_correspondence_csv(points_csv))

    results = registry.perform_all_calibrations(stop_on_failure=False)
    for owner_id, r in results.items():
        if r.success:
            typer.echo(f"{owner_id}: calibrated (RMSE {r.transform.accuracy:.4f} m)")
        else:
            typer.echo(f"{owner_id}: {r.error_message}", err=True)

    stats = registry.get_calibration_statistics()
    typer.echo(
        f"Calibrated {stats.calibrated_antennas}/{stats.total_antennas} antennas "
        f"({stats.completion_percentage:.1f} %), average RMSE {stats.average_accuracy:.4f} m"
    )

    generate_markdown_report(output_report, statistics=stats, results=results)
    typer.echo(f"Calibration report generated at: {output_report}")

    if output_csv:
        rows = []
        for owner_id in registry.owner_ids():
            session = registry.get_session(owner_id)
            measured = [p.measured_position for p in session.points]
            calibrated = registry.apply_calibrated_transform_many(measured, owner_id)
            for p, m, c in zip(session.points, measured, calibrated):
                rows.append({
                    "antenna": owner_id,
                    "meas_x": m.x, "meas_y": m.y,
                    "cal_x": c.x, "cal_y": c.y,
                    "ref_x": p.reference_position.x, "ref_y": p.reference_position.y,
                    "calibrated": session.is_calibrated,
                })
        save_results_csv(output_csv, pd.DataFrame(rows))
        typer.echo(f"Calibrated coordinates saved to: {output_csv}")

    if stats.calibrated_antennas == 0:
        raise typer.Exit(code=1)


@app.command("antenna-pose")
def antenna_pose(
    tags_csv: Path = typer.Option(..., "--tags-csv", exists=True, readable=True, help="CSV with NAME,POSITION_X,POSITION_Y"),
    measurements_csv: Path = typer.Option(..., "--measurements-csv", exists=True, readable=True, help="CSV with antenna,tag,x,y"),
    output_report: Optional[Path] = typer.Option(None, help="Output report in Markdown format."),
    output_csv: Optional[Path] = typer.Option(None, help="Output CSV with the estimated antenna configuration."),
) -> None:
    """Estimates antenna position and heading from repeated tag observations."""
    true_positions = read_tag_config(tags_csv)
    measured = read_tag_measurements(measurements_csv)

    poses = AntennaPoseEstimator().estimate_all(measured, true_positions)

    rows = []
    for antenna_id, pose in poses.items():
        if isinstance(pose, AntennaPose):
            typer.echo(
                f"{antenna_id}: ({pose.x:.3f}, {pose.y:.3f}) m, {pose.angle_degrees:.2f}°, RMSE {pose.rmse:.4f} m"
            )
            rows.append({"NAME": antenna_id, "POSITION_X": pose.x, "POSITION_Y": pose.y, "ANGLE": pose.angle_degrees})
        else:
            typer.echo(f"{antenna_id}: {pose}", err=True)

    if output_report:
        generate_markdown_report(output_report, poses=poses)
        typer.echo(f"Report generated at: {output_report}")
    if output_csv and rows:
        save_results_csv(output_csv, pd.DataFrame(rows))
        typer.echo(f"Antenna configuration saved to: {output_csv}")

    if not rows:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
