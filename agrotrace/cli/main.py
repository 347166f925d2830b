# -*- coding: utf-8 -*-
"""
AgroTrace CLI
=============

Command line access to the certification core:

- ``agrotrace version``: show the package version
- ``agrotrace analyze SAMPLES.json --crop AVOCADO``: run the satellite
  compliance rules over an NDVI series stored as a JSON list
- ``agrotrace config``: show the effective configuration
"""

import json
import logging
from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, List

import pydantic
import typer
from rich.console import Console
from rich.table import Table

from agrotrace import __version__
from agrotrace.certification.config import get_config
from agrotrace.certification.models import AnalysisParams, CropType, NDVIDataPoint
from agrotrace.certification.satellite_analysis import SatelliteComplianceAnalyzer
from agrotrace.exceptions import AgroTraceException

app = typer.Typer(
    name="agrotrace",
    help="AgroTrace: agricultural supply-chain certification",
    no_args_is_help=True,
    add_completion=False,
)
console = Console()

_STATUS_STYLES = {
    "ELIGIBLE": "green",
    "NEEDS_REVIEW": "yellow",
    "INELIGIBLE": "red",
    "FAILED": "red",
}

_SECRET_FIELDS = {"anchor_url", "pin_url"}


@app.callback()
def _root(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """
    AgroTrace - agricultural supply-chain certification
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def version():
    """Show AgroTrace version"""
    console.print(f"[bold green]AgroTrace v{__version__}[/bold green]")
    console.print("Agricultural supply-chain certification")


def _load_samples(path: Path) -> List[NDVIDataPoint]:
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise ValueError("expected a JSON list of NDVI samples")
    points = []
    for item in raw:
        data: Dict[str, Any] = dict(item)
        # Accept the short keys used by exported imagery files
        if "date" in data and "sample_date" not in data:
            data["sample_date"] = data.pop("date")
        if "ndvi" in data and "ndvi_average" not in data:
            data["ndvi_average"] = data.pop("ndvi")
        points.append(NDVIDataPoint(**data))
    return points


@app.command()
def analyze(
    samples_file: Path = typer.Argument(..., help="JSON list of NDVI samples"),
    crop: CropType = typer.Option(..., "--crop", "-c", help="Crop grown on the field"),
    field_id: str = typer.Option("ADHOC", "--field-id", help="Field identifier for the report"),
    as_json: bool = typer.Option(False, "--json", help="Print the full report as JSON"),
):
    """Run satellite compliance rules over an NDVI series"""
    if not samples_file.exists():
        console.print(f"[red]Error:[/red] File not found: {samples_file}")
        raise typer.Exit(1)

    try:
        points = _load_samples(samples_file)
        analyzer = SatelliteComplianceAnalyzer(config=get_config())
        report = analyzer.analyze_series(
            points, AnalysisParams(crop_type=crop, requested_by="cli"),
            field_id=field_id,
        )
    except (ValueError, TypeError, pydantic.ValidationError, AgroTraceException) as e:
        console.print(f"[red]Error:[/red] Invalid NDVI samples: {e}")
        raise typer.Exit(1)

    if as_json:
        console.print_json(report.model_dump_json())
        return

    status = report.compliance_status.value
    style = _STATUS_STYLES.get(status, "white")
    console.print(f"[bold]Field:[/bold] {report.field_id} ({report.crop_type.value})")
    console.print(f"[bold]Status:[/bold] [{style}]{status}[/{style}]")
    console.print(
        f"[bold]Confidence:[/bold] {report.overall_confidence:.3f}  "
        f"[bold]Valid points:[/bold] {report.valid_data_points}/"
        f"{report.expected_data_points}  "
        f"[bold]Avg cloud:[/bold] {report.average_cloud_coverage:.1f}%"
    )

    if not report.violations:
        console.print("[green]No violations detected[/green]")
        return

    table = Table(title="Violations", show_header=True, header_style="bold magenta")
    table.add_column("Date", style="cyan")
    table.add_column("Type")
    table.add_column("Severity")
    table.add_column("NDVI delta", justify="right")
    table.add_column("Confidence", justify="right")
    for v in report.violations:
        table.add_row(
            v.detected_on.isoformat(),
            v.violation_type.value,
            v.severity.value,
            f"{v.ndvi_delta:+.3f}",
            f"{v.confidence:.2f}",
        )
    console.print(table)


@app.command("config")
def show_config():
    """Show the effective configuration"""
    cfg = get_config()
    table = Table(title="AgroTrace configuration", show_header=True, header_style="bold magenta")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    for f in fields(cfg):
        value = getattr(cfg, f.name)
        if f.name in _SECRET_FIELDS:
            value = "***" if value else "(unset)"
        table.add_row(f.name, str(value))
    console.print(table)


if __name__ == "__main__":
    app()
