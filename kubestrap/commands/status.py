import json
from dataclasses import asdict
from typing import Optional

import typer

from kubestrap.commands.common import fail, print_report
from kubestrap.config import get_config
from kubestrap.modules.report import load_report

app = typer.Typer(help="Inspect the last bootstrap run")


@app.command("show")
def status_show(
    report_path: Optional[str] = typer.Option(None, "--report", help="Run report to read"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw report as JSON"),
):
    """Show per-node and per-add-on status of the last run."""
    path = report_path or get_config().cluster.report_path
    report = load_report(path)
    if report is None:
        fail(f"No run report found at {path}")
    if as_json:
        typer.echo(json.dumps(asdict(report), indent=2))
    else:
        print_report(report)
