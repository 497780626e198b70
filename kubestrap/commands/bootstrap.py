"""Cluster bootstrap commands."""

import logging
from pathlib import Path
from typing import List, Optional

import typer
import yaml

from kubestrap.commands.common import fail, load_addon_catalog, load_topology, print_report
from kubestrap.config import get_config
from kubestrap.errors import ConfigurationError, KubestrapError
from kubestrap.modules import orchestrator
from kubestrap.modules.addons import all_installed
from kubestrap.modules.models import SequencerState
from kubestrap.modules.report import load_report

logger = logging.getLogger("kubestrap.commands.bootstrap")

app = typer.Typer(help="Form an HA cluster and install its add-ons")


@app.command("run")
def run(
    inventory: Path = typer.Argument(..., help="Inventory YAML describing the cluster nodes"),
    api_endpoint: Optional[str] = typer.Option(
        None, "--api-endpoint", help="VIP:port of the API server (overrides the inventory)"
    ),
    addons_file: Optional[str] = typer.Option(None, "--addons", help="Add-on catalog YAML"),
    disable: List[str] = typer.Option([], "--disable-addon", help="Add-on to skip (repeatable)"),
    skip_vip: bool = typer.Option(False, "--skip-vip", help="Do not configure keepalived"),
    skip_addons: bool = typer.Option(False, "--skip-addons", help="Stop once the cluster is ready"),
):
    """Bootstrap the cluster. Safe to re-run after a partial failure."""
    config = get_config()
    topology = load_topology(inventory, api_endpoint)
    addons = load_addon_catalog(addons_file or config.addons.catalog_path, disable)

    logger.info(f"🚀 Bootstrapping cluster '{topology.name}' behind {topology.api_endpoint}")
    try:
        report = orchestrator.run_bootstrap(
            topology, addons, config, skip_vip=skip_vip, skip_addons=skip_addons
        )
    except ConfigurationError as e:
        fail(str(e), code=2)
    except KubestrapError as e:
        typer.echo(f"❌ Bootstrap failed: {e}", err=True)
        report = load_report(config.cluster.report_path)
        if report is not None:
            print_report(report)
        raise typer.Exit(1)

    print_report(report)
    if report.state != SequencerState.CLUSTER_READY.value or report.failed_nodes:
        raise typer.Exit(1)
    if not skip_addons and not all_installed(addons):
        typer.echo("⚠️  Some add-ons were not installed. Re-run to retry them.")
        raise typer.Exit(1)
    typer.echo(f"\n✅ Cluster '{topology.name}' is ready. Kubeconfig: {config.cluster.kubeconfig_path}")


@app.command("plan")
def plan(
    inventory: Path = typer.Argument(..., help="Inventory YAML describing the cluster nodes"),
    api_endpoint: Optional[str] = typer.Option(None, "--api-endpoint", help="VIP:port of the API server"),
    addons_file: Optional[str] = typer.Option(None, "--addons", help="Add-on catalog YAML"),
    disable: List[str] = typer.Option([], "--disable-addon", help="Add-on to skip (repeatable)"),
):
    """Show node order, VIP priorities and add-on order without touching any node."""
    config = get_config()
    topology = load_topology(inventory, api_endpoint)
    addons = load_addon_catalog(addons_file or config.addons.catalog_path, disable)
    try:
        result = orchestrator.plan_bootstrap(topology, addons, config)
    except ConfigurationError as e:
        fail(str(e), code=2)
    typer.echo(yaml.safe_dump(result, default_flow_style=False, sort_keys=False))
