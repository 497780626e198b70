"""Helpers shared by the CLI commands."""
from pathlib import Path
from typing import List, Optional

import typer

from kubestrap.errors import ConfigurationError
from kubestrap.modules.addons import load_catalog
from kubestrap.modules.models import AddonSpec, RunReport
from kubestrap.modules.topology import Topology, load_inventory, resolve_topology

STATUS_ICONS = {
    'joined': '✅',
    'installed': '✅',
    'failed': '❌',
    'in_progress': '🔄',
    'installing': '🔄',
    'pending': '⏸️ ',
    'not_started': '⏸️ ',
}


def fail(message: str, code: int = 1) -> None:
    typer.echo(f"❌ {message}", err=True)
    raise typer.Exit(code)


def load_topology(inventory: Path, api_endpoint: Optional[str] = None) -> Topology:
    """Resolve the inventory, exiting with code 2 on configuration errors."""
    try:
        return resolve_topology(load_inventory(inventory), api_endpoint)
    except FileNotFoundError:
        fail(f"Inventory not found: {inventory}", code=2)
    except ConfigurationError as e:
        fail(str(e), code=2)


def load_addon_catalog(path: Optional[str], disabled: Optional[List[str]] = None) -> List[AddonSpec]:
    """Load the add-on catalog and switch off the add-ons named in ``disabled``."""
    try:
        addons = load_catalog(path)
    except FileNotFoundError:
        fail(f"Add-on catalog not found: {path}", code=2)
    except ConfigurationError as e:
        fail(str(e), code=2)

    by_name = {a.name: a for a in addons}
    for name in disabled or []:
        if name not in by_name:
            fail(f"Unknown add-on '{name}'", code=2)
        by_name[name].enabled = False
    return addons


def print_report(report: RunReport) -> None:
    typer.echo(f"\nCluster state: {report.state} (phase: {report.phase}, endpoint: {report.api_endpoint})")
    typer.echo("Nodes:")
    for node in report.nodes:
        icon = STATUS_ICONS.get(node['phase_status'], '•')
        primary = " [primary]" if node.get('is_primary') else ""
        line = f"  {icon} {node['id']:<16} {node['role']:<14} {node['phase_status']}{primary}"
        if node.get('error'):
            line += f"\n      {node['error']}"
        typer.echo(line)
    if report.addons:
        typer.echo("Add-ons:")
        for addon in report.addons:
            if not addon.get('enabled', True):
                continue
            icon = STATUS_ICONS.get(addon['install_state'], '•')
            line = f"  {icon} {addon['name']:<16} {addon['install_state']}"
            if addon.get('error'):
                line += f" ({addon['error']})"
            typer.echo(line)
    if report.failed_nodes:
        typer.echo(
            f"\n⚠️  Nodes needing attention: {', '.join(report.failed_nodes)}. "
            "Run 'kubestrap reset node' on them before re-running."
        )
