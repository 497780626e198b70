import typer
from pathlib import Path
from typing import Optional

from kubestrap.commands.common import fail, load_addon_catalog, load_topology
from kubestrap.config import get_config
from kubestrap.errors import ConfigurationError
from kubestrap.modules.addons import resolve_install_order

app = typer.Typer(help="Pre-flight validation")


@app.command("inventory")
def validate_inventory(
    inventory: Path = typer.Argument(..., help="Inventory YAML"),
    api_endpoint: Optional[str] = typer.Option(None, "--api-endpoint", help="VIP:port of the API server"),
):
    """Validate node roles, the primary and worker endpoints."""
    topology = load_topology(inventory, api_endpoint)
    typer.echo(
        f"✅ Inventory valid: primary={topology.primary.id}, "
        f"{len(topology.control_plane)} control-plane node(s), {len(topology.workers)} worker(s)"
    )


@app.command("addons")
def validate_addons(
    catalog: Optional[str] = typer.Argument(None, help="Add-on catalog YAML (default catalog if omitted)"),
):
    """Validate the add-on dependency graph and print the install order."""
    addons = load_addon_catalog(catalog or get_config().addons.catalog_path)
    try:
        order = resolve_install_order(addons)
    except ConfigurationError as e:
        fail(str(e), code=2)
    typer.echo("✅ Add-on graph valid. Install order:")
    for index, addon in enumerate(order, 1):
        typer.echo(f"  {index}. {addon.name} {addon.version}".rstrip())
