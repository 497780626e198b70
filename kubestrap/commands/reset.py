import logging
from pathlib import Path
from typing import Optional

import typer

from kubestrap.commands.common import fail, load_topology
from kubestrap.config import get_config
from kubestrap.errors import RemoteCommandError
from kubestrap.modules.kubeadm import KubeadmDriver
from kubestrap.modules.ssh import SSHExecutor

logger = logging.getLogger("kubestrap.commands.reset")

app = typer.Typer(help="Manual recovery of failed nodes")


@app.command("node")
def reset_node(
    inventory: Path = typer.Argument(..., help="Inventory YAML"),
    node_id: str = typer.Argument(..., help="Id of the node to reset"),
    api_endpoint: Optional[str] = typer.Option(None, "--api-endpoint", help="VIP:port of the API server"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
):
    """
    Run 'kubeadm reset -f' on one node so it can be bootstrapped again.

    This is the manual recovery step after a failed join; kubestrap never
    resets nodes on its own.
    """
    topology = load_topology(inventory, api_endpoint)
    try:
        node = topology.get(node_id)
    except KeyError:
        fail(f"Node '{node_id}' is not in the inventory", code=2)

    if node.is_primary:
        typer.echo("⚠️  This is the primary node: resetting it destroys the cluster's initial control plane.")
    if not yes and not typer.confirm(f"Reset kubeadm state on '{node.id}' ({node.address})?", default=False):
        typer.echo("Aborted.")
        raise typer.Exit()

    config = get_config()
    with SSHExecutor(config.ssh) as executor:
        driver = KubeadmDriver(executor, config.cluster, config.credentials)
        try:
            driver.reset(node)
        except RemoteCommandError as e:
            fail(str(e))
    typer.echo(f"✅ Node '{node.id}' reset. Re-run 'kubestrap bootstrap run' to join it again.")
