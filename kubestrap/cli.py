import logging
import sys
from typing import Optional

import typer

from kubestrap.commands import api, bootstrap, reset, status, validate
from kubestrap.config import KubestrapConfig, set_config
from kubestrap.logging import setup_logging

app = typer.Typer(help="kubestrap - HA kubeadm cluster bootstrap")

# Global debug flag
debug_mode = False

# Add all command groups
app.add_typer(bootstrap.app, name="bootstrap")
app.add_typer(validate.app, name="validate")
app.add_typer(status.app, name="status")
app.add_typer(reset.app, name="reset")
app.add_typer(api.app, name="api")


# Global options callback
@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to kubestrap config YAML"),
):
    """kubestrap - HA kubeadm cluster bootstrap."""
    global debug_mode
    debug_mode = debug
    try:
        settings = KubestrapConfig.load(config)
    except (FileNotFoundError, ValueError) as e:
        typer.echo(f"❌ Invalid configuration: {e}", err=True)
        raise typer.Exit(2)
    set_config(settings)
    setup_logging(
        level=settings.logging.level,
        log_file=settings.logging.file,
        max_size_mb=settings.logging.max_size_mb,
        backup_count=settings.logging.backup_count,
        debug=debug,
    )
    if debug:
        logging.getLogger("kubestrap").debug("Debug mode enabled")


if __name__ == "__main__":
    try:
        app()
    except Exception as e:
        if debug_mode:
            import traceback
            logging.getLogger("kubestrap").error(f"Unhandled exception: {e}\n{traceback.format_exc()}")
        else:
            logging.getLogger("kubestrap").error(f"Error: {e}")
        sys.exit(1)
