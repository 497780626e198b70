import typer
import uvicorn

app = typer.Typer(help="Read-only status API")


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Address to bind"),
    port: int = typer.Option(8080, "--port", "-p", help="Port to listen on"),
):
    """Serve the status API (requires the X-API-Key header)."""
    typer.echo(f"🌐 Serving kubestrap API on http://{host}:{port}")
    uvicorn.run("kubestrap.api.main:app", host=host, port=port)
