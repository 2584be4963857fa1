"""CLI Management Tool for the spatch gateway."""
import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from typing import Optional

from spatch.core.directory import DirectoryError, load_directory
from spatch.core.trust_store import LOAD_ERRORS, TrustStore
from spatch.gate.config import GateConfig

app = typer.Typer(help="spatch SSH gateway CLI")
console = Console()

ConfigOption = typer.Option(None, "--config", "-c", help="Path to spatch.conf")


def _load_config(config_path: Optional[str]) -> GateConfig:
    try:
        return GateConfig(config_path)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(1)


def _load_directory(config: GateConfig):
    try:
        return load_directory(config.directory_path)
    except DirectoryError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(1)


@app.command()
def serve(config_path: Optional[str] = ConfigOption):
    """Run the gateway listener."""
    from spatch.proxy import ssh_proxy

    config = _load_config(config_path)
    ssh_proxy.configure_logging(config)
    try:
        proxy = ssh_proxy.build_server(config)
    except DirectoryError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(1)
    proxy.start()


@app.command()
def check_config(config_path: Optional[str] = ConfigOption):
    """Validate configuration and credential directory."""
    config = _load_config(config_path)
    directory = _load_directory(config)

    table = Table(title=f"Gateway {config.gate_name}")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Config file", config.config_path)
    table.add_row("Listen", f"{config.listen_host}:{config.listen_port}")
    table.add_row("Host key", config.host_key_path)
    table.add_row("Known hosts", config.known_hosts_path)
    table.add_row("Directory", config.directory_path)
    table.add_row("Users", str(len(directory.users)))
    table.add_row("Backends", str(len(directory.backends)))
    table.add_row("Auth attempts", str(config.auth_attempts))
    table.add_row("Backend terminal", f"{config.pty_width}x{config.pty_height}")

    console.print(table)
    console.print("[green]✓ Configuration OK[/green]")


@app.command()
def list_backends(config_path: Optional[str] = ConfigOption):
    """List backends in menu order."""
    config = _load_config(config_path)
    directory = _load_directory(config)

    table = Table(title="Backends")
    table.add_column("Name", style="cyan")
    table.add_column("Address", style="green")
    table.add_column("Host", style="yellow")
    table.add_column("Port", style="magenta")
    table.add_column("Allowed users", style="blue")

    for backend in directory.backends:
        table.add_row(
            backend.name,
            backend.display_address,
            backend.host,
            str(backend.port),
            ", ".join(directory.allowed_users(backend)) or "N/A"
        )

    console.print(table)


@app.command()
def list_grants(
    username: str = typer.Argument(..., help="Gateway username"),
    config_path: Optional[str] = ConfigOption
):
    """Show the menu a gateway user would see."""
    config = _load_config(config_path)
    directory = _load_directory(config)

    user = directory.get_user(username)
    if user is None:
        console.print(f"[red]Error: User {username} not found[/red]")
        raise typer.Exit(1)

    grants = directory.grants_for(user)
    if not grants:
        console.print(f"[yellow]User {username} has no authorized backend[/yellow]")
        return

    table = Table(title=f"Grants for {username}")
    table.add_column("Address", style="cyan")
    table.add_column("Backend login", style="green")
    table.add_column("Host", style="yellow")

    for grant in grants:
        backend = grant.backend
        table.add_row(backend.display_address, grant.username, f"{backend.host}:{backend.port}")

    console.print(table)


@app.command()
def trusted_hosts(config_path: Optional[str] = ConfigOption):
    """List recorded backend host keys."""
    config = _load_config(config_path)
    store = TrustStore(config.known_hosts_path)

    try:
        records = store.records()
    except LOAD_ERRORS as e:
        console.print(f"[red]Error reading {config.known_hosts_path}: {escape(str(e))}[/red]")
        raise typer.Exit(1)

    if not records:
        console.print("[yellow]No trusted hosts recorded[/yellow]")
        return

    table = Table(title="Trusted hosts")
    table.add_column("Host", style="cyan")
    table.add_column("Key type", style="green")
    table.add_column("Fingerprint", style="yellow")

    for identity, key_type, fingerprint in records:
        table.add_row(escape(identity), key_type, fingerprint)

    console.print(table)


@app.command()
def forget_host(
    host: str = typer.Argument(..., help="Backend host"),
    port: int = typer.Option(22, help="Backend port"),
    config_path: Optional[str] = ConfigOption
):
    """
    Remove the recorded key of a backend (key rotation).

    The next connection will ask the user to trust the new key.
    """
    config = _load_config(config_path)
    store = TrustStore(config.known_hosts_path)

    try:
        removed = store.remove(host, port)
    except LOAD_ERRORS as e:
        console.print(f"[red]Error updating {config.known_hosts_path}: {escape(str(e))}[/red]")
        raise typer.Exit(1)

    if not removed:
        console.print(f"[yellow]No key recorded for {host}:{port}[/yellow]")
        raise typer.Exit(0)

    console.print(f"[green]✓ Host key for {host}:{port} removed[/green]")


if __name__ == "__main__":
    app()
