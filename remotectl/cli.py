# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""remotectl command line interface."""

import functools
import sys
from pathlib import Path
from typing import Callable, Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from remotectl import __version__
from remotectl.crypto import generate_key, load_cipher
from remotectl.errors import RemotectlError
from remotectl.host_config import HostConfig
from remotectl.paths import HostPaths
from remotectl.store import (
    CONNECT_DIRECT,
    CONNECT_TUNNEL,
    RecordStore,
    SecretRecord,
    ServerRecord,
)
from remotectl.terminal.connector import AUTH_KEY, AUTH_PASSWORD
from remotectl.tunnel.integration import TunnelTokens

console = Console()


def handle_errors(func: Callable) -> Callable:
    """Print remotectl errors as a panel and exit 1."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except SystemExit:
            raise
        except click.ClickException:
            raise
        except RemotectlError as exc:
            content = str(exc)
            if exc.hint:
                content += f"\n\n[blue]Try:[/blue]\n  {exc.hint}"
            console.print(Panel(content, title="[red]Error[/red]", border_style="red"))
            sys.exit(1)

    return wrapper


def _open(config: HostConfig):
    data_dir = config.data_dir
    store = RecordStore(HostPaths.store_file(data_dir))
    cipher = load_cipher(config.model.security.secret_key, data_dir)
    return store, cipher


@click.group()
@click.version_option(version=__version__, prog_name="remotectl")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Config file (default ~/.config/remotectl/config.yml)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path]):
    """remotectl - remote terminals, SFTP and reverse SSH tunnels."""
    ctx.obj = HostConfig(config_path)


@cli.command()
@click.option("--host", default=None, help="API bind address")
@click.option("--port", type=int, default=None, help="API port")
@click.option("--tunnel-port", type=int, default=None, help="Tunnel SSH listen port")
@click.option("--no-tunnel", is_flag=True, help="Do not start the tunnel broker")
@click.option("--debug", is_flag=True, help="Verbose logging")
@click.pass_obj
@handle_errors
def serve(
    config: HostConfig,
    host: Optional[str],
    port: Optional[int],
    tunnel_port: Optional[int],
    no_tunnel: bool,
    debug: bool,
):
    """Run the API server and tunnel broker."""
    from remotectl.daemon import run_daemon

    if tunnel_port:
        config.model.tunnel.listen_port = tunnel_port
    if no_tunnel:
        config.model.tunnel.enabled = False
    run_daemon(config, host=host, port=port, debug=debug)


@cli.command()
def keygen():
    """Print a fresh secret key for security.secret_key."""
    click.echo(generate_key())


@cli.group()
def server():
    """Manage server records."""


@server.command("add")
@click.option("--name", required=True)
@click.option("--host", default="", help="Address (unused for tunnel servers)")
@click.option("--port", type=int, default=22)
@click.option("--user", required=True)
@click.option("--password", default=None, help="Password credential")
@click.option(
    "--key-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Private key credential",
)
@click.option("--shell", default="", help="Shell to start instead of the login shell")
@click.option("--tunnel", is_flag=True, help="Reached through a reverse tunnel")
@click.pass_obj
@handle_errors
def server_add(
    config: HostConfig,
    name: str,
    host: str,
    port: int,
    user: str,
    password: Optional[str],
    key_file: Optional[Path],
    shell: str,
    tunnel: bool,
):
    """Add a server."""
    if bool(password) == bool(key_file):
        raise click.UsageError("Give exactly one of --password or --key-file")
    if not tunnel and not host:
        raise click.UsageError("--host is required for direct servers")

    store, cipher = _open(config)
    if key_file:
        auth_type, value = AUTH_KEY, key_file.read_text()
    else:
        auth_type, value = AUTH_PASSWORD, password

    secret = store.save_secret(
        SecretRecord(name=f"{name}-credential", type=auth_type, value=cipher.encrypt(value))
    )
    record = store.save_server(
        ServerRecord(
            name=name,
            host=host,
            port=port,
            user=user,
            auth_type=auth_type,
            credential=secret.id,
            shell=shell,
            connect_type=CONNECT_TUNNEL if tunnel else CONNECT_DIRECT,
        )
    )
    console.print(f"[green]✓ Added server {name}[/green] ({record.id})")


@server.command("list")
@click.pass_obj
@handle_errors
def server_list(config: HostConfig):
    """List servers."""
    store, _ = _open(config)
    servers = store.find_servers()
    if not servers:
        console.print("[yellow]No servers configured[/yellow]")
        return

    table = Table(title="Servers")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Target")
    table.add_column("Type")
    table.add_column("Tunnel")
    for record in servers:
        target = f"{record.user}@{record.host or '-'}:{record.port}"
        status = ""
        if record.is_tunnel:
            color = "green" if record.tunnel_status == "online" else "red"
            status = f"[{color}]{record.tunnel_status}[/{color}]"
        table.add_row(record.id, record.name, target, record.connect_type, status)
    console.print(table)


@server.command("remove")
@click.argument("server_id")
@click.pass_obj
@handle_errors
def server_remove(config: HostConfig, server_id: str):
    """Remove a server record."""
    store, _ = _open(config)
    store.delete_server(server_id)
    console.print(f"[green]✓ Removed {server_id}[/green]")


@cli.command()
@click.argument("server_id")
@click.option("--rotate", is_flag=True, help="Replace the token; running agents must be updated")
@click.pass_obj
@handle_errors
def token(config: HostConfig, server_id: str, rotate: bool):
    """Show or rotate a tunnel server's token."""
    store, cipher = _open(config)
    record = store.get_server(server_id)
    if not record.is_tunnel:
        raise click.UsageError(f"{record.name or server_id} is not a tunnel server")

    tokens = TunnelTokens(store, cipher)
    if rotate:
        value = tokens.rotate(server_id)
        console.print("[yellow]Token rotated, agents using the old one are rejected on reconnect[/yellow]")
    else:
        value, created = tokens.get_or_create(server_id)
        if created:
            console.print("[blue]Generated a new token[/blue]")
    click.echo(value)


@cli.command()
@click.pass_obj
@handle_errors
def status(config: HostConfig):
    """Show configuration and tunnel server summary."""
    model = config.model
    store, _ = _open(config)

    console.print(f"[bold]remotectl {__version__}[/bold]")
    console.print(f"  Config:   {config.config_path}")
    console.print(f"  Data dir: {config.data_dir}")
    console.print(f"  API:      http://{model.web_server.host}:{model.web_server.port}")
    if model.tunnel.enabled:
        rng = model.tunnel.port_range
        console.print(
            f"  Tunnel:   {model.tunnel.listen_host}:{model.tunnel.listen_port} "
            f"(ports {rng.start}-{rng.end})"
        )
    else:
        console.print("  Tunnel:   [dim]disabled[/dim]")

    tunnels = store.find_servers(connect_type=CONNECT_TUNNEL)
    online = [s for s in tunnels if s.tunnel_status == "online"]
    console.print(
        f"  Servers:  {store.count_servers()} "
        f"({len(tunnels)} tunnel, {len(online)} last seen online)"
    )


def main():
    cli()


if __name__ == "__main__":
    main()
