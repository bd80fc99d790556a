#!/usr/bin/env python3
"""
filecast CLI

Command-line interface for sending and receiving a single file.

Usage:
    filecast send FILE            # Serve FILE to every receiver that connects
    filecast recv IP              # Fetch the file served at IP
    filecast config               # Show the effective configuration
    filecast config --example     # Print a config file template
"""

import asyncio
import ipaddress
import logging
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

import click
from rich.console import Console
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, DownloadColumn
from rich.panel import Panel
from rich.logging import RichHandler
from rich.markup import escape

from .config import EXAMPLE_CONFIG, Config, load_config
from .exceptions import FilecastError, FileExistsConflict
from .file import display_name
from .transfer import FileReceiver, FileServer, FileMetadata, TransferProgress

console = Console()
err_console = Console(stderr=True)


def setup_logging(verbose: bool = False, level: str = 'INFO'):
    """Configure logging with rich output."""
    log_level = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_time=False, show_path=False)],
        force=True,
    )


def format_size(bytes_count: float) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False),
              help='JSON config file')
@click.option('--port', type=int, default=None, help='TCP port (default 48763)')
@click.pass_context
def cli(ctx, verbose, config_path, port):
    """filecast - send one file over TCP to any number of receivers."""
    try:
        config = load_config(Path(config_path) if config_path else None)
        if port is not None:
            config = replace(config, port=port)
    except ValueError as e:
        raise click.BadParameter(str(e))

    setup_logging(verbose, config.log_level)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.argument('file_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--host', default=None, help='Address to listen on')
@click.option('--once', is_flag=True, help='Exit after serving one receiver')
@click.option('--max-sessions', type=int, default=None,
              help='Exit after this many receivers')
@click.pass_context
def send(ctx, file_path, host, once, max_sessions):
    """Serve a file to every receiver that connects."""
    config: Config = ctx.obj['config']
    if once:
        max_sessions = 1

    async def run():
        server = FileServer(
            Path(file_path),
            host=host or config.host,
            port=config.port,
            backlog=config.backlog,
            chunk_size=config.chunk_size,
        )
        async with server:
            console.print(Panel.fit(
                f"[bold green]Serving File[/bold green]\n\n"
                f"Name: [cyan]{escape(display_name(server.source.name))}[/cyan]\n"
                f"Size: [yellow]{server.source.size:,} bytes[/yellow]\n"
                f"Listening: [yellow]{server.host}:{server.port}[/yellow]",
                title="filecast send"
            ))
            console.print("[dim]Press Ctrl+C to stop[/dim]\n")
            await server.serve_forever(max_sessions=max_sessions)
        return server.get_stats()

    try:
        stats = asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")
        return 0
    except OSError as e:
        err_console.print(f"[red]✗ {escape(str(e))}[/red]")
        ctx.exit(1)

    console.print(f"[green]✓ Served {stats['sessions_served']} receivers "
                  f"({stats['sessions_failed']} failed), "
                  f"{format_size(stats['bytes_uploaded'])}[/green]")
    return 0


@cli.command()
@click.argument('ip_address')
@click.option('--output-dir', '-o', type=click.Path(file_okay=False),
              default=None, help='Directory to write the file into')
@click.pass_context
def recv(ctx, ip_address, output_dir):
    """Fetch the file served at IP_ADDRESS."""
    config: Config = ctx.obj['config']

    try:
        ipaddress.ip_address(ip_address)
    except ValueError:
        err_console.print("usage: filecast recv <ip address>")
        ctx.exit(1)

    error: Optional[str] = None
    result = None

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        DownloadColumn(),
        console=err_console,
    ) as progress:
        task = progress.add_task("Connecting...", total=None)

        def on_metadata(metadata: FileMetadata):
            progress.update(task, description=f"Receiving {escape(metadata.display_name)}",
                            total=metadata.file_size)

        def on_progress(p: TransferProgress):
            progress.update(task, completed=p.bytes_done)

        receiver = FileReceiver(
            output_dir=Path(output_dir) if output_dir else config.output_dir,
            chunk_size=config.chunk_size,
            progress_callback=on_progress,
            metadata_callback=on_metadata,
        )

        try:
            result = asyncio.run(receiver.fetch(
                ip_address, config.port, connect_timeout=config.connect_timeout
            ))
        except FileExistsConflict as e:
            error = str(e)
        except FilecastError as e:
            error = f"transfer failed: {e}"
        except OSError as e:
            error = f"transfer failed: {e}"

    if error is not None:
        err_console.print(f"[red]✗ {escape(error)}[/red]")
        ctx.exit(1)

    console.print(f"[green]✓ Received {escape(display_name(result.path))} "
                  f"({format_size(result.bytes_received)} in {result.duration_s:.2f}s, "
                  f"{result.throughput_mbps:.1f} Mbit/s)[/green]")
    return 0


@cli.command('config')
@click.option('--example', is_flag=True, help='Print a config file template')
@click.pass_context
def show_config(ctx, example):
    """Show the effective configuration."""
    if example:
        click.echo(EXAMPLE_CONFIG.strip())
        return 0

    config: Config = ctx.obj['config']

    table = Table(title="filecast configuration")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="yellow")
    for key, value in config.to_dict().items():
        table.add_row(key, str(value))

    console.print(table)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Console entry point. Every failure, usage errors included, exits 1."""
    try:
        rv = cli.main(args=argv, prog_name='filecast', standalone_mode=False)
    except click.ClickException as e:
        e.show()
        return 1
    except click.Abort:
        err_console.print("Aborted!")
        return 1
    return rv or 0


if __name__ == '__main__':
    raise SystemExit(main())
