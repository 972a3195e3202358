"""
File Relay CLI

Command-line interface for resumable, integrity-verified file transfer.

Usage:
    filerelay serve                          # Run a receiving node
    filerelay send FILE --host H             # Upload a file to a node
    filerelay receive NAME --host H          # Download a file from a node
    filerelay status TRANSFER_ID --host H    # Show a transfer's progress
    filerelay history --host H               # Show the node's audit log
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .config import Config, load_config
from .errors import TransferError
from .transfer.methods import TransferMode, create_transfer_method
from .transfer.orchestrator import ReceiverOrchestrator, SenderOrchestrator

console = Console()


def setup_logging(verbose: bool = False, level_name: str = 'INFO'):
    """Configure logging with rich output."""
    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


def _method(config: Config, host: str, port: int, mode: Optional[str]):
    return create_transfer_method(
        TransferMode.parse(mode) if mode else config.transfer_mode,
        host, port,
        chunk_size=config.chunk_size,
        connect_timeout=config.connect_timeout,
        read_timeout=config.read_timeout,
        buffer_size=config.buffer_size,
    )


def _run(coro):
    """Run a command coroutine, reporting transfer failures cleanly."""
    try:
        return asyncio.run(coro)
    except TransferError as e:
        console.print(f"\n[red]✗ {e}[/red]")
        raise SystemExit(1)


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(), help='JSON config file')
@click.option('--data-dir', default=None, help='Data directory')
@click.pass_context
def cli(ctx, verbose, config_path, data_dir):
    """File Relay - resumable, verified file transfer."""
    config = load_config(Path(config_path) if config_path else None)
    if data_dir:
        config.data_dir = Path(data_dir)

    setup_logging(verbose, config.log_level)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.option('--host', default=None, help='Bind address')
@click.option('--port', default=None, type=int, help='HTTP port')
@click.pass_context
def serve(ctx, host, port):
    """Run a receiving node."""
    config = ctx.obj['config']
    host = host or config.host
    port = port or config.api_port

    async def run():
        from .api import run_api_server
        from .node import TransferNode

        node = TransferNode(config)

        console.print(Panel.fit(
            f"[bold green]Transfer Node[/bold green]\n\n"
            f"Listening: [yellow]http://{host}:{port}[/yellow]\n"
            f"Received Dir: [blue]{config.received_dir}[/blue]\n"
            f"Checksum Verification: [cyan]{config.checksum_enabled}[/cyan]",
            title="Node Info"
        ))
        console.print(f"[dim]API docs at http://localhost:{port}/docs[/dim]\n")

        try:
            await run_api_server(node, host=host, port=port)
        finally:
            await node.stop()
            console.print("[green]Node stopped[/green]")

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")


@cli.command()
@click.argument('file_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--host', required=True, help='Receiver address')
@click.option('--port', default=None, type=int, help='Receiver HTTP port')
@click.option('--mode', default=None, help='Transport (HTTP or ZEROTIER)')
@click.option('--chunked', is_flag=True, help='Send independent chunks instead of one stream')
@click.option('--password', default=None, help='AES password')
@click.option('--seal', is_flag=True, help='Store the file encrypted at the receiver')
@click.option('--zip', 'compress', is_flag=True, help='Zip the file before sending')
@click.pass_context
def send(ctx, file_path, host, port, mode, chunked, password, seal, compress):
    """Upload a file to a node."""
    config = ctx.obj['config']
    password = password or config.encryption_password
    if seal and not password:
        raise click.UsageError("--seal needs a password")

    async def run():
        method = _method(config, host, port or config.api_port, mode)
        sender = SenderOrchestrator.from_config(method, config)
        try:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
            ) as progress:
                task = progress.add_task(f"Sending {Path(file_path).name}...", total=None)
                result = await sender.send(
                    Path(file_path), chunked=chunked, password=password,
                    compress=compress, seal=seal,
                )
                progress.update(task, description="Done!")
        finally:
            await method.close()

        console.print(Panel.fit(
            f"[bold green]File Delivered[/bold green]\n\n"
            f"Name: [cyan]{result.file_name}[/cyan]\n"
            f"Size: [yellow]{format_size(result.size)}[/yellow]\n"
            f"Transfer ID: [cyan]{result.transfer_id}[/cyan]\n"
            f"SHA-256: [green]{result.checksum}[/green]",
            title="Transfer"
        ))

    _run(run())


@cli.command()
@click.argument('name')
@click.option('--host', required=True, help='Node address')
@click.option('--port', default=None, type=int, help='Node HTTP port')
@click.option('--mode', default=None, help='Transport (HTTP or ZEROTIER)')
@click.option('--output', '-o', type=click.Path(file_okay=False), default='.', help='Output directory')
@click.option('--checksum', default=None, help='Expected SHA-256')
@click.option('--password', default=None, help='Decrypt a sealed file after download')
@click.pass_context
def receive(ctx, name, host, port, mode, output, checksum, password):
    """Download a file from a node."""
    config = ctx.obj['config']

    async def run():
        method = _method(config, host, port or config.api_port, mode)
        receiver = ReceiverOrchestrator.from_config(method, config)
        try:
            result = await receiver.receive(
                name, Path(output), expected_checksum=checksum, password=password,
            )
        finally:
            await method.close()

        console.print(f"\n[green]✓ Downloaded to: {result.path}[/green]")
        console.print(f"[dim]SHA-256: {result.checksum}[/dim]")
        if result.decrypted_path:
            console.print(f"[green]✓ Decrypted to: {result.decrypted_path}[/green]")

    _run(run())


@cli.command()
@click.argument('transfer_id')
@click.option('--host', default='127.0.0.1', help='Node address')
@click.option('--port', default=None, type=int, help='Node HTTP port')
@click.pass_context
def status(ctx, transfer_id, host, port):
    """Show a transfer's progress."""
    config = ctx.obj['config']

    async def run():
        method = _method(config, host, port or config.api_port, None)
        try:
            snapshot = await method.status(transfer_id)
        finally:
            await method.close()

        if not snapshot:
            console.print(f"[yellow]Unknown transfer: {transfer_id}[/yellow]")
            return

        lines = [
            f"[bold]{snapshot['fileName']}[/bold] ({snapshot['protocol']})\n",
            f"State: [cyan]{snapshot['state']}[/cyan]",
            f"Progress: [yellow]{format_size(snapshot['bytesWritten'])} / "
            f"{format_size(max(snapshot['totalBytes'], 0))} "
            f"({snapshot['progressPercent']:.1f}%)[/yellow]",
            f"Speed: [yellow]{format_size(snapshot['speedBytesPerSecond'])}/s[/yellow], "
            f"ETA: [yellow]{snapshot['estimatedEtaSeconds']}s[/yellow]",
        ]
        if snapshot['totalChunks']:
            lines.append(f"Chunks: [yellow]{snapshot['completedChunks']}/"
                         f"{snapshot['totalChunks']}[/yellow]")
        if snapshot['error']:
            lines.append(f"Error: [red]{snapshot['error']}[/red]")

        console.print(Panel.fit("\n".join(lines), title=transfer_id))

    _run(run())


@cli.command()
@click.option('--host', default='127.0.0.1', help='Node address')
@click.option('--port', default=None, type=int, help='Node HTTP port')
@click.option('--limit', default=20, help='Rows to show')
@click.pass_context
def history(ctx, host, port, limit):
    """Show the node's audit log."""
    config = ctx.obj['config']

    async def run():
        method = _method(config, host, port or config.api_port, None)
        try:
            rows = await method.client.history(limit=limit)
        finally:
            await method.close()

        if not rows:
            console.print("[yellow]No recorded transfers[/yellow]")
            return

        table = Table(title="Transfer History")
        table.add_column("Transfer ID", style="cyan")
        table.add_column("File")
        table.add_column("Size", justify="right", style="yellow")
        table.add_column("State")
        table.add_column("Recorded", style="dim")

        for row in rows:
            color = 'green' if row['state'] == 'COMPLETED' else 'red'
            table.add_row(
                row['transfer_id'][:40],
                row['file_name'],
                format_size(row['total_bytes']),
                f"[{color}]{row['state']}[/{color}]",
                str(row['recorded_at']),
            )

        console.print(table)

    _run(run())


def format_size(bytes_count: float) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


if __name__ == '__main__':
    cli()
