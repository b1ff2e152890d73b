#!/usr/bin/env python3
"""
PeerShare CLI

Command-line client for the code-based relay.

Usage:
    python cli.py serve              # Run the relay server
    python cli.py send FILE          # Share a file, prints a code
    python cli.py receive CODE       # Download the file behind a code
    python cli.py status TOKEN       # Show a session's status
"""

import asyncio
import logging
from pathlib import Path

import click
import httpx
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, DownloadColumn, Progress, TextColumn, TransferSpeedColumn

from config import API_HOST, API_PORT, CHUNK_SIZE
from security.crypto import checksum_file, new_digest
from transfer.codes import is_well_formed, normalize

console = Console()


def setup_logging(verbose: bool = False):
    """Configure logging with rich output."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


def _progress() -> Progress:
    return Progress(
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        DownloadColumn(),
        TransferSpeedColumn(),
        console=console,
    )


def _fail(response: httpx.Response) -> None:
    try:
        detail = response.json().get("detail", response.text)
    except ValueError:
        detail = response.text
    raise click.ClickException(f"{response.status_code}: {detail}")


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--server', default=f'http://127.0.0.1:{API_PORT}', help='Relay base URL')
@click.pass_context
def cli(ctx, verbose, server):
    """PeerShare - share a file with a 6-character code."""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj['server'] = server.rstrip('/')


@cli.command()
@click.option('--host', default=API_HOST, help='Bind address')
@click.option('--port', default=API_PORT, help='Bind port')
def serve(host, port):
    """Run the relay server."""
    import uvicorn

    from main import app

    uvicorn.run(app, host=host, port=port, log_level="info")


@cli.command()
@click.argument('file', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--wait', default=600.0, help='Seconds to wait for the receiver')
@click.pass_context
def send(ctx, file: Path, wait: float):
    """Share FILE and stream it once the receiver joins."""

    async def run():
        size = file.stat().st_size
        checksum = await asyncio.to_thread(checksum_file, str(file))

        async with httpx.AsyncClient(base_url=ctx.obj['server'], timeout=wait + 10) as client:
            r = await client.post('/api/sessions', json={
                'name': file.name, 'total_size': size, 'checksum': checksum,
            })
            if r.status_code != 201:
                _fail(r)
            body = r.json()
            token = body['handle']['token']

            console.print(Panel.fit(
                f"Code: [bold cyan]{body['code']}[/bold cyan]\n"
                f"File: {file.name} ({size} bytes)\n"
                f"[dim]Status token: {token}[/dim]",
                title="Share this code"
            ))

            r = await client.post(f'/api/sessions/{token}/wait', params={'timeout': wait})
            if r.status_code != 200:
                _fail(r)

            with _progress() as progress, open(file, 'rb') as f:
                task = progress.add_task(file.name, total=size)
                while chunk := await asyncio.to_thread(f.read, CHUNK_SIZE):
                    r = await client.put(f'/api/sessions/{token}/chunks', content=chunk)
                    if r.status_code != 200:
                        _fail(r)
                    progress.update(task, completed=r.json()['bytes_transferred'])
                progress.update(task, completed=size)

            # The session completes once the receiver has verified the file
            state = r.json()['state']
            while state == 'active':
                await asyncio.sleep(0.5)
                r = await client.get(f'/api/sessions/{token}')
                if r.status_code != 200:
                    _fail(r)
                state = r.json()['state']

            if state != 'completed':
                raise click.ClickException(f"Transfer {state}: {r.json()['error_message']}")
            console.print(f"[green]Sent {file.name}[/green] (receiver verified)")

    asyncio.run(run())


@cli.command()
@click.argument('code')
@click.option('-o', '--output-dir', default='.', type=click.Path(file_okay=False, path_type=Path))
@click.pass_context
def receive(ctx, code: str, output_dir: Path):
    """Download the file shared under CODE."""
    code = normalize(code)
    if not is_well_formed(code):
        raise click.BadParameter(f"{code} is not a valid transfer code", param_hint='CODE')

    async def run():
        async with httpx.AsyncClient(base_url=ctx.obj['server'], timeout=None) as client:
            r = await client.post('/api/sessions/join', json={'code': code})
            if r.status_code != 200:
                _fail(r)
            body = r.json()
            meta = body['file']
            token = body['handle']['token']

            output_dir.mkdir(parents=True, exist_ok=True)
            target = output_dir / meta['name']
            digest = new_digest()

            with _progress() as progress, open(target, 'wb') as f:
                task = progress.add_task(meta['name'], total=meta['total_size'])
                async with client.stream('GET', f'/api/sessions/{token}/download') as r:
                    if r.status_code != 200:
                        await r.aread()
                        _fail(r)
                    async for chunk in r.aiter_bytes():
                        digest.update(chunk)
                        await asyncio.to_thread(f.write, chunk)
                        progress.advance(task, len(chunk))

            if digest.hexdigest() != meta['checksum']:
                target.unlink(missing_ok=True)
                raise click.ClickException("Checksum mismatch, file discarded")
            console.print(f"[green]Saved {target}[/green]")

    asyncio.run(run())


@cli.command()
@click.argument('token')
@click.pass_context
def status(ctx, token):
    """Show a session's state and progress."""
    r = httpx.get(f"{ctx.obj['server']}/api/sessions/{token}")
    if r.status_code != 200:
        _fail(r)
    s = r.json()
    console.print(
        f"[bold]{s['code']}[/bold] {s['file_name']}: {s['state']} "
        f"{s['progress'] * 100:.1f}% ({s['bytes_transferred']}/{s['total_size']})"
    )


if __name__ == '__main__':
    cli()
