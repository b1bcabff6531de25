"""
b2cli command-line interface.

Usage:
    b2 authorise
    b2 list-buckets
    b2 ls -l my-bucket
    b2 upload ./backup.tar my-bucket backups/
    b2 download my-bucket backups/backup.tar
    b2 cat my-bucket notes.txt
"""

from __future__ import annotations

import asyncio
import shutil
import sys
import tempfile
from contextlib import aclosing, contextmanager
from pathlib import Path
from typing import Any, Callable, Coroutine, Iterator

import click
from pydantic import ValidationError
from rich.console import Console
from rich.filesize import decimal
from rich.markup import escape
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TimeRemainingColumn,
    TransferSpeedColumn,
)
from rich.table import Table

from b2cli import __version__
from b2cli.client import B2Client
from b2cli.config import B2Settings, configure_settings
from b2cli.exceptions import B2Error
from b2cli.helpers.formatting import is_text, long_header, long_line, render_tree
from b2cli.logging import setup_logging

console = Console()
err_console = Console(stderr=True)

# Bytes inspected to decide whether `cat` output is text
TEXT_SAMPLE_SIZE = 8 * 1024

# `cat` keeps content in memory up to this size, then spills to disk
CAT_SPOOL_SIZE = 8 * 1024 * 1024


class _AliasedGroup(click.Group):
    """Group that accepts alternative spellings of command names."""

    aliases = {"authorize": "authorise"}

    def get_command(self, ctx: click.Context, cmd_name: str) -> click.Command | None:
        return super().get_command(ctx, self.aliases.get(cmd_name, cmd_name))


def _out(text: Any) -> None:
    """Print a result line to stdout without markup or wrapping."""
    console.print(text, markup=False, highlight=False, soft_wrap=True)


def _settings(ctx: click.Context) -> B2Settings:
    return ctx.obj["settings"]


def _run(coro: Coroutine[Any, Any, None]) -> None:
    """Run a command coroutine; report engine errors on stderr and exit 1."""
    try:
        asyncio.run(coro)
    except B2Error as e:
        err_console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise SystemExit(1)
    except KeyboardInterrupt:
        err_console.print("\n[yellow]Interrupted[/yellow]")
        raise SystemExit(130)


@contextmanager
def _progress(description: str, total: int) -> Iterator[Callable[[int, int], None]]:
    """Transfer progress bar on stderr; silent when stderr is not a terminal."""
    progress = Progress(
        "[progress.description]{task.description}",
        BarColumn(),
        "[progress.percentage]{task.percentage:>3.0f}%",
        DownloadColumn(),
        TransferSpeedColumn(),
        TimeRemainingColumn(),
        console=err_console,
        transient=True,
        disable=not err_console.is_terminal,
    )
    task_id = progress.add_task(escape(description), total=total or None)

    def update(transferred: int, total_bytes: int) -> None:
        progress.update(task_id, completed=transferred, total=total_bytes or None)

    with progress:
        yield update


@click.group(cls=_AliasedGroup)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.version_option(version=__version__, prog_name="b2")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """Backblaze B2 command-line client."""
    overrides: dict[str, Any] = {"log_level": "DEBUG"} if verbose else {}
    try:
        settings = configure_settings(**overrides)
    except ValidationError as e:
        err_console.print(f"[red]Invalid configuration:[/red] {escape(str(e))}")
        raise SystemExit(1)
    setup_logging(settings.log_level, json_format=settings.log_json)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


# =============================================================================
# Authorise Command
# =============================================================================


@main.command()
@click.option(
    "--key-id",
    envvar="B2_APPLICATION_KEY_ID",
    prompt="Application key id",
    help="Application key id",
)
@click.option(
    "--key",
    envvar="B2_APPLICATION_KEY",
    prompt="Application key",
    hide_input=True,
    help="Application key",
)
@click.pass_context
def authorise(ctx: click.Context, key_id: str, key: str) -> None:
    """Authorise the account and save the credentials.

    Also available as `b2 authorize`.
    """
    _run(_authorise_async(_settings(ctx), key_id.strip(), key.strip()))


async def _authorise_async(settings: B2Settings, key_id: str, key: str) -> None:
    async with B2Client(settings) as client:
        session = await client.authorize(key_id, key)
        err_console.print(
            f"[green]Authorised account[/green] [cyan]{escape(session.account_id)}[/cyan]"
        )


# =============================================================================
# Listing Commands
# =============================================================================


@main.command("list-buckets")
@click.option("--long", "-l", "long_format", is_flag=True, help="Show bucket id and type")
@click.pass_context
def list_buckets(ctx: click.Context, long_format: bool) -> None:
    """List the buckets (also refreshes the bucket cache)."""
    _run(_list_buckets_async(_settings(ctx), long_format))


async def _list_buckets_async(settings: B2Settings, long_format: bool) -> None:
    async with B2Client(settings) as client:
        buckets = [b async for b in client.listing.list_buckets()]

    if not long_format:
        for bucket in buckets:
            _out(bucket.bucket_name)
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Name")
    table.add_column("Id")
    table.add_column("Type")
    for bucket in buckets:
        table.add_row(
            escape(bucket.bucket_name), bucket.bucket_id, bucket.bucket_type or ""
        )
    console.print(table)


@main.command()
@click.argument("bucket")
@click.option("--long", "-l", "long_format", is_flag=True, help="Show size and upload date")
@click.option("--limit", "-n", type=click.IntRange(min=1), help="Show at most N entries")
@click.option("--prefix", "-p", default=None, help="Only list names with this prefix")
@click.option("--versions", is_flag=True, help="List every version of every file")
@click.option("--tree", is_flag=True, help="Show names as a directory tree")
@click.pass_context
def ls(
    ctx: click.Context,
    bucket: str,
    long_format: bool,
    limit: int | None,
    prefix: str | None,
    versions: bool,
    tree: bool,
) -> None:
    """List files in a bucket.

    Examples:

        b2 ls my-bucket

        b2 ls -l --prefix photos/ my-bucket

        b2 ls --tree my-bucket
    """
    _run(_ls_async(_settings(ctx), bucket, long_format, limit, prefix, versions, tree))


async def _ls_async(
    settings: B2Settings,
    bucket: str,
    long_format: bool,
    limit: int | None,
    prefix: str | None,
    versions: bool,
    tree: bool,
) -> None:
    async with B2Client(settings) as client:
        bucket_id = await client.listing.resolve_bucket_id(bucket)
        if versions:
            entries = client.listing.list_file_versions(bucket_id, prefix)
        else:
            entries = client.listing.list_file_names(bucket_id, prefix)

        files = []
        async with aclosing(entries):
            async for file in entries:
                files.append(file)
                if limit is not None and len(files) >= limit:
                    break

    if tree:
        for line in render_tree(files, long=long_format):
            _out(line)
        return

    if long_format:
        _out(long_header())
        for file in files:
            _out(long_line(file, show_action=versions))
    else:
        for file in files:
            _out(file.file_name)


# =============================================================================
# Upload Command
# =============================================================================


@main.command()
@click.argument("file", type=click.Path(exists=True, path_type=Path))
@click.argument("bucket")
@click.argument("dest", required=False)
@click.option("--parts", "-p", is_flag=True, help="Upload using the large-file (parts) API")
@click.option("--content-type", "-c", help="Content type (guessed from the name by default)")
@click.option("--recursive", "-r", is_flag=True, help="Upload a directory and its contents")
@click.option(
    "--threads",
    type=click.IntRange(1, 16),
    default=None,
    help="Parallel part uploads for large files",
)
@click.pass_context
def upload(
    ctx: click.Context,
    file: Path,
    bucket: str,
    dest: str | None,
    parts: bool,
    content_type: str | None,
    recursive: bool,
    threads: int | None,
) -> None:
    """Upload a file (or, with -r, a directory) to a bucket.

    DEST defaults to the file name; a DEST ending in '/' is used as a prefix.

    Examples:

        b2 upload ./photo.jpg my-bucket

        b2 upload ./backup.tar my-bucket backups/

        b2 upload -r ./site my-bucket www
    """
    if file.is_dir() and not recursive:
        err_console.print(
            f"[red]{escape(str(file))} is a directory.[/red] Use --recursive to upload it."
        )
        raise SystemExit(1)
    _run(
        _upload_async(_settings(ctx), file, bucket, dest, parts, content_type, threads)
    )


def _remote_name(file: Path, dest: str | None) -> str:
    if not dest:
        return file.name
    if dest.endswith("/"):
        return f"{dest.lstrip('/')}{file.name}"
    return dest.lstrip("/")


async def _upload_async(
    settings: B2Settings,
    file: Path,
    bucket: str,
    dest: str | None,
    parts: bool,
    content_type: str | None,
    threads: int | None,
) -> None:
    async with B2Client(settings) as client:
        if threads is not None:
            client.upload.configure(threads=threads)
        bucket_id = await client.listing.resolve_bucket_id(bucket)

        if file.is_dir():
            def on_file(path: Path, name: str) -> None:
                err_console.print(f"Uploading [cyan]{escape(name)}[/cyan]")

            results = await client.upload.upload_directory(
                file,
                bucket_id,
                dest,
                content_type=content_type,
                force_parts=parts,
                on_file=on_file,
            )
            total = sum(r.size for r in results)
            err_console.print(
                f"[green]Uploaded {len(results)} files ({decimal(total)})[/green]"
            )
            return

        name = _remote_name(file, dest)
        with _progress(f"Uploading {name}", file.stat().st_size) as on_progress:
            result = await client.upload.upload_file(
                file,
                bucket_id,
                name,
                content_type=content_type,
                force_parts=parts,
                on_progress=on_progress,
            )

    if result.is_large_file:
        err_console.print(f"[dim]Uploaded as {result.stats.parts_count} parts[/dim]")
    err_console.print(
        f"[green]Uploaded {decimal(result.size)} to[/green] "
        f"[cyan]{escape(bucket)}/{escape(result.file.file_name)}[/cyan]"
    )
    _out(result.file.file_id or "")


# =============================================================================
# Download Commands
# =============================================================================


@main.command()
@click.argument("bucket")
@click.argument("file")
@click.option(
    "--output",
    "-O",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Local path (defaults to the file's base name)",
)
@click.pass_context
def download(ctx: click.Context, bucket: str, file: str, output: Path | None) -> None:
    """Download a file and verify its checksum.

    Examples:

        b2 download my-bucket backups/backup.tar

        b2 download -O /tmp/latest.tar my-bucket backups/backup.tar
    """
    output = output or Path(file.rstrip("/").rsplit("/", 1)[-1])
    _run(_download_async(_settings(ctx), bucket, file, output))


async def _download_async(
    settings: B2Settings, bucket: str, file: str, output: Path
) -> None:
    async with B2Client(settings) as client:
        with _progress(f"Downloading {file}", 0) as on_progress:
            result = await client.download.download_to_path(
                bucket, file, output, on_progress=on_progress
            )

    if not result.verified_sha1:
        err_console.print("[dim]No checksum available; verified the length only[/dim]")
    err_console.print(
        f"[green]Downloaded {decimal(result.size)} to {escape(str(output))}![/green]"
    )


@main.command()
@click.argument("bucket")
@click.argument("file")
@click.option("--force", "-f", is_flag=True, help="Print the file even if it is not text")
@click.pass_context
def cat(ctx: click.Context, bucket: str, file: str, force: bool) -> None:
    """Print a file to stdout.

    Binary content is only written to a terminal after confirmation.
    """
    _run(_cat_async(_settings(ctx), bucket, file, force))


async def _cat_async(settings: B2Settings, bucket: str, file: str, force: bool) -> None:
    with tempfile.SpooledTemporaryFile(max_size=CAT_SPOOL_SIZE) as buffer:
        async with B2Client(settings) as client:
            await client.download.download_by_name(bucket, file, buffer)

        buffer.seek(0)
        sample = buffer.read(TEXT_SAMPLE_SIZE)
        buffer.seek(0)

        if not (force or is_text(sample) or not sys.stdout.isatty()):
            if not click.confirm(
                "This file is not in a plaintext format. Are you sure you want to print?",
                default=False,
                err=True,
            ):
                err_console.print("Exiting.")
                return

        stdout = click.get_binary_stream("stdout")
        shutil.copyfileobj(buffer, stdout)
        stdout.flush()


# =============================================================================
# Entry Point
# =============================================================================


if __name__ == "__main__":
    main()
