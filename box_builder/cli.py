"""Thin CLI wrapper for box_builder.

This module provides the command-line interface using Typer.
All build behavior is delegated to the executor.
"""

import json
import logging
import sys
from pathlib import Path
from typing import Annotated, NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler

from box_builder import __version__
from box_builder.config import Settings, get_settings, print_settings_json
from box_builder.executor import (
    BuildInterruptedError,
    DockerExecutor,
    ExecutorError,
)

app = typer.Typer(
    name="box",
    help="Box builder - execute container image build steps against an engine",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"box-builder version {__version__}")
        raise typer.Exit()


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _make_executor(
    no_cache: bool = False,
    tty: bool | None = None,
    stdin: bool = False,
) -> DockerExecutor:
    """Build an executor with CLI flags layered over settings."""
    settings = get_settings()
    executor = DockerExecutor(settings=settings, console=console)
    if no_cache:
        executor.use_cache(False)
    if tty is not None:
        executor.use_tty(tty)
    if stdin:
        executor.set_stdin(True)
    return executor


def _fail(error: ExecutorError) -> NoReturn:
    err_console.print(f"[red]Error: {error}[/red]")
    if isinstance(error, BuildInterruptedError):
        raise typer.Exit(code=130) from None
    raise typer.Exit(code=1) from None


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Box builder - execute container image build steps against an engine."""
    _configure_logging(get_settings())


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings))
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Engine:[/bold]")
    console.print(f"  Docker host:         {settings.docker_host or '(from environment)'}")
    console.print(f"  API version:         {settings.docker_api_version}")
    console.print(f"  Timeout:             {settings.docker_timeout}")
    console.print()
    console.print("[bold]Build:[/bold]")
    console.print(f"  Use cache:           {settings.use_cache}")
    console.print(f"  TTY:                 {settings.tty}")
    console.print(f"  Stdin:               {settings.stdin}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print()
    console.print("[bold]Streams (seconds):[/bold]")
    console.print(f"  Wait poll interval:  {settings.wait_poll_interval}")
    console.print(f"  Copy poll interval:  {settings.copy_poll_interval}")
    console.print(f"  Output drain:        {settings.output_drain_timeout}")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Temp directory:      {settings.tmp_dir or '(system default)'}")
    console.print(f"  Archive debug file:  {settings.archive_debug_path or '(disabled)'}")


@app.command()
def fetch(
    reference: Annotated[str, typer.Argument(help="Image reference to resolve")],
    tty: Annotated[
        bool | None,
        typer.Option("--tty/--no-tty", help="Render live pull progress"),
    ] = None,
) -> None:
    """Resolve an image locally, pulling it if needed."""
    try:
        executor = _make_executor(tty=tty)
        image_id = executor.fetch(reference)
    except ExecutorError as e:
        _fail(e)
    console.print(image_id)


@app.command()
def run(
    image: Annotated[str, typer.Argument(help="Base image reference")],
    command: Annotated[list[str], typer.Argument(help="Command to run")],
    no_cache: Annotated[
        bool,
        typer.Option("--no-cache", help="Do not reuse cached step images"),
    ] = False,
    tty: Annotated[
        bool | None,
        typer.Option("--tty/--no-tty", help="Allocate a TTY"),
    ] = None,
    stdin: Annotated[
        bool,
        typer.Option("--stdin", "-i", help="Forward local stdin"),
    ] = False,
    tag: Annotated[
        str | None,
        typer.Option("--tag", "-t", help="Tag the resulting image"),
    ] = None,
) -> None:
    """Run a command on top of an image and commit the result."""
    fingerprint = f"run {json.dumps(command)}"
    try:
        executor = _make_executor(no_cache=no_cache, tty=tty, stdin=stdin)
        executor.fetch(image)
        executor.config.cmd = list(command)
        if not executor.check_cache(fingerprint):
            executor.commit(fingerprint, hook=executor.run_hook)
        if tag:
            executor.tag(tag)
    except ExecutorError as e:
        _fail(e)
    console.print(executor.image_id)


@app.command("import")
def import_(
    image_id: Annotated[str, typer.Argument(help="Id to name the new image after")],
    content: Annotated[
        Path | None,
        typer.Argument(help="Layer content file (reads stdin if omitted)"),
    ] = None,
    base: Annotated[
        str | None,
        typer.Option("--base", "-b", help="Inherit config from this image"),
    ] = None,
) -> None:
    """Import layer content as a new image without a container commit."""
    if content is not None and not content.exists():
        err_console.print(f"[red]Path not found: {content}[/red]")
        raise typer.Exit(code=1)

    try:
        executor = _make_executor()
        if base:
            executor.fetch(base)
        if content is None:
            executor.copy_to_container(image_id, sys.stdin.buffer)
        else:
            with content.open("rb") as f:
                executor.copy_to_container(image_id, f)
    except ExecutorError as e:
        _fail(e)
    console.print(executor.image_id)


if __name__ == "__main__":
    app()
