from __future__ import annotations

import json
from importlib import metadata
from pathlib import Path
from typing import Optional

import typer

from peprobe.config import config_to_snapshot, load_config
from peprobe.errors import PeprobeError
from peprobe.log import logging_consumer, setup_logging
from peprobe.probe import params_from_config, probe_path
from peprobe.reporters.console import render_console

app = typer.Typer(add_completion=False)


def version_callback(value: bool):
    if value:
        try:
            v = metadata.version("peprobe")
        except metadata.PackageNotFoundError:
            v = "0.1.0-dev"
        typer.echo(f"peprobe version: {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None, "--version", callback=version_callback, is_eager=True, help="Show version and exit."
    ),
):
    """
    Inspect Windows PE binaries without executing them.
    """
    pass


@app.command("probe")
def probe_cmd(
    path: str = typer.Argument(..., help="PE file to inspect."),
    config: str = typer.Option(None, "--config", help="Path to YAML config."),
    strict: bool = typer.Option(False, "--strict", help="Fail on any decode error instead of warning."),
    symbols: bool = typer.Option(False, "--symbols", help="Also list function:library imports."),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug diagnostics."),
):
    cfg = load_config(config)
    if strict:
        cfg.strict = True
    if symbols:
        cfg.resolve_symbols = True

    log = setup_logging("debug" if verbose else cfg.log_level)
    log.debug("effective config: %s", json.dumps(config_to_snapshot(cfg), sort_keys=True))

    p = Path(path).expanduser().resolve()
    if not p.is_file():
        raise typer.BadParameter(f"Path does not exist: {p}")

    size = p.stat().st_size
    if size > cfg.limits.max_file_size_bytes:
        typer.secho(f"Skipping {p.name}: File too large ({size} bytes).", fg=typer.colors.YELLOW, err=True)
        raise typer.Exit(code=1)

    try:
        info = probe_path(p, params_from_config(cfg, logging_consumer()))
    except PeprobeError as e:
        typer.secho(f"Error probing {p.name}: {type(e).__name__}: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    if as_json:
        typer.echo(json.dumps(info.to_json_dict(), indent=2, ensure_ascii=False))
    else:
        render_console(info, p)


if __name__ == "__main__":
    app()
