"""Typer CLI entrypoint."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import typer

from driverstage.api import Client
from driverstage.core.errors import DriverStageError
from driverstage.core.hardware import build_request, enumerate_devices, render_request_xml
from driverstage.core.model import EXIT_FAILED, PipelineResult, PipelineState
from driverstage.transports.pnp import PnputilEnumerator, PowerShellPnpEnumerator

app = typer.Typer(help="Match local hardware against a driver catalog and stage the newest drivers")

_HANDLER_TAG = "_driverstage_handler"
LOG_FILE_NAME = "driverstage.log"


def _configure_logging(verbose: bool, log_dir: Path | None) -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_TAG, False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console.setFormatter(formatter)
    setattr(console, _HANDLER_TAG, True)
    root.addHandler(console)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / LOG_FILE_NAME, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        setattr(file_handler, _HANDLER_TAG, True)
        root.addHandler(file_handler)

    root.setLevel(logging.DEBUG)


def _print_summary(result: PipelineResult) -> None:
    for warning in result.warnings:
        typer.echo(f"Warning: {warning}", err=True)

    if result.state is PipelineState.NO_DRIVERS:
        typer.echo("No matching drivers found")
        return
    if result.state is PipelineState.FAILED and result.failure is not None:
        typer.echo(f"Error: {result.failure.stage} failed: {result.failure.message}", err=True)
        return

    typer.echo(f"Devices: {len(result.devices)}")
    typer.echo(f"Candidates: {len(result.candidates)}")
    typer.echo(f"Targets: {len(result.targets)}")
    for driver in result.targets:
        typer.echo(f"  {driver.ci_id} {driver.inf_file} {driver.version} ({driver.provider or '<unknown>'})")
    typer.echo(f"Content packages: {', '.join(result.content_ids) or '<none>'}")
    if result.fetched:
        typer.echo(f"Downloaded: {len(result.fetched)} package(s) into {result.fetched[0].path.parent}")
    if result.installed:
        typer.echo("Drivers installed")


@app.command("stage")
def stage(
    config: Path | None = typer.Option(None, "--config", help="Settings YAML file"),
    target_path: Path | None = typer.Option(None, "--target-path", help="Where content packages are staged"),
    catalog_server: str | None = typer.Option(None, "--catalog-server", help="Catalog service host"),
    database: str | None = typer.Option(None, "--database", help="Site database name"),
    catalog_file: Path | None = typer.Option(None, "--catalog-file", help="Exported YAML catalog to use instead of a server"),
    endpoint: str | None = typer.Option(None, "--endpoint", help="Distribution endpoint host"),
    username: str | None = typer.Option(None, "--username"),
    password: str | None = typer.Option(None, "--password"),
    use_https: bool | None = typer.Option(None, "--https/--http", help="Transport security for catalog and content"),
    category: list[str] | None = typer.Option(None, "--category", help="Category filter, repeatable"),
    wildcard: bool | None = typer.Option(None, "--wildcard", help="Match categories as substrings"),
    find_all: bool | None = typer.Option(None, "--find-all", help="Keep every matched driver version"),
    present_only: bool | None = typer.Option(None, "--present-only", help="Only describe attached hardware"),
    only_dated: bool | None = typer.Option(None, "--only-dated", help="Only stage drivers newer than installed ones"),
    download: bool | None = typer.Option(None, "--download/--no-download"),
    install: bool | None = typer.Option(None, "--install", help="Install staged drivers (requires elevation)"),
    allow_restart: bool | None = typer.Option(None, "--allow-restart"),
    workers: int | None = typer.Option(None, "--workers", help="Parallel lookups and downloads"),
    log_dir: Path | None = typer.Option(None, "--log-dir", help="Directory for the run log and audit tables"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Run the full pipeline: describe, match, reconcile, resolve, fetch, install."""
    overrides = {
        "target_path": str(target_path) if target_path else None,
        "catalog_server": catalog_server,
        "database": database,
        "catalog_file": str(catalog_file) if catalog_file else None,
        "distribution_endpoint": endpoint,
        "username": username,
        "password": password,
        "use_https": use_https,
        "categories": list(category) if category else None,
        "wildcard": wildcard,
        "find_all": find_all,
        "hardware_must_be_present": present_only,
        "update_only_dated_drivers": only_dated,
        "download": download,
        "install": install,
        "allow_restart": allow_restart,
        "max_workers": workers,
        "log_dir": str(log_dir) if log_dir else None,
    }
    try:
        client = Client.from_sources(config, overrides)
        _configure_logging(verbose, client.settings.log_dir)
        result = client.run()
    except DriverStageError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=EXIT_FAILED) from None

    _print_summary(result)
    raise typer.Exit(code=result.exit_code)


@app.command("devices")
def list_devices(
    present_only: bool = typer.Option(False, "--present-only", help="Hide devices that are not attached"),
) -> None:
    """List local devices with their hardware ids."""
    try:
        outcome = enumerate_devices(PowerShellPnpEnumerator(), PnputilEnumerator())
    except DriverStageError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=EXIT_FAILED) from None

    for warning in outcome.warnings:
        typer.echo(f"Warning: {warning}", err=True)
    devices = [d for d in outcome.devices if d.present or not present_only or outcome.reduced]
    if not devices:
        typer.echo("No devices found")
        return
    for device in devices:
        state = "present" if device.present else "absent"
        typer.echo(f"{device.hardware_id or '<no-hardware-id>'} {device.name} [{state}]")


@app.command("request")
def show_request(
    category: list[str] | None = typer.Option(None, "--category", help="Category filter, repeatable"),
    wildcard: bool = typer.Option(False, "--wildcard"),
    present_only: bool = typer.Option(False, "--present-only"),
) -> None:
    """Print the hardware request document that would be sent to the catalog."""
    try:
        outcome = enumerate_devices(PowerShellPnpEnumerator(), PnputilEnumerator())
    except DriverStageError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=EXIT_FAILED) from None

    for warning in outcome.warnings:
        typer.echo(f"Warning: {warning}", err=True)
    request = build_request(
        outcome.devices,
        category or (),
        wildcard=wildcard,
        require_present=present_only and not outcome.reduced,
    )
    typer.echo(render_request_xml(request))


def run() -> None:
    app()


if __name__ == "__main__":
    run()
