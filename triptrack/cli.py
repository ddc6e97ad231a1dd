from __future__ import annotations

import asyncio
import importlib.metadata as md
import logging
from enum import Enum
from pathlib import Path

import typer
from rich.console import Console

from .config import TripTrackConfig, load_config, load_or_default, resolve_config_path
from .tracking.controls import ControlResult
from .tracking.engine import TripEngine

# Typer application: tests import this
app = typer.Typer(no_args_is_help=True, add_completion=False, help="Trip progress tracker CLI")
console = Console()

DEFAULT_CONFIG = Path("configs/triptrack.yml")


class ResetTarget(str, Enum):
    TRIP = "trip"
    TODAY = "today"
    LOCATION = "location"


def _setup_logging(level: str, verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level, logging.INFO),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _load(config: Path) -> TripTrackConfig:
    try:
        return load_or_default(config)
    except (OSError, ValueError) as exc:
        console.print(f"[red]Config error:[/red] {exc}")
        raise typer.Exit(code=1) from exc


def _engine(config: Path) -> TripEngine:
    """Engine over the persisted trip, restored and ready for control commands."""
    cfg = _load(config)
    _setup_logging(cfg.logging.level)
    engine = TripEngine(cfg)
    engine.start()
    return engine


def _finish(engine: TripEngine, result: ControlResult) -> None:
    engine.persistence.flush()
    if not result.ok:
        console.print(f"[red]{result.message}[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]{result.message}[/green]")


@app.command()
def version() -> None:
    """Print version information."""
    try:
        dist_version = md.version("triptrack")
    except md.PackageNotFoundError:
        from . import __version__

        dist_version = __version__
    console.print(f"triptrack {dist_version}")
    raise typer.Exit(code=0)


@app.command(name="config-validate")
def config_validate(path: Path = typer.Argument(DEFAULT_CONFIG)) -> None:
    """Validate and show resolved configuration."""
    resolved = resolve_config_path(path)
    console.print(f"Using config: {resolved}")
    try:
        cfg = load_config(resolved)
    except (OSError, ValueError) as exc:
        console.print(f"Config validation failed: {exc}")
        raise typer.Exit(code=1) from exc
    console.print("Config OK. Key settings:")
    console.print(f"- trip: {cfg.trip.total_distance_km:g}km, auto-start {cfg.trip.use_auto_start}")
    console.print(f"- modes: {', '.join(m.value for m in cfg.movement.enabled_modes)}")
    console.print(f"- storage: {cfg.persistence.backend.value} {cfg.persistence.path}")


@app.command(name="config-which")
def config_which(config: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c")) -> None:
    """Print resolved config path by priority rules."""
    console.print(str(resolve_config_path(config)))


@app.command()
def status(config: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c")) -> None:
    """Show stored trip progress."""
    engine = _engine(config)
    console.print(engine.get_status())


@app.command()
def export(
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c"),
    output: Path | None = typer.Option(None, "--output", "-o", help="Write backup to file instead of stdout"),
) -> None:
    """Export a trip backup as JSON."""
    data = _engine(config).controls.export_state()
    if output is None:
        typer.echo(data)
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(data + "\n", encoding="utf-8")
    console.print(f"Backup written to {output}")


@app.command(name="import")
def import_(
    backup: Path = typer.Argument(..., exists=True, dir_okay=False, help="Backup JSON file"),
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c"),
) -> None:
    """Restore a trip backup."""
    engine = _engine(config)
    _finish(engine, engine.controls.import_state(backup.read_text(encoding="utf-8")))


@app.command()
def reset(
    target: ResetTarget = typer.Argument(ResetTarget.TODAY),
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c"),
) -> None:
    """Reset the whole trip, today's distance, or the start location."""
    engine = _engine(config)
    controls = engine.controls
    if target is ResetTarget.TRIP:
        result = controls.reset_progress()
    elif target is ResetTarget.TODAY:
        result = controls.reset_today_distance()
    else:
        result = controls.reset_start_location()
    _finish(engine, result)


@app.command(name="add-distance")
def add_distance(
    km: float = typer.Argument(..., help="Kilometres to add (negative subtracts)"),
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c"),
) -> None:
    """Add or subtract distance."""
    engine = _engine(config)
    _finish(engine, engine.controls.add_distance(km))


@app.command(name="set-distance")
def set_distance(
    km: float = typer.Argument(...),
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c"),
    today_only: bool = typer.Option(False, "--today", help="Set only today's distance"),
    total_only: bool = typer.Option(False, "--total", help="Set only the total distance"),
) -> None:
    """Set traveled distance (total and today unless narrowed)."""
    engine = _engine(config)
    controls = engine.controls
    if today_only:
        result = controls.set_today_distance(km)
    elif total_only:
        result = controls.set_total_traveled(km)
    else:
        result = controls.set_distance(km)
    _finish(engine, result)


@app.command(name="jump-to")
def jump_to(
    percent: float = typer.Argument(..., help="Progress percentage 0-100"),
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c"),
) -> None:
    """Jump to a percentage of the trip."""
    engine = _engine(config)
    _finish(engine, engine.controls.jump_to_progress(percent))


@app.command(name="set-total")
def set_total(
    km: float = typer.Argument(..., help="Trip goal in kilometres"),
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c"),
) -> None:
    """Change the trip goal."""
    engine = _engine(config)
    _finish(engine, engine.controls.set_total_distance(km))


@app.command()
def units(
    value: str = typer.Argument(..., help="km, miles, metric or imperial"),
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c"),
) -> None:
    """Switch display units."""
    engine = _engine(config)
    _finish(engine, engine.controls.set_units(value))


@app.command()
def params(
    query: str = typer.Argument(..., help='Query string, e.g. "reset=today&units=miles"'),
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c"),
) -> None:
    """Apply overlay URL parameters."""
    engine = _engine(config)
    results = engine.controls.apply_query_params(query)
    engine.persistence.flush()
    if not results:
        console.print("[yellow]No recognised parameters[/yellow]")
        return
    for result in results:
        colour = "green" if result.ok else "red"
        console.print(f"[{colour}]{result.action}: {result.message}[/{colour}]")
    if not all(result.ok for result in results):
        raise typer.Exit(code=1)


@app.command()
def run(
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c"),
    demo: bool = typer.Option(False, "--demo", help="Use the simulated location source"),
    minutes: float | None = typer.Option(None, "--minutes", help="Stop after this many minutes"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Track progress from gpsd (or the demo source) until interrupted."""
    from .infrastructure.gps import DemoLocationSource, GpsdLocationSource

    cfg = _load(config)
    _setup_logging(cfg.logging.level, verbose)
    console.print(f"Using config: {resolve_config_path(config)}")

    engine = TripEngine(cfg)
    if demo or cfg.source.demo_mode:
        source = DemoLocationSource(
            start=cfg.trip.manual_start_location.to_coordinate(), interval_s=cfg.source.demo_interval_s
        )
    else:
        source = GpsdLocationSource(cfg.source.gpsd)

    console.print("Starting trip engine ...")
    try:
        asyncio.run(engine.run(source, minutes=minutes))
    except KeyboardInterrupt:
        console.print("Interrupted.")
    snapshot = engine.snapshot()
    console.print(
        f"Trip engine stopped. {snapshot.display(snapshot.total_traveled_km)} "
        f"({snapshot.progress_percent:.1f}%), today {snapshot.display(snapshot.today_traveled_km)}"
    )


def launch() -> None:
    """Entry point when executed as a module/script."""
    cli()


# Click command export (entry point)
cli = typer.main.get_command(app)

__all__ = ["app", "cli"]

if __name__ == "__main__":
    launch()
