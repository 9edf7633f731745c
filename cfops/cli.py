import json
from typing import Any, Dict, List, NoReturn, Optional

import typer
from rich import print as rprint

from .config import CfopsConfig, load_config
from .log import configure_logging
from .plugin import PluginCaller, PluginError, discover_plugins, find_plugin, read_meta

app = typer.Typer(help="cfops: back up and restore platform tiles through plugins")

CONFIG_HELP = "Path to the cfops config file (defaults to ./configs/config.yaml or $CFOPS_CONFIG)."
PLUGIN_DIR_HELP = "Directory holding tile plugins (overrides plugins.directory)."
OPTION_HELP = "Tile-specific KEY=VALUE passed to the plugin; repeatable."


def _load(config_path: Optional[str], plugin_dir: Optional[str]) -> CfopsConfig:
    cfg = load_config(config_path)
    configure_logging(cfg.logging.level)
    if plugin_dir:
        cfg.plugins.directory = plugin_dir
    return cfg


def _pairs(values: Optional[List[str]]) -> Dict[str, Any]:
    parsed: Dict[str, Any] = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"expected KEY=VALUE, got {item!r}")
        parsed[key.strip()] = value
    return parsed


def _fail(exc: PluginError) -> NoReturn:
    plugin = exc.plugin or "?"
    phase = exc.phase or "?"
    rprint(f"[red]Plugin {plugin} failed during {phase}:[/red] {exc.message}")
    raise typer.Exit(1)


def _run_tile(action: str, cfg: CfopsConfig, tile: str, location: str, settings: Dict[str, Any], options: Dict[str, Any]):
    try:
        plugin = find_plugin(cfg.plugins.directory, tile, timeout=cfg.plugins.metadata_timeout_seconds)
    except PluginError as exc:
        _fail(exc)
    with PluginCaller(hosting=cfg.plugins.hosting) as caller:
        try:
            proxy, _session = caller.acquire(tile, plugin.path)
            if settings:
                proxy.setup(settings)
            operation = proxy.backup if action == "backup" else proxy.restore
            return operation(location, **options)
        except PluginError as exc:
            _fail(exc)


@app.command("list-tiles")
def list_tiles(
    config_path: Optional[str] = typer.Option(None, "--config-path", help=CONFIG_HELP),
    plugin_dir: Optional[str] = typer.Option(None, "--plugin-dir", help=PLUGIN_DIR_HELP),
):
    """List the tiles provided by the plugins directory."""
    cfg = _load(config_path, plugin_dir)
    plugins = discover_plugins(cfg.plugins.directory, timeout=cfg.plugins.metadata_timeout_seconds)
    if not plugins:
        rprint(f"[yellow]No plugins found in[/yellow] {cfg.plugins.directory}")
        return
    for plugin in plugins:
        meta = plugin.meta
        rprint(f"[bold]{meta.name}[/bold] -> {plugin.path}")
        if meta.description:
            rprint(f"  {meta.description}")


@app.command()
def backup(
    tile: str = typer.Option(..., "--tile", help="Tile to back up."),
    destination: str = typer.Option(..., "--destination", help="Directory the backup is written to."),
    option: Optional[List[str]] = typer.Option(None, "--option", help=OPTION_HELP),
    setting: Optional[List[str]] = typer.Option(None, "--setting", help="Tile setting KEY=VALUE sent before the backup; repeatable."),
    config_path: Optional[str] = typer.Option(None, "--config-path", help=CONFIG_HELP),
    plugin_dir: Optional[str] = typer.Option(None, "--plugin-dir", help=PLUGIN_DIR_HELP),
):
    """Back up a tile through its plugin."""
    cfg = _load(config_path, plugin_dir)
    result = _run_tile("backup", cfg, tile, destination, _pairs(setting), _pairs(option))
    rprint(f"[green]Backed up[/green] {tile} to {destination}")
    if result is not None:
        typer.echo(json.dumps(result, indent=2, sort_keys=True, default=str))


@app.command()
def restore(
    tile: str = typer.Option(..., "--tile", help="Tile to restore."),
    destination: str = typer.Option(..., "--destination", help="Directory holding the backup."),
    option: Optional[List[str]] = typer.Option(None, "--option", help=OPTION_HELP),
    setting: Optional[List[str]] = typer.Option(None, "--setting", help="Tile setting KEY=VALUE sent before the restore; repeatable."),
    config_path: Optional[str] = typer.Option(None, "--config-path", help=CONFIG_HELP),
    plugin_dir: Optional[str] = typer.Option(None, "--plugin-dir", help=PLUGIN_DIR_HELP),
):
    """Restore a tile through its plugin."""
    cfg = _load(config_path, plugin_dir)
    result = _run_tile("restore", cfg, tile, destination, _pairs(setting), _pairs(option))
    rprint(f"[green]Restored[/green] {tile} from {destination}")
    if result is not None:
        typer.echo(json.dumps(result, indent=2, sort_keys=True, default=str))


@app.command("plugin-meta")
def plugin_meta(
    path: str,
    timeout: float = typer.Option(10.0, "--timeout", help="Seconds to wait for the plugin."),
):
    """Print the metadata a plugin executable reports about itself."""
    try:
        meta = read_meta(path, timeout=timeout)
    except PluginError as exc:
        _fail(exc)
    typer.echo(meta.to_json())


if __name__ == "__main__":
    app()
