#!/usr/bin/env python3
"""
Command line interface for the registry mirror.
"""
from __future__ import annotations

import asyncio
import logging
import sys
from functools import wraps
from pathlib import Path

import click

from moon_registry.domain.errors import ConfigurationError, RegistryError
from moon_registry.domain.models import MirrorOptions, MirrorSource
from moon_registry.services.registry import Registry
from moon_registry.storage.config_store import (
    CONFIG_FILE_NAME,
    format_config_value,
    get_config_value,
    load_config,
    parse_config_value,
    save_config,
    set_config_value,
)

logger = logging.getLogger("moon_registry")

PREDEFINED_SOURCES = {
    "mooncakes": {
        "type": "mooncakes",
        "url": "https://mooncakes.io",
        "index_url": "https://mooncakes.io/git/index",
        "index_type": "git",
        "package_url_pattern": "${url}/user/${username}/${name}/${version}.zip",
    },
}

dir_option = click.option(
    '-d', '--dir', 'directory',
    type=click.Path(file_okay=False, path_type=Path),
    default=Path('.'),
    show_default=True,
    help='Registry directory',
)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(levelname)s %(message)s',
    )


def handle_errors(func):
    """Report registry errors as a single line and exit with status 1."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except RegistryError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    return wrapper


@click.group()
@click.version_option(package_name='moon-registry')
@click.option('-v', '--verbose', is_flag=True, help='Enable debug logging')
def cli(verbose):
    """moon-registry - mirror and serve packages from upstream registries."""
    _configure_logging(verbose)


@cli.command('init')
@click.argument('directory', type=click.Path(file_okay=False, path_type=Path), default=Path('.'))
@click.option('--name', default=None, help='Registry name')
@handle_errors
def init_cmd(directory, name):
    """Create a new registry in DIRECTORY."""
    registry = asyncio.run(Registry.init(directory, name))
    click.echo(f"Initialized registry '{registry.config.registry.name}' at {registry.root_dir}")


@cli.command('mirror')
@click.argument('patterns', nargs=-1)
@click.option('--full', is_flag=True, help='Mirror every package in the index')
@click.option('--strict', is_flag=True, help='Do not follow dependencies')
@click.option('--quiet', '-q', is_flag=True, help='Do not warn about skipped dependencies')
@click.option('--source', '-s', default=None, help='Source to mirror from (default source if omitted)')
@dir_option
@handle_errors
def mirror_cmd(patterns, full, strict, quiet, source, directory):
    """Mirror packages matching PATTERNS (globs such as 'moonbitlang/*')."""
    registry = Registry.load(directory)
    if not patterns and not full:
        patterns = tuple(registry.config.mirror.packages)
    if not patterns and not full:
        raise click.UsageError("Give at least one pattern, configure mirror.packages, or use --full")

    options = MirrorOptions(patterns=list(patterns), full=full, strict=strict, quiet=quiet, source=source)
    result = asyncio.run(registry.mirror(options))
    if result.failed:
        sys.exit(1)


@cli.command('serve')
@click.option('--host', default=None, help='Bind address (defaults to server.host)')
@click.option('--port', type=int, default=None, help='Port (defaults to server.port)')
@dir_option
@handle_errors
def serve_cmd(host, port, directory):
    """Serve package metadata and archives over HTTP."""
    import uvicorn

    from moon_registry.core.dependencies import set_registry
    from moon_registry.main import app

    registry = Registry.load(directory)
    set_registry(registry)
    uvicorn.run(
        app,
        host=host or registry.config.server.host,
        port=port or registry.config.server.port,
    )


@cli.command('stats')
@dir_option
@handle_errors
def stats_cmd(directory):
    """Show package and cache statistics."""
    stats = asyncio.run(Registry.load(directory).get_stats())
    click.echo(f"Packages:        {stats.packages}")
    click.echo(f"Cached versions: {stats.cached_versions}")
    click.echo(f"Cache size:      {stats.cache_size / (1024 * 1024):.2f} MB")


@cli.command('sync')
@click.option('--push', is_flag=True, help='Push the local index to git.remote_url')
@click.option('--pull', is_flag=True, help='Pull index updates from git.remote_url')
@dir_option
@handle_errors
def sync_cmd(push, pull, directory):
    """Sync the local index with its remote git repository (pull by default)."""
    registry = Registry.load(directory)
    if not registry.config.git.remote_url:
        click.echo("Error: No remote URL configured.", err=True)
        click.echo("Set it with: moon-registry config git.remote_url <url>", err=True)
        sys.exit(1)

    modes = []
    if pull or not push:
        modes.append('pull')
    if push:
        modes.append('push')

    for mode in modes:
        logger.info("Pulling from remote..." if mode == "pull" else "Pushing to remote...")
        asyncio.run(registry.sync(mode))
    click.echo(f"Sync complete ({' + '.join(modes)})")


@cli.command('config')
@click.argument('key', required=False)
@click.argument('value', required=False)
@dir_option
@handle_errors
def config_cmd(key, value, directory):
    """Show the configuration, or get/set one dotted KEY (e.g. server.port)."""
    config_path = directory / CONFIG_FILE_NAME
    config = load_config(config_path)

    if key is None:
        click.echo("Current configuration:\n")
        for section, values in config.model_dump(mode="json").items():
            if isinstance(values, dict):
                click.echo(f"[{section}]")
                for name, item in values.items():
                    click.echo(f"  {name} = {format_config_value(item)}")
                click.echo()
        click.echo(f"default_source = {format_config_value(config.default_source)}")
        click.echo(f"sources = {format_config_value([s.name for s in config.sources])}")
        return

    if value is None:
        click.echo(f"{key} = {format_config_value(get_config_value(config, key))}")
        return

    parsed = parse_config_value(value)
    try:
        updated = set_config_value(config, key, parsed)
    except ConfigurationError:
        if parsed == value:
            raise
        # e.g. a numeric-looking registry name
        updated = set_config_value(config, key, value)
        parsed = value
    save_config(updated, config_path)
    click.echo(f"Set {key} = {format_config_value(parsed)}")


@cli.group('cache')
def cache_cmd():
    """Manage the package archive cache."""


@cache_cmd.command('clear')
@click.confirmation_option(prompt='Delete every cached package archive?')
@dir_option
@handle_errors
def cache_clear_cmd(directory):
    asyncio.run(Registry.load(directory).package_store.clear_cache())
    click.echo("Cache cleared")


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------

@cli.group('source')
def source_cmd():
    """Manage mirror sources."""


@source_cmd.command('list')
@dir_option
@handle_errors
def source_list_cmd(directory):
    registry = Registry.load(directory)
    sources = registry.list_sources()
    if not sources:
        click.echo("No sources configured.")
        return

    default = registry.source_manager.default_source_name
    click.echo("Configured sources:")
    for src in sources:
        marker = '*' if src.name == default else ' '
        state = 'enabled' if src.enabled else 'disabled'
        click.echo(f" {marker} {src.name} [{src.type}, {state}, priority {src.effective_priority}]")
        click.echo(f"     url: {src.url}")
        click.echo(f"     index: {src.index_url} ({src.index_type})")


@source_cmd.command('add')
@click.argument('name')
@click.option('-t', '--type', 'source_type', default=None, help='Source type (mooncakes, moonbit-registry, custom)')
@click.option('-u', '--url', default=None, help='Base URL for package downloads')
@click.option('-i', '--index-url', default=None, help='Index URL')
@click.option('--index-type', type=click.Choice(['git', 'http']), default='git', show_default=True)
@click.option('--pattern', default=None, help='Package URL pattern')
@click.option('--priority', type=int, default=50, show_default=True, help='Lower is tried first')
@click.option('--from-preset', default=None, help='Use a predefined source as template (mooncakes)')
@dir_option
@handle_errors
def source_add_cmd(name, source_type, url, index_url, index_type, pattern, priority, from_preset, directory):
    """Add a mirror source."""
    if from_preset:
        preset = PREDEFINED_SOURCES.get(from_preset)
        if preset is None:
            raise click.BadParameter(
                f"Unknown preset: {from_preset} (available: {', '.join(PREDEFINED_SOURCES)})",
                param_hint='--from-preset',
            )
        data = dict(preset)
        data.update({k: v for k, v in {'url': url, 'index_url': index_url}.items() if v})
    else:
        if not url or not index_url:
            raise click.UsageError("--url and --index-url are required unless using --from-preset")
        data = {
            'type': source_type or 'custom',
            'url': url,
            'index_url': index_url,
            'index_type': index_type,
            'package_url_pattern': pattern,
        }

    try:
        source = MirrorSource(name=name, priority=priority, **data)
    except ValueError as e:
        raise click.BadParameter(str(e))

    registry = Registry.load(directory)
    registry.add_source(source)
    click.echo(f"Added source '{name}'")


@source_cmd.command('remove')
@click.argument('name')
@dir_option
@handle_errors
def source_remove_cmd(name, directory):
    Registry.load(directory).remove_source(name)
    click.echo(f"Removed source '{name}'")


@source_cmd.command('default')
@click.argument('name')
@dir_option
@handle_errors
def source_default_cmd(name, directory):
    Registry.load(directory).set_default_source(name)
    click.echo(f"Default source set to '{name}'")


@source_cmd.command('enable')
@click.argument('name')
@dir_option
@handle_errors
def source_enable_cmd(name, directory):
    Registry.load(directory).enable_source(name)
    click.echo(f"Enabled source '{name}'")


@source_cmd.command('disable')
@click.argument('name')
@dir_option
@handle_errors
def source_disable_cmd(name, directory):
    Registry.load(directory).disable_source(name)
    click.echo(f"Disabled source '{name}'")


def main():
    cli()


if __name__ == '__main__':
    main()
