"""
Command-line access to tagstore stores.

Meant for inspecting and fixing up data by hand; applications use the
Python API.
"""

import atexit
import json
import os
import sys
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .config import (
    ENV_HOME,
    ProviderSettings,
    get_config_dir,
    load_or_default_settings,
    save_settings,
)
from .errors import DataNotFoundError, StoreNotFoundError, TagStoreError, log_exception
from .logging_config import configure_quiet_mode, enable_debug_mode
from .provider import MongoDBProvider
from .types import SortOptions, SortOrder, StoreConfiguration, Tag

# Exit codes
EXIT_ERROR = 1
EXIT_NOT_FOUND = 2

if os.environ.get("TAGSTORE_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from . import __version__
        print(f"tagstore {__version__}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


_config_override: Optional[Path] = None


def _config_callback(value: Optional[Path]):
    global _config_override
    if value is not None:
        _config_override = value


app = typer.Typer(
    name="tagstore",
    help="Tagged key/value stores on MongoDB.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    config: Annotated[Optional[Path], typer.Option(
        "--config", "-c",
        envvar=ENV_HOME,
        help="Config directory (default: ~/.tagstore/)",
        callback=_config_callback,
        is_eager=True,
    )] = None,
):
    """Tagged key/value stores on MongoDB."""


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _load_settings() -> ProviderSettings:
    return load_or_default_settings(_config_override)


def _make_provider(settings: ProviderSettings) -> MongoDBProvider:
    return MongoDBProvider.from_settings(settings)


def _get_provider() -> MongoDBProvider:
    try:
        provider = _make_provider(_load_settings())
    except (TagStoreError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(EXIT_ERROR)
    atexit.register(provider.close)
    return provider


def _parse_tags(tags: Optional[list[str]]) -> list[Tag]:
    """Parse name:value (or bare name) tag options."""
    if not tags:
        return []
    parsed = []
    for tag in tags:
        name, sep, value = tag.partition(":")
        if not name or ":" in value:
            typer.echo(f"Error: Invalid tag format '{tag}'. Use name:value", err=True)
            raise typer.Exit(EXIT_ERROR)
        parsed.append(Tag(name, value))
    return parsed


def _render_value(value: bytes) -> str:
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError:
        return value.hex()


def _fail(e: TagStoreError, context: str) -> None:
    code = EXIT_NOT_FOUND if isinstance(e, (DataNotFoundError, StoreNotFoundError)) else EXIT_ERROR
    if code == EXIT_ERROR:
        log_exception(e, context=context)
    typer.echo(f"Error: {e}", err=True)
    raise typer.Exit(code)


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

StoreArg = Annotated[str, typer.Argument(help="Store name")]
KeyArg = Annotated[str, typer.Argument(help="Record key")]


@app.command()
def put(
    store: StoreArg,
    key: KeyArg,
    value: Annotated[str, typer.Argument(help="Value ('-' reads stdin)")],
    tag: Annotated[Optional[list[str]], typer.Option(
        "--tag", "-t",
        help="Tag as name:value (repeatable)",
    )] = None,
):
    """Store a value under a key, replacing any existing record."""
    raw = sys.stdin.buffer.read() if value == "-" else value.encode("utf-8")
    tags = _parse_tags(tag)
    provider = _get_provider()
    try:
        provider.open_store(store).put(key, raw, tags)
    except TagStoreError as e:
        _fail(e, "tagstore put")


@app.command()
def get(
    store: StoreArg,
    key: KeyArg,
    show_tags: Annotated[bool, typer.Option(
        "--tags",
        help="Also print the record's tags",
    )] = False,
):
    """Print the value stored under a key."""
    provider = _get_provider()
    try:
        record = provider.open_store(store).get_record(key)
    except TagStoreError as e:
        _fail(e, "tagstore get")
        return
    typer.echo(_render_value(record.value))
    if show_tags:
        for t in record.tags:
            typer.echo(f"  {t.name}: {t.value}")


@app.command()
def delete(store: StoreArg, key: KeyArg):
    """Delete the record under a key."""
    provider = _get_provider()
    try:
        provider.open_store(store).delete(key)
    except TagStoreError as e:
        _fail(e, "tagstore delete")


@app.command()
def query(
    store: StoreArg,
    expression: Annotated[str, typer.Argument(
        help="name, name:value, or two terms joined with &&",
    )],
    page_size: Annotated[int, typer.Option("--page-size", "-n", help="Results per page")] = 0,
    page: Annotated[int, typer.Option("--page", "-p", help="Page to start from (needs --page-size)")] = 0,
    sort: Annotated[Optional[str], typer.Option("--sort", help="Tag name to sort by")] = None,
    desc: Annotated[bool, typer.Option("--desc", help="Sort descending")] = False,
    count: Annotated[bool, typer.Option("--count", help="Print only the number of matches")] = False,
    output_json: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON lines")] = False,
):
    """List records matching a tag expression."""
    sort_options = None
    if sort:
        sort_options = SortOptions(sort, SortOrder.DESCENDING if desc else SortOrder.ASCENDING)

    provider = _get_provider()
    try:
        it = provider.open_store(store).query(
            expression,
            page_size=page_size,
            initial_page_num=page,
            sort_options=sort_options,
        )
        with it:
            if count:
                typer.echo(str(it.total_items()))
                return
            shown = 0
            for record in it:
                if output_json:
                    typer.echo(json.dumps({
                        "key": record.key,
                        "value": _render_value(record.value),
                        "tags": {t.name: t.value for t in record.tags},
                    }))
                else:
                    tags = " ".join(f"{t.name}:{t.value}" for t in record.tags)
                    typer.echo(f"{record.key}\t{_render_value(record.value)}\t{tags}")
                shown += 1
                if page_size and shown >= page_size:
                    break
    except TagStoreError as e:
        _fail(e, "tagstore query")


@app.command("config")
def store_config(
    store: StoreArg,
    tag_names: Annotated[Optional[list[str]], typer.Argument(
        help="Tag names to index (omit to show the current configuration)",
    )] = None,
    clear: Annotated[bool, typer.Option("--clear", help="Drop all tag indexes")] = False,
):
    """Show or set which tags are indexed in a store."""
    provider = _get_provider()
    try:
        if tag_names or clear:
            provider.open_store(store)
            result = provider.set_store_config(store, StoreConfiguration(list(tag_names or [])))
            typer.echo(
                f"kept: {', '.join(result.kept) or '-'}; "
                f"dropped: {', '.join(result.dropped) or '-'}; "
                f"created: {', '.join(result.created) or '-'}"
            )
            return
        for name in provider.get_store_config(store).tag_names:
            typer.echo(name)
    except TagStoreError as e:
        _fail(e, "tagstore config")


@app.command()
def init(
    uri: Annotated[Optional[str], typer.Option("--uri", help="MongoDB connection string")] = None,
    db_prefix: Annotated[Optional[str], typer.Option("--db-prefix", help="Database name prefix")] = None,
):
    """Write a config file with default settings."""
    config_dir = _config_override or get_config_dir()
    settings = ProviderSettings(path=config_dir)
    if uri:
        settings.connection_string = uri
    if db_prefix is not None:
        settings.db_prefix = db_prefix
    save_settings(settings)
    typer.echo(f"Wrote {settings.config_path}")


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        log_path = log_exception(e, context="tagstore CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
