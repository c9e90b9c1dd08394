"""Threadloom CLI -- inspect stored chat sessions from the terminal.

Loaded via the ``threadloom`` entry point defined in pyproject.toml.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING

import click

from threadloom.cli.formatting import format_error, get_console

if TYPE_CHECKING:
    from collections.abc import Iterator

    from rich.console import Console

    from threadloom.storage.store import SessionStore


@click.group()
@click.option(
    "--db",
    default=".threadloom.db",
    envvar="THREADLOOM_DB",
    help="Path to the session database.",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, db: str, verbose: bool) -> None:
    """Threadloom: branching chat history with undo/redo."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db


@contextmanager
def _store_session(ctx: click.Context) -> Iterator[tuple[SessionStore, Console]]:
    """Open the session store, yield (store, console), and handle cleanup.

    Exceptions raised inside the block are printed as CLI errors.
    """
    import os

    from threadloom.storage.store import SessionStore

    console = get_console()
    db_path = ctx.obj["db_path"]
    try:
        if not os.path.exists(db_path):
            raise click.ClickException(f"Database not found: {db_path}")
        store = SessionStore.open(db_path)
        try:
            yield store, console
        finally:
            store.close()
    except SystemExit:
        raise
    except click.ClickException as e:
        format_error(e.message, console)
        raise SystemExit(1) from None
    except Exception as e:
        format_error(str(e), console)
        raise SystemExit(1) from None


# Register subcommands after cli group is defined
from threadloom.cli.commands.sessions import sessions  # noqa: E402
from threadloom.cli.commands.tree import tree  # noqa: E402
from threadloom.cli.commands.path import path  # noqa: E402
from threadloom.cli.commands.history import history  # noqa: E402
from threadloom.cli.commands.context import context  # noqa: E402

cli.add_command(sessions)
cli.add_command(tree)
cli.add_command(path)
cli.add_command(history)
cli.add_command(context)
