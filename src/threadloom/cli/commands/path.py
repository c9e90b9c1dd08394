"""threadloom path -- show the active branch."""

from __future__ import annotations

import click

from threadloom.cli.formatting import format_path


@click.command()
@click.argument("session_id")
@click.pass_context
def path(ctx: click.Context, session_id: str) -> None:
    """Show the active path of SESSION_ID, oldest message first."""
    from threadloom.cli import _store_session
    from threadloom.operations.tree import get_active_path

    with _store_session(ctx) as (store, console):
        format_path(get_active_path(store.load(session_id)), console)
