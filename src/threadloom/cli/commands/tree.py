"""threadloom tree -- render a session's message tree."""

from __future__ import annotations

import click

from threadloom.cli.formatting import format_tree


@click.command()
@click.argument("session_id")
@click.pass_context
def tree(ctx: click.Context, session_id: str) -> None:
    """Show every branch of SESSION_ID; the active path is starred."""
    from threadloom.cli import _store_session

    with _store_session(ctx) as (store, console):
        format_tree(store.load(session_id), console)
