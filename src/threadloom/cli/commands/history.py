"""threadloom history -- show the undo/redo stack."""

from __future__ import annotations

import click

from threadloom.cli.formatting import format_history


@click.command()
@click.argument("session_id")
@click.pass_context
def history(ctx: click.Context, session_id: str) -> None:
    """Show SESSION_ID's undo/redo entries since the last generation."""
    from threadloom.cli import _store_session

    with _store_session(ctx) as (store, console):
        session = store.load(session_id)
        format_history(session.history, session.history_index, console)
