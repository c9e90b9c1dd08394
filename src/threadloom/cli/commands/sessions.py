"""threadloom sessions -- list stored sessions."""

from __future__ import annotations

import click

from threadloom.cli.formatting import format_sessions


@click.command()
@click.pass_context
def sessions(ctx: click.Context) -> None:
    """List stored sessions, most recently updated first."""
    from threadloom.cli import _store_session

    with _store_session(ctx) as (store, console):
        format_sessions(store.list_sessions(), console)
