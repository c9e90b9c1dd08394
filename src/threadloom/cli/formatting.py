"""Rich formatting helpers for the Threadloom CLI.

Rich auto-detects TTY and degrades gracefully when piped (no ANSI codes).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from threadloom.models.node import NodeStatus

if TYPE_CHECKING:
    from threadloom.models.history import HistoryEntry
    from threadloom.models.node import MessageNode
    from threadloom.models.session import ChatSession
    from threadloom.pipeline.base import PipelineContext
    from threadloom.storage.store import SessionSummary

_PREVIEW_CHARS = 60


def get_console() -> Console:
    """Create a Rich Console that auto-detects TTY for graceful pipe degradation."""
    return Console(stderr=False)


def preview(text: str, limit: int = _PREVIEW_CHARS) -> str:
    flat = " ".join(text.split())
    return flat if len(flat) <= limit else flat[: limit - 1] + "…"


def _node_label(node: MessageNode, *, active: bool) -> str:
    role_style = {"user": "cyan", "assistant": "green", "system": "magenta"}[node.role.value]
    label = f"[{role_style}]{node.role.value}[/{role_style}] {escape(preview(node.content)) or '[dim](empty)[/dim]'}"
    if node.status != NodeStatus.COMPLETE:
        label += f" [yellow]<{node.status.value}>[/yellow]"
    if not node.is_enabled:
        label = f"[strike dim]{label}[/strike dim]"
    if active:
        label = f"[bold]{label}[/bold] [bold yellow]*[/bold yellow]"
    return label


def format_sessions(summaries: list[SessionSummary], console: Console) -> None:
    """Display stored sessions as a table."""
    if not summaries:
        console.print("[dim]No sessions.[/dim]")
        return

    table = Table(show_header=True, header_style="bold", box=None, pad_edge=False)
    table.add_column("Session", style="yellow")
    table.add_column("Name")
    table.add_column("Nodes", justify="right", style="green")
    table.add_column("Updated", style="dim")
    for s in summaries:
        table.add_row(
            s.session_id,
            escape(s.name),
            str(s.node_count),
            s.updated_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


def format_tree(session: ChatSession, console: Console) -> None:
    """Render the whole message tree; the active path is marked with ``*``."""
    active_ids = {session.root_node_id}
    current = session.nodes.get(session.active_leaf_id)
    while current is not None:
        active_ids.add(current.id)
        current = session.nodes.get(current.parent_id) if current.parent_id else None

    root = session.root
    rendered = Tree(f"[bold]{escape(session.name)}[/bold] [dim]({root.id})[/dim]")
    stack = [(rendered, child_id) for child_id in reversed(root.children_ids)]
    while stack:
        parent_branch, node_id = stack.pop()
        node = session.nodes.get(node_id)
        if node is None:
            continue
        sub = parent_branch.add(_node_label(node, active=node.id in active_ids))
        stack.extend((sub, c) for c in reversed(node.children_ids))
    console.print(rendered)


def format_path(nodes: list[MessageNode], console: Console) -> None:
    """Display the active path as a table."""
    if not nodes:
        console.print("[dim]Active path is empty.[/dim]")
        return

    table = Table(show_header=True, header_style="bold", box=None, pad_edge=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Node", style="yellow")
    table.add_column("Role", style="cyan")
    table.add_column("Status")
    table.add_column("On", justify="center")
    table.add_column("Content")
    for i, node in enumerate(nodes, start=1):
        table.add_row(
            str(i),
            node.id,
            node.role.value,
            node.status.value,
            "yes" if node.is_enabled else "[red]no[/red]",
            escape(preview(node.content)),
        )
    console.print(table)


def format_history(entries: list[HistoryEntry], index: int, console: Console) -> None:
    """Display the undo/redo stack; the current position is marked."""
    if not entries:
        console.print("[dim]No history.[/dim]")
        return

    table = Table(show_header=True, header_style="bold", box=None, pad_edge=False)
    table.add_column("", width=1)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Action", style="cyan")
    table.add_column("Kind")
    table.add_column("Nodes", justify="right", style="green")
    table.add_column("Target", style="yellow")
    for i, entry in enumerate(entries):
        table.add_row(
            ">" if i == index else "",
            str(i),
            entry.action_tag.value,
            "snapshot" if entry.is_snapshot else f"{len(entry.deltas)} deltas",
            str(entry.context.affected_count),
            entry.context.target_node_id or "",
        )
    console.print(table)


def format_context(context: PipelineContext, console: Console) -> None:
    """Display the messages a pipeline run produced, then any failures."""
    table = Table(show_header=True, header_style="bold", box=None, pad_edge=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Role", style="cyan")
    table.add_column("Source", style="dim")
    table.add_column("Content")
    for i, message in enumerate(context.messages, start=1):
        table.add_row(str(i), message.role, message.source_type, escape(preview(message.text)))
    console.print(table)
    for failure in context.failures:
        console.print(f"[yellow]Warning:[/yellow] {escape(failure)}", highlight=False)


def format_error(message: str, console: Console) -> None:
    """Display an error message."""
    console.print(f"[red]Error:[/red] {message}", highlight=False)
