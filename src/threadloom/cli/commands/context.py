"""threadloom context -- preview the model request for a session."""

from __future__ import annotations

import click

from threadloom.cli.formatting import format_context


@click.command()
@click.argument("session_id")
@click.option("--max-tokens", type=int, default=None, help="Apply a context token budget.")
@click.option(
    "--tokenizer",
    type=click.Choice(["chars", "tiktoken"], case_sensitive=False),
    default="chars",
    show_default=True,
    help="Token counter for the budget.",
)
@click.option("--system", "system_prompt", default=None, help="System prompt to inject.")
@click.pass_context
def context(
    ctx: click.Context,
    session_id: str,
    max_tokens: int | None,
    tokenizer: str,
    system_prompt: str | None,
) -> None:
    """Run the default context pipeline over SESSION_ID's active path."""
    from threadloom.cli import _store_session
    from threadloom.conversation import Conversation
    from threadloom.generation import StaticAgentResolver
    from threadloom.models.config import AgentConfig, ContextManagementConfig
    from threadloom.tokens import CharTokenCounter, TiktokenCounter

    agent = AgentConfig(
        system_prompt=system_prompt,
        context_management=ContextManagementConfig(
            enabled=max_tokens is not None,
            max_context_tokens=max_tokens,
        ),
    )

    with _store_session(ctx) as (store, console):
        counter = TiktokenCounter() if tokenizer == "tiktoken" else CharTokenCounter()
        convo = Conversation.create(
            session=store.load(session_id),
            token_counter=counter,
            agent_resolver=StaticAgentResolver(agent),
        )
        format_context(convo.build_context(), console)
