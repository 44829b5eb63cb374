"""CLI entry point for the shared memory store."""

import asyncio
import json
import logging
import sys

import click

from .config import BACKENDS, FALLBACK_POLICIES, MemoryConfig
from .memory_manager import MemoryManager
from .models import ENVIRONMENTS
from .server import create_server

# CLI choice -> FastMCP transport name
NETWORK_TRANSPORTS = {"http": "streamable-http", "sse": "sse"}


def _configure_logging(level: str) -> None:
    # stdout carries the stdio MCP transport; logs go to stderr
    logging.basicConfig(
        level=level.upper(),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_config(**overrides) -> MemoryConfig:
    try:
        return MemoryConfig(**{k: v for k, v in overrides.items() if v is not None})
    except ValueError as e:
        raise click.BadParameter(str(e))


def config_options(fn):
    options = [
        click.option("--domain", "-d", default=None, help="Domain stamped on stored records"),
        click.option("--memory-dir", default=None, type=click.Path(file_okay=False), help="Durable log directory"),
        click.option("--namespace", default=None, help="Collection namespace"),
        click.option("--backend", default=None, type=click.Choice(BACKENDS), help="Force a backend"),
        click.option("--chroma-host", default=None, help="ChromaDB host"),
        click.option("--chroma-port", default=None, type=int, help="ChromaDB port"),
        click.option("--fallback-policy", default=None, type=click.Choice(FALLBACK_POLICIES)),
        click.option("--log-level", default="info", show_default=True),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


@click.group()
def main():
    """Shared conversation and incident memory for MCP servers."""


@main.command()
@config_options
@click.option("--transport", default="stdio", show_default=True, type=click.Choice(["stdio", *NETWORK_TRANSPORTS]))
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind host for http/sse")
@click.option("--port", default=8765, show_default=True, type=int, help="Bind port for http/sse")
def serve(transport: str, host: str, port: int, log_level: str, **overrides):
    """Run the MCP server exposing the memory tools."""
    _configure_logging(log_level)
    mcp = create_server(_build_config(**overrides))
    if transport == "stdio":
        mcp.run(transport="stdio")
    else:
        mcp.run(transport=NETWORK_TRANSPORTS[transport], host=host, port=port)


@main.command()
@config_options
@click.argument("query")
@click.option("--kind", default="conversation", show_default=True, type=click.Choice(["conversation", "operational"]))
@click.option("--limit", "-n", default=5, show_default=True, type=int)
@click.option("--session-id", default=None, help="Conversation search: restrict to a session")
@click.option("--environment", default=None, type=click.Choice(ENVIRONMENTS), help="Operational search filter")
@click.option("--filter-domain", default=None, help="Operational search: owning domain filter")
def search(
    query: str,
    kind: str,
    limit: int,
    session_id: str | None,
    environment: str | None,
    filter_domain: str | None,
    log_level: str,
    **overrides,
):
    """Search stored memories and print them as JSON."""
    _configure_logging(log_level)
    memory = MemoryManager(_build_config(**overrides))

    async def _run():
        if kind == "conversation":
            return await memory.search_conversations(query, limit, session_id)
        return await memory.search_operational(query, limit, environment, filter_domain)

    results = asyncio.run(_run())
    click.echo(json.dumps([r.model_dump() for r in results], indent=2, default=str))
    if memory.fallback_mode:
        click.echo("(served by fallback search)", err=True)


if __name__ == "__main__":
    main()
