"""
Main entry point for toolhost.

Hosts one MCP server over stdio; logs and diagnostics go to stderr.
"""

import logging
import sys

import anyio
import click
from rich.console import Console
from rich.table import Table

from toolhost import __version__
from toolhost.config import Config, ConfigError
from toolhost.mcp.dispatcher import RequestDispatcher
from toolhost.mcp.errors import MissingCredentialError
from toolhost.mcp.messages import ServerInfo
from toolhost.mcp.resources import ResourceLocator
from toolhost.mcp.server import MCPServer
from toolhost.mcp.tools.models import describe_parameters
from toolhost.mcp.tools.registry import ToolRegistry
from toolhost.mcp.tools.supervisor import ExecutionSupervisor
from toolhost.mcp.transport import StdioTransport
from toolhost.servers import SERVERS, build_server
from toolhost.servers.base import ServerComponents
from toolhost.utils.log_config import setup_logging, stderr_console

log = logging.getLogger(__name__)

CONTEXT_SETTINGS = dict(help_option_names=["-h", "--help"])

SERVER_CHOICES = click.Choice(sorted(SERVERS))


def build_dispatcher(components: ServerComponents, config: Config) -> RequestDispatcher:
    """
    Wire a server's tools and providers into a dispatcher.

    Must be called with an event loop running, the supervisor's primitives
    belong to it.
    """
    registry = ToolRegistry()
    registry.register_all(components.tools)
    resources = ResourceLocator()
    for scheme, provider in components.providers.items():
        resources.register(scheme, provider)
    supervisor = ExecutionSupervisor(
        max_concurrency=config.get_max_concurrency(),
        timeouts=config.get_timeouts(),
        cancel_grace=config.get_cancel_grace(),
    )
    return RequestDispatcher(
        registry,
        supervisor=supervisor,
        resources=resources,
        server_info=ServerInfo(name=f"toolhost-{components.name}", version=__version__),
        instructions=components.instructions,
    )


async def run_server(components: ServerComponents, config: Config) -> None:
    dispatcher = build_dispatcher(components, config)
    await MCPServer(dispatcher).serve(StdioTransport())


def _fail(console: Console, message: str) -> None:
    console.print(f"[bold red]Error:[/bold red] {message}")
    sys.exit(1)


def _load_components(ctx: click.Context) -> ServerComponents:
    server = ctx.obj["SERVER"]
    try:
        return build_server(server, ctx.obj["CONFIG"])
    except (MissingCredentialError, ConfigError) as e:
        log.debug(f"Cannot start {server}", exc_info=True)
        _fail(stderr_console, str(e))


@click.group(invoke_without_command=True, context_settings=CONTEXT_SETTINGS)
@click.option(
    "--server",
    "-s",
    type=SERVER_CHOICES,
    default="echo",
    show_default=True,
    help="Which server to host.",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Path to a YAML config file (default: ~/.config/toolhost/config.yaml).",
)
@click.option("--debug", is_flag=True, default=False, help="Log at DEBUG level.")
@click.option(
    "--max-concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum number of tool calls executing at once. Overrides config.",
)
@click.option("--api-key", default=None, help="Tavily API key. Overrides TAVILY_API_KEY and config.")
@click.version_option(__version__, prog_name="toolhost")
@click.pass_context
def cli(ctx, server, config_path, debug, max_concurrency, api_key):
    """Host MCP tool servers over stdio."""
    setup_logging(debug)
    try:
        config = Config(config_path)
    except ConfigError as e:
        _fail(stderr_console, f"Error loading configuration: {e}")

    config.set_override("max_concurrency", max_concurrency)
    config.set_credential("tavily", api_key)

    ctx.ensure_object(dict)
    ctx.obj["SERVER"] = server
    ctx.obj["CONFIG"] = config
    log.debug(f"CLI invoked. Server: {server}, config: {config.config_file}")

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve)


@cli.command()
@click.pass_context
def serve(ctx):
    """Serve the selected server over stdin/stdout (the default)."""
    components = _load_components(ctx)
    config = ctx.obj["CONFIG"]
    try:
        config.get_max_concurrency()
        config.get_timeouts()
        config.get_cancel_grace()
    except ConfigError as e:
        _fail(stderr_console, str(e))

    log.info(f"Starting toolhost-{components.name} {__version__} with {len(components.tools)} tool(s)")
    try:
        anyio.run(run_server, components, config)
    except KeyboardInterrupt:
        log.info("Interrupted, shutting down")


@cli.command()
@click.pass_context
def info(ctx):
    """Print the selected server's tools and resource schemes."""
    components = _load_components(ctx)
    console = Console()

    table = Table(title=f"toolhost-{components.name} {__version__}")
    table.add_column("Tool", style="bold blue")
    table.add_column("Timeout class")
    table.add_column("Parameters")
    table.add_column("Description")
    for tool in components.tools:
        params = []
        for param in describe_parameters(tool):
            marker = "*" if param.get("required") else ""
            params.append(f"{param['name']}{marker} ({param['type']})")
        table.add_row(tool.name, tool.timeout_class, "\n".join(params), tool.description)
    console.print(table)

    if components.providers:
        console.print(f"Resource schemes: {', '.join(sorted(components.providers))}")
    if components.instructions:
        console.print(f"[dim]{components.instructions}[/dim]")


if __name__ == "__main__":
    cli()
