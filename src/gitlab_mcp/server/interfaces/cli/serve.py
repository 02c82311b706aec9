import click
import uvicorn

from gitlab_mcp.sdk.telemetry import configure_telemetry, shutdown_telemetry
from gitlab_mcp.server.core.config.gateway_config import ConfigError, load_config
from gitlab_mcp.server.interfaces.cli.utils import configure_logging_from_config, output_error
from gitlab_mcp.server.interfaces.server.app import create_app


@click.command(name="serve")
@click.option("--host", help="Interface to bind (defaults to config, then 127.0.0.1)")
@click.option("--port", type=int, help="Port to listen on (defaults to config, then 8000)")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    help="YAML config file (defaults to $GITLAB_MCP_CONFIG)",
)
@click.option("--debug", is_flag=True, help="Show detailed debug information")
@click.option("--log-file", type=click.Path(dir_okay=False), help="Also log to this file (rotated)")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    help="Log level (defaults to config, then INFO)",
)
def serve(
    host: str | None,
    port: int | None,
    config_path: str | None,
    debug: bool,
    log_file: str | None,
    log_level: str | None,
) -> None:
    """Start the gateway HTTP server.

    Configuration comes from an optional YAML file overlaid with environment
    variables (OAUTH_ENABLED, OAUTH_SESSION_SECRET, GITLAB_OAUTH_CLIENT_ID, ...).

    \b
    Examples:
        gitlab-mcp-gateway serve
        gitlab-mcp-gateway serve --port 9000
        gitlab-mcp-gateway serve --config gateway.yml --debug
    """
    try:
        config = load_config(config_path=config_path)
    except ConfigError as e:
        output_error(e, debug=debug)
        return

    configure_logging_from_config(config.logging, debug=debug, log_file=log_file, log_level=log_level)

    configure_telemetry(config.telemetry)
    try:
        uvicorn.run(
            create_app(config),
            host=host or config.host,
            port=port or config.port,
            log_config=None,
        )
    finally:
        shutdown_telemetry()
