from typing import Any

import click

from gitlab_mcp.sdk.auth.storage import create_storage_backend
from gitlab_mcp.server.core.config.gateway_config import load_config
from gitlab_mcp.server.core.config.models import GatewayConfigModel
from gitlab_mcp.server.interfaces.cli.utils import (
    configure_logging,
    output_error,
    output_result,
    run_async_cli,
)


async def _stats(config: GatewayConfigModel) -> dict[str, Any]:
    backend = create_storage_backend(
        config.oauth.storage, max_session_age_ms=config.oauth.max_session_age_ms
    )
    await backend.initialize()
    try:
        stats = await backend.get_stats()
    finally:
        await backend.close()
    return stats.model_dump()


async def _cleanup(config: GatewayConfigModel) -> dict[str, Any]:
    backend = create_storage_backend(
        config.oauth.storage, max_session_age_ms=config.oauth.max_session_age_ms
    )
    await backend.initialize()
    try:
        result = await backend.cleanup(config.oauth.max_session_age_ms)
    finally:
        await backend.close()
    return {**result.model_dump(), "total": result.total}


@click.group(name="storage")
def storage() -> None:
    """Inspect and maintain the OAuth session storage."""


@storage.command(name="stats")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="YAML config file")
@click.option("--json-output", is_flag=True, help="Output in JSON format")
@click.option("--debug", is_flag=True, help="Show detailed debug information")
def stats(config_path: str | None, json_output: bool, debug: bool) -> None:
    """Show how many records the configured backend holds."""
    configure_logging(debug=debug, log_level="WARNING")
    try:
        config = load_config(config_path=config_path)
        output_result(run_async_cli(_stats(config)), json_output)
    except click.Abort:
        raise
    except Exception as e:
        output_error(e, json_output, debug)


@storage.command(name="cleanup")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="YAML config file")
@click.option("--json-output", is_flag=True, help="Output in JSON format")
@click.option("--debug", is_flag=True, help="Show detailed debug information")
def cleanup(config_path: str | None, json_output: bool, debug: bool) -> None:
    """Delete expired sessions, flows and authorization codes once."""
    configure_logging(debug=debug, log_level="WARNING")
    try:
        config = load_config(config_path=config_path)
        output_result(run_async_cli(_cleanup(config)), json_output)
    except click.Abort:
        raise
    except Exception as e:
        output_error(e, json_output, debug)
