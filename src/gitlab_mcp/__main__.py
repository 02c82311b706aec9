import click

from gitlab_mcp.server.interfaces.cli.serve import serve
from gitlab_mcp.server.interfaces.cli.storage import storage


@click.group(invoke_without_command=True)
@click.pass_context
def cli(ctx: click.Context) -> None:
    """GitLab MCP gateway CLI"""
    # Show help when no subcommand is provided
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


cli.add_command(serve)
cli.add_command(storage)


if __name__ == "__main__":
    cli()
