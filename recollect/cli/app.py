"""CLI application — Click-based command hierarchy for recollect.

The main CLI group and global flags. Subcommand modules register
themselves by importing and adding to the group.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any

import click

from recollect.log import configure_logging


def async_cmd(func):
    """Decorator to run an async Click command via asyncio.run()."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return asyncio.run(func(*args, **kwargs))

    return wrapper


@click.group()
@click.option("--json", "json_output", is_flag=True, help="Structured JSON output")
@click.option("--verbose", "-v", is_flag=True, help="Log at INFO level")
@click.option("--no-color", is_flag=True, help="Disable ANSI colors")
@click.pass_context
def cli(ctx: click.Context, json_output: bool, verbose: bool, no_color: bool) -> None:
    """Recollect - two-tier memory for collection agents."""
    ctx.ensure_object(dict)
    ctx.obj["json"] = json_output
    ctx.obj["verbose"] = verbose
    ctx.obj["no_color"] = no_color
    configure_logging(logging.INFO if verbose else logging.WARNING)


# ---------------------------------------------------------------------------
# Register subcommand modules
# ---------------------------------------------------------------------------

def _register_subcommands() -> None:
    """Import and register all subcommands."""
    from recollect.cli.commands import (
        consolidate_cmd,
        health_cmd,
        patterns_cmd,
        purge_cmd,
        run_cmd,
        stats_cmd,
    )

    cli.add_command(health_cmd)
    cli.add_command(stats_cmd)
    cli.add_command(consolidate_cmd)
    cli.add_command(run_cmd)
    cli.add_command(purge_cmd)
    cli.add_command(patterns_cmd)


_register_subcommands()


def main() -> None:
    cli(obj={})
