"""Operations commands — health, stats, consolidation, retention, patterns."""

from __future__ import annotations

import asyncio
import json as json_mod
import time
from typing import Any, Optional

import click

from recollect.cli.app import async_cmd
from recollect.cli.formatters import build_table, format_rate, get_console, health_indicator
from recollect.config import RecollectConfig
from recollect.errors import NotFoundError, RecollectError
from recollect.memory.system import MemorySystem


def build_system() -> MemorySystem:
    """Memory system for one CLI invocation; the background loop stays off."""
    config = RecollectConfig()
    config.consolidation.auto_start = False
    return MemorySystem.from_config(config)


def _open() -> MemorySystem:
    try:
        return build_system()
    except RecollectError as exc:
        raise click.ClickException(str(exc)) from exc


def _emit_json(data: Any) -> None:
    click.echo(json_mod.dumps(data, indent=2, default=str))


@click.command("health")
@click.pass_context
@async_cmd
async def health_cmd(ctx: click.Context) -> None:
    """Check that the session cache and the archive are reachable."""
    async with _open() as system:
        health = await system.health_check()

    if ctx.obj.get("json"):
        _emit_json(health)
    else:
        console = get_console(no_color=ctx.obj.get("no_color", False))
        rows = [
            ["Session cache", health_indicator(health["short_term"])],
            ["Archive", health_indicator(health["long_term"])],
        ]
        console.print(build_table("Recollect Health", ["Tier", "Status"], rows))
    if not health["overall"]:
        ctx.exit(1)


@click.command("stats")
@click.pass_context
@async_cmd
async def stats_cmd(ctx: click.Context) -> None:
    """Show record counts and consolidation statistics."""
    async with _open() as system:
        stats = await system.stats()

    if ctx.obj.get("json"):
        _emit_json(stats)
        return

    console = get_console(no_color=ctx.obj.get("no_color", False))
    rows = [
        ["Active sessions", stats["short_term"]["active_sessions"]],
        ["Episodic memories", stats["long_term"]["episodic_memories"]],
        ["Semantic memories", stats["long_term"]["semantic_memories"]],
    ]
    console.print(build_table("Memory", ["Tier", "Count"], rows))

    top = stats["consolidation"]["top_strategies"]
    if top:
        console.print(build_table(
            "Top strategies",
            ["Title", "Success", "Applied", "Confidence"],
            [
                [s["title"], format_rate(s["success_rate"]), s["times_applied"], f"{s['confidence']:.2f}"]
                for s in top
            ],
        ))


@click.command("consolidate")
@click.option("--session-id", default=None, help="Consolidate one live session now")
@click.pass_context
@async_cmd
async def consolidate_cmd(ctx: click.Context, session_id: Optional[str]) -> None:
    """Run one consolidation sweep over expired sessions."""
    async with _open() as system:
        if session_id:
            try:
                memory = await system.consolidator.consolidate(session_id)
            except NotFoundError as exc:
                raise click.ClickException(str(exc)) from exc
            result: dict[str, Any] = {"session_id": session_id, "episodic_id": memory.id}
        else:
            report = await system.consolidator.run_once()
            result = report.model_dump()

    if ctx.obj.get("json"):
        _emit_json(result)
        return
    console = get_console(no_color=ctx.obj.get("no_color", False))
    if session_id:
        console.print(f"Consolidated {session_id} -> {result['episodic_id']}")
        return
    rows = [[key.replace("_", " "), value] for key, value in result.items() if key != "duration"]
    console.print(build_table("Consolidation", ["Counter", "Value"], rows))


@click.command("run")
@click.pass_context
@async_cmd
async def run_cmd(ctx: click.Context) -> None:
    """Sweep now, then keep consolidating on the configured interval."""
    async with _open() as system:
        report = await system.consolidator.run_once()
        click.echo(
            f"Initial sweep: {report.successful} consolidated, "
            f"{report.skipped} skipped, {report.failed} failed"
        )
        await system.consolidator.start()
        click.echo("Consolidating in the background (press Ctrl+C to stop)...")
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            pass


@click.command("purge")
@click.option("--older-than-days", type=click.FloatRange(min=0, min_open=True), required=True)
@click.pass_context
@async_cmd
async def purge_cmd(ctx: click.Context, older_than_days: float) -> None:
    """Delete episodic memories older than the given age."""
    async with _open() as system:
        deleted = await system.memory.purge_episodic(older_than_days)

    if ctx.obj.get("json"):
        _emit_json({"deleted": deleted, "older_than_days": older_than_days})
    else:
        click.echo(f"Deleted {deleted} episodic memories older than {older_than_days:g} days")


@click.command("patterns")
@click.option("--risk", default=None, help="Customer risk tier")
@click.option("--agent-type", type=click.Choice(["email", "phone", "sms"]), default=None)
@click.option("--since-days", type=float, default=None, help="Only interactions this recent")
@click.pass_context
@async_cmd
async def patterns_cmd(
    ctx: click.Context,
    risk: Optional[str],
    agent_type: Optional[str],
    since_days: Optional[float],
) -> None:
    """Summarize outcomes and recurring patterns in episodic memory."""
    since = time.time() - since_days * 86400 if since_days is not None else None
    async with _open() as system:
        analysis = await system.consolidator.analyze_patterns(
            customer_risk=risk, agent_type=agent_type, since=since
        )

    if ctx.obj.get("json"):
        _emit_json(analysis.model_dump(exclude={"top_strategies": {"__all__": {"embedding"}}}))
        return

    console = get_console(no_color=ctx.obj.get("no_color", False))
    console.print(
        f"[bold]{analysis.total_interactions}[/bold] interactions, "
        f"success rate {format_rate(analysis.success_rate)}"
    )
    if analysis.by_agent_type:
        console.print(build_table(
            "By channel",
            ["Channel", "Total", "Success"],
            [
                [name, int(group["total"]), format_rate(group["success_rate"])]
                for name, group in analysis.by_agent_type.items()
            ],
        ))
    for pattern in analysis.patterns:
        console.print(f"  - {pattern}")
    for recommendation in analysis.recommendations:
        console.print(f"  > {recommendation}")
