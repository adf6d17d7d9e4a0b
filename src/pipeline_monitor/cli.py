"""CLI entry point for the pipeline monitor."""

import json
import logging
from contextlib import contextmanager

import click

from pipeline_monitor.config import get_config
from pipeline_monitor.core.engine import Envelope, PipelineMonitor


@contextmanager
def _monitor():
    monitor = PipelineMonitor(get_config())
    try:
        yield monitor
    finally:
        monitor.close()


def _unwrap(envelope: Envelope):
    if not envelope.ok:
        raise click.ClickException(envelope.error)
    return envelope.data


def _echo_json(data):
    click.echo(json.dumps(data, indent=2))


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose):
    """pm - Pipeline Monitor CLI"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Status ────────────────────────────────────────────────────────────────────


@main.command("status")
@click.option("--json", "as_json", is_flag=True, help="Output the full snapshot as JSON")
def status(as_json):
    """Show pipeline health and worker state."""
    with _monitor() as monitor:
        snap = _unwrap(monitor.get_status())

    if as_json:
        _echo_json(snap)
        return

    click.echo(f"Health: {snap['healthScore']}/100  (backend: {snap['backend']})")
    backlog = snap["backlog"]
    click.echo(
        f"Backlog: {backlog['pendingCount']} pending, "
        f"{backlog['claimedCount']} claimed, {backlog['doneCount']} done"
    )
    click.echo(
        f"Completed: {snap['completedCount']}"
        f"  (avg {snap['averageTaskDuration'] or 'n/a'})"
    )
    click.echo(
        f"Failed pending: {snap['failedPendingCount']}"
        f"  Self-correction: {snap['selfCorrectionRate']}%"
    )
    if snap["hasBlockers"]:
        click.echo("Blockers:")
        for line in snap["blockerLines"]:
            click.echo(f"  {line}")

    click.echo("Workers:")
    for w in snap["workers"]:
        icon = "●" if w["running"] else "○"
        pid = f" PID {w['pid']}" if w["pid"] else ""
        click.echo(f"  {icon} {w['label']}{pid} ({w['status']})")

    git = snap["git"]
    click.echo(f"Git: {git['branch']} +{git['commitsAhead']} ({git['dirtyFiles']} dirty)")


# ── Workers ───────────────────────────────────────────────────────────────────


@main.command("workers")
def workers():
    """Show running worker counts per type."""
    with _monitor() as monitor:
        counts = _unwrap(monitor.list_worker_counts())
    for c in counts:
        pids = f"  PIDs: {', '.join(str(p) for p in c['pids'])}" if c["pids"] else ""
        click.echo(f"{c['label']}: {c['count']}/{c['maxCount']}{pids}")


@main.command("scale")
@click.argument("worker_type")
@click.argument("count", type=int)
def scale(worker_type, count):
    """Scale WORKER_TYPE to COUNT running instances."""
    with _monitor() as monitor:
        result = _unwrap(monitor.scale(worker_type, count))
    click.echo(
        f"{result['workerType']}: {result['previousCount']} -> "
        f"{result['currentCount']} (max {result['maxCount']})"
    )


# ── Backlog ───────────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage the backlog."""
    pass


@task_group.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def task_list(as_json):
    """List open backlog items."""
    with _monitor() as monitor:
        data = _unwrap(monitor.list_backlog())

    if as_json:
        _echo_json(data)
        return

    if not data["items"]:
        click.echo("No open tasks.")
    for item in data["items"]:
        icon = "▶" if item["status"] == "claimed" else "○"
        blocked = " [blocked]" if item["blocked"] else ""
        click.echo(f"  {icon} [{item['tag']}] {item['title']}{blocked}")
    click.echo(
        f"{data['pendingCount']} pending, {data['claimedCount']} claimed, "
        f"{data['doneCount']} done"
    )


@task_group.command("add")
@click.argument("title")
@click.option("--tag", "-t", required=True, help="Task tag, e.g. FEAT or FIX")
@click.option("--description", "-d", default="", help="Task description")
@click.option(
    "--position",
    type=click.Choice(["top", "bottom"]),
    default="top",
    help="Insert at the top or bottom of the queue",
)
@click.option("--blocked-by", default=None, help="Comma-separated titles this waits on")
def task_add(title, tag, description, position, blocked_by):
    """Add a task to the backlog."""
    refs = [b.strip() for b in blocked_by.split(",")] if blocked_by else None
    with _monitor() as monitor:
        result = _unwrap(monitor.add_task(tag, title, description, position, refs))
    click.echo(f"Added at {result['position']}: {result['inserted']}")


# ── Scripts / logs / events ──────────────────────────────────────────────────


@main.command("trigger")
@click.argument("script")
@click.argument("args", nargs=-1)
def trigger(script, args):
    """Run an allow-listed pipeline script in the background."""
    with _monitor() as monitor:
        result = _unwrap(monitor.trigger_script(script, list(args)))
    click.echo(f"Triggered {result['script']}")


@main.command("events")
@click.option("--limit", "-n", default=20, type=int, help="Number of events")
def events(limit):
    """Show recent pipeline events."""
    with _monitor() as monitor:
        data = _unwrap(monitor.list_events(limit))
    if not data["events"]:
        click.echo("No events.")
    for e in data["events"]:
        worker = f" (worker {e['worker']})" if e["worker"] is not None else ""
        detail = f": {e['detail']}" if e["detail"] else ""
        click.echo(f"[{e['ts']}] {e['event']}{worker}{detail}")


@main.command("logs")
@click.argument("script")
@click.option("--lines", "-n", default=200, type=int, help="Number of lines")
@click.option("--search", "-s", default=None, help="Only lines containing this text")
def show_logs(script, lines, search):
    """Tail a pipeline script log."""
    with _monitor() as monitor:
        data = _unwrap(monitor.get_logs(script, lines, search))
    for line in data["lines"]:
        click.echo(line)


# ── Server ────────────────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8787, type=int, help="Port")
def serve(host, port):
    """Serve the HTTP API and status stream."""
    from pipeline_monitor.web.app import run_server

    run_server(host=host, port=port)


if __name__ == "__main__":
    main()
