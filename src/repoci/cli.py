# cli.py
from __future__ import annotations

import signal
import sys
from dataclasses import replace

import click

from repoci.containers import DockerCLIRuntime
from repoci.git_facts.git import GitSourceProvider
from repoci.loader import load_definitions
from repoci.materializer import TriggerContext, trigger_workflows
from repoci.scheduler import Scheduler
from repoci.settings import load_settings
from repoci.store import SqlRunStore
from repoci.ui.console import Console, configure_logging, get_console, set_console


# ---------------------------------------------------------------------
# Collaborators (tests inject their own through ctx.obj)
# ---------------------------------------------------------------------

def _store(ctx: click.Context):
    if "store" not in ctx.obj:
        ctx.obj["store"] = SqlRunStore(ctx.obj["settings"].database_url)
    return ctx.obj["store"]


def _source(ctx: click.Context):
    if "source" not in ctx.obj:
        ctx.obj["source"] = GitSourceProvider(ctx.obj["settings"].repos_root)
    return ctx.obj["source"]


def _runtime(ctx: click.Context):
    if "runtime" not in ctx.obj:
        ctx.obj["runtime"] = DockerCLIRuntime(ctx.obj["settings"].docker)
    return ctx.obj["runtime"]


def _scheduler(ctx: click.Context, poll_interval: float | None = None) -> Scheduler:
    settings = ctx.obj["settings"]
    return Scheduler(
        _store(ctx),
        _runtime(ctx),
        _source(ctx),
        poll_interval=poll_interval if poll_interval is not None else settings.poll_interval,
        step_timeout=settings.step_timeout,
        limits=settings.limits,
    )


def _fail(ctx: click.Context, exc: Exception) -> None:
    get_console().print_exception(exc)
    ctx.exit(1)


@click.group()
@click.option("--debug", is_flag=True, default=False, help="Show stack traces and debug logs")
@click.option("--database-url", default=None, help="SQLAlchemy URL (env: REPOCI_DATABASE_URL)")
@click.option("--repos-root", default=None, help="Directory holding hosted repositories (env: REPOCI_REPOS_ROOT)")
@click.pass_context
def cli(ctx, debug, database_url, repos_root):
    """repoci — workflow runner for hosted repositories."""
    console = Console(debug=debug)
    set_console(console)
    configure_logging(debug)

    settings = load_settings()
    if database_url:
        settings = replace(settings, database_url=database_url)
    if repos_root:
        settings = replace(settings, repos_root=repos_root)

    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    settings = ctx.obj.setdefault("settings", settings)
    console.print_debug(
        f"database={settings.database_url} repos_root={settings.repos_root} "
        f"step_timeout={settings.step_timeout}"
    )


@cli.command()
@click.option("--poll-interval", default=None, type=float, help="Seconds between polls for queued runs")
@click.pass_context
def serve(ctx, poll_interval):
    """Run the scheduler loop in the foreground."""
    console = get_console()
    settings = ctx.obj["settings"]
    scheduler = _scheduler(ctx, poll_interval)

    def _signal_handler(signum, frame):
        console.print_info(f"\nReceived signal {signum}, finishing current step and shutting down...")
        scheduler.request_stop()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    if not scheduler.check_backend():
        console.print_error(
            "Container runtime unavailable",
            "The scheduler is disabled for this process.",
            suggestion="Install Docker and ensure the daemon is running, then restart.",
        )
        sys.exit(1)

    console.print_scheduler_started(settings.database_url, settings.repos_root, scheduler.poll_interval)
    try:
        scheduler.run_forever()
    except Exception as e:
        _fail(ctx, e)
    console.print_info("Scheduler stopped.")


@cli.command("run-once")
@click.pass_context
def run_once(ctx):
    """Execute the oldest queued run, if any, and exit."""
    console = get_console()
    scheduler = _scheduler(ctx)
    if not scheduler.check_backend():
        console.print_error("Container runtime unavailable", "Nothing was executed.")
        sys.exit(1)

    queued = _store(ctx).list_queued_runs(limit=1)
    if not queued or not scheduler.tick():
        console.print_info("No queued runs.")
        return

    run = _store(ctx).get_run(queued[0].id)
    console.print_run(run, show_output=ctx.obj["debug"])


@cli.command()
@click.argument("repo")
@click.option("--branch", default="main", show_default=True)
@click.option("--sha", "commit_sha", required=True, help="Commit that triggered the run")
@click.option("--message", default="", help="Commit message")
@click.option("--user", "triggered_by", default="system", show_default=True)
@click.option("--ref", default=None, help="Ref to read workflows from (defaults to --sha)")
@click.pass_context
def trigger(ctx, repo, branch, commit_sha, message, triggered_by, ref):
    """Queue one run per workflow file in REPO."""
    console = get_console()
    context = TriggerContext(
        branch=branch,
        commit_sha=commit_sha,
        commit_message=message,
        triggered_by=triggered_by,
    )
    try:
        runs = trigger_workflows(
            _source(ctx),
            _store(ctx),
            repo,
            context,
            ref=ref,
            directory=ctx.obj["settings"].workflow_dir,
        )
    except Exception as e:
        _fail(ctx, e)
        return

    if not runs:
        console.print_info(f"No workflows found in {repo}.")
        return
    console.print_info(f"Queued {len(runs)} run(s):")
    console.print_runs(runs)


@cli.command()
@click.argument("repo")
@click.option("--ref", default="HEAD", show_default=True)
@click.pass_context
def workflows(ctx, repo, ref):
    """List the workflow definitions found in REPO."""
    definitions = load_definitions(_source(ctx), repo, ref=ref, directory=ctx.obj["settings"].workflow_dir)
    get_console().print_workflows(repo, definitions)


@cli.command()
@click.argument("repo")
@click.pass_context
def runs(ctx, repo):
    """List runs of REPO, newest first."""
    get_console().print_runs(_store(ctx).list_runs(repo))


@cli.command()
@click.argument("run_id", type=int)
@click.option("--output/--no-output", default=True, show_default=True, help="Include step output")
@click.pass_context
def show(ctx, run_id, output):
    """Show a run with its jobs and steps."""
    run = _store(ctx).get_run(run_id)
    if run is None:
        get_console().print_error("Run not found", f"No run with id {run_id}.")
        sys.exit(1)
    get_console().print_run(run, show_output=output)


@cli.command()
@click.argument("run_id", type=int)
@click.pass_context
def delete(ctx, run_id):
    """Delete a run together with its jobs and steps."""
    if not _store(ctx).delete_run(run_id):
        get_console().print_error("Run not found", f"No run with id {run_id}.")
        sys.exit(1)
    get_console().print_info(f"Deleted run #{run_id}.")


if __name__ == "__main__":
    cli()
