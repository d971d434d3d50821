"""CLI entry point for repo-intern."""

import asyncio
import json
import sys
from collections.abc import Coroutine
from datetime import timedelta
from pathlib import Path
from typing import Any, NoReturn

import click
import structlog

from repo_intern import __version__
from repo_intern.config.settings import InternSettings
from repo_intern.engine.event_queue import EventQueue
from repo_intern.engine.process_lock import LOCK_DIR_NAME, ProcessLock
from repo_intern.engine.review_loop import ReviewLoopResult
from repo_intern.engine.workflow import WorkflowResult, WorkflowRunner
from repo_intern.engine.worktree import ensure_excluded
from repo_intern.enums import ErrorKind, ReviewPriority
from repo_intern.exceptions import ConfigurationError, RepoInternError, WorkflowError
from repo_intern.git.commands import GitRunner
from repo_intern.models.domain import WorkTask
from repo_intern.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)

DEFAULT_CONFIG_FILE = "repo-intern.yaml"

EXIT_ERROR = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130

EXIT_CODES: dict[ErrorKind, int] = {
    ErrorKind.WORKFLOW: 1,
    ErrorKind.CONTENTION: 3,
    ErrorKind.RESOURCE_CORRUPTION: 4,
    ErrorKind.GATE_REJECTION: 5,
    ErrorKind.VCS_CONFLICT: 6,
    ErrorKind.MALFORMED_RESPONSE: 7,
    ErrorKind.PERSISTENCE: 8,
}

PRIORITY_CHOICE = click.Choice([p.value for p in ReviewPriority], case_sensitive=False)


def exit_code_for(error: RepoInternError) -> int:
    """Map an engine error to the process exit code."""
    if isinstance(error, ConfigurationError):
        return EXIT_CONFIG
    if isinstance(error, WorkflowError):
        return EXIT_CODES.get(error.kind, EXIT_ERROR)
    return EXIT_ERROR


def _fail(error: RepoInternError, command: str) -> NoReturn:
    click.echo(f"Error: {error.message}", err=True)
    log.debug(f"{command}_error", kind=str(getattr(error, "kind", "")), exc_info=True)
    sys.exit(exit_code_for(error))


def _run(coro: Coroutine[Any, Any, Any], command: str) -> Any:
    """Run ``coro`` and translate engine errors into messages and exit codes."""
    try:
        return asyncio.run(coro)
    except RepoInternError as e:
        _fail(e, command)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        log.error(f"{command}_unexpected", exc_info=True)
        sys.exit(EXIT_ERROR)


def _resolve_config(config: str | None, repo_root: Path) -> Path | None:
    if config is not None:
        return Path(config)
    candidate = repo_root / DEFAULT_CONFIG_FILE
    return candidate if candidate.exists() else None


@click.group()
@click.version_option(__version__, prog_name="repo-intern")
@click.option("--config", default=None, help=f"Path to configuration file (default: ./{DEFAULT_CONFIG_FILE} if present)")
@click.option("--repo", default=".", type=click.Path(file_okay=False), help="Repository root")
@click.option("--log-level", default="INFO", help="Logging level")
@click.option("--json-logs/--console-logs", default=True, help="Render logs as JSON or for the console")
@click.pass_context
def cli(ctx: click.Context, config: str | None, repo: str, log_level: str, json_logs: bool) -> None:
    """repo-intern: run a coding agent on a branch, commit, push and review."""
    configure_logging(log_level, json_output=json_logs)

    repo_root = Path(repo).resolve()
    config_path = _resolve_config(config, repo_root)
    try:
        settings = InternSettings.load(config_path)
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(EXIT_CONFIG)

    ctx.obj = {"settings": settings, "repo_root": repo_root}


def _lock(settings: InternSettings, repo_root: Path) -> ProcessLock:
    return ProcessLock(repo_root, lock_dir=settings.paths.lock_dir)


def _queue(settings: InternSettings, repo_root: Path) -> EventQueue:
    db_path = Path(settings.queue.db_path)
    if not db_path.is_absolute():
        db_path = repo_root / db_path
    return EventQueue(db_path, max_retries=settings.queue.max_retries)


def _echo_review(review: ReviewLoopResult) -> None:
    status = "converged" if review.success else "not converged"
    click.echo(f"Review: {status} after {review.iterations} iteration(s)")
    if review.error:
        click.echo(f"  Error: {review.error}")
    if review.final_feedback and not review.success:
        for item in review.final_feedback.items:
            click.echo(f"  [{item.priority}] {item.location() or 'general'}: {item.issue}")


def _echo_result(result: WorkflowResult) -> None:
    click.echo(f"Branch: {result.branch}")
    click.echo(f"Worktree: {result.worktree_path}")
    click.echo(f"Artifacts: {result.output_dir}")
    click.echo(f"Committed: {'yes' if result.committed else 'no'}")
    click.echo(f"Pushed: {'yes' if result.pushed else 'no'}")
    for warning in result.warnings:
        click.echo(f"Warning: {warning}")
    if result.review is not None:
        _echo_review(result.review)


@cli.command()
@click.argument("key")
@click.option("--summary", required=True, help="One-line summary used in the commit message")
@click.option("--prompt-file", type=click.Path(exists=True, dir_okay=False), help="File holding the agent prompt")
@click.option("--prompt", "prompt_text", default=None, help="Agent prompt text")
@click.option("--base", "base_branch", default="main", show_default=True, help="Branch to start from")
@click.option("--no-push", is_flag=True, help="Commit but do not push")
@click.option("--auto-review/--no-auto-review", default=None, help="Run the self-review loop")
@click.option("--max-iterations", type=click.IntRange(1, 20), default=None, help="Review iterations")
@click.option("--min-priority", type=PRIORITY_CHOICE, default=None, help="Lowest review priority addressed")
@click.pass_context
def run(
    ctx: click.Context,
    key: str,
    summary: str,
    prompt_file: str | None,
    prompt_text: str | None,
    base_branch: str,
    no_push: bool,
    auto_review: bool | None,
    max_iterations: int | None,
    min_priority: str | None,
) -> None:
    """Implement one task KEY on a new feature branch."""
    if bool(prompt_file) == bool(prompt_text):
        click.echo("Error: Provide exactly one of --prompt-file or --prompt", err=True)
        sys.exit(EXIT_CONFIG)
    prompt = Path(prompt_file).read_text(encoding="utf-8") if prompt_file else prompt_text

    task = WorkTask(key=key, summary=summary, prompt=prompt or "", base_branch=base_branch)
    settings: InternSettings = ctx.obj["settings"]
    repo_root: Path = ctx.obj["repo_root"]

    async def _run_task() -> WorkflowResult:
        await ensure_excluded(repo_root, f"{LOCK_DIR_NAME}/")
        async with _lock(settings, repo_root):
            runner = WorkflowRunner(settings, repo_root)
            return await runner.run_task(
                task,
                push=not no_push,
                auto_review=auto_review,
                max_iterations=max_iterations,
                min_priority=ReviewPriority(min_priority.lower()) if min_priority else None,
            )

    result = _run(_run_task(), "run")
    _echo_result(result)


@cli.command()
@click.argument("branch", required=False)
@click.option("--base", "base_branch", default="main", show_default=True, help="Branch to diff against")
@click.option("--push", is_flag=True, help="Push each round of fixes")
@click.option("--max-iterations", type=click.IntRange(1, 20), default=None, help="Review iterations")
@click.option("--min-priority", type=PRIORITY_CHOICE, default=None, help="Lowest review priority addressed")
@click.pass_context
def review(
    ctx: click.Context,
    branch: str | None,
    base_branch: str,
    push: bool,
    max_iterations: int | None,
    min_priority: str | None,
) -> None:
    """Run the self-review loop on BRANCH (default: the worktree's branch)."""
    settings: InternSettings = ctx.obj["settings"]
    repo_root: Path = ctx.obj["repo_root"]

    async def _review() -> ReviewLoopResult:
        await ensure_excluded(repo_root, f"{LOCK_DIR_NAME}/")
        async with _lock(settings, repo_root):
            runner = WorkflowRunner(settings, repo_root)
            target = branch
            if target is None:
                if runner.worktree.path.exists():
                    target = await GitRunner().current_branch(runner.worktree.path)
                if not target:
                    raise WorkflowError("No branch given and the managed worktree has no branch checked out")
            return await runner.review_branch(
                target,
                base_branch,
                push=push,
                max_iterations=max_iterations,
                min_priority=ReviewPriority(min_priority.lower()) if min_priority else None,
            )

    result = _run(_review(), "review")
    _echo_review(result)
    if not result.success:
        sys.exit(EXIT_ERROR)


@cli.command()
@click.option("--host", default=None, help="Bind address (default from config)")
@click.option("--port", type=int, default=None, help="Bind port (default from config)")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Run the webhook server."""
    import uvicorn

    from repo_intern.webhook_server import create_app

    settings: InternSettings = ctx.obj["settings"]
    repo_root: Path = ctx.obj["repo_root"]
    _run(ensure_excluded(repo_root, f"{LOCK_DIR_NAME}/"), "serve")
    app = create_app(settings, repo_root)
    uvicorn.run(
        app,
        host=host or settings.webhook.host,
        port=port or settings.webhook.port,
        log_config=None,
    )


@cli.group()
def queue() -> None:
    """Inspect and maintain the durable event queue."""


def _with_queue(ctx: click.Context, operation: str, action: Any) -> Any:
    settings: InternSettings = ctx.obj["settings"]
    repo_root: Path = ctx.obj["repo_root"]

    async def _call() -> Any:
        async with _queue(settings, repo_root) as event_queue:
            return await action(event_queue)

    return _run(_call(), f"queue_{operation}")


@queue.command("list")
@click.pass_context
def queue_list(ctx: click.Context) -> None:
    """List pending and in-flight events."""
    events = _with_queue(ctx, "list", lambda q: q.list_pending())
    if not events:
        click.echo("No pending events")
        return
    for event in events:
        click.echo(f"{event.id}  {event.status}  {event.event_type}  attempts={event.attempts}")


@queue.command("failed")
@click.option("--json", "as_json", is_flag=True, help="Print events as JSON")
@click.pass_context
def queue_failed(ctx: click.Context, as_json: bool) -> None:
    """List events that exhausted their retries."""
    events = _with_queue(ctx, "failed", lambda q: q.list_failed())
    if as_json:
        click.echo(json.dumps([event.to_dict() for event in events], indent=2))
        return
    if not events:
        click.echo("No failed events")
        return
    for event in events:
        click.echo(f"{event.id}  {event.event_type}  attempts={event.attempts}  error={event.last_error}")


@queue.command("retry")
@click.argument("event_id")
@click.pass_context
def queue_retry(ctx: click.Context, event_id: str) -> None:
    """Return failed event EVENT_ID to the pending state."""
    if not _with_queue(ctx, "retry", lambda q: q.reset_event(event_id)):
        click.echo(f"Error: No event with id {event_id}", err=True)
        sys.exit(EXIT_ERROR)
    click.echo(f"Event {event_id} queued for retry")


@queue.command("stats")
@click.pass_context
def queue_stats(ctx: click.Context) -> None:
    """Show event counts per status."""
    stats = _with_queue(ctx, "stats", lambda q: q.stats())
    for status, count in stats.items():
        click.echo(f"{status}: {count}")


@queue.command("cleanup")
@click.option("--days", type=click.IntRange(min=0), default=None, help="Age in days (default from config)")
@click.pass_context
def queue_cleanup(ctx: click.Context, days: int | None) -> None:
    """Delete failed events older than the configured age."""
    settings: InternSettings = ctx.obj["settings"]
    age = timedelta(days=settings.queue.cleanup_age_days if days is None else days)
    removed = _with_queue(ctx, "cleanup", lambda q: q.cleanup(age))
    click.echo(f"Removed {removed} failed event(s)")


@cli.group()
def lock() -> None:
    """Inspect or clear the process lock."""


@lock.command("status")
@click.pass_context
def lock_status(ctx: click.Context) -> None:
    """Show who holds the lock."""
    process_lock = _lock(ctx.obj["settings"], ctx.obj["repo_root"])
    holder = process_lock.holder()
    if holder is None:
        record = process_lock.read_record()
        if record is not None:
            click.echo(f"Lock is stale (PID {record.owner_pid} is not running)")
        else:
            click.echo("Lock is free")
        return
    click.echo(f"Locked by PID {holder.owner_pid} since {holder.acquired_at}")


@lock.command("release")
@click.option("--force", is_flag=True, help="Remove the lock even if its owner is alive")
@click.pass_context
def lock_release(ctx: click.Context, force: bool) -> None:
    """Remove a stale or corrupt lock file."""
    process_lock = _lock(ctx.obj["settings"], ctx.obj["repo_root"])
    try:
        removed = process_lock.clear(force=force)
    except RepoInternError as e:
        _fail(e, "lock_release")
    if removed:
        click.echo("Lock released")
    elif process_lock.holder() is not None:
        click.echo("Error: Lock is held by a running process (use --force to remove it)", err=True)
        sys.exit(EXIT_CODES[ErrorKind.CONTENTION])
    else:
        click.echo("Lock is free")


if __name__ == "__main__":
    cli()
