"""
Convoy CLI - Typer Commands

Start, steer and inspect Claude conversations from the terminal.

Jobs run in-process: commands that dispatch work wait for the queue to
drain before exiting.
"""

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.prompt import Confirm
from rich.table import Table

from convoy.claude.parser import extract_text_content
from convoy.config import load_config
from convoy.conversations import ConversationService
from convoy.exceptions import ConvoyError
from convoy.jobs import FailedJobReview, FailureClassifier, JobContext, JobQueue, WarmHotCacheJob
from convoy.persistence.models import Conversation, ConversationMode

logger = logging.getLogger(__name__)
console = Console()

app = typer.Typer(
    name="convoy",
    help="Run Claude conversations against disposable repository checkouts",
    add_completion=False,
)
repos_app = typer.Typer(help="Manage repositories")
agents_app = typer.Typer(help="Manage agents")
jobs_app = typer.Typer(help="Inspect failed jobs")
app.add_typer(repos_app, name="repos")
app.add_typer(agents_app, name="agents")
app.add_typer(jobs_app, name="jobs")


def _fail(e: Exception) -> NoReturn:
    console.print(f"[bold red]Error:[/bold red] {e}")
    raise typer.Exit(1)


def _context() -> JobContext:
    try:
        return JobContext.create(load_config())
    except ConvoyError as e:
        _fail(e)


def _run_with_queue(action: Callable[[ConversationService, JobQueue], Any], status: str) -> Any:
    """Run an action inside an event loop and wait for the jobs it dispatched."""
    ctx = _context()

    async def main() -> Any:
        queue = JobQueue(ctx)
        service = ConversationService(ctx, queue)
        result = action(service, queue)
        if asyncio.iscoroutine(result):
            result = await result
        if queue.pending:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
                transient=True,
            ) as progress:
                progress.add_task(status, total=None)
                await queue.drain()
        return result

    try:
        return asyncio.run(main())
    except ConvoyError as e:
        _fail(e)
    finally:
        ctx.close()


def _status_text(conversation: Conversation) -> str:
    if conversation.is_processing:
        return "[yellow]processing[/yellow]"
    if conversation.error_message:
        return "[red]failed[/red]"
    return "[green]idle[/green]"


def _show_conversation(conversation: Conversation) -> None:
    console.print(
        Panel.fit(
            f"[bold]{conversation.title}[/bold]\n"
            f"Repository: {conversation.repository or '(blank)'}\n"
            f"Mode: {conversation.mode.value}\n"
            f"Directory: [dim]{conversation.project_directory}[/dim]\n"
            f"Session: [dim]{conversation.claude_session_id or '-'}[/dim]\n"
            f"Status: {_status_text(conversation)}",
            title=f"Conversation {conversation.id}",
            border_style="cyan",
        )
    )
    if conversation.error_message:
        console.print(f"[red]{conversation.error_message}[/red]")


# =============================================================================
# CONVERSATIONS
# =============================================================================


@app.command()
def start(
    message: str = typer.Argument(..., help="First message to send to Claude"),
    repository: str = typer.Option(None, "--repository", "-r", help="Repository name (blank if omitted)"),
    mode: ConversationMode = typer.Option(ConversationMode.PLAN, "--mode", "-m", help="Permission mode"),
    agent: str = typer.Option(None, "--agent", "-a", help="Agent name whose prompt is appended"),
    user: int = typer.Option(None, "--user", help="Owning user id"),
) -> None:
    """Start a new conversation."""

    def action(service: ConversationService, queue: JobQueue) -> Conversation:
        agent_id = None
        if agent:
            record = service.ctx.repository.get_agent_by_name(agent)
            if record is None:
                raise ConvoyError(f"Agent '{agent}' not found")
            agent_id = record.id
        return service.start(message, repository, mode, agent_id=agent_id, user_id=user)

    conversation = _run_with_queue(action, "Claude is working...")
    ctx = _context()
    try:
        _show_conversation(ctx.repository.get_conversation(conversation.id) or conversation)
    finally:
        ctx.close()


@app.command()
def reply(
    conversation_id: int = typer.Argument(..., help="Conversation ID"),
    message: str = typer.Argument(..., help="Follow-up message"),
) -> None:
    """Send a follow-up message."""
    conversation = _run_with_queue(
        lambda service, _: service.reply(conversation_id, message), "Claude is working..."
    )
    console.print(f"[green]Reply sent to conversation {conversation.id}[/green]")


@app.command()
def resend(conversation_id: int = typer.Argument(..., help="Conversation ID")) -> None:
    """Resend the last unanswered message."""
    _run_with_queue(lambda service, _: service.resend(conversation_id), "Claude is working...")
    console.print(f"[green]Resent last message of conversation {conversation_id}[/green]")


@app.command()
def stop(conversation_id: int = typer.Argument(..., help="Conversation ID")) -> None:
    """Stop the Claude process of a conversation."""
    terminated = _run_with_queue(lambda service, _: service.stop(conversation_id), "Stopping...")
    if terminated:
        console.print(f"[green]Stopped conversation {conversation_id}[/green]")
    else:
        console.print(f"[yellow]No running process for conversation {conversation_id}[/yellow]")


@app.command()
def archive(conversation_id: int = typer.Argument(..., help="Conversation ID")) -> None:
    """Archive a conversation and delete its working copy."""
    _run_with_queue(lambda service, _: service.archive(conversation_id), "Cleaning up...")
    console.print(f"[green]Archived conversation {conversation_id}[/green]")


@app.command()
def unarchive(conversation_id: int = typer.Argument(..., help="Conversation ID")) -> None:
    """Restore an archived conversation."""
    _run_with_queue(lambda service, _: service.unarchive(conversation_id), "")
    console.print(f"[green]Unarchived conversation {conversation_id}[/green]")


@app.command(name="mode")
def set_mode(
    conversation_id: int = typer.Argument(..., help="Conversation ID"),
    mode: ConversationMode = typer.Argument(..., help="plan or bypassPermissions"),
) -> None:
    """Change the permission mode of a conversation."""
    _run_with_queue(lambda service, _: service.set_mode(conversation_id, mode), "")
    console.print(f"[green]Conversation {conversation_id} now uses {mode.value}[/green]")


@app.command(name="list")
def list_conversations(
    archived: bool = typer.Option(False, "--archived", help="Show archived conversations"),
) -> None:
    """List conversations."""
    conversations = _run_with_queue(lambda service, _: service.list_conversations(archived), "")

    if not conversations:
        console.print("[dim]No conversations.[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Repository", style="green")
    table.add_column("Mode", style="dim")
    table.add_column("Status")
    table.add_column("Updated", style="dim")
    for conversation in conversations:
        table.add_row(
            str(conversation.id),
            conversation.title[:60],
            conversation.repository or "(blank)",
            conversation.mode.value,
            _status_text(conversation),
            conversation.updated_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@app.command()
def show(
    conversation_id: int = typer.Argument(..., help="Conversation ID"),
    diff: bool = typer.Option(False, "--diff", "-d", help="Show the captured diff"),
    raw: bool = typer.Option(False, "--raw", help="Print the session file as JSON"),
) -> None:
    """Show a conversation and its exchanges."""

    def action(service: ConversationService, _: JobQueue) -> tuple:
        conversation = service.get(conversation_id)
        return conversation, service.session(conversation_id), service.diff(conversation_id)

    conversation, entries, diff_text = _run_with_queue(action, "")

    if raw:
        console.print_json(json.dumps(entries))
        return

    _show_conversation(conversation)
    for entry in entries:
        console.print(f"\n[bold cyan]You[/bold cyan] [dim]{entry.get('timestamp', '')}[/dim]")
        console.print(entry.get("userMessage", ""))
        text = extract_text_content(entry.get("rawJsonResponses") or [])
        if text:
            console.print("[bold green]Claude[/bold green]")
            console.print(text)
        elif not entry.get("isComplete"):
            console.print("[dim](no answer yet)[/dim]")

    if diff:
        console.print()
        console.print(diff_text or "[dim]No changes captured.[/dim]")


# =============================================================================
# REPOSITORIES
# =============================================================================


@repos_app.command("add")
def repos_add(
    name: str = typer.Argument(..., help="Repository name (directory under repositories/base)"),
    url: str = typer.Option("", "--url", help="Clone URL, informational"),
    branch: str = typer.Option(None, "--branch", help="Branch to sync (discovered if omitted)"),
    deploy_script: str = typer.Option(None, "--deploy-script", help="Shell script run in new project directories"),
) -> None:
    """Register a repository."""
    ctx = _context()
    try:
        ctx.repository.add_repository(name, url=url, deploy_script=deploy_script, branch=branch)
        base = ctx.config.base_path(name)
        if not base.exists():
            console.print(f"[yellow]Warning: base checkout does not exist: {base}[/yellow]")
        console.print(f"[green]Added repository '{name}'[/green]")
    except ConvoyError as e:
        _fail(e)
    finally:
        ctx.close()


@repos_app.command("list")
def repos_list() -> None:
    """List registered repositories."""
    ctx = _context()
    try:
        repositories = ctx.repository.list_repositories()
        if not repositories:
            console.print("[dim]No repositories registered yet.[/dim]")
            return

        table = Table(show_header=True, header_style="bold")
        table.add_column("Name", style="cyan")
        table.add_column("Branch")
        table.add_column("Base")
        table.add_column("Hot")
        table.add_column("Last pulled", style="dim")
        for repo in repositories:
            base = ctx.config.base_path(repo.name).exists()
            hot = ctx.config.hot_path(repo.name).exists()
            table.add_row(
                repo.name,
                repo.branch or "-",
                "[green]yes[/green]" if base else "[red]missing[/red]",
                "[green]ready[/green]" if hot else "[dim]cold[/dim]",
                repo.last_pulled_at.strftime("%Y-%m-%d %H:%M") if repo.last_pulled_at else "-",
            )
        console.print(table)
    finally:
        ctx.close()


@repos_app.command("remove")
def repos_remove(name: str = typer.Argument(..., help="Repository name")) -> None:
    """Remove a repository record (files are left in place)."""
    ctx = _context()
    try:
        if not ctx.repository.delete_repository(name):
            console.print(f"[red]Repository '{name}' not found[/red]")
            raise typer.Exit(1)
        console.print(f"[green]Removed repository '{name}'[/green]")
    finally:
        ctx.close()


@app.command()
def warm(name: str = typer.Argument(..., help="Repository name")) -> None:
    """Prepare the hot copy of a repository now."""
    succeeded = _run_with_queue(lambda _, queue: queue.run(WarmHotCacheJob(name)), "Warming...")
    if succeeded:
        console.print(f"[green]Hot cache ready for '{name}'[/green]")
    else:
        console.print(f"[red]Could not warm '{name}', see the failed jobs list[/red]")
        raise typer.Exit(1)


# =============================================================================
# AGENTS
# =============================================================================


@agents_app.command("add")
def agents_add(
    name: str = typer.Argument(..., help="Agent name"),
    prompt: str = typer.Argument(..., help="System prompt appended to Claude invocations"),
    description: str = typer.Option("", help="Agent description"),
) -> None:
    """Create an agent."""
    ctx = _context()
    try:
        agent = ctx.repository.add_agent(name, prompt, description=description)
        console.print(f"[green]Added agent '{agent.name}' ({agent.id})[/green]")
    finally:
        ctx.close()


@agents_app.command("list")
def agents_list() -> None:
    """List agents."""
    ctx = _context()
    try:
        agents = ctx.repository.list_agents()
        if not agents:
            console.print("[dim]No agents yet.[/dim]")
            return
        table = Table(show_header=True, header_style="bold")
        table.add_column("ID", style="cyan")
        table.add_column("Name", style="green")
        table.add_column("Description")
        for agent in agents:
            table.add_row(str(agent.id), agent.name, agent.description)
        console.print(table)
    finally:
        ctx.close()


# =============================================================================
# FAILED JOBS
# =============================================================================


@jobs_app.command("review")
def jobs_review(
    dry_run: bool = typer.Option(False, "--dry-run", help="Preview without changing anything"),
    clean: bool = typer.Option(False, "--clean", help="Remove jobs that cannot be retried"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Retry failed jobs whose resources still exist."""

    def confirm(question: str, default: bool) -> bool:
        return True if yes else Confirm.ask(question, default=default)

    def action(_: ConversationService, queue: JobQueue):
        ctx = queue.ctx
        review = FailedJobReview(FailureClassifier(ctx.config, ctx.repository), ctx.repository, queue)
        return review.review(dry_run=dry_run, clean=clean, confirm=confirm)

    report = _run_with_queue(action, "Retrying jobs...")

    if report.total == 0:
        console.print("[green]No failed jobs found[/green]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="cyan")
    table.add_column("Job")
    table.add_column("Retriable")
    table.add_column("Reason", style="dim")
    for job, verdict in report.retriable + report.unretriable:
        table.add_row(
            str(job.id),
            job.display_name,
            "[green]yes[/green]" if verdict.retriable else "[red]no[/red]",
            verdict.reason,
        )
    console.print(table)

    if report.dry_run:
        console.print("Dry run complete. No changes made.")
        return
    if report.retried:
        console.print(f"[green]Retried {len(report.retried)} job(s)[/green]")
    if report.removed:
        console.print(f"[yellow]Removed {len(report.removed)} unretriable job(s)[/yellow]")
    for job_id, error in report.errors.items():
        console.print(f"[red]Could not retry job {job_id}: {error}[/red]")


def main() -> None:
    """Entry point for the convoy command."""
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    app()


if __name__ == "__main__":
    main()
