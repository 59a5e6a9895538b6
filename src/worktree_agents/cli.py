"""CLI interface for worktree-agents."""

import sys
from functools import wraps
from typing import Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .errors import OrchestratorError
from .models import AgentStatus, LaunchRequest, MergeStrategy, Provider, PruneFilter
from .orchestrator import Orchestrator
from .providers import DANGEROUSLY_ALLOW_ALL

console = Console()
err_console = Console(stderr=True)

# Windows-compatible symbols (cp1252 doesn't support Unicode checkmarks)
if sys.platform == "win32":
    SYM_OK = "[OK]"
    SYM_FAIL = "[X]"
else:
    SYM_OK = "✓"
    SYM_FAIL = "✗"

STATUS_STYLES = {
    "running": "yellow",
    "completed": "green",
    "failed": "red",
    "merged": "blue",
    "removed": "dim",
    "unavailable": "magenta",
}


def handle_errors(func):
    """Print orchestrator errors in red on stderr and exit 1."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (OrchestratorError, ValidationError) as e:
            err_console.print(f"[red]Error: {escape(str(e))}[/red]")
            sys.exit(1)
    return wrapper


def _orchestrator(ctx: click.Context) -> Orchestrator:
    # Tests inject a ready-made orchestrator through ctx.obj
    if ctx.obj is None:
        ctx.obj = Orchestrator.discover()
    return ctx.obj


def _styled(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


@click.group()
@click.version_option(package_name="worktree-agents")
@click.pass_context
def main(ctx):
    """worktree-agents - run AI coding agents in parallel git worktrees."""
    pass


@main.command(context_settings={"ignore_unknown_options": True})
@click.argument('task')
@click.option('--branch', help='Branch name (default: wta/<id>)')
@click.option('--base', help='Base branch (default: the repository default branch)')
@click.option('--provider', type=click.Choice([p.value for p in Provider]), help='AI CLI to run')
@click.option('--dangerously-allow-all', is_flag=True, help='Let the provider run any tool without asking')
@click.option('--force', is_flag=True, help='Clear a stale worktree directory left at the target path')
@click.argument('provider_args', nargs=-1, type=click.UNPROCESSED)
@click.pass_context
@handle_errors
def launch(ctx, task: str, branch: Optional[str], base: Optional[str], provider: Optional[str],
           dangerously_allow_all: bool, force: bool, provider_args: tuple):
    """Launch an agent on TASK in a new worktree.

    Arguments after `--` are passed to the provider CLI verbatim.

    Example:
        wta launch "Add retry logic to the HTTP client" --provider codex
    """
    extra = list(provider_args)
    if dangerously_allow_all and DANGEROUSLY_ALLOW_ALL not in extra:
        extra.append(DANGEROUSLY_ALLOW_ALL)

    request = LaunchRequest(
        task=task,
        branch=branch,
        base=base,
        provider=Provider(provider) if provider else None,
        provider_args=extra,
        force=force,
    )
    agent = _orchestrator(ctx).launch(request)

    console.print(f"[green]{SYM_OK}[/green] Launched agent [cyan]{agent.id}[/cyan] ({agent.provider.value})")
    console.print(f"  Branch:   {agent.branch} (from {agent.base_branch})")
    console.print(f"  Worktree: {agent.worktree_path}")
    console.print(f"  Window:   {agent.tmux_session}:{agent.tmux_window}")


@main.command('list')
@click.pass_context
@handle_errors
def list_agents(ctx):
    """List agents with their live status."""
    views = _orchestrator(ctx).list_agents()
    if not views:
        console.print("[yellow]No agents.[/yellow]")
        return

    table = Table(title="Agents")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Status")
    table.add_column("Branch")
    table.add_column("Base")
    table.add_column("Provider")
    table.add_column("Task")

    for view in views:
        agent = view.agent
        task = agent.task if len(agent.task) <= 50 else agent.task[:47] + "..."
        table.add_row(
            str(agent.id),
            _styled(view.resolution.display_status),
            agent.branch,
            agent.base_branch,
            agent.provider.value,
            escape(task),
        )

    console.print(table)


@main.command()
@click.argument('agent_id', type=int)
@click.pass_context
@handle_errors
def status(ctx, agent_id: int):
    """Show details of one agent."""
    view = _orchestrator(ctx).status(agent_id)
    agent = view.agent

    console.print(f"\n[bold]Agent {agent.id}[/bold]  {_styled(view.resolution.display_status)}")
    console.print(f"  Task:      {escape(agent.task)}")
    console.print(f"  Branch:    {agent.branch} (from {agent.base_branch})")
    console.print(f"  Worktree:  {agent.worktree_path}")
    console.print(f"  Window:    {agent.tmux_session}:{agent.tmux_window}")
    console.print(f"  Provider:  {agent.provider.value}")
    console.print(f"  Launched:  {agent.launched_at.strftime('%Y-%m-%d %H:%M:%S')}")
    if view.resolution.completed_at:
        console.print(f"  Finished:  {view.resolution.completed_at.strftime('%Y-%m-%d %H:%M:%S')}")
    if view.resolution.message:
        console.print(f"  Message:   {escape(view.resolution.message)}")
    if view.resolution.error:
        console.print(f"  [magenta]Could not resolve status: {escape(view.resolution.error)}[/magenta]")


@main.command()
@click.argument('agent_id', type=int)
@click.pass_context
@handle_errors
def attach(ctx, agent_id: int):
    """Attach to an agent's tmux window."""
    _orchestrator(ctx).attach(agent_id)


@main.command()
@click.argument('agent_id', type=int)
@click.option('--stat', is_flag=True, help='Only show changed files and line counts')
@click.pass_context
@handle_errors
def diff(ctx, agent_id: int, stat: bool):
    """Show changes committed on an agent's branch."""
    summary = _orchestrator(ctx).diff(agent_id)
    if not summary.files_changed:
        console.print("[yellow]No changes.[/yellow]")
        return

    if stat:
        for filename in summary.files_changed:
            console.print(f"  {escape(filename)}")
        s = summary.stats
        console.print(f"\n{s.files_changed} files changed, [green]+{s.additions}[/green] [red]-{s.deletions}[/red]")
        return

    click.echo(summary.diff, nl=False)


@main.command()
@click.argument('agent_id', type=int)
@click.option('--lines', '-n', type=int, help='Number of lines to show')
@click.pass_context
@handle_errors
def output(ctx, agent_id: int, lines: Optional[int]):
    """Show recent output of an agent's window."""
    click.echo(_orchestrator(ctx).output(agent_id, lines))


@main.command()
@click.argument('agent_id', type=int)
@click.option('--strategy', type=click.Choice([s.value for s in MergeStrategy]), default='merge',
              help='How to integrate the branch')
@click.option('--target', help="Target branch (default: the agent's base branch)")
@click.option('--message', '-m', help='Commit message for squash merges')
@click.option('--force', is_flag=True, help='Merge even if the agent is still running or has uncommitted changes')
@click.pass_context
@handle_errors
def merge(ctx, agent_id: int, strategy: str, target: Optional[str], message: Optional[str], force: bool):
    """Merge an agent's branch and remove its worktree."""
    outcome = _orchestrator(ctx).merge(agent_id, MergeStrategy(strategy), target=target, force=force, message=message)

    if not outcome.success:
        err_console.print(f"[red]{SYM_FAIL} {escape(outcome.message)}[/red]")
        for filename in outcome.conflicts:
            err_console.print(f"  [red]conflict:[/red] {escape(filename)}")
        sys.exit(1)

    console.print(f"[green]{SYM_OK}[/green] {escape(outcome.message)}")
    if outcome.merged_ref:
        console.print(f"  {outcome.target} is now at {outcome.merged_ref[:8]}")


@main.command()
@click.argument('agent_id', type=int)
@click.option('--title', help='Pull request title (default: first line of the task)')
@click.option('--body', help='Pull request body (default: the task and agent summary)')
@click.option('--force', is_flag=True, help='Open the pull request even if the agent is still running')
@click.pass_context
@handle_errors
def pr(ctx, agent_id: int, title: Optional[str], body: Optional[str], force: bool):
    """Push an agent's branch and open a pull request."""
    url = _orchestrator(ctx).create_pr(agent_id, title=title, body=body, force=force)
    console.print(f"[green]{SYM_OK}[/green] Pull request: {url}")


@main.command()
@click.argument('agent_id', type=int)
@click.option('--force', is_flag=True, help='Remove even if running or dirty')
@click.pass_context
@handle_errors
def remove(ctx, agent_id: int, force: bool):
    """Remove an agent: its window, worktree, branch and files."""
    report = _orchestrator(ctx).remove(agent_id, force=force)
    for failure in report.failures:
        err_console.print(f"Warning: {failure}", style="yellow", markup=False)

    if not report.removed:
        err_console.print(f"[red]{SYM_FAIL} Agent {agent_id} was not fully removed[/red]")
        sys.exit(1)
    console.print(f"[green]{SYM_OK}[/green] Removed agent {agent_id}")


@main.command()
@click.option('--all', 'prune_all', is_flag=True, help='Prune every agent, including running ones')
@click.option('--status', 'status_filter', type=click.Choice([s.value for s in AgentStatus if s != AgentStatus.REMOVED]),
              help='Only prune agents with this status')
@click.option('--force', is_flag=True, help='Force removal of each agent')
@click.pass_context
@handle_errors
def prune(ctx, prune_all: bool, status_filter: Optional[str], force: bool):
    """Remove finished agents (completed, failed or merged by default)."""
    if prune_all and status_filter:
        raise click.UsageError("--all and --status are mutually exclusive")

    if prune_all:
        prune_filter = PruneFilter.all()
    elif status_filter:
        prune_filter = PruneFilter.with_status(AgentStatus(status_filter))
    else:
        prune_filter = PruneFilter.inactive()

    report = _orchestrator(ctx).prune(prune_filter, force=force)

    for agent in report.removed:
        console.print(f"[green]{SYM_OK}[/green] Removed agent {agent.id} ({agent.status.value})")
    for failure in report.failures:
        err_console.print(f"[red]{SYM_FAIL}[/red] Agent {failure.agent_id}: {escape(failure.message)}")

    if not report.removed and not report.failures:
        console.print("[yellow]Nothing to prune.[/yellow]")
    if not report.ok:
        sys.exit(1)


@main.command()
@click.option('--host', help='Host to bind to')
@click.option('--port', type=int, help='Port to listen on')
@click.pass_context
@handle_errors
def dashboard(ctx, host: Optional[str], port: Optional[int]):
    """Start the dashboard API server.

    Serves a REST API at http://host:port/api/ and docs at /docs.
    """
    from .api import run_dashboard

    orchestrator = _orchestrator(ctx)
    host = host or orchestrator.config.dashboard_host
    port = port or orchestrator.config.dashboard_port

    console.print("[bold]Starting worktree-agents dashboard[/bold]")
    console.print(f"Repository: {orchestrator.root}")
    console.print(f"API: http://{host}:{port}/api/")
    console.print(f"Docs: http://{host}:{port}/docs")
    console.print("\nPress Ctrl+C to stop\n")

    try:
        run_dashboard(orchestrator, host=host, port=port)
    except KeyboardInterrupt:
        console.print("\n[yellow]Dashboard stopped[/yellow]")


if __name__ == '__main__':
    main()
