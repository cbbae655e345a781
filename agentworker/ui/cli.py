"""Main CLI entry point - one daemon per agent, addressed by target."""

import asyncio
import json
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

import typer

from agentworker.core.configs import get_daemon_settings, load_raw_config
from agentworker.daemon.client import DaemonClient, resolve_session, spawn_daemon
from agentworker.daemon.registry import Registry, SessionInfo
from agentworker.errors import AgentWorkerError, InvalidArgumentError, UnavailableError
from agentworker.target import build_target_display, parse_target

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help="agent-worker - Run and talk to long-lived AI agent daemons.",
)
tool_app = typer.Typer(no_args_is_help=True, help="Manage a session's tools.")
channel_app = typer.Typer(no_args_is_help=True, help="Workflow channel.")
inbox_app = typer.Typer(no_args_is_help=True, help="Per-agent inbox.")
doc_app = typer.Typer(no_args_is_help=True, help="Shared workflow documents.")
resource_app = typer.Typer(no_args_is_help=True, help="Stored long-form content.")
app.add_typer(tool_app, name="tool")
app.add_typer(channel_app, name="channel")
app.add_typer(inbox_app, name="inbox")
app.add_typer(doc_app, name="doc")
app.add_typer(resource_app, name="resource")

DEFAULT_MODEL = "mistralai"
READY_TIMEOUT = 15.0

TargetOption = typer.Option(None, "--to", "-t", help="Target: id, name or agent@workflow:tag")


# ============================================================================
# Shared helpers
# ============================================================================

@contextmanager
def _cli_errors() -> Iterator[None]:
    """Print agent-worker failures as `Error: ...` and exit 1."""
    try:
        yield
    except AgentWorkerError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _registry() -> Registry:
    return Registry(get_daemon_settings().home)


def _client(target: Optional[str]) -> DaemonClient:
    """
    Client for a target.

    Workflow-level targets (``@review:pr-1``) pick any running agent of
    that workflow instance, since they all share the same context.
    """
    registry = _registry()
    if target and target.startswith("@"):
        parsed = parse_target(target)
        for info in registry.get_workflow_agents(parsed.workflow, parsed.tag):
            if registry.is_session_running(info.id):
                return DaemonClient(Path(info.socket_path))
        raise UnavailableError(f"No running agents in {parsed.display}")
    return DaemonClient.for_session(registry, target)


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, ensure_ascii=False))


def _display_name(info: SessionInfo) -> str:
    if not info.name:
        return "-"
    parsed = parse_target(info.name)
    return build_target_display(parsed.agent, parsed.workflow, parsed.tag)


# ============================================================================
# Session lifecycle
# ============================================================================

@app.command()
def new(
    target: Optional[str] = typer.Argument(None, help="Agent address, e.g. alice or alice@review:pr-1"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model id, e.g. mistralai:mistral-small-latest"),
    system: str = typer.Option("You are a helpful assistant.", "--system", "-s", help="System prompt"),
    backend: str = typer.Option("sdk", "--backend", "-b", help="Model backend: sdk or mock"),
    idle_timeout: Optional[float] = typer.Option(None, "--idle-timeout", help="Seconds idle before exit (0 = never)"),
    resume: Optional[str] = typer.Option(None, "--resume", help="Restore the saved state of this session id"),
) -> None:
    """
    Start a new agent daemon.

    Example: agent-worker new reviewer@review:pr-42 -m mistralai
    """
    with _cli_errors():
        settings = get_daemon_settings()
        registry = Registry(settings.home)

        agent = workflow = tag = None
        if target:
            parsed = parse_target(target)
            agent, workflow, tag = parsed.agent, parsed.workflow, parsed.tag
            if agent and registry.get_session_info(parsed.full) and registry.is_session_running(parsed.full):
                raise AgentWorkerError(f"Agent {parsed.display} is already running")

        session_id = spawn_daemon(
            settings,
            model=model or load_raw_config().get("model") or DEFAULT_MODEL,
            system=system,
            backend=backend,
            agent=agent,
            workflow=workflow or "global",
            tag=tag or "main",
            idle_timeout=idle_timeout,
            session_id=resume,
            resume=bool(resume),
        )

        info = asyncio.run(registry.wait_for_ready(session_id, READY_TIMEOUT))
        if info is None:
            log_path = registry.paths_for(session_id).log
            raise UnavailableError(f"Daemon did not become ready; see {log_path}")

        typer.echo(f"Started {_display_name(info) if info.name else info.id} ({info.id})")


@app.command("ls")
def list_sessions() -> None:
    """List registered sessions."""
    from rich.console import Console
    from rich.table import Table

    with _cli_errors():
        registry = _registry()
        default_id = registry.get_default_session_id()

    table = Table(title="Sessions")
    table.add_column("", width=1)
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Model")
    table.add_column("Backend")
    table.add_column("Status")

    for info in registry.list_sessions():
        running = registry.is_session_running(info.id)
        table.add_row(
            "*" if info.id == default_id else "",
            info.id[:8],
            _display_name(info),
            info.model,
            info.backend,
            "[green]running[/green]" if running else "[red]stopped[/red]",
        )

    Console().print(table)


@app.command()
def use(target: str = typer.Argument(..., help="Session to make the default")) -> None:
    """Set the default session."""
    with _cli_errors():
        registry = _registry()
        info = resolve_session(registry, target)
        registry.set_default_session(info.id)
        typer.echo(f"Default session: {info.name or info.id}")


@app.command()
def stop(
    target: Optional[str] = typer.Argument(None, help="Session to stop (default session if omitted)"),
    all_sessions: bool = typer.Option(False, "--all", help="Stop every session"),
) -> None:
    """Ask a daemon to shut down after finishing in-flight requests."""
    with _cli_errors():
        registry = _registry()
        infos = registry.list_sessions() if all_sessions else [resolve_session(registry, target)]
        for info in infos:
            if not registry.is_session_running(info.id):
                typer.echo(f"{info.name or info.id}: not running")
                continue
            acknowledged = DaemonClient(Path(info.socket_path)).shutdown()
            typer.echo(f"{info.name or info.id}: {'stopping' if acknowledged else 'unreachable'}")


@app.command()
def ping(target: Optional[str] = TargetOption) -> None:
    """Check that a daemon answers."""
    with _cli_errors():
        _echo_json(_client(target).ping())


# ============================================================================
# Conversation
# ============================================================================

@app.command()
def send(
    message: str = typer.Argument(..., help="Message for the agent"),
    target: Optional[str] = TargetOption,
    no_auto_approve: bool = typer.Option(
        False, "--no-auto-approve", help="Hold tools that need approval"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the full response as JSON"),
) -> None:
    """
    Send a message and print the reply.

    Example: agent-worker send "review the diff" --to reviewer@review:pr-42
    """
    with _cli_errors():
        response = _client(target).send(message, auto_approve=not no_auto_approve)

    if as_json:
        _echo_json(response)
        return

    typer.echo(response["content"])
    for approval in response.get("pending_approvals", []):
        typer.echo(
            f"[approval needed] {approval['tool_name']} {json.dumps(approval['arguments'])} "
            f"-> agent-worker approve {approval['id']}",
            err=True,
        )


@app.command()
def history(target: Optional[str] = TargetOption) -> None:
    """Show the conversation history."""
    with _cli_errors():
        for message in _client(target).history():
            typer.echo(f"[{message['role']}] {message['content']}")


@app.command()
def stats(target: Optional[str] = TargetOption) -> None:
    """Show message count and token usage."""
    with _cli_errors():
        _echo_json(_client(target).stats())


@app.command()
def export(
    target: Optional[str] = TargetOption,
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the transcript to a file"),
) -> None:
    """Export the session transcript as JSON."""
    with _cli_errors():
        transcript = _client(target).export()

    if output is None:
        _echo_json(transcript)
        return
    output.write_text(json.dumps(transcript, indent=2, ensure_ascii=False), encoding="utf-8")
    typer.echo(f"Transcript written to {output}")


@app.command()
def clear(target: Optional[str] = TargetOption) -> None:
    """Drop history, usage and pending approvals."""
    with _cli_errors():
        _client(target).clear()
    typer.echo("Session cleared.")


# ============================================================================
# Approvals
# ============================================================================

@app.command()
def pending(target: Optional[str] = TargetOption) -> None:
    """List tool calls waiting for approval."""
    with _cli_errors():
        approvals = _client(target).pending()

    if not approvals:
        typer.echo("No pending approvals.")
        return

    from rich.console import Console
    from rich.table import Table

    table = Table(title="Pending approvals")
    table.add_column("ID", style="cyan")
    table.add_column("Tool")
    table.add_column("Arguments")
    table.add_column("Requested")
    for approval in approvals:
        table.add_row(
            approval["id"],
            approval["tool_name"],
            json.dumps(approval["arguments"]),
            approval["requested_at"],
        )
    Console().print(table)


@app.command()
def approve(
    approval_id: str = typer.Argument(..., help="Approval id"),
    target: Optional[str] = TargetOption,
) -> None:
    """Approve a pending tool call and print its result."""
    with _cli_errors():
        _echo_json(_client(target).approve(approval_id))


@app.command()
def deny(
    approval_id: str = typer.Argument(..., help="Approval id"),
    reason: Optional[str] = typer.Option(None, "--reason", "-r", help="Why the call was denied"),
    target: Optional[str] = TargetOption,
) -> None:
    """Deny a pending tool call."""
    with _cli_errors():
        _client(target).deny(approval_id, reason)
    typer.echo(f"Denied {approval_id}")


# ============================================================================
# Tools
# ============================================================================

def _parse_json_arg(value: str, label: str) -> Any:
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        typer.echo(f"Error: {label} is not valid JSON: {e}", err=True)
        raise typer.Exit(1)


@tool_app.command("add")
def tool_add(
    name: str = typer.Argument(..., help="Tool name"),
    description: str = typer.Option(..., "--description", "-d", help="What the tool does"),
    parameters: str = typer.Option(
        '{"type": "object", "properties": {}}', "--parameters", "-p", help="JSON schema of the arguments"
    ),
    needs_approval: bool = typer.Option(False, "--needs-approval", help="Hold calls for approval"),
    mock: Optional[str] = typer.Option(None, "--mock", help="JSON result returned on every call"),
    target: Optional[str] = TargetOption,
) -> None:
    """Register a tool on a session."""
    tool = {
        "name": name,
        "description": description,
        "parameters": _parse_json_arg(parameters, "--parameters"),
        "needs_approval": needs_approval,
    }
    if mock is not None:
        tool["mock"] = _parse_json_arg(mock, "--mock")
    with _cli_errors():
        _client(target).tool_add(tool)
    typer.echo(f"Added tool {name}")


@tool_app.command("mock")
def tool_mock(
    name: str = typer.Argument(..., help="Tool name"),
    response: str = typer.Argument(..., help="JSON result the tool should return"),
    target: Optional[str] = TargetOption,
) -> None:
    """Make an existing tool return a fixed result."""
    value = _parse_json_arg(response, "response")
    with _cli_errors():
        _client(target).tool_mock(name, value)
    typer.echo(f"Mocked tool {name}")


@tool_app.command("list")
def tool_list(target: Optional[str] = TargetOption) -> None:
    """List a session's tools."""
    with _cli_errors():
        tools = _client(target).tool_list()
    for tool in tools:
        flag = " (needs approval)" if tool.get("needs_approval") else ""
        typer.echo(f"{tool['name']}{flag}: {tool['description']}")


@tool_app.command("import")
def tool_import(
    file_path: str = typer.Argument(..., help="Descriptor file inside <home>/tools"),
    target: Optional[str] = TargetOption,
) -> None:
    """Import tools from a JSON descriptor file."""
    with _cli_errors():
        result = _client(target).tool_import(file_path)
    typer.echo(f"Imported: {', '.join(result['imported']) or '(none)'}")
    if result.get("skipped"):
        typer.echo(f"Skipped: {', '.join(result['skipped'])}", err=True)


# ============================================================================
# Workflow context
# ============================================================================

@channel_app.command("send")
def channel_send(
    message: str = typer.Argument(..., help="Message; @name mentions notify agents"),
    target: Optional[str] = TargetOption,
    sender: str = typer.Option("user", "--from", help="Author shown in the channel"),
    dm: Optional[str] = typer.Option(None, "--dm", help="Send privately to this agent"),
) -> None:
    """Post a message to the workflow channel."""
    with _cli_errors():
        entry = _client(target).channel_send(message, sender=sender, to=dm)
    typer.echo(f"Sent at {entry['timestamp']} (mentions: {', '.join(entry['mentions']) or 'none'})")


@channel_app.command("read")
def channel_read(
    target: Optional[str] = TargetOption,
    since: Optional[str] = typer.Option(None, "--since", help="Only entries after this timestamp"),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Show only the last N entries"),
    agent: Optional[str] = typer.Option(None, "--as", help="Read with this agent's visibility"),
) -> None:
    """Read the workflow channel."""
    with _cli_errors():
        entries = _client(target).channel_read(since=since, limit=limit, agent=agent)
    for entry in entries:
        dm = f" -> {entry['to']}" if entry.get("to") else ""
        typer.echo(f"{entry['timestamp']} [{entry['from']}{dm}] {entry['content']}")


def _print_inbox(messages: Any) -> None:
    if not messages:
        typer.echo("Inbox empty.")
        return
    for message in messages:
        entry = message["entry"]
        marker = "!" if message["priority"] == "high" else " "
        seen = " (seen)" if message.get("seen") else ""
        typer.echo(f"{marker} {entry['timestamp']} [{entry['from']}] {entry['content']}{seen}")


@inbox_app.command("list")
def inbox_list(
    target: Optional[str] = TargetOption,
    agent: Optional[str] = typer.Option(None, "--agent", "-a", help="Inbox owner (defaults to the target agent)"),
) -> None:
    """Show unread messages for an agent."""
    with _cli_errors():
        _print_inbox(_client(target).inbox(agent))


@inbox_app.command("peek")
def inbox_peek(
    target: Optional[str] = TargetOption,
    agent: Optional[str] = typer.Option(None, "--agent", "-a", help="Inbox owner (defaults to the target agent)"),
) -> None:
    """Show unread messages without changing anything."""
    with _cli_errors():
        _print_inbox(_client(target).inbox_peek(agent))


@inbox_app.command("ack")
def inbox_ack(
    target: Optional[str] = TargetOption,
    agent: Optional[str] = typer.Option(None, "--agent", "-a", help="Inbox owner (defaults to the target agent)"),
    until: Optional[str] = typer.Option(None, "--until", help="Last handled timestamp (default: newest)"),
) -> None:
    """Mark inbox messages as read."""
    with _cli_errors():
        result = _client(target).inbox_ack(agent, until)
    typer.echo(f"Read cursor for {result['agent']}: {result['until'] or '(none)'}")


@inbox_app.command("seen")
def inbox_seen(
    target: Optional[str] = TargetOption,
    agent: Optional[str] = typer.Option(None, "--agent", "-a", help="Inbox owner (defaults to the target agent)"),
    until: Optional[str] = typer.Option(None, "--until", help="Last picked-up timestamp (default: newest)"),
) -> None:
    """Mark inbox messages as seen without acknowledging them."""
    with _cli_errors():
        result = _client(target).inbox_seen(agent, until)
    typer.echo(f"Seen cursor for {result['agent']}: {result['until'] or '(none)'}")


@doc_app.command("read")
def doc_read(
    file: Optional[str] = typer.Option(None, "--file", "-f", help="Document name (default notes.md)"),
    target: Optional[str] = TargetOption,
) -> None:
    """Print a shared document."""
    with _cli_errors():
        typer.echo(_client(target).doc_read(file))


@doc_app.command("write")
def doc_write(
    content: str = typer.Argument(..., help="New document content"),
    file: Optional[str] = typer.Option(None, "--file", "-f", help="Document name (default notes.md)"),
    target: Optional[str] = TargetOption,
) -> None:
    """Replace a shared document."""
    with _cli_errors():
        _client(target).doc_write(content, file)
    typer.echo("Document written.")


@doc_app.command("append")
def doc_append(
    content: str = typer.Argument(..., help="Text to append"),
    file: Optional[str] = typer.Option(None, "--file", "-f", help="Document name (default notes.md)"),
    target: Optional[str] = TargetOption,
) -> None:
    """Append to a shared document."""
    with _cli_errors():
        _client(target).doc_append(content, file)
    typer.echo("Document updated.")


@doc_app.command("list")
def doc_list(target: Optional[str] = TargetOption) -> None:
    """List shared documents."""
    with _cli_errors():
        for name in _client(target).doc_list():
            typer.echo(name)


@doc_app.command("create")
def doc_create(
    file: str = typer.Argument(..., help="Document name, e.g. plan.md"),
    content: str = typer.Option("", "--content", "-c", help="Initial content"),
    target: Optional[str] = TargetOption,
) -> None:
    """Create a new shared document (fails if it exists)."""
    with _cli_errors():
        _client(target).doc_create(file, content)
    typer.echo(f"Created {file}")


@resource_app.command("create")
def resource_create(
    content: Optional[str] = typer.Argument(None, help="Content to store (omit with --file)"),
    file: Optional[Path] = typer.Option(
        None, "--file", "-f", exists=True, dir_okay=False, readable=True, help="Read content from this file"
    ),
    type_: str = typer.Option("text", "--type", help="markdown, json, text or diff"),
    target: Optional[str] = TargetOption,
) -> None:
    """Store content as a resource and print its reference."""
    with _cli_errors():
        if file is not None:
            content = file.read_text(encoding="utf-8")
        if content is None:
            raise InvalidArgumentError("Give the content or --file")
        result = _client(target).resource_create(content, type_)
    typer.echo(result["ref"])


@resource_app.command("read")
def resource_read(
    resource_id: str = typer.Argument(..., help="Resource id or resource:id reference"),
    target: Optional[str] = TargetOption,
) -> None:
    """Print a resource."""
    with _cli_errors():
        typer.echo(_client(target).resource_read(resource_id))


def run() -> None:
    """Entry point for console script mapping."""
    app()


if __name__ == "__main__":
    run()
