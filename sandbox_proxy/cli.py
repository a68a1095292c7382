"""CLI entry point for the sandbox proxies.

Commands:
- sandbox-proxy gh-proxy: Serve allowlisted gh commands on a Unix socket
- sandbox-proxy clipboard-proxy: Serve the newest screenshot on a Unix socket
- sandbox-proxy up: Ensure both proxies are running for a workspace
- sandbox-proxy policy: Show the command policy table
- sandbox-proxy check: Dry-run the validator on a gh argument vector
- sandbox-proxy gh-client / clipboard-client: Reference container-side clients
"""

from __future__ import annotations

import logging
import signal
import sys
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from sandbox_proxy import __version__
from sandbox_proxy.core.config import (
    ProxyConfig,
    audit_log_path,
    clipboard_socket_path,
    gh_socket_path,
    load_config,
)
from sandbox_proxy.core.models import ConfigError, ResourceError
from sandbox_proxy.core.policy import DEFAULT_POLICY
from sandbox_proxy.core.validator import CommandValidator
from sandbox_proxy.proxy.client import (
    CLIPBOARD_CLIENT_SOCKET,
    CLIPBOARD_INVOCATIONS,
    GH_CLIENT_SOCKET,
    run_clipboard_client,
    run_gh_client,
)
from sandbox_proxy.proxy.clipboard_proxy import create_clipboard_proxy
from sandbox_proxy.proxy.gh_proxy import create_gh_proxy
from sandbox_proxy.proxy.launcher import ensure_proxy
from sandbox_proxy.proxy.server import UnixProxyServer

console = Console()
err_console = Console(stderr=True)

# Forward everything after the command name untouched, including -h/--help
PASSTHROUGH_SETTINGS = {
    "ignore_unknown_options": True,
    "allow_interspersed_args": False,
    "help_option_names": [],
}


def get_workspace_path() -> Path:
    """Get the workspace path (current directory)."""
    return Path.cwd()


def _load(ctx: click.Context) -> ProxyConfig:
    try:
        return load_config(ctx.obj.get("config_path"))
    except ConfigError as e:
        err_console.print(f"[red]Error loading configuration:[/red] {escape(str(e))}")
        sys.exit(1)


def _handle_sigterm(signum: int, frame: Any) -> None:
    raise SystemExit(128 + signum)


def _serve(server: UnixProxyServer, watch_parent: bool) -> None:
    signal.signal(signal.SIGTERM, _handle_sigterm)
    try:
        server.serve(watch_parent=watch_parent)
    except KeyboardInterrupt:
        pass


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: $SANDBOX_PROXY_CONFIG or ~/.config/sandbox-proxy/config.yaml)",
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, config_path: Path | None) -> None:
    """Sandbox proxies: host-side gh and clipboard access for an isolated container."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@main.command("gh-proxy")
@click.option("--socket", "socket_path", type=click.Path(path_type=Path), default=None,
              help="Socket path (default: <workspace>/.claude-sandbox/gh-proxy.sock)")
@click.option("--workspace", type=click.Path(exists=True, file_okay=False, path_type=Path),
              default=None, help="Workspace repository (default: current directory)")
@click.option("--watch-parent", is_flag=True, help="Exit when the launching process exits")
@click.pass_context
def gh_proxy(
    ctx: click.Context, socket_path: Path | None, workspace: Path | None, watch_parent: bool
) -> None:
    """Serve allowlisted gh commands for the container."""
    config = _load(ctx)
    workspace = (workspace or get_workspace_path()).resolve()
    socket_path = socket_path or gh_socket_path(workspace)

    try:
        server = create_gh_proxy(socket_path, workspace, config)
    except ResourceError as e:
        err_console.print(f"[red]gh-proxy:[/red] {escape(str(e))}")
        sys.exit(1)
    _serve(server, watch_parent)


@main.command("clipboard-proxy")
@click.option("--socket", "socket_path", type=click.Path(path_type=Path), default=None,
              help="Socket path (default: ./.claude-sandbox/clipboard-proxy.sock)")
@click.option("--watch-parent", is_flag=True, help="Exit when the launching process exits")
@click.pass_context
def clipboard_proxy(ctx: click.Context, socket_path: Path | None, watch_parent: bool) -> None:
    """Serve the newest host screenshot as the container's clipboard image."""
    config = _load(ctx)
    socket_path = socket_path or clipboard_socket_path(get_workspace_path().resolve())

    try:
        server = create_clipboard_proxy(socket_path, config)
    except ResourceError as e:
        err_console.print(f"[red]clipboard-proxy:[/red] {escape(str(e))}")
        sys.exit(1)
    _serve(server, watch_parent)


@main.command()
@click.option("--workspace", type=click.Path(exists=True, file_okay=False, path_type=Path),
              default=None, help="Workspace repository (default: current directory)")
@click.pass_context
def up(ctx: click.Context, workspace: Path | None) -> None:
    """Ensure both proxies are running for a workspace."""
    config_path = ctx.obj.get("config_path")
    workspace = (workspace or get_workspace_path()).resolve()

    proxies = [
        ("gh-proxy", gh_socket_path(workspace), ["--workspace", str(workspace)]),
        ("clipboard-proxy", clipboard_socket_path(workspace), []),
    ]

    table = Table(title="Sandbox Proxies")
    table.add_column("Proxy", style="cyan")
    table.add_column("Socket", style="white")
    table.add_column("Audit log", style="white")
    table.add_column("Status")

    failed = False
    for kind, socket_path, extra in proxies:
        running = ensure_proxy(kind, socket_path, extra, config_path)
        failed = failed or not running
        status = "[green]running[/green]" if running else "[red]not running[/red]"
        table.add_row(kind, str(socket_path), str(audit_log_path(socket_path)), status)

    console.print(table)
    if failed:
        sys.exit(1)


@main.command()
def policy() -> None:
    """Show the gh command policy table."""
    table = Table(title="gh Policy")
    table.add_column("Command", style="cyan")
    table.add_column("Scope", style="green")
    table.add_column("Allowed flags", style="white")

    for rule in DEFAULT_POLICY.rules:
        scope = "write (workspace only)" if rule.is_write else "read"
        table.add_row(f"{rule.group} {rule.subcommand}", scope, " ".join(rule.allowed_flags))
    for ext in DEFAULT_POLICY.extensions:
        table.add_row(ext.name, "extension", ext.description)

    console.print(table)


@main.command(context_settings=PASSTHROUGH_SETTINGS)
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
def check(args: tuple[str, ...]) -> None:
    """Show whether 'gh ARGS...' would be allowed (nothing is executed)."""
    decision = CommandValidator(DEFAULT_POLICY).validate(args)
    command = escape(" ".join(["gh", *args]))

    if decision.allowed:
        console.print(f"[green]ALLOW[/green] ({decision.plan.kind.value}) {command}")
        return
    console.print(f"[red]DENY[/red] {command}")
    console.print(f"  {escape(decision.reason)}")
    sys.exit(1)


@main.command("gh-client", context_settings=PASSTHROUGH_SETTINGS)
@click.option("--socket", "socket_path", type=click.Path(path_type=Path),
              default=GH_CLIENT_SOCKET, envvar="GH_PROXY_SOCKET", show_default=True)
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
def gh_client(socket_path: Path, args: tuple[str, ...]) -> None:
    """Forward 'gh ARGS...' to the gh proxy and mirror its output."""
    code = run_gh_client(
        args,
        socket_path,
        stdout=click.get_binary_stream("stdout"),
        stderr=click.get_text_stream("stderr"),
    )
    sys.exit(code)


@main.command("clipboard-client", context_settings=PASSTHROUGH_SETTINGS)
@click.option("--as", "invocation", type=click.Choice(sorted(CLIPBOARD_INVOCATIONS)),
              required=True, help="Which clipboard tool is being emulated")
@click.option("--socket", "socket_path", type=click.Path(path_type=Path),
              default=CLIPBOARD_CLIENT_SOCKET, envvar="CLIPBOARD_PROXY_SOCKET",
              show_default=True)
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
def clipboard_client(invocation: str, socket_path: Path, args: tuple[str, ...]) -> None:
    """Answer an xclip/wl-paste image read from the clipboard proxy."""
    code = run_clipboard_client(
        invocation,
        args,
        socket_path,
        stdout=click.get_binary_stream("stdout"),
        stderr=click.get_text_stream("stderr"),
    )
    sys.exit(code)


@main.command()
def version() -> None:
    """Show version information."""
    console.print(f"sandbox-proxy v{__version__}")


if __name__ == "__main__":
    main()
